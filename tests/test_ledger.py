"""
Tests for the Credit Ledger

Append-only history, the cached balance kept in lockstep with it, and the
reconciliation pass that records drift instead of hiding it.
"""

import pytest
from core.errors import AccountNotFound, InsufficientCredits, InvalidAmount
from core.ledger import LedgerReason
from persistence.repository import AccountRepository


def assert_balance_matches_history(ledger, account_id):
    entries = ledger.history(account_id, limit=500).entries
    assert ledger.balance_of(account_id) == sum(e.delta for e in entries)


class TestAppend:
    """Test appending entries."""

    def test_append_moves_balance(self, ledger, account):
        """An append changes the cached balance by its delta."""
        entry = ledger.append(account.id, 10, LedgerReason.ADMIN_GRANT, meta={"note": "goodwill"})

        assert entry.delta == 10
        assert entry.balance_after == 13
        assert entry.meta == {"note": "goodwill"}
        assert ledger.balance_of(account.id) == 13
        assert_balance_matches_history(ledger, account.id)

    def test_append_accepts_reason_string(self, ledger, account):
        """Reasons may be passed by value."""
        entry = ledger.append(account.id, 5, "purchase")

        assert entry.reason == "purchase"

    def test_append_allows_overdraft(self, ledger, account):
        """Balance checks are the caller's job; append never refuses."""
        entry = ledger.append(account.id, -10, LedgerReason.DOWNLOAD)

        assert entry.balance_after == -7
        assert_balance_matches_history(ledger, account.id)

    def test_append_unknown_account(self, ledger):
        """Appending to a missing account fails without writing."""
        with pytest.raises(AccountNotFound):
            ledger.append("missing", 5, LedgerReason.ADMIN_GRANT)

    def test_idempotency_key_appends_once(self, ledger, account):
        """The same key returns the first entry instead of writing again."""
        first = ledger.append(account.id, 5, LedgerReason.PURCHASE, idempotency_key="purchase:cs_1")
        second = ledger.append(account.id, 5, LedgerReason.PURCHASE, idempotency_key="purchase:cs_1")

        assert first.entry_id == second.entry_id
        assert ledger.balance_of(account.id) == 8
        assert ledger.find_by_key("purchase:cs_1").entry_id == first.entry_id

    def test_append_once_reports_creation(self, ledger, account):
        """append_once says whether a new entry was written."""
        _, created = ledger.append_once(account.id, 5, LedgerReason.PURCHASE, idempotency_key="k")
        _, created_again = ledger.append_once(account.id, 5, LedgerReason.PURCHASE, idempotency_key="k")

        assert created is True
        assert created_again is False

    def test_failed_transaction_leaves_nothing(self, db, ledger, account):
        """Entry and balance roll back together."""
        with pytest.raises(RuntimeError):
            with db.transaction():
                ledger.append(account.id, 50, LedgerReason.ADMIN_GRANT)
                raise RuntimeError("crash after append")

        assert ledger.balance_of(account.id) == 3
        assert len(ledger.history(account.id).entries) == 1


class TestDebit:
    """Test balance-checked debits."""

    def test_debit_exact_balance(self, ledger, account):
        """Debiting the whole balance leaves zero."""
        entry = ledger.debit(account.id, 3, LedgerReason.DOWNLOAD)

        assert entry.delta == -3
        assert ledger.balance_of(account.id) == 0

    def test_debit_insufficient(self, ledger, account):
        """Debiting more than the balance fails and writes nothing."""
        with pytest.raises(InsufficientCredits) as exc:
            ledger.debit(account.id, 4, LedgerReason.DOWNLOAD)

        assert exc.value.required == 4
        assert exc.value.available == 3
        assert ledger.balance_of(account.id) == 3
        assert len(ledger.history(account.id).entries) == 1

    def test_negative_cost_rejected(self, ledger, account):
        with pytest.raises(InvalidAmount):
            ledger.debit(account.id, -1, LedgerReason.DOWNLOAD)


class TestHistory:
    """Test history paging."""

    def test_history_newest_first(self, ledger, account):
        """Entries come back in reverse creation order."""
        ledger.append(account.id, 1, LedgerReason.ADMIN_GRANT)
        ledger.append(account.id, 2, LedgerReason.ADMIN_GRANT)

        deltas = [e.delta for e in ledger.history(account.id).entries]
        assert deltas == [2, 1, 3]

    def test_history_cursor_pages(self, ledger, account):
        """next_cursor walks through every entry exactly once."""
        for i in range(7):
            ledger.append(account.id, i + 1, LedgerReason.ADMIN_GRANT)

        seen = []
        cursor = None
        while True:
            page = ledger.history(account.id, limit=3, cursor=cursor)
            seen.extend(e.entry_id for e in page.entries)
            if page.next_cursor is None:
                break
            cursor = page.next_cursor

        assert len(seen) == 8
        assert len(set(seen)) == 8

    def test_history_is_per_account(self, ledger, accounts, account):
        """One account's entries never show up in another's history."""
        other = accounts.provision("other@example.com")
        ledger.append(other.id, 9, LedgerReason.ADMIN_GRANT)

        assert all(e.account_id == account.id for e in ledger.history(account.id).entries)


class TestTransferAndRefund:
    """Test transfers and refunds."""

    def test_transfer_moves_credits(self, ledger, accounts, account):
        """A transfer writes a matching pair of entries."""
        other = accounts.provision("other@example.com")

        outgoing, incoming = ledger.transfer(account.id, other.id, 2, meta={"note": "test account"})

        assert outgoing.delta == -2
        assert incoming.delta == 2
        assert outgoing.meta["transfer_id"] == incoming.meta["transfer_id"]
        assert outgoing.meta["to_account_id"] == other.id
        assert incoming.meta["from_account_id"] == account.id
        assert ledger.balance_of(account.id) == 1
        assert ledger.balance_of(other.id) == 5

    def test_transfer_insufficient_writes_nothing(self, ledger, accounts, account):
        """Neither side moves when the source cannot cover the amount."""
        other = accounts.provision("other@example.com")

        with pytest.raises(InsufficientCredits):
            ledger.transfer(account.id, other.id, 10)

        assert ledger.balance_of(account.id) == 3
        assert ledger.balance_of(other.id) == 3

    def test_transfer_to_self_rejected(self, ledger, account):
        with pytest.raises(InvalidAmount):
            ledger.transfer(account.id, account.id, 1)

    def test_refund_offsets_entry_once(self, ledger, account):
        """Refunding twice produces one offsetting entry."""
        charge = ledger.debit(account.id, 2, LedgerReason.DOWNLOAD)

        first = ledger.refund(charge.entry_id, note="blurry result")
        second = ledger.refund(charge.entry_id)

        assert first.entry_id == second.entry_id
        assert first.delta == 2
        assert first.reason == "refund"
        assert first.meta["refunded_entry_id"] == charge.entry_id
        assert ledger.balance_of(account.id) == 3

    def test_refund_of_refund_rejected(self, ledger, account):
        charge = ledger.debit(account.id, 1, LedgerReason.DOWNLOAD)
        refund = ledger.refund(charge.entry_id)

        with pytest.raises(InvalidAmount):
            ledger.refund(refund.entry_id)


class TestReconciliation:
    """Test the reconciliation pass."""

    def _corrupt_cache(self, db, account_id, delta):
        # Simulates an out-of-band write that bypassed the ledger
        with db.transaction() as tx:
            AccountRepository(tx).apply_delta(account_id, delta)

    def test_clean_ledger_reports_no_drift(self, ledger, account):
        report = ledger.reconcile()

        assert report.clean
        assert report.accounts_checked == 1
        assert ledger.verify(account.id) is None

    def test_drift_recorded_with_reconciling_entry(self, db, ledger, account):
        """Drift becomes an explicit ledger entry; the balance is not overwritten."""
        self._corrupt_cache(db, account.id, 5)

        drift = ledger.verify(account.id)
        assert drift.cached == 8
        assert drift.computed == 3

        report = ledger.reconcile(account.id)

        assert len(report.drifts) == 1
        correction = report.corrections[0]
        assert correction.reason == "reconciliation"
        assert correction.delta == 5
        assert ledger.balance_of(account.id) == 8
        assert_balance_matches_history(ledger, account.id)
        assert ledger.reconcile(account.id).clean

    def test_dry_run_writes_nothing(self, db, ledger, account):
        self._corrupt_cache(db, account.id, -2)

        report = ledger.reconcile(dry_run=True)

        assert len(report.drifts) == 1
        assert report.corrections == []
        assert ledger.verify(account.id) is not None
