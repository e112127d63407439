"""
Credit Ledger

The ledger is the source of truth for every account's credits:
- Entries are append-only. Corrections are new offsetting entries.
- ``accounts.credit_balance`` is a cache of SUM(delta) and moves only in the
  same transaction as the entry that explains it.
- An optional idempotency key makes an append happen at most once.

The reconciliation pass recomputes the cache from history and records any
drift as an explicit ``reconciliation`` entry instead of overwriting it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
import uuid
import structlog

from persistence.database import Database, get_database
from persistence.models import LedgerEntryRecord
from persistence.repository import AccountRepository, LedgerRepository

from .errors import AccountNotFound, InsufficientCredits, InvalidAmount, LedgerIntegrityDrift

logger = structlog.get_logger()


class LedgerReason(Enum):
    """Why a ledger entry exists."""
    TRIAL = "trial"
    SUBSCRIPTION = "subscription"
    PURCHASE = "purchase"
    DOWNLOAD = "download"
    REFINEMENT = "refinement"
    ADMIN_GRANT = "admin_grant"
    TRANSFER = "transfer"
    REFUND = "refund"
    SUBSCRIPTION_UPGRADE = "subscription_upgrade"
    RECONCILIATION = "reconciliation"
    SPECIAL_REFERRAL = "special_referral"


LedgerEntry = LedgerEntryRecord


@dataclass
class HistoryPage:
    """One page of ledger history, newest first."""
    entries: List[LedgerEntry]
    next_cursor: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "next_cursor": self.next_cursor,
        }


@dataclass
class ReconciliationReport:
    """Outcome of a reconciliation pass."""
    accounts_checked: int = 0
    drifts: List[LedgerIntegrityDrift] = field(default_factory=list)
    corrections: List[LedgerEntry] = field(default_factory=list)
    dry_run: bool = False

    @property
    def clean(self) -> bool:
        return not self.drifts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accounts_checked": self.accounts_checked,
            "dry_run": self.dry_run,
            "drifts": [d.context for d in self.drifts],
            "corrections": [c.to_dict() for c in self.corrections],
        }


def _reason(reason: Union[LedgerReason, str]) -> LedgerReason:
    return reason if isinstance(reason, LedgerReason) else LedgerReason(reason)


class LedgerStore:
    """
    Append-only credit ledger with a transactional balance cache.

    Appends are never rejected for business reasons; callers that must not
    overdraw use ``debit``, which checks the balance under the account lock
    before appending.
    """

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def append(
        self,
        account_id: str,
        delta: int,
        reason: Union[LedgerReason, str],
        meta: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Append one entry and move the cached balance with it.

        With an ``idempotency_key`` a repeated append returns the entry that
        was written the first time.
        """
        entry, _ = self.append_once(account_id, delta, reason, meta, idempotency_key)
        return entry

    def append_once(
        self,
        account_id: str,
        delta: int,
        reason: Union[LedgerReason, str],
        meta: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[LedgerEntry, bool]:
        """Like ``append`` but also reports whether a new entry was written."""
        reason = _reason(reason)
        delta = int(delta)

        with self.db.transaction() as tx:
            accounts = AccountRepository(tx)
            ledger = LedgerRepository(tx)

            account = accounts.get(account_id, lock=True)
            if account is None:
                raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)

            if idempotency_key:
                existing = ledger.get_by_key(idempotency_key)
                if existing is not None:
                    logger.info(
                        "ledger_append_deduplicated",
                        account_id=account_id,
                        idempotency_key=idempotency_key,
                        entry_id=existing.entry_id,
                    )
                    return existing, False

            entry = ledger.insert(LedgerEntryRecord(
                entry_id=str(uuid.uuid4()),
                account_id=account_id,
                delta=delta,
                reason=reason.value,
                balance_after=account.credit_balance + delta,
                meta=dict(meta or {}),
                idempotency_key=idempotency_key,
            ))
            accounts.apply_delta(account_id, delta)

        logger.info(
            "ledger_entry_appended",
            entry_id=entry.entry_id,
            account_id=account_id,
            delta=delta,
            reason=reason.value,
            balance_after=entry.balance_after,
        )
        return entry, True

    def debit(
        self,
        account_id: str,
        cost: int,
        reason: Union[LedgerReason, str],
        meta: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerEntry:
        """Append ``-cost`` after verifying the balance covers it."""
        cost = int(cost)
        if cost < 0:
            raise InvalidAmount(f"Debit cost must be non-negative, got {cost}")

        with self.db.transaction() as tx:
            account = AccountRepository(tx).get(account_id, lock=True)
            if account is None:
                raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)
            if account.credit_balance < cost:
                raise InsufficientCredits(account_id, required=cost, available=account.credit_balance)
            return self.append(account_id, -cost, reason, meta, idempotency_key)

    def transfer(
        self,
        source_id: str,
        destination_id: str,
        amount: int,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Tuple[LedgerEntry, LedgerEntry]:
        """Move credits between accounts as a pair of ``transfer`` entries."""
        amount = int(amount)
        if amount <= 0:
            raise InvalidAmount(f"Transfer amount must be positive, got {amount}")
        if source_id == destination_id:
            raise InvalidAmount("Cannot transfer credits to the same account")

        transfer_id = str(uuid.uuid4())
        with self.db.transaction() as tx:
            if AccountRepository(tx).get(destination_id, lock=True) is None:
                raise AccountNotFound(f"Account {destination_id} not found", account_id=destination_id)

            outgoing = self.debit(
                source_id,
                amount,
                LedgerReason.TRANSFER,
                meta={**(meta or {}), "transfer_id": transfer_id, "to_account_id": destination_id},
            )
            incoming = self.append(
                destination_id,
                amount,
                LedgerReason.TRANSFER,
                meta={**(meta or {}), "transfer_id": transfer_id, "from_account_id": source_id},
            )

        logger.info(
            "credits_transferred",
            transfer_id=transfer_id,
            source_id=source_id,
            destination_id=destination_id,
            amount=amount,
        )
        return outgoing, incoming

    def refund(self, entry_id: str, note: Optional[str] = None) -> LedgerEntry:
        """Offset an earlier entry. Refunding the same entry twice is a no-op."""
        with self.db.transaction() as tx:
            original = LedgerRepository(tx).get(entry_id)
            if original is None:
                raise InvalidAmount(f"Ledger entry {entry_id} not found", entry_id=entry_id)
            if original.reason == LedgerReason.REFUND.value:
                raise InvalidAmount("Refund entries cannot be refunded", entry_id=entry_id)

            meta = {"refunded_entry_id": entry_id, "refunded_reason": original.reason}
            if note:
                meta["note"] = note
            return self.append(
                original.account_id,
                -original.delta,
                LedgerReason.REFUND,
                meta=meta,
                idempotency_key=f"refund:{entry_id}",
            )

    def balance_of(self, account_id: str) -> int:
        """Cached balance; O(1)."""
        with self.db.transaction() as tx:
            account = AccountRepository(tx).get(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)
        return account.credit_balance

    def history(
        self,
        account_id: str,
        limit: int = 50,
        cursor: Optional[int] = None,
    ) -> HistoryPage:
        """Entries newest first. Pass ``next_cursor`` back to fetch the following page."""
        limit = max(1, min(int(limit), 500))
        with self.db.transaction() as tx:
            entries = LedgerRepository(tx).history(account_id, limit=limit + 1, cursor=cursor)

        next_cursor = None
        if len(entries) > limit:
            entries = entries[:limit]
            next_cursor = entries[-1].seq
        return HistoryPage(entries=entries, next_cursor=next_cursor)

    def find_by_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        with self.db.transaction() as tx:
            return LedgerRepository(tx).get_by_key(idempotency_key)

    def verify(self, account_id: str) -> Optional[LedgerIntegrityDrift]:
        """Compare the cached balance against the summed history."""
        with self.db.transaction() as tx:
            account = AccountRepository(tx).get(account_id, lock=True)
            if account is None:
                raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)
            computed = LedgerRepository(tx).sum_for_account(account_id)

        if computed == account.credit_balance:
            return None
        return LedgerIntegrityDrift(account_id, cached=account.credit_balance, computed=computed)

    def reconcile(
        self,
        account_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> ReconciliationReport:
        """
        Recompute balances from history for one account or all of them.

        Drift is logged as an integrity incident. Unless ``dry_run`` is set it is
        closed with a ``reconciliation`` entry whose delta is the drift, so the
        history explains the balance the account was operating on.
        """
        report = ReconciliationReport(dry_run=dry_run)

        if account_id is None:
            with self.db.transaction() as tx:
                account_ids = AccountRepository(tx).list_ids()
        else:
            account_ids = [account_id]

        for current_id in account_ids:
            report.accounts_checked += 1
            with self.db.transaction() as tx:
                accounts = AccountRepository(tx)
                ledger = LedgerRepository(tx)

                account = accounts.get(current_id, lock=True)
                if account is None:
                    raise AccountNotFound(f"Account {current_id} not found", account_id=current_id)
                computed = ledger.sum_for_account(current_id)
                if computed == account.credit_balance:
                    continue

                drift = LedgerIntegrityDrift(current_id, cached=account.credit_balance, computed=computed)
                report.drifts.append(drift)
                logger.error(
                    "ledger_integrity_drift",
                    account_id=current_id,
                    cached=drift.cached,
                    computed=drift.computed,
                    drift=drift.drift,
                    dry_run=dry_run,
                )
                if dry_run:
                    continue

                # The cache already reflects this delta; only the history is missing it
                correction = ledger.insert(LedgerEntryRecord(
                    entry_id=str(uuid.uuid4()),
                    account_id=current_id,
                    delta=drift.drift,
                    reason=LedgerReason.RECONCILIATION.value,
                    balance_after=account.credit_balance,
                    meta={"cached": drift.cached, "computed": drift.computed},
                ))
                report.corrections.append(correction)

        logger.info(
            "ledger_reconciled",
            accounts_checked=report.accounts_checked,
            drifts=len(report.drifts),
            corrections=len(report.corrections),
            dry_run=dry_run,
        )
        return report
