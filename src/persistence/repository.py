"""
Repository Layer

Provides the SQL for every persisted billing entity. Repositories are bound to
an open ``Transaction``; they never commit on their own.
"""

from typing import List, Optional
import structlog

from .database import Transaction
from .models import (
    AccountRecord,
    LedgerEntryRecord,
    PlanRecord,
    ArtifactRecord,
    SpecialReferralCodeRecord,
    WebhookEventRecord,
    utc_now,
)

logger = structlog.get_logger()

# Statuses that count as "the account currently holds this plan"
LIVE_PLAN_STATUSES = ("active", "pending_downgrade")


class AccountRepository:
    """Repository for account records."""

    def __init__(self, tx: Transaction):
        self.tx = tx

    def create(self, account: AccountRecord) -> AccountRecord:
        """Create a new account."""
        self.tx.execute(
            """INSERT INTO accounts
               (id, email, credit_balance, referral_code, referred_by,
                auth_method, stripe_customer_id, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            account.to_db_tuple()
        )
        return account

    def get(self, account_id: str, lock: bool = False) -> Optional[AccountRecord]:
        """Get an account by ID, optionally locking its row until commit."""
        results = self.tx.execute(
            "SELECT * FROM accounts WHERE id = ?" + (self.tx.for_update if lock else ""),
            (account_id,)
        )
        return AccountRecord.from_row(results[0]) if results else None

    def get_by_email(self, email: str) -> Optional[AccountRecord]:
        results = self.tx.execute(
            "SELECT * FROM accounts WHERE email = ?",
            (email,)
        )
        return AccountRecord.from_row(results[0]) if results else None

    def get_by_referral_code(self, code: str) -> Optional[AccountRecord]:
        results = self.tx.execute(
            "SELECT * FROM accounts WHERE referral_code = ?",
            (code,)
        )
        return AccountRecord.from_row(results[0]) if results else None

    def get_by_stripe_customer(self, customer_id: str) -> Optional[AccountRecord]:
        results = self.tx.execute(
            "SELECT * FROM accounts WHERE stripe_customer_id = ?",
            (customer_id,)
        )
        return AccountRecord.from_row(results[0]) if results else None

    def apply_delta(self, account_id: str, delta: int) -> None:
        """Move the cached balance. Only the ledger store may call this."""
        self.tx.execute(
            "UPDATE accounts SET credit_balance = credit_balance + ?, updated_at = ? WHERE id = ?",
            (delta, utc_now(), account_id)
        )

    def set_stripe_customer(self, account_id: str, customer_id: str) -> None:
        self.tx.execute(
            "UPDATE accounts SET stripe_customer_id = ?, updated_at = ? WHERE id = ?",
            (customer_id, utc_now(), account_id)
        )

    def list_ids(self) -> List[str]:
        results = self.tx.execute("SELECT id FROM accounts ORDER BY created_at ASC")
        return [r["id"] for r in results]


class LedgerRepository:
    """Repository for ledger entries. There is no update or delete."""

    def __init__(self, tx: Transaction):
        self.tx = tx

    def insert(self, entry: LedgerEntryRecord) -> LedgerEntryRecord:
        """Insert an entry and read back its sequence number."""
        self.tx.execute(
            """INSERT INTO ledger_entries
               (entry_id, account_id, delta, reason, meta, idempotency_key,
                balance_after, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            entry.to_db_tuple()
        )
        results = self.tx.execute(
            "SELECT seq FROM ledger_entries WHERE entry_id = ?",
            (entry.entry_id,)
        )
        entry.seq = results[0]["seq"] if results else None
        return entry

    def get(self, entry_id: str) -> Optional[LedgerEntryRecord]:
        results = self.tx.execute(
            "SELECT * FROM ledger_entries WHERE entry_id = ?",
            (entry_id,)
        )
        return LedgerEntryRecord.from_row(results[0]) if results else None

    def get_by_key(self, idempotency_key: str) -> Optional[LedgerEntryRecord]:
        """Find the entry written for an idempotency key, if any."""
        results = self.tx.execute(
            "SELECT * FROM ledger_entries WHERE idempotency_key = ?",
            (idempotency_key,)
        )
        return LedgerEntryRecord.from_row(results[0]) if results else None

    def history(
        self,
        account_id: str,
        limit: int = 50,
        cursor: Optional[int] = None,
    ) -> List[LedgerEntryRecord]:
        """Entries for an account, newest first; ``cursor`` is the last seq already seen."""
        if cursor is None:
            results = self.tx.execute(
                "SELECT * FROM ledger_entries WHERE account_id = ? ORDER BY seq DESC LIMIT ?",
                (account_id, limit)
            )
        else:
            results = self.tx.execute(
                """SELECT * FROM ledger_entries
                   WHERE account_id = ? AND seq < ?
                   ORDER BY seq DESC LIMIT ?""",
                (account_id, cursor, limit)
            )
        return [LedgerEntryRecord.from_row(r) for r in results]

    def sum_for_account(self, account_id: str) -> int:
        results = self.tx.execute(
            "SELECT COALESCE(SUM(delta), 0) AS total FROM ledger_entries WHERE account_id = ?",
            (account_id,)
        )
        return int(results[0]["total"]) if results else 0

    def count_with_key_prefix(self, prefix: str) -> int:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        results = self.tx.execute(
            "SELECT COUNT(*) AS cnt FROM ledger_entries WHERE idempotency_key LIKE ? ESCAPE '\\'",
            (escaped + "%",)
        )
        return int(results[0]["cnt"]) if results else 0


class PlanRepository:
    """Repository for plan records."""

    def __init__(self, tx: Transaction):
        self.tx = tx

    def create(self, plan: PlanRecord) -> PlanRecord:
        self.tx.execute(
            """INSERT INTO plans
               (id, account_id, name, status, stripe_subscription_id,
                current_period_start, current_period_end, pending_plan,
                cancel_at_period_end, last_event_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            plan.to_db_tuple()
        )
        logger.info("plan_created", plan_id=plan.id, account_id=plan.account_id, name=plan.name, status=plan.status)
        return plan

    def save(self, plan: PlanRecord) -> PlanRecord:
        """Write back every mutable column of a plan."""
        plan.updated_at = utc_now()
        self.tx.execute(
            """UPDATE plans SET
                 status = ?, stripe_subscription_id = ?, current_period_start = ?,
                 current_period_end = ?, pending_plan = ?, cancel_at_period_end = ?,
                 last_event_at = ?, updated_at = ?
               WHERE id = ?""",
            (
                plan.status,
                plan.stripe_subscription_id,
                plan.current_period_start,
                plan.current_period_end,
                plan.pending_plan,
                bool(plan.cancel_at_period_end),
                plan.last_event_at,
                plan.updated_at,
                plan.id,
            )
        )
        return plan

    def get(self, account_id: str, name: str, lock: bool = False) -> Optional[PlanRecord]:
        results = self.tx.execute(
            "SELECT * FROM plans WHERE account_id = ? AND name = ?" + (self.tx.for_update if lock else ""),
            (account_id, name)
        )
        return PlanRecord.from_row(results[0]) if results else None

    def get_by_subscription(self, subscription_id: str, lock: bool = False) -> List[PlanRecord]:
        """All plan rows ever attached to a processor subscription."""
        results = self.tx.execute(
            "SELECT * FROM plans WHERE stripe_subscription_id = ? ORDER BY updated_at DESC"
            + (self.tx.for_update if lock else ""),
            (subscription_id,)
        )
        return [PlanRecord.from_row(r) for r in results]

    def get_live_for_account(self, account_id: str, lock: bool = False) -> Optional[PlanRecord]:
        """The plan the account currently holds (active or pending a downgrade)."""
        results = self.tx.execute(
            "SELECT * FROM plans WHERE account_id = ? AND status IN (?, ?) ORDER BY updated_at DESC"
            + (self.tx.for_update if lock else ""),
            (account_id, *LIVE_PLAN_STATUSES)
        )
        return PlanRecord.from_row(results[0]) if results else None

    def list_for_account(self, account_id: str) -> List[PlanRecord]:
        results = self.tx.execute(
            "SELECT * FROM plans WHERE account_id = ? ORDER BY created_at ASC",
            (account_id,)
        )
        return [PlanRecord.from_row(r) for r in results]


class ArtifactRepository:
    """Repository for chargeable artifacts."""

    def __init__(self, tx: Transaction):
        self.tx = tx

    def create_if_absent(self, artifact: ArtifactRecord) -> ArtifactRecord:
        """Insert the artifact unless one with the same id exists; return the stored row."""
        self.tx.execute(
            """INSERT INTO artifacts
               (id, workflow_id, account_id, downloaded, downloaded_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT (id) DO NOTHING""",
            artifact.to_db_tuple()
        )
        return self.get(artifact.id)

    def get(self, artifact_id: str, lock: bool = False) -> Optional[ArtifactRecord]:
        results = self.tx.execute(
            "SELECT * FROM artifacts WHERE id = ?" + (self.tx.for_update if lock else ""),
            (artifact_id,)
        )
        return ArtifactRecord.from_row(results[0]) if results else None

    def list_for_workflow(self, workflow_id: str, lock: bool = False) -> List[ArtifactRecord]:
        results = self.tx.execute(
            "SELECT * FROM artifacts WHERE workflow_id = ? ORDER BY created_at ASC"
            + (self.tx.for_update if lock else ""),
            (workflow_id,)
        )
        return [ArtifactRecord.from_row(r) for r in results]

    def mark_downloaded(self, artifact_id: str) -> None:
        self.tx.execute(
            "UPDATE artifacts SET downloaded = ?, downloaded_at = ? WHERE id = ?",
            (True, utc_now(), artifact_id)
        )


class WebhookEventRepository:
    """Repository for processed webhook events."""

    def __init__(self, tx: Transaction):
        self.tx = tx

    def get(self, event_id: str) -> Optional[WebhookEventRecord]:
        results = self.tx.execute(
            "SELECT * FROM webhook_events WHERE event_id = ?",
            (event_id,)
        )
        return WebhookEventRecord.from_row(results[0]) if results else None

    def record(self, event: WebhookEventRecord) -> WebhookEventRecord:
        self.tx.execute(
            """INSERT INTO webhook_events
               (event_id, event_type, subscription_id, outcome, received_at)
               VALUES (?, ?, ?, ?, ?)""",
            event.to_db_tuple()
        )
        return event

    def subscription_deleted(self, subscription_id: str) -> bool:
        """Whether a deletion of this subscription has already been received."""
        results = self.tx.execute(
            "SELECT event_id FROM webhook_events WHERE subscription_id = ? AND event_type = ? LIMIT 1",
            (subscription_id, "customer.subscription.deleted")
        )
        return bool(results)


class SpecialReferralCodeRepository:
    """Repository for special referral codes."""

    def __init__(self, tx: Transaction):
        self.tx = tx

    def create_if_absent(self, record: SpecialReferralCodeRecord) -> bool:
        """Insert a new code; False when the code already exists."""
        if self.get(record.code) is not None:
            return False
        self.tx.execute(
            """INSERT INTO special_referral_codes
               (code, credits, description, created_by, used_by, used_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )
        return True

    def get(self, code: str, lock: bool = False) -> Optional[SpecialReferralCodeRecord]:
        results = self.tx.execute(
            "SELECT * FROM special_referral_codes WHERE code = ?" + (self.tx.for_update if lock else ""),
            (code,)
        )
        return SpecialReferralCodeRecord.from_row(results[0]) if results else None

    def get_used_by(self, account_id: str) -> Optional[SpecialReferralCodeRecord]:
        results = self.tx.execute(
            "SELECT * FROM special_referral_codes WHERE used_by = ?",
            (account_id,)
        )
        return SpecialReferralCodeRecord.from_row(results[0]) if results else None

    def mark_used(self, code: str, account_id: str) -> str:
        used_at = utc_now()
        self.tx.execute(
            "UPDATE special_referral_codes SET used_by = ?, used_at = ? WHERE code = ?",
            (account_id, used_at, code)
        )
        return used_at

    def list_codes(self, include_used: bool = True) -> List[SpecialReferralCodeRecord]:
        query = "SELECT * FROM special_referral_codes"
        if not include_used:
            query += " WHERE used_by IS NULL"
        results = self.tx.execute(query + " ORDER BY created_at DESC")
        return [SpecialReferralCodeRecord.from_row(r) for r in results]
