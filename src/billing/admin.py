"""
Admin Operations

Support tooling for credit and plan corrections. Every operation goes through
the ledger and plan registry like any other caller; there is no direct write
to balances or plan status.
"""

import calendar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import structlog

from core.errors import AccountNotFound, InvalidAmount
from core.ledger import LedgerEntry, LedgerReason, LedgerStore, ReconciliationReport
from core.plans import PlanRegistry, PlanTransition
from core.referrals import DEFAULT_CREDITS, DEFAULT_DESCRIPTION, SpecialReferralService
from persistence.database import Database, get_database
from persistence.models import AccountRecord, SpecialReferralCodeRecord
from persistence.repository import AccountRepository

from .catalog import Catalog

logger = structlog.get_logger()


def add_months(moment: datetime, months: int) -> datetime:
    """Same day-of-month ``months`` later, clamped to the last day of a shorter month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class AdminService:
    """Grants, transfers, refunds, special codes and reconciliation for operators."""

    def __init__(
        self,
        db: Optional[Database] = None,
        ledger: Optional[LedgerStore] = None,
        plans: Optional[PlanRegistry] = None,
        catalog: Optional[Catalog] = None,
        referrals: Optional[SpecialReferralService] = None,
    ):
        self.db = db or get_database()
        self.ledger = ledger or LedgerStore(self.db)
        self.plans = plans or PlanRegistry(self.db)
        self.catalog = catalog or Catalog()
        self.referrals = referrals or SpecialReferralService(self.db, self.ledger)

    def resolve_account(self, account: str) -> AccountRecord:
        """Look up an account by id, or by email when the value contains ``@``."""
        with self.db.transaction() as tx:
            accounts = AccountRepository(tx)
            record = accounts.get_by_email(account.strip().lower()) if "@" in account else accounts.get(account)
        if record is None:
            raise AccountNotFound(f"Account {account} not found", account=account)
        return record

    def grant_credits(
        self,
        account: str,
        amount: int,
        granted_by: str,
        note: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerEntry:
        amount = int(amount)
        if amount <= 0:
            raise InvalidAmount(f"Grant amount must be positive, got {amount}")
        record = self.resolve_account(account)

        meta: Dict[str, Any] = {"granted_by": granted_by, "type": "credit_grant"}
        if note:
            meta["note"] = note
        entry = self.ledger.append(
            record.id,
            amount,
            LedgerReason.ADMIN_GRANT,
            meta=meta,
            idempotency_key=idempotency_key,
        )
        logger.info("admin_credits_granted", account_id=record.id, amount=amount, granted_by=granted_by)
        return entry

    def grant_plan(
        self,
        account: str,
        plan_name: str,
        granted_by: str,
        duration_months: int = 12,
    ) -> Tuple[PlanTransition, LedgerEntry]:
        """
        Give an account a plan without a processor subscription.

        The plan is active for ``duration_months`` and one period's worth of
        credits is granted as ``admin_grant``.
        """
        spec = self.catalog.plan(plan_name)
        if duration_months <= 0:
            raise InvalidAmount(f"Duration must be positive, got {duration_months}")
        record = self.resolve_account(account)

        start = datetime.now(timezone.utc).replace(microsecond=0)
        end = add_months(start, duration_months)
        period_start = int(start.timestamp())

        with self.db.transaction():
            transition = self.plans.activate(
                record.id,
                spec.name,
                None,
                period_start,
                int(end.timestamp()),
            )
            entry = self.ledger.append(
                record.id,
                spec.credits,
                LedgerReason.ADMIN_GRANT,
                meta={
                    "plan": spec.name,
                    "granted_by": granted_by,
                    "duration_months": duration_months,
                    "type": "free_plan_grant",
                },
                idempotency_key=f"admin_plan:{record.id}:{spec.name}:{period_start}",
            )

        logger.info(
            "admin_plan_granted",
            account_id=record.id,
            plan=spec.name,
            duration_months=duration_months,
            credits=spec.credits,
            granted_by=granted_by,
        )
        return transition, entry

    def transfer(
        self,
        source: str,
        destination: str,
        amount: int,
        granted_by: str,
        note: Optional[str] = None,
    ) -> Tuple[LedgerEntry, LedgerEntry]:
        """Move credits between accounts, e.g. from a test account to the real one."""
        src = self.resolve_account(source)
        dst = self.resolve_account(destination)
        meta: Dict[str, Any] = {"granted_by": granted_by}
        if note:
            meta["note"] = note
        return self.ledger.transfer(src.id, dst.id, amount, meta=meta)

    def refund(self, entry_id: str, note: Optional[str] = None) -> LedgerEntry:
        return self.ledger.refund(entry_id, note=note)

    def reconcile(self, account: Optional[str] = None, dry_run: bool = False) -> ReconciliationReport:
        account_id = self.resolve_account(account).id if account else None
        return self.ledger.reconcile(account_id=account_id, dry_run=dry_run)

    def generate_special_codes(
        self,
        count: int = 1,
        credits: int = DEFAULT_CREDITS,
        description: Optional[str] = DEFAULT_DESCRIPTION,
        created_by: str = "admin",
    ) -> List[SpecialReferralCodeRecord]:
        return self.referrals.generate(count, credits=credits, description=description, created_by=created_by)
