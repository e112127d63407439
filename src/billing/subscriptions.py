"""
Subscription Controller

User-facing plan operations. Each one calls the payment processor first and
touches local state only after the call returned, so a processor failure leaves
the account as it was. The one exception is an upgrade over a pending
downgrade: the schedule is released first, and if the upgrade itself then
fails the local plan drops the downgrade too so both sides agree.

Direction of a plan change is decided by monthly price:
- Upgrade: the processor charges the price difference now (no proration, the
  billing cycle is unchanged), the new plan is active immediately and the
  credit difference is granted. The later webhook for the same change is
  deduplicated by the shared idempotency key.
- Downgrade: scheduled at the processor for the period boundary; locally the
  plan becomes ``pending_downgrade`` and no credits move.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
import structlog

from core.config import BillingConfig
from core.errors import AccountNotFound, InvalidPlan, NoActiveSubscription, PaymentProcessorError
from core.ledger import LedgerStore
from core.plans import PlanRegistry, PlanStatus, PlanTransition
from persistence.database import Database, get_database
from persistence.models import AccountRecord, PlanRecord
from persistence.repository import AccountRepository

from .catalog import Catalog
from .grants import grant_upgrade_credits
from .processor import CheckoutSession, PaymentProcessor
from .stripe_integration import StripeIntegration

logger = structlog.get_logger()


class ChangeKind(Enum):
    IMMEDIATE_UPGRADE = "immediate_upgrade"
    SCHEDULED_DOWNGRADE = "scheduled_downgrade"


@dataclass
class PlanChange:
    """Result of ``change_plan``."""
    kind: ChangeKind
    account_id: str
    from_plan: str
    to_plan: str
    plan: PlanRecord
    credits_added: int = 0
    effective_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "account_id": self.account_id,
            "from_plan": self.from_plan,
            "to_plan": self.to_plan,
            "credits_added": self.credits_added,
            "effective_at": self.effective_at,
            "plan": self.plan.to_dict(),
        }


@dataclass
class CheckoutResult:
    """Either a hosted checkout to redirect to, or a plan change applied in place."""
    session: Optional[CheckoutSession] = None
    plan_change: Optional[PlanChange] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkout": self.session.to_dict() if self.session else None,
            "plan_change": self.plan_change.to_dict() if self.plan_change else None,
        }


class SubscriptionController:
    """Plan changes, downgrade cancellation, cancellation and checkout."""

    def __init__(
        self,
        db: Optional[Database] = None,
        processor: Optional[PaymentProcessor] = None,
        ledger: Optional[LedgerStore] = None,
        plans: Optional[PlanRegistry] = None,
        catalog: Optional[Catalog] = None,
        config: Optional[BillingConfig] = None,
    ):
        self.db = db or get_database()
        self.config = config or BillingConfig.from_env()
        self.processor = processor or StripeIntegration(api_key=self.config.stripe_api_key)
        self.ledger = ledger or LedgerStore(self.db)
        self.plans = plans or PlanRegistry(self.db)
        self.catalog = catalog or Catalog()

    def _live_subscription(self, account_id: str) -> PlanRecord:
        live = self.plans.get_live(account_id)
        if live is None or not live.stripe_subscription_id:
            raise NoActiveSubscription(
                f"Account {account_id} has no active subscription",
                account_id=account_id,
            )
        return live

    def _account(self, account_id: str) -> AccountRecord:
        with self.db.transaction() as tx:
            account = AccountRepository(tx).get(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)
        return account

    def change_plan(self, account_id: str, new_plan: str) -> PlanChange:
        """
        Move the account's subscription to ``new_plan``.

        Raises:
            InvalidPlan: unknown plan, or already on it
            NoActiveSubscription: nothing to change
            PaymentProcessorError: the processor call failed; nothing changed locally,
                except that a pending downgrade already released at the processor
                is dropped locally as well
        """
        target = self.catalog.plan(new_plan)
        live = self._live_subscription(account_id)
        current = self.catalog.plan(live.name)
        subscription_id = live.stripe_subscription_id

        if target.name == current.name:
            raise InvalidPlan(f"Account is already on {target.name}", account_id=account_id, plan=target.name)

        if self.catalog.compare(current.name, target.name) > 0:
            return self._upgrade(account_id, live, current, target)

        if live.status == PlanStatus.PENDING_DOWNGRADE.value and live.pending_plan == target.name:
            return PlanChange(
                kind=ChangeKind.SCHEDULED_DOWNGRADE,
                account_id=account_id,
                from_plan=current.name,
                to_plan=target.name,
                plan=live,
                effective_at=live.current_period_end,
            )

        self.processor.schedule_downgrade(subscription_id, target, account_id)
        transition = self.plans.schedule_downgrade(account_id, target.name)

        logger.info(
            "plan_change_scheduled",
            account_id=account_id,
            from_plan=current.name,
            to_plan=target.name,
            effective_at=live.current_period_end,
        )
        return PlanChange(
            kind=ChangeKind.SCHEDULED_DOWNGRADE,
            account_id=account_id,
            from_plan=current.name,
            to_plan=target.name,
            plan=transition.plan,
            effective_at=live.current_period_end,
        )

    def _upgrade(self, account_id, live, current, target) -> PlanChange:
        account = self._account(account_id)
        if not account.stripe_customer_id:
            raise NoActiveSubscription(f"Account {account_id} has no billing customer", account_id=account_id)

        subscription_id = live.stripe_subscription_id
        released = False
        if live.status == PlanStatus.PENDING_DOWNGRADE.value:
            self.processor.cancel_scheduled_downgrade(subscription_id)
            released = True

        try:
            state = self.processor.upgrade_subscription(
                subscription_id,
                account.stripe_customer_id,
                current,
                target,
                account_id,
            )
        except PaymentProcessorError:
            if released:
                # The processor no longer holds the schedule
                self.plans.cancel_downgrade(account_id)
                logger.warning(
                    "plan_upgrade_failed_after_release",
                    account_id=account_id,
                    from_plan=current.name,
                    to_plan=target.name,
                    dropped_downgrade=live.pending_plan,
                )
            raise

        credits_added = 0
        with self.db.transaction():
            transition = self.plans.activate(
                account_id,
                target.name,
                subscription_id,
                state.current_period_start or live.current_period_start,
                state.current_period_end or live.current_period_end,
            )
            granted = grant_upgrade_credits(
                self.ledger,
                account_id,
                subscription_id,
                current,
                target,
                live.current_period_start,
                meta={"timing": "immediate_after_payment"},
            )
            if granted is not None:
                credits_added = granted[0].delta

        logger.info(
            "plan_upgraded",
            account_id=account_id,
            from_plan=current.name,
            to_plan=target.name,
            credits_added=credits_added,
        )
        return PlanChange(
            kind=ChangeKind.IMMEDIATE_UPGRADE,
            account_id=account_id,
            from_plan=current.name,
            to_plan=target.name,
            plan=transition.plan,
            credits_added=credits_added,
        )

    def cancel_scheduled_downgrade(self, account_id: str) -> PlanTransition:
        """Keep the current plan; a plan with nothing scheduled is left untouched."""
        live = self._live_subscription(account_id)
        if live.status != PlanStatus.PENDING_DOWNGRADE.value:
            return PlanTransition(plan=live, previous_status=live.status, changed=False)

        self.processor.cancel_scheduled_downgrade(live.stripe_subscription_id)
        return self.plans.cancel_downgrade(account_id)

    def cancel_subscription(self, account_id: str) -> PlanTransition:
        """
        Stop renewing at the end of the current period.

        The plan stays live and its credits are kept; the processor's
        ``customer.subscription.deleted`` event cancels it at the boundary.
        """
        live = self._live_subscription(account_id)
        if live.cancel_at_period_end:
            return PlanTransition(plan=live, previous_status=live.status, changed=False)

        self.processor.cancel_at_period_end(live.stripe_subscription_id)
        return self.plans.set_cancel_at_period_end(account_id, True)

    def start_checkout(self, account_id: str, kind: str, item: str) -> CheckoutResult:
        """
        Begin a purchase of a credit pack (``kind="pack"``) or a plan (``kind="plan"``).

        Buying a plan while one is already active becomes a plan change.
        """
        account = self._account(account_id)

        if kind == "plan":
            spec = self.catalog.plan(item)
            live = self.plans.get_live(account_id)
            if live is not None and live.stripe_subscription_id:
                return CheckoutResult(plan_change=self.change_plan(account_id, spec.name))
            mode = "subscription"
            metadata = {"account_id": account.id, "plan": spec.name, "credits": str(spec.credits)}
        elif kind == "pack":
            spec = self.catalog.pack(item)
            mode = "payment"
            metadata = {"account_id": account.id, "pack": spec.name, "credits": str(spec.credits)}
        else:
            raise InvalidPlan(f"Unknown checkout kind: {kind}", kind=kind)

        customer_id = account.stripe_customer_id
        if not customer_id:
            customer_id = self.processor.create_customer(account.id, account.email)
            with self.db.transaction() as tx:
                AccountRepository(tx).set_stripe_customer(account.id, customer_id)

        session = self.processor.create_checkout_session(
            customer_id=customer_id,
            account_id=account.id,
            mode=mode,
            price_id=spec.price_id,
            metadata=metadata,
            success_url=self.config.checkout_success_url,
            cancel_url=self.config.checkout_cancel_url,
        )
        logger.info("checkout_started", account_id=account.id, mode=mode, item=spec.name, session_id=session.session_id)
        return CheckoutResult(session=session)
