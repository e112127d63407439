"""
Webhook Reconciler

Turns verified processor events into ledger appends and plan transitions.

Every event is applied as one transaction together with the record of its
event id, so a crash mid-way leaves nothing behind and the redelivery is
applied from scratch. Handlers never swallow failures; ``process`` converts
the outcome into a ``WebhookResult`` and the transport picks the HTTP status
from it:

    processed / duplicate / stale / ignored -> 200 (do not redeliver)
    rejected (signature, malformed, unknown account) -> 4xx
    failed (unexpected error) -> 500 (redeliver)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import structlog

from core.config import BillingConfig
from core.errors import (
    AccountNotFound,
    BillingError,
    ErrorKind,
    MalformedEvent,
    WebhookEventStale,
)
from core.ledger import LedgerReason, LedgerStore
from core.plans import PlanRegistry, PlanStatus
from persistence.database import Database, get_database
from persistence.models import AccountRecord, PlanRecord, WebhookEventRecord
from persistence.repository import AccountRepository, PlanRepository, WebhookEventRepository

from .catalog import Catalog, PlanSpec
from .events import (
    CheckoutCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    ProcessorEvent,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    SubscriptionUpdated,
    UnhandledEvent,
    parse_event,
    verify_signature,
)
from .grants import grant_period_credits, grant_upgrade_credits

logger = structlog.get_logger()


class WebhookStatus(Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    REJECTED = "rejected"
    FAILED = "failed"


# Processor subscription status -> plan status; None leaves the plan as it is
STATUS_MAP: Dict[str, Optional[PlanStatus]] = {
    "active": PlanStatus.ACTIVE,
    "trialing": PlanStatus.ACTIVE,
    "incomplete": PlanStatus.INCOMPLETE,
    "incomplete_expired": PlanStatus.CANCELED,
    "canceled": PlanStatus.CANCELED,
    "past_due": None,
    "unpaid": None,
    "paused": None,
}


@dataclass
class WebhookResult:
    """Outcome of one delivery."""
    status: WebhookStatus
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    detail: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    ledger_entries: List[str] = field(default_factory=list)

    @property
    def http_status(self) -> int:
        if self.status == WebhookStatus.FAILED:
            return 500
        if self.status == WebhookStatus.REJECTED:
            return self.error_kind.http_status if self.error_kind else 400
        return 200

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "detail": self.detail,
            "error": self.error_kind.value if self.error_kind else None,
            "ledger_entries": self.ledger_entries,
        }


def _subscription_of(event: ProcessorEvent) -> Optional[str]:
    if isinstance(event, (SubscriptionCreated, SubscriptionUpdated, SubscriptionDeleted)):
        return event.subscription.subscription_id
    return getattr(event, "subscription_id", None)


class _Applied:
    """Collects what a handler wrote, for the result and the log line."""

    def __init__(self):
        self.entries: List[str] = []
        self.detail: Optional[str] = None


class WebhookReconciler:
    """
    Applies processor events exactly once and in a safe order.

    Duplicates are detected by event id. Out-of-order subscription events are
    detected by comparing the event timestamp and billing period against the
    stored plan; a subscription whose rows are all canceled is never revived.
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        ledger: Optional[LedgerStore] = None,
        plans: Optional[PlanRegistry] = None,
        catalog: Optional[Catalog] = None,
        config: Optional[BillingConfig] = None,
    ):
        self.db = db or get_database()
        self.ledger = ledger or LedgerStore(self.db)
        self.plans = plans or PlanRegistry(self.db)
        self.catalog = catalog or Catalog()
        self.config = config or BillingConfig.from_env()

        self._handlers: Dict[type, Callable[[Any, _Applied], WebhookStatus]] = {
            CheckoutCompleted: self._on_checkout_completed,
            SubscriptionCreated: self._on_subscription_changed,
            SubscriptionUpdated: self._on_subscription_changed,
            SubscriptionDeleted: self._on_subscription_deleted,
            InvoicePaymentSucceeded: self._on_invoice_payment_succeeded,
            InvoicePaymentFailed: self._on_invoice_payment_failed,
            UnhandledEvent: self._on_unhandled,
        }

    @property
    def handled_variants(self) -> List[type]:
        return list(self._handlers)

    def handle(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """Verify, parse and apply one raw delivery."""
        try:
            verify_signature(
                payload,
                signature,
                self.config.stripe_webhook_secret,
                self.config.webhook_tolerance_seconds,
            )
            event = parse_event(payload)
        except BillingError as e:
            logger.warning("webhook_rejected", error=e.kind.value, detail=e.message)
            return WebhookResult(status=WebhookStatus.REJECTED, detail=e.message, error_kind=e.kind)

        return self.process(event)

    def process(self, event: ProcessorEvent) -> WebhookResult:
        """Apply an already verified event."""
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"No handler for event variant {type(event).__name__}")

        applied = _Applied()
        subscription_id = _subscription_of(event)
        log = logger.bind(event_id=event.event_id, event_type=event.type, subscription_id=subscription_id)

        try:
            with self.db.transaction() as tx:
                events = WebhookEventRepository(tx)
                if events.get(event.event_id) is not None:
                    log.info("webhook_event_duplicate")
                    return self._result(WebhookStatus.DUPLICATE, event, "Event already processed")

                status = handler(event, applied)
                events.record(WebhookEventRecord(
                    event_id=event.event_id,
                    event_type=event.type,
                    subscription_id=subscription_id,
                    outcome=status.value,
                ))
        except WebhookEventStale as e:
            log.warning("webhook_event_stale", reason=e.message)
            self._record_skipped(event, subscription_id, WebhookStatus.STALE)
            return self._result(WebhookStatus.STALE, event, e.message, error_kind=e.kind)
        except BillingError as e:
            log.warning("webhook_event_rejected", error=e.kind.value, detail=e.message)
            return self._result(WebhookStatus.REJECTED, event, e.message, error_kind=e.kind)
        except Exception as e:
            log.exception("webhook_event_failed", error=str(e))
            return self._result(WebhookStatus.FAILED, event, "Event processing failed", error_kind=ErrorKind.INTERNAL)

        log.info("webhook_event_applied", outcome=status.value, ledger_entries=len(applied.entries), detail=applied.detail)
        result = self._result(status, event, applied.detail)
        result.ledger_entries = applied.entries
        return result

    # Handlers. Each runs inside the event's transaction.

    def _on_checkout_completed(self, event: CheckoutCompleted, applied: _Applied) -> WebhookStatus:
        with self.db.transaction() as tx:
            account = self._resolve_account(tx, event.account_id, event.customer_id, event.type)
            if event.customer_id and not account.stripe_customer_id:
                AccountRepository(tx).set_stripe_customer(account.id, event.customer_id)

        if event.mode == "subscription":
            # The plan and its first credits arrive with customer.subscription.created
            applied.detail = "subscription checkout; plan applied by subscription events"
            return WebhookStatus.PROCESSED

        if event.mode != "payment":
            applied.detail = f"unsupported checkout mode {event.mode}"
            return WebhookStatus.IGNORED

        if event.payment_status not in ("paid", "no_payment_required"):
            applied.detail = f"payment status {event.payment_status}"
            return WebhookStatus.IGNORED

        if not event.pack:
            raise MalformedEvent("Credit pack checkout has no pack in metadata", session_id=event.session_id)
        pack = self.catalog.pack(event.pack)
        if event.credits is not None and event.credits != pack.credits:
            logger.warning(
                "checkout_credits_mismatch",
                session_id=event.session_id,
                pack=pack.name,
                metadata_credits=event.credits,
                catalog_credits=pack.credits,
            )

        entry, created = self.ledger.append_once(
            account.id,
            pack.credits,
            LedgerReason.PURCHASE,
            meta={"session_id": event.session_id, "pack": pack.name, "event_id": event.event_id},
            idempotency_key=f"purchase:{event.session_id}",
        )
        if created:
            applied.entries.append(entry.entry_id)
        applied.detail = f"{pack.credits} credits purchased"
        return WebhookStatus.PROCESSED

    def _on_subscription_changed(self, event: Any, applied: _Applied) -> WebhookStatus:
        snapshot: SubscriptionSnapshot = event.subscription

        with self.db.transaction() as tx:
            rows = PlanRepository(tx).get_by_subscription(snapshot.subscription_id, lock=True)
            if not rows:
                self._check_not_deleted(tx, snapshot.subscription_id)
            current = self._current_row(rows, snapshot.subscription_id)
            if current is not None:
                self._check_order(event, snapshot.period_start, current)

            target_status = STATUS_MAP.get(snapshot.status)
            if target_status == PlanStatus.CANCELED:
                if not rows:
                    applied.detail = f"subscription {snapshot.status} before it was recorded"
                    return WebhookStatus.IGNORED
                self.plans.cancel_subscription(snapshot.subscription_id, event_at=event.created)
                applied.detail = f"subscription {snapshot.status}"
                return WebhookStatus.PROCESSED

            spec = self._plan_for(snapshot.price_id, snapshot.plan, current)

            if current is None:
                if target_status is None:
                    applied.detail = f"new subscription in status {snapshot.status}"
                    return WebhookStatus.IGNORED
                account = self._resolve_account(tx, snapshot.account_id, snapshot.customer_id, event.type)
                self._check_takeover(tx, event, account.id, spec.name, snapshot.subscription_id)
                transition = self.plans.activate(
                    account.id,
                    spec.name,
                    snapshot.subscription_id,
                    snapshot.period_start,
                    snapshot.period_end,
                    status=target_status,
                    event_at=event.created,
                )
            elif spec.name != current.name:
                transition = self._switch_plan(event, snapshot, current, spec, target_status, applied)
            else:
                if target_status == PlanStatus.INCOMPLETE and current.status != PlanStatus.INCOMPLETE.value:
                    target_status = None
                transition = self.plans.sync(
                    current,
                    status=target_status,
                    period_start=snapshot.period_start,
                    period_end=snapshot.period_end,
                    event_at=event.created,
                )

            plan = transition.plan
            if plan.cancel_at_period_end != snapshot.cancel_at_period_end:
                plan = self.plans.sync(plan, cancel_at_period_end=snapshot.cancel_at_period_end).plan

            if PlanStatus(plan.status).is_live:
                self._grant_period(plan.account_id, snapshot.subscription_id, spec, snapshot.period_start,
                                   snapshot.period_end, event, applied)

        applied.detail = applied.detail or f"plan {plan.name} {plan.status}"
        return WebhookStatus.PROCESSED

    def _switch_plan(
        self,
        event: Any,
        snapshot: SubscriptionSnapshot,
        current: PlanRecord,
        spec: PlanSpec,
        target_status: Optional[PlanStatus],
        applied: _Applied,
    ):
        """The subscription now bills a different plan than the stored live row."""
        rollover = (
            snapshot.period_start is not None
            and current.current_period_start is not None
            and snapshot.period_start > current.current_period_start
        )
        transition = self.plans.activate(
            current.account_id,
            spec.name,
            snapshot.subscription_id,
            snapshot.period_start,
            snapshot.period_end,
            status=target_status or PlanStatus.ACTIVE,
            event_at=event.created,
        )

        previous = self.catalog.plans.get(current.name)
        if previous is not None and spec.price_usd > previous.price_usd and not rollover:
            # Changed mid-period outside the controller, e.g. in the customer portal
            granted = grant_upgrade_credits(
                self.ledger,
                current.account_id,
                snapshot.subscription_id,
                previous,
                spec,
                current.current_period_start,
                meta={"event_id": event.event_id, "timing": "webhook"},
            )
            if granted is not None and granted[1]:
                applied.entries.append(granted[0].entry_id)

        applied.detail = f"plan switched {current.name} -> {spec.name}" + (" at period boundary" if rollover else "")
        return transition

    def _on_subscription_deleted(self, event: SubscriptionDeleted, applied: _Applied) -> WebhookStatus:
        subscription_id = event.subscription.subscription_id
        if not self.plans.for_subscription(subscription_id):
            applied.detail = "unknown subscription"
            return WebhookStatus.IGNORED

        transitions = self.plans.cancel_subscription(subscription_id, event_at=event.created)
        applied.detail = f"{sum(1 for t in transitions if t.changed)} plan row(s) canceled"
        return WebhookStatus.PROCESSED

    def _on_invoice_payment_succeeded(self, event: InvoicePaymentSucceeded, applied: _Applied) -> WebhookStatus:
        if not event.subscription_id:
            applied.detail = "one-off invoice"
            return WebhookStatus.IGNORED
        if event.billing_reason != "subscription_cycle":
            applied.detail = f"billing reason {event.billing_reason}"
            return WebhookStatus.IGNORED
        if event.period_start is None:
            raise MalformedEvent("Renewal invoice has no billing period", invoice_id=event.invoice_id)

        with self.db.transaction() as tx:
            rows = PlanRepository(tx).get_by_subscription(event.subscription_id, lock=True)
            if not rows:
                self._check_not_deleted(tx, event.subscription_id)
                # Not answered with 2xx so it is redelivered after the subscription is recorded
                raise MalformedEvent(
                    f"Renewal for unknown subscription {event.subscription_id}",
                    subscription_id=event.subscription_id,
                )
            current = self._current_row(rows, event.subscription_id)
            spec = self._plan_for(event.price_id, None, current)

            if spec.name != current.name:
                if current.status == PlanStatus.PENDING_DOWNGRADE.value and current.pending_plan == spec.name:
                    self.plans.activate(
                        current.account_id,
                        spec.name,
                        event.subscription_id,
                        event.period_start,
                        event.period_end,
                    )
                    applied.detail = f"scheduled downgrade {current.name} -> {spec.name} applied"
                else:
                    # Plan row follows with customer.subscription.updated; credits follow the invoiced price
                    applied.detail = f"renewal invoiced as {spec.name} while {current.name} is stored"
            elif current.current_period_start is None or event.period_start > current.current_period_start:
                self.plans.sync(current, period_start=event.period_start, period_end=event.period_end)

            self._grant_period(current.account_id, event.subscription_id, spec, event.period_start,
                               event.period_end, event, applied)

        applied.detail = applied.detail or f"renewal credits for {spec.name}"
        return WebhookStatus.PROCESSED

    def _on_invoice_payment_failed(self, event: InvoicePaymentFailed, applied: _Applied) -> WebhookStatus:
        logger.warning(
            "invoice_payment_failed",
            invoice_id=event.invoice_id,
            subscription_id=event.subscription_id,
            customer_id=event.customer_id,
            attempt_count=event.attempt_count,
        )
        applied.detail = "payment failure recorded"
        return WebhookStatus.PROCESSED

    def _on_unhandled(self, event: UnhandledEvent, applied: _Applied) -> WebhookStatus:
        applied.detail = "event type not handled"
        return WebhookStatus.IGNORED

    # Helpers

    def _current_row(self, rows: List[PlanRecord], subscription_id: str) -> Optional[PlanRecord]:
        """The subscription's row that is not canceled; stale if every row is."""
        if not rows:
            return None
        for row in rows:
            if row.status != PlanStatus.CANCELED.value:
                return row
        raise WebhookEventStale(
            f"Subscription {subscription_id} is already canceled",
            subscription_id=subscription_id,
        )

    @staticmethod
    def _check_not_deleted(tx: Any, subscription_id: str) -> None:
        """A subscription with no plan rows left may still have been deleted earlier."""
        if WebhookEventRepository(tx).subscription_deleted(subscription_id):
            raise WebhookEventStale(
                f"Subscription {subscription_id} was already deleted",
                subscription_id=subscription_id,
            )

    @staticmethod
    def _check_takeover(tx: Any, event: ProcessorEvent, account_id: str, name: str, subscription_id: str) -> None:
        """Refuse to move a plan row off a newer subscription onto this one."""
        plans = PlanRepository(tx)
        for row in (plans.get_live_for_account(account_id, lock=True), plans.get(account_id, name, lock=True)):
            if row is None or row.status == PlanStatus.CANCELED.value:
                continue
            if row.stripe_subscription_id in (None, subscription_id):
                continue
            if event.created and event.created < row.last_event_at:
                raise WebhookEventStale(
                    "Event is older than the subscription now holding the plan",
                    subscription_id=subscription_id,
                    holder=row.stripe_subscription_id,
                    created=event.created,
                    last_event_at=row.last_event_at,
                )

    @staticmethod
    def _check_order(event: ProcessorEvent, period_start: Optional[int], current: PlanRecord) -> None:
        if event.created and event.created < current.last_event_at:
            raise WebhookEventStale(
                "Event is older than the last applied event",
                created=event.created,
                last_event_at=current.last_event_at,
            )
        if (
            period_start is not None
            and current.current_period_start is not None
            and period_start < current.current_period_start
        ):
            raise WebhookEventStale(
                "Event describes an earlier billing period",
                period_start=period_start,
                stored_period_start=current.current_period_start,
            )

    def _plan_for(self, price_id: Optional[str], plan_name: Optional[str], current: Optional[PlanRecord]) -> PlanSpec:
        spec = self.catalog.plan_for_price(price_id)
        if spec is not None:
            return spec
        if plan_name:
            return self.catalog.plan(plan_name)
        if current is not None:
            return self.catalog.plan(current.name)
        raise MalformedEvent(f"Cannot determine plan for price {price_id}", price_id=price_id)

    @staticmethod
    def _resolve_account(
        tx: Any,
        account_id: Optional[str],
        customer_id: Optional[str],
        event_type: str,
    ) -> AccountRecord:
        accounts = AccountRepository(tx)
        if account_id:
            account = accounts.get(account_id, lock=True)
            if account is None:
                raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)
            return account
        if customer_id:
            account = accounts.get_by_stripe_customer(customer_id)
            if account is not None:
                return account
        raise MalformedEvent(f"{event_type} does not identify an account", customer_id=customer_id)

    def _grant_period(
        self,
        account_id: str,
        subscription_id: str,
        spec: PlanSpec,
        period_start: Optional[int],
        period_end: Optional[int],
        event: ProcessorEvent,
        applied: _Applied,
    ) -> None:
        if period_start is None:
            raise MalformedEvent("Subscription has no billing period", subscription_id=subscription_id)
        entry, created = grant_period_credits(
            self.ledger,
            account_id,
            subscription_id,
            spec,
            period_start,
            period_end,
            meta={"event_id": event.event_id},
        )
        if created:
            applied.entries.append(entry.entry_id)

    def _record_skipped(self, event: ProcessorEvent, subscription_id: Optional[str], status: WebhookStatus) -> None:
        with self.db.transaction() as tx:
            events = WebhookEventRepository(tx)
            if events.get(event.event_id) is None:
                events.record(WebhookEventRecord(
                    event_id=event.event_id,
                    event_type=event.type,
                    subscription_id=subscription_id,
                    outcome=status.value,
                ))

    @staticmethod
    def _result(
        status: WebhookStatus,
        event: ProcessorEvent,
        detail: Optional[str],
        error_kind: Optional[ErrorKind] = None,
    ) -> WebhookResult:
        return WebhookResult(
            status=status,
            event_id=event.event_id,
            event_type=event.type,
            detail=detail,
            error_kind=error_kind,
        )
