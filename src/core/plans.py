"""
Plan Registry

One row per (account, plan name). Status moves through:

    incomplete -> active <-> pending_downgrade
    incomplete | active | pending_downgrade -> canceled

A canceled row is terminal for its subscription, but a new subscription (or a
switch back to the same plan) re-enters it at incomplete/active. Rows are never
deleted.

When an account moves to another plan, the row it leaves is canceled with the
subscription reference kept for audit; the account holds at most one live plan.
Every transition that would not change anything is a no-op.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
import uuid
import structlog

from persistence.database import Database, get_database
from persistence.models import PlanRecord
from persistence.repository import AccountRepository, PlanRepository

from .errors import AccountNotFound, InvalidPlan, NoActiveSubscription

logger = structlog.get_logger()


class PlanStatus(Enum):
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PENDING_DOWNGRADE = "pending_downgrade"
    CANCELED = "canceled"

    @property
    def is_live(self) -> bool:
        return self in (PlanStatus.ACTIVE, PlanStatus.PENDING_DOWNGRADE)


ALLOWED_TRANSITIONS: Dict[PlanStatus, FrozenSet[PlanStatus]] = {
    PlanStatus.INCOMPLETE: frozenset({PlanStatus.ACTIVE, PlanStatus.CANCELED}),
    PlanStatus.ACTIVE: frozenset({PlanStatus.PENDING_DOWNGRADE, PlanStatus.CANCELED}),
    PlanStatus.PENDING_DOWNGRADE: frozenset({PlanStatus.ACTIVE, PlanStatus.CANCELED}),
    PlanStatus.CANCELED: frozenset({PlanStatus.INCOMPLETE, PlanStatus.ACTIVE}),
}


@dataclass
class PlanTransition:
    """What a registry operation did to one plan row."""
    plan: PlanRecord
    previous_status: Optional[str]
    changed: bool

    def to_dict(self) -> dict:
        return {
            "plan": self.plan.to_dict(),
            "previous_status": self.previous_status,
            "changed": self.changed,
        }


def _check_transition(plan: PlanRecord, target: PlanStatus) -> None:
    current = PlanStatus(plan.status)
    if current == target:
        return
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidPlan(
            f"Plan {plan.name} cannot move from {current.value} to {target.value}",
            account_id=plan.account_id,
            plan=plan.name,
        )


class PlanRegistry:
    """Subscription plan state machine. All writes to plan rows go through here."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    # Queries

    def get(self, account_id: str, name: str) -> Optional[PlanRecord]:
        with self.db.transaction() as tx:
            return PlanRepository(tx).get(account_id, name)

    def get_live(self, account_id: str) -> Optional[PlanRecord]:
        """The plan the account currently holds, if any."""
        with self.db.transaction() as tx:
            return PlanRepository(tx).get_live_for_account(account_id)

    def list_for_account(self, account_id: str) -> List[PlanRecord]:
        with self.db.transaction() as tx:
            return PlanRepository(tx).list_for_account(account_id)

    def for_subscription(self, subscription_id: str) -> List[PlanRecord]:
        """Every row ever attached to a processor subscription, most recently touched first."""
        with self.db.transaction() as tx:
            return PlanRepository(tx).get_by_subscription(subscription_id)

    # Transitions

    def activate(
        self,
        account_id: str,
        name: str,
        subscription_id: Optional[str],
        period_start: Optional[int],
        period_end: Optional[int],
        status: PlanStatus = PlanStatus.ACTIVE,
        event_at: int = 0,
    ) -> PlanTransition:
        """
        Make ``name`` the account's plan, creating its row on first use.

        Any other live plan of the account is superseded (canceled). Used for
        new subscriptions, confirmed payments, upgrades and downgrades applied
        at the period boundary.
        """
        if status not in (PlanStatus.ACTIVE, PlanStatus.INCOMPLETE):
            raise InvalidPlan(f"Cannot activate a plan as {status.value}", plan=name)

        with self.db.transaction() as tx:
            if AccountRepository(tx).get(account_id, lock=True) is None:
                raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)

            plans = PlanRepository(tx)
            for other in plans.list_for_account(account_id):
                if other.name != name and PlanStatus(other.status).is_live:
                    self._supersede(plans, other, name, event_at)

            plan = plans.get(account_id, name, lock=True)
            if plan is None:
                plan = plans.create(PlanRecord(
                    id=str(uuid.uuid4()),
                    account_id=account_id,
                    name=name,
                    status=status.value,
                    stripe_subscription_id=subscription_id,
                    current_period_start=period_start,
                    current_period_end=period_end,
                    last_event_at=event_at,
                ))
                return PlanTransition(plan=plan, previous_status=None, changed=True)

            # An incomplete confirmation never demotes a plan that is already paid for
            if status == PlanStatus.INCOMPLETE and PlanStatus(plan.status).is_live:
                status = PlanStatus(plan.status)
            elif status == PlanStatus.ACTIVE and plan.status == PlanStatus.PENDING_DOWNGRADE.value:
                status = PlanStatus.PENDING_DOWNGRADE

            _check_transition(plan, status)
            previous = plan.status
            target = {
                "status": status.value,
                "stripe_subscription_id": subscription_id or plan.stripe_subscription_id,
                "current_period_start": period_start if period_start is not None else plan.current_period_start,
                "current_period_end": period_end if period_end is not None else plan.current_period_end,
            }
            if previous == PlanStatus.CANCELED.value:
                target["pending_plan"] = None
                target["cancel_at_period_end"] = False
            changed = self._apply(plans, plan, target, event_at)

        if changed:
            logger.info(
                "plan_activated",
                account_id=account_id,
                plan=name,
                previous_status=previous,
                status=plan.status,
                subscription_id=plan.stripe_subscription_id,
            )
        return PlanTransition(plan=plan, previous_status=previous, changed=changed)

    def schedule_downgrade(self, account_id: str, target_plan: str) -> PlanTransition:
        """Mark the live plan to switch to ``target_plan`` at the period boundary."""
        with self.db.transaction() as tx:
            plans = PlanRepository(tx)
            plan = plans.get_live_for_account(account_id, lock=True)
            if plan is None:
                raise NoActiveSubscription(f"Account {account_id} has no active plan", account_id=account_id)
            if plan.name == target_plan:
                raise InvalidPlan(f"Account is already on {target_plan}", plan=target_plan)

            _check_transition(plan, PlanStatus.PENDING_DOWNGRADE)
            previous = plan.status
            changed = self._apply(plans, plan, {
                "status": PlanStatus.PENDING_DOWNGRADE.value,
                "pending_plan": target_plan,
            })

        if changed:
            logger.info("plan_downgrade_scheduled", account_id=account_id, plan=plan.name, pending_plan=target_plan)
        return PlanTransition(plan=plan, previous_status=previous, changed=changed)

    def cancel_downgrade(self, account_id: str) -> PlanTransition:
        """Revert a pending downgrade; the original plan stays active."""
        with self.db.transaction() as tx:
            plans = PlanRepository(tx)
            plan = plans.get_live_for_account(account_id, lock=True)
            if plan is None:
                raise NoActiveSubscription(f"Account {account_id} has no active plan", account_id=account_id)

            previous = plan.status
            changed = self._apply(plans, plan, {
                "status": PlanStatus.ACTIVE.value,
                "pending_plan": None,
            })

        if changed:
            logger.info("plan_downgrade_canceled", account_id=account_id, plan=plan.name)
        return PlanTransition(plan=plan, previous_status=previous, changed=changed)

    def sync(
        self,
        plan: PlanRecord,
        status: Optional[PlanStatus] = None,
        period_start: Optional[int] = None,
        period_end: Optional[int] = None,
        cancel_at_period_end: Optional[bool] = None,
        event_at: int = 0,
    ) -> PlanTransition:
        """Bring one row in line with what the processor reports."""
        with self.db.transaction() as tx:
            plans = PlanRepository(tx)
            current = plans.get(plan.account_id, plan.name, lock=True)
            if current is None:
                raise InvalidPlan(f"Plan {plan.name} not found", account_id=plan.account_id, plan=plan.name)

            target = {}
            if status is not None:
                # Keep a scheduled downgrade while the processor still reports the plan as active
                if status == PlanStatus.ACTIVE and current.status == PlanStatus.PENDING_DOWNGRADE.value:
                    status = PlanStatus.PENDING_DOWNGRADE
                _check_transition(current, status)
                target["status"] = status.value
            if period_start is not None:
                target["current_period_start"] = period_start
            if period_end is not None:
                target["current_period_end"] = period_end
            if cancel_at_period_end is not None:
                target["cancel_at_period_end"] = bool(cancel_at_period_end)

            previous = current.status
            changed = self._apply(plans, current, target, event_at)

        if changed:
            logger.info(
                "plan_synced",
                account_id=current.account_id,
                plan=current.name,
                previous_status=previous,
                status=current.status,
                period_end=current.current_period_end,
            )
        return PlanTransition(plan=current, previous_status=previous, changed=changed)

    def set_cancel_at_period_end(self, account_id: str, flag: bool = True) -> PlanTransition:
        with self.db.transaction() as tx:
            plans = PlanRepository(tx)
            plan = plans.get_live_for_account(account_id, lock=True)
            if plan is None:
                raise NoActiveSubscription(f"Account {account_id} has no active plan", account_id=account_id)
            previous = plan.status
            changed = self._apply(plans, plan, {"cancel_at_period_end": bool(flag)})

        if changed:
            logger.info("plan_cancel_at_period_end", account_id=account_id, plan=plan.name, flag=flag)
        return PlanTransition(plan=plan, previous_status=previous, changed=changed)

    def cancel_subscription(self, subscription_id: str, event_at: int = 0) -> List[PlanTransition]:
        """Cancel every row attached to a subscription. Credits are never clawed back."""
        transitions = []
        with self.db.transaction() as tx:
            plans = PlanRepository(tx)
            for plan in plans.get_by_subscription(subscription_id, lock=True):
                previous = plan.status
                changed = self._apply(plans, plan, {
                    "status": PlanStatus.CANCELED.value,
                    "pending_plan": None,
                    "cancel_at_period_end": False,
                }, event_at)
                transitions.append(PlanTransition(plan=plan, previous_status=previous, changed=changed))

        for t in transitions:
            if t.changed and t.previous_status != PlanStatus.CANCELED.value:
                logger.info(
                    "plan_canceled",
                    account_id=t.plan.account_id,
                    plan=t.plan.name,
                    previous_status=t.previous_status,
                    subscription_id=subscription_id,
                )
        return transitions

    # Internals

    def _supersede(self, plans: PlanRepository, plan: PlanRecord, replacement: str, event_at: int) -> None:
        self._apply(plans, plan, {
            "status": PlanStatus.CANCELED.value,
            "pending_plan": None,
            "cancel_at_period_end": False,
        }, event_at)
        logger.info("plan_superseded", account_id=plan.account_id, plan=plan.name, replacement=replacement)

    @staticmethod
    def _apply(plans: PlanRepository, plan: PlanRecord, target: Dict, event_at: int = 0) -> bool:
        """Set fields on ``plan`` and save it if anything actually moved."""
        changed = False
        for attr, value in target.items():
            if getattr(plan, attr) != value:
                setattr(plan, attr, value)
                changed = True
        if event_at > plan.last_event_at:
            plan.last_event_at = event_at
            changed = True
        if changed:
            plans.save(plan)
        return changed
