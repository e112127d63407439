"""
Subscription credit grants.

Shared by the webhook reconciler and the subscription controller so both paths
derive the same idempotency keys: whichever path applies a grant first wins,
the other one is deduplicated by the ledger.
"""

from typing import Any, Dict, Optional, Tuple

from core.ledger import LedgerEntry, LedgerReason, LedgerStore

from .catalog import PlanSpec


def period_key(subscription_id: str, period_start: int) -> str:
    return f"subscription:{subscription_id}:{period_start}"


def upgrade_key(subscription_id: str, from_plan: str, to_plan: str, period_start: Optional[int]) -> str:
    return f"upgrade:{subscription_id}:{from_plan}:{to_plan}:{period_start}"


def grant_period_credits(
    ledger: LedgerStore,
    account_id: str,
    subscription_id: str,
    plan: PlanSpec,
    period_start: int,
    period_end: Optional[int],
    meta: Optional[Dict[str, Any]] = None,
) -> Tuple[LedgerEntry, bool]:
    """The plan's credits for one billing period; at most once per (subscription, period)."""
    return ledger.append_once(
        account_id,
        plan.credits,
        LedgerReason.SUBSCRIPTION,
        meta={
            "subscription_id": subscription_id,
            "plan": plan.name,
            "period_start": period_start,
            "period_end": period_end,
            **(meta or {}),
        },
        idempotency_key=period_key(subscription_id, period_start),
    )


def grant_upgrade_credits(
    ledger: LedgerStore,
    account_id: str,
    subscription_id: str,
    current: PlanSpec,
    target: PlanSpec,
    period_start: Optional[int],
    meta: Optional[Dict[str, Any]] = None,
) -> Optional[Tuple[LedgerEntry, bool]]:
    """Top up the credit difference of a mid-period upgrade. Nothing for downgrades."""
    difference = target.credits - current.credits
    if difference <= 0:
        return None
    return ledger.append_once(
        account_id,
        difference,
        LedgerReason.SUBSCRIPTION_UPGRADE,
        meta={
            "subscription_id": subscription_id,
            "old_plan": current.name,
            "new_plan": target.name,
            "old_credits": current.credits,
            "new_credits": target.credits,
            **(meta or {}),
        },
        idempotency_key=upgrade_key(subscription_id, current.name, target.name, period_start),
    )
