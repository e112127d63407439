"""
Data Models for Persistence Layer

These records mirror the billing domain objects but are optimized for database storage.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import json


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: Any) -> Optional[str]:
    """PostgreSQL hands back datetimes, SQLite hands back the stored ISO text."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _epoch_iso(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc).isoformat()


@dataclass
class AccountRecord:
    """Persisted billable account."""
    id: str
    email: str
    credit_balance: int = 0
    referral_code: Optional[str] = None
    referred_by: Optional[str] = None
    auth_method: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "credit_balance": self.credit_balance,
            "referral_code": self.referral_code,
            "referred_by": self.referred_by,
            "auth_method": self.auth_method,
            "stripe_customer_id": self.stripe_customer_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.email,
            self.credit_balance,
            self.referral_code,
            self.referred_by,
            self.auth_method,
            self.stripe_customer_id,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AccountRecord":
        return cls(
            id=row["id"],
            email=row["email"],
            credit_balance=int(row.get("credit_balance") or 0),
            referral_code=row.get("referral_code"),
            referred_by=row.get("referred_by"),
            auth_method=row.get("auth_method"),
            stripe_customer_id=row.get("stripe_customer_id"),
            created_at=_iso(row["created_at"]),
            updated_at=_iso(row["updated_at"]),
        )


@dataclass
class LedgerEntryRecord:
    """Persisted, immutable ledger entry."""
    entry_id: str
    account_id: str
    delta: int
    reason: str
    balance_after: int
    meta: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    seq: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.entry_id,
            "seq": self.seq,
            "account_id": self.account_id,
            "delta": self.delta,
            "reason": self.reason,
            "meta": self.meta,
            "idempotency_key": self.idempotency_key,
            "balance_after": self.balance_after,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.entry_id,
            self.account_id,
            self.delta,
            self.reason,
            json.dumps(self.meta, sort_keys=True) if self.meta else None,
            self.idempotency_key,
            self.balance_after,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LedgerEntryRecord":
        meta = row.get("meta")
        if isinstance(meta, str) and meta:
            meta = json.loads(meta)

        return cls(
            seq=row.get("seq"),
            entry_id=row["entry_id"],
            account_id=row["account_id"],
            delta=int(row["delta"]),
            reason=row["reason"],
            meta=meta or {},
            idempotency_key=row.get("idempotency_key"),
            balance_after=int(row["balance_after"]),
            created_at=_iso(row["created_at"]),
        )


@dataclass
class PlanRecord:
    """Persisted subscription plan for one (account, plan name) pair."""
    id: str
    account_id: str
    name: str
    status: str
    stripe_subscription_id: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    pending_plan: Optional[str] = None
    cancel_at_period_end: bool = False
    last_event_at: int = 0
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "name": self.name,
            "status": self.status,
            "stripe_subscription_id": self.stripe_subscription_id,
            "current_period_start": _epoch_iso(self.current_period_start),
            "current_period_end": _epoch_iso(self.current_period_end),
            "pending_plan": self.pending_plan,
            "cancel_at_period_end": self.cancel_at_period_end,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.account_id,
            self.name,
            self.status,
            self.stripe_subscription_id,
            self.current_period_start,
            self.current_period_end,
            self.pending_plan,
            bool(self.cancel_at_period_end),
            self.last_event_at,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PlanRecord":
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            name=row["name"],
            status=row["status"],
            stripe_subscription_id=row.get("stripe_subscription_id"),
            current_period_start=row.get("current_period_start"),
            current_period_end=row.get("current_period_end"),
            pending_plan=row.get("pending_plan"),
            cancel_at_period_end=bool(row.get("cancel_at_period_end", 0)),
            last_event_at=int(row.get("last_event_at") or 0),
            created_at=_iso(row["created_at"]),
            updated_at=_iso(row["updated_at"]),
        )


@dataclass
class ArtifactRecord:
    """Persisted chargeable artifact (one generated result)."""
    id: str
    workflow_id: str
    account_id: str
    downloaded: bool = False
    downloaded_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "account_id": self.account_id,
            "downloaded": self.downloaded,
            "downloaded_at": self.downloaded_at,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.workflow_id,
            self.account_id,
            bool(self.downloaded),
            self.downloaded_at,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ArtifactRecord":
        return cls(
            id=row["id"],
            workflow_id=row["workflow_id"],
            account_id=row["account_id"],
            downloaded=bool(row.get("downloaded", 0)),
            downloaded_at=_iso(row.get("downloaded_at")),
            created_at=_iso(row["created_at"]),
        )


@dataclass
class WebhookEventRecord:
    """A payment-processor event that has been applied (or deliberately skipped)."""
    event_id: str
    event_type: str
    outcome: str
    subscription_id: Optional[str] = None
    received_at: str = field(default_factory=utc_now)

    def to_db_tuple(self) -> tuple:
        return (
            self.event_id,
            self.event_type,
            self.subscription_id,
            self.outcome,
            self.received_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WebhookEventRecord":
        return cls(
            event_id=row["event_id"],
            event_type=row["event_type"],
            subscription_id=row.get("subscription_id"),
            outcome=row["outcome"],
            received_at=_iso(row["received_at"]),
        )


@dataclass
class SpecialReferralCodeRecord:
    """A promotional code worth a fixed number of credits to its one redeemer."""
    code: str
    credits: int
    description: Optional[str] = None
    created_by: Optional[str] = None
    used_by: Optional[str] = None
    used_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now)

    @property
    def used(self) -> bool:
        return self.used_by is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "credits": self.credits,
            "description": self.description,
            "created_by": self.created_by,
            "used_by": self.used_by,
            "used_at": self.used_at,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.code,
            self.credits,
            self.description,
            self.created_by,
            self.used_by,
            self.used_at,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SpecialReferralCodeRecord":
        return cls(
            code=row["code"],
            credits=int(row["credits"]),
            description=row.get("description"),
            created_by=row.get("created_by"),
            used_by=row.get("used_by"),
            used_at=_iso(row.get("used_at")),
            created_at=_iso(row["created_at"]),
        )
