"""
Stager Ledger - Core Module
Credit ledger, at-most-once charges and the subscription plan state machine.
"""

from .errors import (
    ErrorKind,
    BillingError,
    InsufficientCredits,
    ArtifactNotFound,
    NotOwner,
    AccountNotFound,
    InvalidPlan,
    NoActiveSubscription,
    EditLimitReached,
    InvalidAmount,
    WebhookSignatureInvalid,
    WebhookEventStale,
    MalformedEvent,
    LedgerIntegrityDrift,
    PaymentProcessorError,
    ProcessorNotConfigured,
    InvalidReferralCode,
    ReferralCodeUsed,
    ReferralAlreadyRedeemed,
)
from .config import BillingConfig
from .ledger import LedgerStore, LedgerEntry, LedgerReason, HistoryPage, ReconciliationReport
from .charge import ChargeGuard, ChargeOutcome, ChargeStatus, WorkflowDownloadOutcome
from .plans import PlanRegistry, PlanStatus, PlanTransition
from .accounts import AccountService
from .artifacts import ArtifactRegistry, GenerationResult
from .referrals import SpecialReferralService

__all__ = [
    "ErrorKind",
    "BillingError",
    "InsufficientCredits",
    "ArtifactNotFound",
    "NotOwner",
    "AccountNotFound",
    "InvalidPlan",
    "NoActiveSubscription",
    "EditLimitReached",
    "InvalidAmount",
    "WebhookSignatureInvalid",
    "WebhookEventStale",
    "MalformedEvent",
    "LedgerIntegrityDrift",
    "PaymentProcessorError",
    "ProcessorNotConfigured",
    "InvalidReferralCode",
    "ReferralCodeUsed",
    "ReferralAlreadyRedeemed",
    "BillingConfig",
    "LedgerStore",
    "LedgerEntry",
    "LedgerReason",
    "HistoryPage",
    "ReconciliationReport",
    "ChargeGuard",
    "ChargeOutcome",
    "ChargeStatus",
    "WorkflowDownloadOutcome",
    "PlanRegistry",
    "PlanStatus",
    "PlanTransition",
    "AccountService",
    "ArtifactRegistry",
    "GenerationResult",
    "SpecialReferralService",
]
