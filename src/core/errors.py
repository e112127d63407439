"""
Billing Error Taxonomy

Every failure the ledger, charge guard, plan registry or webhook reconciler can
report carries an ``ErrorKind``. The transport layer picks its HTTP status from
the kind instead of guessing from exception text.
"""

from enum import Enum
from typing import Any, Dict


class ErrorKind(Enum):
    """Structured failure kinds."""
    INSUFFICIENT_CREDITS = "insufficient_credits"
    ARTIFACT_NOT_FOUND = "artifact_not_found"
    NOT_OWNER = "not_owner"
    ACCOUNT_NOT_FOUND = "account_not_found"
    INVALID_PLAN = "invalid_plan"
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    EDIT_LIMIT_REACHED = "edit_limit_reached"
    INVALID_AMOUNT = "invalid_amount"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    WEBHOOK_EVENT_STALE = "webhook_event_stale"
    MALFORMED_EVENT = "malformed_event"
    LEDGER_INTEGRITY_DRIFT = "ledger_integrity_drift"
    PAYMENT_PROCESSOR_ERROR = "payment_processor_error"
    PROCESSOR_NOT_CONFIGURED = "processor_not_configured"
    REFERRAL_CODE_INVALID = "referral_code_invalid"
    REFERRAL_CODE_USED = "referral_code_used"
    REFERRAL_ALREADY_REDEEMED = "referral_already_redeemed"
    INTERNAL = "internal"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    ErrorKind.INSUFFICIENT_CREDITS: 402,
    ErrorKind.ARTIFACT_NOT_FOUND: 404,
    ErrorKind.NOT_OWNER: 403,
    ErrorKind.ACCOUNT_NOT_FOUND: 404,
    ErrorKind.INVALID_PLAN: 400,
    ErrorKind.NO_ACTIVE_SUBSCRIPTION: 409,
    ErrorKind.EDIT_LIMIT_REACHED: 409,
    ErrorKind.INVALID_AMOUNT: 400,
    ErrorKind.WEBHOOK_SIGNATURE_INVALID: 400,
    # Stale events are acknowledged so the processor stops redelivering them
    ErrorKind.WEBHOOK_EVENT_STALE: 200,
    ErrorKind.MALFORMED_EVENT: 422,
    ErrorKind.LEDGER_INTEGRITY_DRIFT: 500,
    ErrorKind.PAYMENT_PROCESSOR_ERROR: 502,
    ErrorKind.PROCESSOR_NOT_CONFIGURED: 503,
    ErrorKind.REFERRAL_CODE_INVALID: 404,
    ErrorKind.REFERRAL_CODE_USED: 409,
    ErrorKind.REFERRAL_ALREADY_REDEEMED: 409,
    ErrorKind.INTERNAL: 500,
}


class BillingError(Exception):
    """Base class for all structured billing failures."""
    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind.value,
            "detail": self.message,
            **({"context": self.context} if self.context else {}),
        }


class InsufficientCredits(BillingError):
    """Balance is below the cost of the requested action."""
    kind = ErrorKind.INSUFFICIENT_CREDITS

    def __init__(self, account_id: str, required: int, available: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}.",
            account_id=account_id,
            required=required,
            available=available,
        )
        self.required = required
        self.available = available


class ArtifactNotFound(BillingError):
    kind = ErrorKind.ARTIFACT_NOT_FOUND


class NotOwner(BillingError):
    kind = ErrorKind.NOT_OWNER


class AccountNotFound(BillingError):
    kind = ErrorKind.ACCOUNT_NOT_FOUND


class InvalidPlan(BillingError):
    kind = ErrorKind.INVALID_PLAN


class NoActiveSubscription(BillingError):
    kind = ErrorKind.NO_ACTIVE_SUBSCRIPTION


class EditLimitReached(BillingError):
    kind = ErrorKind.EDIT_LIMIT_REACHED


class InvalidAmount(BillingError):
    kind = ErrorKind.INVALID_AMOUNT


class WebhookSignatureInvalid(BillingError):
    """Event failed authenticity checks; nothing was processed."""
    kind = ErrorKind.WEBHOOK_SIGNATURE_INVALID


class WebhookEventStale(BillingError):
    """Event arrived after newer state was already applied."""
    kind = ErrorKind.WEBHOOK_EVENT_STALE


class MalformedEvent(BillingError):
    """Event is missing data required to act on it."""
    kind = ErrorKind.MALFORMED_EVENT


class LedgerIntegrityDrift(BillingError):
    """Cached balance disagrees with the summed ledger history."""
    kind = ErrorKind.LEDGER_INTEGRITY_DRIFT

    def __init__(self, account_id: str, cached: int, computed: int):
        super().__init__(
            f"Cached balance {cached} != ledger sum {computed} for account {account_id}",
            account_id=account_id,
            cached=cached,
            computed=computed,
        )
        self.account_id = account_id
        self.cached = cached
        self.computed = computed

    @property
    def drift(self) -> int:
        return self.cached - self.computed


class PaymentProcessorError(BillingError):
    """Upstream processor call failed; no local state was changed."""
    kind = ErrorKind.PAYMENT_PROCESSOR_ERROR


class ProcessorNotConfigured(PaymentProcessorError):
    kind = ErrorKind.PROCESSOR_NOT_CONFIGURED


class InvalidReferralCode(BillingError):
    kind = ErrorKind.REFERRAL_CODE_INVALID


class ReferralCodeUsed(BillingError):
    """The code was already redeemed by another account."""
    kind = ErrorKind.REFERRAL_CODE_USED


class ReferralAlreadyRedeemed(BillingError):
    """The account already redeemed a different special code."""
    kind = ErrorKind.REFERRAL_ALREADY_REDEEMED
