"""
Stager Ledger - Billing Module

Everything that talks to, or reacts to, the payment processor:
- Plan and credit pack catalog
- Stripe integration behind the PaymentProcessor contract
- Webhook event variants and the reconciler that applies them
- Subscription controller (upgrade, downgrade, cancel, checkout)
- Admin operations
"""

from .catalog import Catalog, PlanSpec, CreditPack
from .processor import PaymentProcessor, CheckoutSession, SubscriptionState
from .stripe_integration import StripeIntegration, StripeIntegrationError
from .events import parse_event, verify_signature, ProcessorEvent
from .webhooks import WebhookReconciler, WebhookResult, WebhookStatus
from .subscriptions import SubscriptionController, PlanChange, ChangeKind, CheckoutResult
from .admin import AdminService

__all__ = [
    "Catalog",
    "PlanSpec",
    "CreditPack",
    "PaymentProcessor",
    "CheckoutSession",
    "SubscriptionState",
    "StripeIntegration",
    "StripeIntegrationError",
    "parse_event",
    "verify_signature",
    "ProcessorEvent",
    "WebhookReconciler",
    "WebhookResult",
    "WebhookStatus",
    "SubscriptionController",
    "PlanChange",
    "ChangeKind",
    "CheckoutResult",
    "AdminService",
]
