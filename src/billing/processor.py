"""
Payment Processor Contract

The outbound calls the service makes to its payment processor. Every
implementation raises ``PaymentProcessorError`` on failure and must not leave
local state half-changed; callers only mutate local state after a call returns.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .catalog import PlanSpec


@dataclass
class CheckoutSession:
    """A hosted checkout page the user is redirected to."""
    session_id: str
    url: Optional[str]
    mode: str

    def to_dict(self) -> Dict[str, Any]:
        return {"session_id": self.session_id, "url": self.url, "mode": self.mode}


@dataclass
class SubscriptionState:
    """Processor-side view of a subscription after a call."""
    subscription_id: str
    status: str
    price_id: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    schedule_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentProcessor(ABC):
    """Outbound payment processor operations."""

    @property
    def is_available(self) -> bool:
        return True

    @abstractmethod
    def create_customer(self, account_id: str, email: str) -> str:
        """Create a processor customer and return its id."""

    @abstractmethod
    def create_checkout_session(
        self,
        customer_id: str,
        account_id: str,
        mode: str,
        price_id: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Create a checkout session. ``mode`` is ``payment`` or ``subscription``."""

    @abstractmethod
    def retrieve_subscription(self, subscription_id: str) -> SubscriptionState:
        ...

    @abstractmethod
    def upgrade_subscription(
        self,
        subscription_id: str,
        customer_id: str,
        current: PlanSpec,
        target: PlanSpec,
        account_id: str,
    ) -> SubscriptionState:
        """
        Charge the price difference now and swap the subscription's price.

        The billing cycle is left unchanged and no proration is applied.
        """

    @abstractmethod
    def schedule_downgrade(
        self,
        subscription_id: str,
        target: PlanSpec,
        account_id: str,
    ) -> SubscriptionState:
        """Switch the subscription to ``target`` at the next period boundary."""

    @abstractmethod
    def cancel_scheduled_downgrade(self, subscription_id: str) -> SubscriptionState:
        ...

    @abstractmethod
    def cancel_at_period_end(self, subscription_id: str) -> SubscriptionState:
        """Stop renewing; the subscription stays active until the period ends."""
