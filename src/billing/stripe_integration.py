"""
Stripe Integration

Implements the payment processor contract on top of the Stripe SDK:
- Customers and hosted checkout sessions (credit packs, new subscriptions)
- Immediate upgrades: charge the price difference, then swap the price
- Deferred downgrades via a subscription schedule released at the boundary
- Cancel at period end

Nothing here touches the database. Callers apply local state only after a
call returns.
"""

import os
from typing import Any, Dict, Optional
import structlog
import stripe

from core.errors import PaymentProcessorError, ProcessorNotConfigured

from .catalog import PlanSpec
from .processor import CheckoutSession, PaymentProcessor, SubscriptionState

logger = structlog.get_logger()


class StripeIntegrationError(PaymentProcessorError):
    """Raised when a Stripe API call fails."""
    pass


def _first_item(subscription: Any) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_state(subscription: Any) -> SubscriptionState:
    """
    Flatten a Stripe subscription object.

    Newer API versions moved the billing period from the subscription onto its
    items, so both places are read.
    """
    item = _first_item(subscription)
    price = item.get("price") or {}
    schedule = subscription.get("schedule")
    if isinstance(schedule, dict):
        schedule = schedule.get("id")
    return SubscriptionState(
        subscription_id=subscription["id"],
        status=subscription.get("status") or "",
        price_id=price.get("id"),
        current_period_start=subscription.get("current_period_start") or item.get("current_period_start"),
        current_period_end=subscription.get("current_period_end") or item.get("current_period_end"),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        schedule_id=schedule,
        metadata=dict(subscription.get("metadata") or {}),
    )


class StripeIntegration(PaymentProcessor):
    """
    Stripe-backed payment processor.

    Without an API key every call raises ``ProcessorNotConfigured`` so callers
    fail closed instead of pretending a charge happened.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        currency: str = "usd",
    ):
        """
        Initialize Stripe integration.

        Args:
            api_key: Stripe secret key (or STRIPE_API_KEY env var)
            currency: Currency for one-off upgrade charges
        """
        self.api_key = api_key or os.environ.get("STRIPE_API_KEY")
        self.currency = currency
        self._initialized = False

        if self.api_key:
            stripe.api_key = self.api_key
            self._initialized = True
            logger.info("stripe_integration_initialized")
        else:
            logger.warning("stripe_not_configured", api_key_set=False)

    @property
    def is_available(self) -> bool:
        """Check if Stripe integration is available."""
        return self._initialized

    def _require(self, operation: str) -> None:
        if not self._initialized:
            raise ProcessorNotConfigured(
                f"Payment processor is not configured; cannot {operation}",
                operation=operation,
            )

    def create_customer(self, account_id: str, email: str) -> str:
        self._require("create customer")
        try:
            customer = stripe.Customer.create(
                email=email,
                metadata={"account_id": account_id},
            )
        except stripe.StripeError as e:
            logger.error("stripe_customer_create_failed", account_id=account_id, error=str(e))
            raise StripeIntegrationError(f"Failed to create customer: {e}") from e

        logger.info("stripe_customer_created", customer_id=customer.id, account_id=account_id)
        return customer.id

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
        self._require("create checkout session")
        params: Dict[str, Any] = {
            "customer": customer_id,
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": account_id,
            "metadata": metadata,
        }
        # Copy metadata onto the object the later webhooks describe
        if mode == "subscription":
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            logger.error("stripe_checkout_create_failed", account_id=account_id, mode=mode, error=str(e))
            raise StripeIntegrationError(f"Failed to create checkout session: {e}") from e

        logger.info("stripe_checkout_created", session_id=session.id, account_id=account_id, mode=mode)
        return CheckoutSession(session_id=session.id, url=session.get("url"), mode=mode)

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionState:
        self._require("retrieve subscription")
        try:
            return subscription_state(stripe.Subscription.retrieve(subscription_id))
        except stripe.StripeError as e:
            logger.error("stripe_subscription_fetch_failed", subscription_id=subscription_id, error=str(e))
            raise StripeIntegrationError(f"Failed to retrieve subscription: {e}") from e

    def upgrade_subscription(
        self,
        subscription_id: str,
        customer_id: str,
        current: PlanSpec,
        target: PlanSpec,
        account_id: str,
    ) -> SubscriptionState:
        """
        Payment first, then the price swap.

        If the difference cannot be collected the subscription is left on its
        current price and the error propagates.
        """
        self._require("upgrade subscription")
        difference = target.price_cents - current.price_cents
        if difference <= 0:
            raise StripeIntegrationError(
                f"{target.name} is not an upgrade from {current.name}",
                subscription_id=subscription_id,
            )

        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
            state = subscription_state(subscription)
            item = _first_item(subscription)

            invoice = stripe.Invoice.create(
                customer=customer_id,
                auto_advance=False,
                collection_method="charge_automatically",
                pending_invoice_items_behavior="exclude",
                metadata={"account_id": account_id, "upgrade_from": current.name, "upgrade_to": target.name},
            )
            stripe.InvoiceItem.create(
                customer=customer_id,
                invoice=invoice.id,
                amount=difference,
                currency=self.currency,
                description=f"Plan upgrade: {current.name} to {target.name} (price difference)",
                metadata={"account_id": account_id, "upgrade_from": current.name, "upgrade_to": target.name},
                idempotency_key=f"upgrade-{subscription_id}-{current.name}-{target.name}-{state.current_period_start}",
            )
            stripe.Invoice.finalize_invoice(invoice.id)

            payment_method = subscription.get("default_payment_method")
            if isinstance(payment_method, dict):
                payment_method = payment_method.get("id")
            if payment_method:
                paid = stripe.Invoice.pay(invoice.id, payment_method=payment_method)
            else:
                paid = stripe.Invoice.pay(invoice.id)
            if paid.get("status") != "paid":
                raise StripeIntegrationError(
                    f"Upgrade invoice {invoice.id} was not paid (status {paid.get('status')})",
                    subscription_id=subscription_id,
                )

            updated = stripe.Subscription.modify(
                subscription_id,
                items=[{"id": item.get("id"), "price": target.price_id}],
                proration_behavior="none",
                metadata={"account_id": account_id, "plan": target.name},
            )
        except stripe.StripeError as e:
            logger.error(
                "stripe_upgrade_failed",
                subscription_id=subscription_id,
                upgrade_from=current.name,
                upgrade_to=target.name,
                error=str(e),
            )
            raise StripeIntegrationError(f"Failed to upgrade subscription: {e}") from e

        logger.info(
            "stripe_subscription_upgraded",
            subscription_id=subscription_id,
            upgrade_from=current.name,
            upgrade_to=target.name,
            amount_cents=difference,
        )
        return subscription_state(updated)

    def schedule_downgrade(
        self,
        subscription_id: str,
        target: PlanSpec,
        account_id: str,
    ) -> SubscriptionState:
        self._require("schedule downgrade")
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
            state = subscription_state(subscription)

            if state.schedule_id:
                schedule = stripe.SubscriptionSchedule.retrieve(state.schedule_id)
            else:
                schedule = stripe.SubscriptionSchedule.create(from_subscription=subscription_id)

            current_phase = schedule["phases"][0]
            schedule = stripe.SubscriptionSchedule.modify(
                schedule.id,
                end_behavior="release",
                proration_behavior="none",
                phases=[
                    {
                        "items": [{"price": state.price_id, "quantity": 1}],
                        "start_date": current_phase["start_date"],
                        "end_date": state.current_period_end,
                    },
                    {
                        "items": [{"price": target.price_id, "quantity": 1}],
                        "iterations": 1,
                        "metadata": {"account_id": account_id, "plan": target.name},
                    },
                ],
            )
        except stripe.StripeError as e:
            logger.error("stripe_downgrade_schedule_failed", subscription_id=subscription_id, error=str(e))
            raise StripeIntegrationError(f"Failed to schedule downgrade: {e}") from e

        state.schedule_id = schedule.id
        logger.info(
            "stripe_downgrade_scheduled",
            subscription_id=subscription_id,
            schedule_id=schedule.id,
            downgrade_to=target.name,
            effective_at=state.current_period_end,
        )
        return state

    def cancel_scheduled_downgrade(self, subscription_id: str) -> SubscriptionState:
        self._require("cancel scheduled downgrade")
        try:
            state = subscription_state(stripe.Subscription.retrieve(subscription_id))
            if state.schedule_id:
                stripe.SubscriptionSchedule.release(state.schedule_id)
        except stripe.StripeError as e:
            logger.error("stripe_downgrade_release_failed", subscription_id=subscription_id, error=str(e))
            raise StripeIntegrationError(f"Failed to cancel scheduled downgrade: {e}") from e

        logger.info("stripe_downgrade_released", subscription_id=subscription_id, schedule_id=state.schedule_id)
        state.schedule_id = None
        return state

    def cancel_at_period_end(self, subscription_id: str) -> SubscriptionState:
        self._require("cancel subscription")
        try:
            updated = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as e:
            logger.error("stripe_subscription_cancel_failed", subscription_id=subscription_id, error=str(e))
            raise StripeIntegrationError(f"Failed to cancel subscription: {e}") from e

        state = subscription_state(updated)
        logger.info(
            "stripe_subscription_cancel_scheduled",
            subscription_id=subscription_id,
            ends_at=state.current_period_end,
        )
        return state
