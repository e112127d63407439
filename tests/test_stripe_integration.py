"""
Tests for the Stripe-backed payment processor.

No network calls: SDK entry points are replaced with monkeypatch.
"""

import pytest
import stripe
from billing.catalog import Catalog
from billing.stripe_integration import StripeIntegration, StripeIntegrationError, subscription_state
from core.errors import ErrorKind, ProcessorNotConfigured

from conftest import PERIOD_1, PERIOD_2


def stripe_subscription(**overrides):
    sub = {
        "id": "sub_1",
        "status": "active",
        "customer": "cus_1",
        "cancel_at_period_end": False,
        "current_period_start": PERIOD_1,
        "current_period_end": PERIOD_2,
        "schedule": None,
        "items": {"data": [{"id": "si_1", "price": {"id": "price_prime"}}]},
        "metadata": {"account_id": "acct_1"},
    }
    sub.update(overrides)
    return sub


@pytest.fixture
def integration(monkeypatch):
    monkeypatch.delenv("STRIPE_API_KEY", raising=False)
    return StripeIntegration(api_key="sk_test_dummy")


class TestSubscriptionState:
    """Test flattening Stripe subscription objects."""

    def test_flatten(self):
        state = subscription_state(stripe_subscription(schedule={"id": "sub_sched_1"}))

        assert state.subscription_id == "sub_1"
        assert state.price_id == "price_prime"
        assert state.current_period_end == PERIOD_2
        assert state.schedule_id == "sub_sched_1"
        assert state.metadata == {"account_id": "acct_1"}

    def test_period_on_item(self):
        sub = stripe_subscription(current_period_start=None, current_period_end=None)
        sub["items"]["data"][0].update(current_period_start=PERIOD_1, current_period_end=PERIOD_2)

        state = subscription_state(sub)

        assert state.current_period_start == PERIOD_1
        assert state.current_period_end == PERIOD_2


class TestStripeIntegration:
    """Test error handling around SDK calls."""

    def test_not_configured_fails_closed(self, monkeypatch):
        monkeypatch.delenv("STRIPE_API_KEY", raising=False)
        integration = StripeIntegration()

        assert not integration.is_available
        with pytest.raises(ProcessorNotConfigured) as exc:
            integration.create_customer("acct_1", "agent@example.com")
        assert exc.value.kind == ErrorKind.PROCESSOR_NOT_CONFIGURED
        assert exc.value.kind.http_status == 503

    def test_sdk_error_wrapped(self, integration, monkeypatch):
        def declined(**kwargs):
            raise stripe.StripeError("card declined")

        monkeypatch.setattr(stripe.Customer, "create", declined)

        with pytest.raises(StripeIntegrationError) as exc:
            integration.create_customer("acct_1", "agent@example.com")
        assert exc.value.kind == ErrorKind.PAYMENT_PROCESSOR_ERROR

    def test_upgrade_requires_higher_price(self, integration):
        catalog = Catalog()

        with pytest.raises(StripeIntegrationError):
            integration.upgrade_subscription("sub_1", "cus_1", catalog.plan("prime"), catalog.plan("entry"), "acct_1")

    def test_cancel_at_period_end(self, integration, monkeypatch):
        calls = []

        def modify(subscription_id, **kwargs):
            calls.append((subscription_id, kwargs))
            return stripe_subscription(cancel_at_period_end=True)

        monkeypatch.setattr(stripe.Subscription, "modify", modify)

        state = integration.cancel_at_period_end("sub_1")

        assert state.cancel_at_period_end is True
        assert calls == [("sub_1", {"cancel_at_period_end": True})]

    def test_checkout_copies_metadata_to_subscription(self, integration, monkeypatch):
        captured = {}

        class Session(dict):
            id = "cs_1"

        def create(**params):
            captured.update(params)
            return Session(url="https://checkout.stripe.test/cs_1")

        monkeypatch.setattr(stripe.checkout.Session, "create", create)

        session = integration.create_checkout_session(
            customer_id="cus_1",
            account_id="acct_1",
            mode="subscription",
            price_id="price_prime",
            metadata={"account_id": "acct_1", "plan": "prime"},
            success_url="https://app.test/ok",
            cancel_url="https://app.test/cancel",
        )

        assert session.session_id == "cs_1"
        assert session.url == "https://checkout.stripe.test/cs_1"
        assert captured["subscription_data"] == {"metadata": {"account_id": "acct_1", "plan": "prime"}}
        assert captured["client_reference_id"] == "acct_1"
