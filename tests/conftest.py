"""
Pytest Configuration and Fixtures
"""

import hashlib
import hmac
import json
import os
import sys
import time
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"

from core.accounts import AccountService
from core.charge import ChargeGuard
from core.config import BillingConfig
from core.errors import PaymentProcessorError
from core.ledger import LedgerStore
from core.plans import PlanRegistry
from billing.catalog import Catalog
from billing.processor import CheckoutSession, PaymentProcessor, SubscriptionState
from persistence.database import Database

WEBHOOK_SECRET = "whsec_test_secret"
PERIOD_1 = 1_700_000_000
PERIOD_2 = PERIOD_1 + 30 * 86400
PERIOD_3 = PERIOD_2 + 30 * 86400


class FakeProcessor(PaymentProcessor):
    """In-memory payment processor that records every call."""

    def __init__(self):
        self.calls = []
        self.fail = False
        self.fail_on = set()
        self.subscriptions = {}
        self._counter = 0

    def _next(self, prefix):
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if self.fail or name in self.fail_on:
            raise PaymentProcessorError(f"{name} declined by processor")

    def add_subscription(self, subscription_id, price_id, period_start=PERIOD_1, period_end=PERIOD_2):
        self.subscriptions[subscription_id] = SubscriptionState(
            subscription_id=subscription_id,
            status="active",
            price_id=price_id,
            current_period_start=period_start,
            current_period_end=period_end,
        )

    def create_customer(self, account_id, email):
        self._call("create_customer", account_id)
        return self._next("cus")

    def create_checkout_session(self, customer_id, account_id, mode, price_id, metadata, success_url, cancel_url):
        self._call("create_checkout_session", account_id, mode, price_id)
        session_id = self._next("cs")
        return CheckoutSession(session_id=session_id, url=f"https://checkout.test/{session_id}", mode=mode)

    def retrieve_subscription(self, subscription_id):
        self._call("retrieve_subscription", subscription_id)
        return self.subscriptions[subscription_id]

    def upgrade_subscription(self, subscription_id, customer_id, current, target, account_id):
        self._call("upgrade_subscription", subscription_id, current.name, target.name)
        state = self.subscriptions[subscription_id]
        state.price_id = target.price_id
        return state

    def schedule_downgrade(self, subscription_id, target, account_id):
        self._call("schedule_downgrade", subscription_id, target.name)
        state = self.subscriptions[subscription_id]
        state.schedule_id = self._next("sub_sched")
        return state

    def cancel_scheduled_downgrade(self, subscription_id):
        self._call("cancel_scheduled_downgrade", subscription_id)
        state = self.subscriptions[subscription_id]
        state.schedule_id = None
        return state

    def cancel_at_period_end(self, subscription_id):
        self._call("cancel_at_period_end", subscription_id)
        state = self.subscriptions[subscription_id]
        state.cancel_at_period_end = True
        return state


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class EventFactory:
    """Builds Stripe-shaped event payloads."""

    def __init__(self, catalog: Catalog):
        self.catalog = catalog
        self._counter = 0

    def _event(self, event_type, obj, created=None, event_id=None, previous=None):
        self._counter += 1
        data = {"object": obj}
        if previous:
            data["previous_attributes"] = previous
        return {
            "id": event_id or f"evt_{self._counter}",
            "type": event_type,
            "created": created or PERIOD_1 + self._counter,
            "data": data,
        }

    def subscription(
        self,
        event_type,
        subscription_id,
        plan,
        account_id=None,
        status="active",
        period_start=PERIOD_1,
        period_end=PERIOD_2,
        created=None,
        event_id=None,
        customer="cus_test",
        cancel_at_period_end=False,
    ):
        obj = {
            "id": subscription_id,
            "object": "subscription",
            "status": status,
            "customer": customer,
            "cancel_at_period_end": cancel_at_period_end,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "items": {"data": [{"id": "si_1", "price": {"id": self.catalog.plan(plan).price_id}}]},
            "metadata": {"account_id": account_id, "plan": plan} if account_id else {},
        }
        return self._event(f"customer.subscription.{event_type}", obj, created, event_id)

    def checkout(self, session_id, account_id, pack="pack_10", mode="payment", payment_status="paid", event_id=None):
        obj = {
            "id": session_id,
            "object": "checkout.session",
            "mode": mode,
            "payment_status": payment_status,
            "customer": "cus_test",
            "client_reference_id": account_id,
            "metadata": {"account_id": account_id, "pack": pack} if pack else {"account_id": account_id},
        }
        return self._event("checkout.session.completed", obj, event_id=event_id)

    def invoice(
        self,
        subscription_id,
        plan,
        period_start,
        period_end,
        billing_reason="subscription_cycle",
        event_type="invoice.payment_succeeded",
        event_id=None,
    ):
        obj = {
            "id": f"in_{self._counter + 1}",
            "object": "invoice",
            "customer": "cus_test",
            "subscription": subscription_id,
            "billing_reason": billing_reason,
            "attempt_count": 1,
            "lines": {"data": [{
                "price": {"id": self.catalog.plan(plan).price_id},
                "period": {"start": period_start, "end": period_end},
            }]},
        }
        return self._event(event_type, obj, event_id=event_id)

    @staticmethod
    def encode(event):
        return json.dumps(event).encode("utf-8")


@pytest.fixture
def db(tmp_path):
    """File-backed SQLite database (threads get their own connections)."""
    database = Database(f"sqlite:///{tmp_path / 'ledger.db'}")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def config():
    return BillingConfig(
        signup_bonus_credits=3,
        download_cost_credits=1,
        refinement_cost_credits=1,
        max_edits_per_workflow=15,
        stripe_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def catalog():
    return Catalog()


@pytest.fixture
def ledger(db):
    return LedgerStore(db)


@pytest.fixture
def plans(db):
    return PlanRegistry(db)


@pytest.fixture
def accounts(db, ledger, config):
    return AccountService(db, ledger, config)


@pytest.fixture
def guard(db, ledger, config):
    return ChargeGuard(db, ledger, config)


@pytest.fixture
def account(accounts):
    """A freshly provisioned account holding the 3-credit signup bonus."""
    return accounts.provision("agent@example.com")


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def events(catalog):
    return EventFactory(catalog)


@pytest.fixture
def signer():
    return sign_payload
