"""
Pytest configuration for subscription tests.
Points the database at a temp SQLite file and sets Stripe price ids before any app import.
"""

import os
import tempfile
import time

_test_data_dir = tempfile.mkdtemp(prefix="promanage_test_")
os.environ["DATABASE_URL"] = f"sqlite:///{_test_data_dir}/test.db"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["STRIPE_BASIC_PRICE_ID"] = "price_basic"
os.environ["STRIPE_PROFESSIONAL_PRICE_ID"] = "price_professional"
os.environ["STRIPE_PREMIUM_PRICE_ID"] = "price_premium"
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)
os.environ.pop("SMTP_USER", None)
os.environ.pop("SMTP_PASSWORD", None)

import pytest

from app.database import Database
from app.errors import ProviderError
from app.models import (
    ProviderCustomer, ProviderInvoice, ProviderSubscriptionSnapshot, SubscriptionRecord, User, UserRole,
)
from app.subscription_service import SubscriptionService

DAY = 86400


class FakeBilling:
    """In-memory stand-in for StripeBillingClient."""

    def __init__(self):
        self.calls = []
        self.subscriptions = {}
        self.fail_on = set()
        self.trial_end_override = "unset"
        self._counter = 0

    def _record(self, name, *args):
        self.calls.append((name, args))
        if name in self.fail_on:
            raise ProviderError("Failed to connect to payment provider. Please try again.", detail=f"{name} failed")

    def called(self, name):
        return [args for call, args in self.calls if call == name]

    def create_customer(self, email, name, metadata=None):
        self._record("create_customer", email, name, metadata)
        return ProviderCustomer(id="cus_test", email=email)

    def create_subscription(self, customer_id, price_id, trial_days):
        self._record("create_subscription", customer_id, price_id, trial_days)
        self._counter += 1
        now = int(time.time())
        trial_end = now + trial_days * DAY if self.trial_end_override == "unset" else self.trial_end_override
        snapshot = ProviderSubscriptionSnapshot(
            id=f"sub_{self._counter}",
            customer_id=customer_id,
            status="trialing",
            trial_end=trial_end,
            current_period_end=trial_end,
            latest_invoice=ProviderInvoice(id="in_0", status="paid", amount_paid=0, total=0),
            price_id=price_id,
        )
        self.subscriptions[snapshot.id] = snapshot
        return snapshot

    def get_subscription(self, subscription_id):
        self._record("get_subscription", subscription_id)
        return self.subscriptions[subscription_id]

    def update_subscription_price(self, subscription_id, price_id):
        self._record("update_subscription_price", subscription_id, price_id)
        snapshot = self.subscriptions[subscription_id].model_copy(update={"price_id": price_id})
        self.subscriptions[subscription_id] = snapshot
        return snapshot

    def cancel_subscription(self, subscription_id, immediately=False):
        self._record("cancel_subscription", subscription_id, immediately)

    def reactivate_subscription(self, subscription_id):
        self._record("reactivate_subscription", subscription_id)
        return self.subscriptions.get(subscription_id)

    def create_setup_intent(self, customer_id):
        self._record("create_setup_intent", customer_id)
        return "seti_secret"

    def create_billing_portal_session(self, customer_id, return_url):
        self._record("create_billing_portal_session", customer_id, return_url)
        return f"https://billing.stripe.test/session?return={return_url}"


def make_snapshot(**overrides) -> ProviderSubscriptionSnapshot:
    now = int(time.time())
    values = dict(
        id="sub_1",
        customer_id="cus_test",
        status="active",
        trial_end=None,
        current_period_end=now + 30 * DAY,
        latest_invoice=None,
    )
    values.update(overrides)
    return ProviderSubscriptionSnapshot(**values)


@pytest.fixture
def database(tmp_path):
    return Database(f"sqlite:///{tmp_path}/billing.db")


@pytest.fixture
def billing():
    return FakeBilling()


@pytest.fixture
def service(database, billing):
    return SubscriptionService(database, billing)


@pytest.fixture
def landlord(database):
    """A landlord with an empty subscription record."""
    user = database.save_user(User(email="landlord@example.com", name="Lena Landlord", role=UserRole.LANDLORD))
    database.create_subscription_record(SubscriptionRecord(owner_id=user.id))
    return user


@pytest.fixture(name="make_snapshot")
def make_snapshot_fixture():
    return make_snapshot
