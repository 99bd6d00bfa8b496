"""Thin wrapper around the Stripe SDK used by the subscription service."""
import os
import logging
from collections.abc import Mapping
from typing import Any, Optional

import stripe

from app.errors import ProviderError
from app.models import ProviderCustomer, ProviderInvoice, ProviderSubscriptionSnapshot

logger = logging.getLogger(__name__)

GENERIC_PROVIDER_MESSAGE = "Failed to connect to payment provider. Please try again."


def get_stripe_config():
    """Get Stripe configuration from environment variables at call time."""
    return {
        "secret_key": os.getenv("STRIPE_PRIVATE_KEY", ""),
        "public_key": os.getenv("STRIPE_PUBLIC_KEY", ""),
        "webhook_secret": os.getenv("STRIPE_WEBHOOK_SECRET", ""),
    }


def is_stripe_configured() -> bool:
    return bool(get_stripe_config()["secret_key"])


def get_field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or a plain webhook dict."""
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _first_item(subscription: Any) -> Any:
    items = get_field(get_field(subscription, "items"), "data") or []
    return items[0] if items else None


def invoice_from_stripe(invoice: Any) -> Optional[ProviderInvoice]:
    # Unexpanded invoices arrive as a bare id and carry no payment information
    if invoice is None or isinstance(invoice, str):
        return None
    return ProviderInvoice(
        id=get_field(invoice, "id"),
        status=get_field(invoice, "status"),
        amount_paid=_as_int(get_field(invoice, "amount_paid")) or 0,
        total=_as_int(get_field(invoice, "total")) or 0,
        billing_reason=get_field(invoice, "billing_reason"),
    )


def snapshot_from_stripe(subscription: Any) -> ProviderSubscriptionSnapshot:
    """Build a ProviderSubscriptionSnapshot from a Stripe subscription object."""
    subscription_id = get_field(subscription, "id")
    status = get_field(subscription, "status")
    if not subscription_id or not isinstance(status, str):
        raise ProviderError(GENERIC_PROVIDER_MESSAGE, detail=f"unexpected subscription shape: {subscription!r}")

    item = _first_item(subscription)
    # Newer API versions moved the billing period onto the subscription item
    current_period_end = get_field(subscription, "current_period_end")
    if current_period_end is None:
        current_period_end = get_field(item, "current_period_end")

    customer = get_field(subscription, "customer")
    if customer is not None and not isinstance(customer, str):
        customer = get_field(customer, "id")

    return ProviderSubscriptionSnapshot(
        id=subscription_id,
        customer_id=customer,
        status=status,
        trial_end=_as_int(get_field(subscription, "trial_end")),
        current_period_end=_as_int(current_period_end),
        cancel_at_period_end=bool(get_field(subscription, "cancel_at_period_end", False)),
        latest_invoice=invoice_from_stripe(get_field(subscription, "latest_invoice")),
        price_id=get_field(get_field(item, "price"), "id"),
    )


class StripeBillingClient:
    """Billing provider backed by the Stripe API.

    Every Stripe failure is logged with context and re-raised as ProviderError
    with a message that is safe to show to users.
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or get_stripe_config()["secret_key"]
        if not self.api_key:
            logger.warning("[Stripe] STRIPE_PRIVATE_KEY not set - Stripe calls will fail")

    def _call(self, action: str, fn, *args, **params):
        if not self.api_key:
            raise ProviderError(GENERIC_PROVIDER_MESSAGE, detail="Stripe is not configured")
        try:
            return fn(*args, api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error(f"[Stripe] {action} failed: {e}")
            raise ProviderError(GENERIC_PROVIDER_MESSAGE, detail=f"{action}: {e}") from e

    def create_customer(self, email: str, name: str, metadata: Optional[dict] = None) -> ProviderCustomer:
        customer = self._call(
            "create customer",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata=metadata or {},
        )
        logger.info(f"[Stripe] Created customer {customer.id}")
        return ProviderCustomer(id=customer.id, email=get_field(customer, "email"))

    def create_subscription(self, customer_id: str, price_id: str, trial_days: int) -> ProviderSubscriptionSnapshot:
        subscription = self._call(
            "create subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            trial_period_days=trial_days,
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            expand=["latest_invoice"],
        )
        logger.info(f"[Stripe] Created subscription {subscription.id} for customer {customer_id}")
        return snapshot_from_stripe(subscription)

    def get_subscription(self, subscription_id: str) -> ProviderSubscriptionSnapshot:
        subscription = self._call(
            "retrieve subscription",
            stripe.Subscription.retrieve,
            subscription_id,
            expand=["latest_invoice"],
        )
        return snapshot_from_stripe(subscription)

    def update_subscription_price(self, subscription_id: str, price_id: str) -> ProviderSubscriptionSnapshot:
        current = self._call(
            "retrieve subscription", stripe.Subscription.retrieve, subscription_id
        )
        item = _first_item(current)
        subscription = self._call(
            "update subscription",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": get_field(item, "id"), "price": price_id}],
            proration_behavior="create_prorations",
            expand=["latest_invoice"],
        )
        return snapshot_from_stripe(subscription)

    def cancel_subscription(self, subscription_id: str, immediately: bool = False) -> None:
        if immediately:
            self._call("cancel subscription", stripe.Subscription.cancel, subscription_id)
        else:
            self._call(
                "schedule cancellation",
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=True,
            )
        logger.info(f"[Stripe] Canceled subscription {subscription_id} (immediately={immediately})")

    def reactivate_subscription(self, subscription_id: str) -> ProviderSubscriptionSnapshot:
        subscription = self._call(
            "reactivate subscription",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=False,
        )
        return snapshot_from_stripe(subscription)

    def create_setup_intent(self, customer_id: str) -> Optional[str]:
        """Create a SetupIntent for adding a card during the trial, returning its client secret."""
        setup_intent = self._call(
            "create setup intent",
            stripe.SetupIntent.create,
            customer=customer_id,
            payment_method_types=["card"],
        )
        return get_field(setup_intent, "client_secret")

    def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        session = self._call(
            "create portal session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return session.url
