"""Stripe configuration and webhook routes."""
import json
import logging
from fastapi import APIRouter, HTTPException, Depends, Request, Header
from typing import Optional

import stripe

from app.errors import BillingError
from app.models import TokenData
from app.auth import require_landlord
from app.limits import list_plans
from app.stripe_client import get_stripe_config, is_stripe_configured, get_field, invoice_from_stripe, snapshot_from_stripe
from app.subscription_service import SubscriptionService, get_subscription_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stripe", tags=["stripe"])


@router.get("/config")
async def get_stripe_public_config(current_user: TokenData = Depends(require_landlord)):
    """Get Stripe public configuration for frontend."""
    config = get_stripe_config()
    return {
        "public_key": config["public_key"],
        "enabled": is_stripe_configured(),
        "plans": list_plans(),
    }


def _parse_event(payload: bytes, signature: Optional[str]) -> tuple[str, object]:
    config = get_stripe_config()
    if config["webhook_secret"]:
        if not signature:
            raise HTTPException(status_code=400, detail="No signature provided")
        event = stripe.Webhook.construct_event(payload, signature, config["webhook_secret"])
    else:
        # For development without webhook signature verification
        event = json.loads(payload)
        logger.warning("[Stripe] Webhook signature not verified (development mode)")

    event_type = get_field(event, "type")
    event_object = get_field(get_field(event, "data"), "object")
    if not event_type or event_object is None:
        raise ValueError("Webhook event is missing type or data.object")
    return event_type, event_object


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Handle Stripe webhook events."""
    payload = await request.body()

    try:
        event_type, event_object = _parse_event(payload, stripe_signature)
    except stripe.SignatureVerificationError as e:
        logger.error(f"[Stripe] Invalid webhook signature: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")
    except ValueError as e:
        logger.error(f"[Stripe] Invalid webhook payload: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload")

    logger.info(f"[Stripe] Received webhook event: {event_type}")

    handler = WEBHOOK_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"[Stripe] Unhandled event type: {event_type}")
        return {"received": True}

    try:
        await handler(service, event_object)
    except BillingError as e:
        # Acknowledge so Stripe does not retry an event we can never apply
        logger.error(f"[Stripe] Error handling {event_type}: {e.message} ({e.detail})")
    return {"received": True}


async def handle_subscription_changed(service: SubscriptionService, subscription):
    """customer.subscription.created / customer.subscription.updated"""
    await service.apply_subscription_snapshot(snapshot_from_stripe(subscription))


async def handle_subscription_deleted(service: SubscriptionService, subscription):
    await service.mark_subscription_deleted(snapshot_from_stripe(subscription))


async def handle_trial_will_end(service: SubscriptionService, subscription):
    await service.notify_trial_will_end(snapshot_from_stripe(subscription))


async def handle_invoice_paid(service: SubscriptionService, invoice):
    await service.apply_invoice_paid(get_field(invoice, "customer"), invoice_from_stripe(invoice))


async def handle_payment_failed(service: SubscriptionService, invoice):
    await service.apply_invoice_payment_failed(get_field(invoice, "customer"), invoice_from_stripe(invoice))


WEBHOOK_HANDLERS = {
    "customer.subscription.created": handle_subscription_changed,
    "customer.subscription.updated": handle_subscription_changed,
    "customer.subscription.deleted": handle_subscription_deleted,
    "customer.subscription.trial_will_end": handle_trial_will_end,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_failed": handle_payment_failed,
}
