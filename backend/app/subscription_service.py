"""
Landlord subscription operations.

Each public coroutine is a call site for the reconciliation helpers in
app.subscription_sync. They never raise: every failure is logged and turned
into a SubscriptionResult the routes can hand back to the client.
"""
import os
import logging
import functools
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.database import Database
from app.errors import (
    BillingError, ConflictError, NotFoundError, PersistenceError, ProviderError, ValidationError,
)
from app.limits import (
    SELF_SERVE_TIERS, TRIAL_DAYS, check_can_add_property, get_price_id, get_tier_property_limit,
    list_plans,
)
from app.models import (
    ActivityLog, ActivityType, NotificationType, ProviderInvoice, ProviderSubscriptionSnapshot,
    SubscriptionRecord, SubscriptionResult, SubscriptionStatus, SubscriptionTier, TierRequest,
)
from app.notifications import Notifier
from app.subscription_sync import (
    coerce_timestamp, is_actually_in_trial, is_trial_conversion, map_status, reconcile,
)

logger = logging.getLogger(__name__)

# Invoices that can carry the first real charge after a trial
FIRST_PAYMENT_BILLING_REASONS = ("subscription_create", "subscription_cycle")


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _failure(error: BillingError) -> SubscriptionResult:
    return SubscriptionResult(success=False, error=error.message, error_code=error.code)


def service_action(default_error: str):
    """Convert anything raised by a call site into a failed SubscriptionResult."""
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self, *args, **kwargs):
            try:
                return await fn(self, *args, **kwargs)
            except BillingError as e:
                logger.warning(f"[Subscription] {fn.__name__} rejected: {e.message} ({e.detail or e.code})")
                return _failure(e)
            except Exception as e:
                logger.exception(f"[Subscription] {fn.__name__} failed: {e}")
                return SubscriptionResult(success=False, error=default_error, error_code="error")
        return wrapper
    return decorator


def validate_tier(tier, self_serve_only: bool = True) -> SubscriptionTier:
    try:
        validated = TierRequest.model_validate({"tier": tier}).tier
    except PydanticValidationError as e:
        issues = e.errors()
        raise ValidationError(issues[0]["msg"] if issues else "Invalid input") from e
    if self_serve_only and validated not in SELF_SERVE_TIERS:
        raise ValidationError(f"The {validated.value} plan is set up by our sales team. Please contact us.")
    return validated


class SubscriptionService:
    def __init__(self, database: Database, billing, notifier: Optional[Notifier] = None):
        self.db = database
        self.billing = billing
        self.notifier = notifier or Notifier(database)

    # ==================== HELPERS ====================

    def _get_record(self, user_id: str) -> SubscriptionRecord:
        record = self.db.get_subscription_record(user_id)
        if not record:
            raise NotFoundError("Landlord profile not found")
        return record

    def _log_activity(self, user_id: str, action: str, metadata: Optional[dict] = None,
                      activity_type: ActivityType = ActivityType.SUBSCRIPTION_CHANGED) -> None:
        try:
            self.db.create_activity_log(
                ActivityLog(user_id=user_id, type=activity_type, action=action, metadata=metadata or {})
            )
        except SQLAlchemyError as e:
            logger.error(f"[Subscription] Failed to write activity log for user {user_id}: {e}")

    def _cancel_remote(self, subscription_id: str) -> bool:
        """Best-effort compensation when our side could not record a new subscription."""
        try:
            self.billing.cancel_subscription(subscription_id, immediately=True)
            logger.info(f"[Subscription] Canceled orphaned subscription {subscription_id}")
            return True
        except ProviderError as e:
            logger.error(f"[Subscription] Failed to cancel subscription {subscription_id} after local error: {e.detail}")
            return False

    def _property_usage(self, record: SubscriptionRecord) -> dict:
        count = self.db.count_properties(record.owner_id)
        usage = (count / record.property_limit) * 100 if record.property_limit else 0
        return {
            "property_limit": record.property_limit,
            "property_count": count,
            "property_usage": round(usage, 1),
        }

    # ==================== TRIAL ====================

    @service_action("Failed to start trial. Please try again.")
    async def start_free_trial(self, user_id: str, tier) -> SubscriptionResult:
        tier = validate_tier(tier)
        record = self._get_record(user_id)

        if record.stripe_subscription_id and record.status in (
            SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL
        ):
            raise ConflictError("You already have an active subscription")
        if record.trial_used:
            raise ConflictError("Free trial has already been used for this account")

        customer_id = record.stripe_customer_id
        if not customer_id:
            user = self.db.get_user(user_id)
            if not user:
                raise NotFoundError("Landlord profile not found")
            logger.info(f"[Subscription] Creating Stripe customer for landlord {record.id}")
            customer = self.billing.create_customer(
                user.email,
                user.name or "Landlord",
                {"landlord_id": record.id, "user_id": user_id},
            )
            customer_id = customer.id
            # Persisted before the subscription is created
            record = self.db.update_subscription_record(record.id, {"stripe_customer_id": customer_id})

        price_id = get_price_id(tier)
        logger.info(f"[Subscription] Creating {tier.value} trial subscription for customer {customer_id}")
        snapshot = self.billing.create_subscription(customer_id, price_id, TRIAL_DAYS)

        trial_ends_at = coerce_timestamp(snapshot.trial_end)
        if not trial_ends_at:
            logger.error(f"[Subscription] Trial end date is invalid for {snapshot.id}: {snapshot.trial_end}")
            self._cancel_remote(snapshot.id)
            raise ProviderError("Failed to set up trial period. Please contact support.")
        current_period_end = coerce_timestamp(snapshot.current_period_end)

        try:
            record = self.db.update_subscription_record(
                record.id,
                {
                    "stripe_customer_id": customer_id,
                    "stripe_subscription_id": snapshot.id,
                    "tier": tier,
                    "status": SubscriptionStatus.TRIAL,
                    "property_limit": get_tier_property_limit(tier),
                    "trial_ends_at": trial_ends_at,
                    "trial_used": True,
                    "current_period_end": current_period_end or trial_ends_at,
                    "cancel_at_period_end": False,
                },
                expected_statuses=[record.status],
                require_trial_unused=True,
            )
        except ConflictError as e:
            self._cancel_remote(snapshot.id)
            raise ConflictError("Free trial has already been used for this account", detail=e.detail) from e
        except (PersistenceError, NotFoundError) as e:
            self._cancel_remote(snapshot.id)
            raise PersistenceError("Failed to save subscription. Please contact support.", detail=e.detail) from e

        self._log_activity(
            user_id,
            f"Started {tier.value} plan trial",
            {"subscription_id": snapshot.id, "tier": tier.value, "trial_ends_at": trial_ends_at.isoformat()},
        )

        setup_intent = None
        try:
            setup_intent = self.billing.create_setup_intent(customer_id)
        except ProviderError as e:
            logger.warning(f"[Subscription] Could not create setup intent for {customer_id}: {e.detail}")

        return SubscriptionResult(
            success=True,
            data={
                "subscription_id": snapshot.id,
                "tier": tier.value,
                "trial_ends_at": trial_ends_at.isoformat(),
                "setup_intent_client_secret": setup_intent,
            },
            message=f"Trial started! You have {TRIAL_DAYS} days free. Add a payment method to continue after the trial.",
        )

    # ==================== SYNC ====================

    @service_action("Failed to sync subscription status")
    async def sync_subscription_status(self, user_id: str) -> SubscriptionResult:
        record = self._get_record(user_id)
        if not record.stripe_subscription_id:
            raise NotFoundError("No subscription found")

        snapshot = self.billing.get_subscription(record.stripe_subscription_id)
        result = reconcile(record, snapshot)
        if not result.updated:
            return SubscriptionResult(
                success=True,
                data={"updated": False, "status": record.status.value},
                message="Subscription status is already up to date",
            )

        updated = self.db.update_subscription_record(record.id, result.changes)
        await self._after_status_change(record, updated, snapshot.id)
        return SubscriptionResult(
            success=True,
            data={
                "updated": True,
                "old_status": record.status.value,
                "new_status": updated.status.value,
            },
            message="Subscription status synced successfully",
        )

    async def _after_status_change(self, before: SubscriptionRecord, after: SubscriptionRecord,
                                   subscription_id: str) -> None:
        if is_trial_conversion(before.status, after.status):
            await self.notifier.notify(
                after.owner_id,
                "Welcome to your paid subscription!",
                f"Your trial has been successfully converted to a {after.tier.value} subscription. "
                "Thank you for choosing our platform!",
            )
            self._log_activity(
                after.owner_id,
                "Trial converted to paid subscription",
                {"subscription_id": subscription_id, "tier": after.tier.value},
            )
        elif before.status != after.status:
            self._log_activity(
                after.owner_id,
                "Subscription updated",
                {
                    "subscription_id": subscription_id,
                    "old_status": before.status.value,
                    "new_status": after.status.value,
                },
            )

    # ==================== READ ====================

    @service_action("Failed to fetch subscription")
    async def get_current_subscription(self, user_id: str) -> SubscriptionResult:
        record = self._get_record(user_id)

        if not record.stripe_subscription_id:
            return SubscriptionResult(
                success=True,
                data={
                    "has_subscription": False,
                    "can_start_trial": not record.trial_used,
                    "available_plans": list_plans(),
                },
            )

        try:
            snapshot = self.billing.get_subscription(record.stripe_subscription_id)
        except ProviderError as e:
            logger.error(f"[Subscription] Falling back to stored state for {record.id}: {e.detail}")
            return SubscriptionResult(
                success=True,
                data={
                    "has_subscription": True,
                    "subscription": {
                        "id": record.stripe_subscription_id,
                        "status": record.status.value,
                        "tier": record.tier.value,
                        "current_period_end": _isoformat(record.current_period_end),
                        "cancel_at_period_end": record.cancel_at_period_end,
                        "trial_end": _isoformat(record.trial_ends_at),
                        "is_trialing": record.status == SubscriptionStatus.TRIAL,
                        **self._property_usage(record),
                        "needs_sync": True,
                    },
                    "available_plans": list_plans(),
                },
            )

        result = reconcile(record, snapshot)
        current = record
        if result.updated:
            current = self.db.update_subscription_record(record.id, result.changes)
            await self._after_status_change(record, current, snapshot.id)

        return SubscriptionResult(
            success=True,
            data={
                "has_subscription": True,
                "subscription": {
                    "id": snapshot.id,
                    "status": current.status.value,
                    "stripe_status": snapshot.status,
                    "tier": current.tier.value,
                    "current_period_end": _isoformat(current.current_period_end),
                    "cancel_at_period_end": snapshot.cancel_at_period_end,
                    "trial_end": _isoformat(current.trial_ends_at),
                    "is_trialing": current.status == SubscriptionStatus.TRIAL,
                    **self._property_usage(current),
                    "needs_sync": False,
                },
                "available_plans": list_plans(),
            },
        )

    @service_action("Failed to check property limit")
    async def can_add_property(self, user_id: str) -> SubscriptionResult:
        record = self._get_record(user_id)
        count = self.db.count_properties(user_id)
        can_add, reason = check_can_add_property(record.property_limit, count)
        return SubscriptionResult(
            success=True,
            data={
                "can_add": can_add,
                "reason": reason or None,
                "current_count": count,
                "limit": record.property_limit,
                "tier": record.tier.value,
            },
        )

    # ==================== CHANGES ====================

    @service_action("Failed to change subscription")
    async def change_subscription_tier(self, user_id: str, tier) -> SubscriptionResult:
        tier = validate_tier(tier)
        record = self._get_record(user_id)
        if not record.stripe_subscription_id:
            raise NotFoundError("No active subscription found. Start a trial first.")

        new_limit = get_tier_property_limit(tier)
        if tier != record.tier:
            property_count = self.db.count_properties(user_id)
            if property_count > new_limit:
                raise ConflictError(
                    f"Cannot downgrade. You have {property_count} properties but "
                    f"{tier.value} plan only allows {new_limit}."
                )

        price_id = get_price_id(tier)
        current = self.billing.get_subscription(record.stripe_subscription_id)
        was_in_trial = is_actually_in_trial(current)

        updated_snapshot = self.billing.update_subscription_price(record.stripe_subscription_id, price_id)
        still_in_trial = is_actually_in_trial(updated_snapshot)
        trial_end = coerce_timestamp(updated_snapshot.trial_end)

        self.db.update_subscription_record(
            record.id,
            {
                "tier": tier,
                "property_limit": new_limit,
                "status": map_status(updated_snapshot),
                "trial_ends_at": trial_end if still_in_trial else None,
                "current_period_end": coerce_timestamp(updated_snapshot.current_period_end),
            },
        )

        converted = was_in_trial and not still_in_trial
        if converted:
            action = f"Upgraded from {record.tier.value} to {tier.value} (converted from trial)"
            message = f"Successfully upgraded to {tier.value} plan! Your trial has been converted to a paid subscription."
        else:
            action = f"Changed subscription from {record.tier.value} to {tier.value}"
            message = f"Successfully changed to {tier.value} plan"
        self._log_activity(
            user_id,
            action,
            {
                "old_tier": record.tier.value,
                "new_tier": tier.value,
                "was_in_trial": was_in_trial,
                "is_still_in_trial": still_in_trial,
            },
        )
        return SubscriptionResult(success=True, message=message)

    @service_action("Failed to cancel subscription")
    async def cancel_subscription(self, user_id: str, immediately: bool = False) -> SubscriptionResult:
        record = self._get_record(user_id)
        if not record.stripe_subscription_id:
            raise NotFoundError("No active subscription found")

        self.billing.cancel_subscription(record.stripe_subscription_id, immediately=immediately)

        if immediately:
            updates = {
                "status": SubscriptionStatus.CANCELED,
                "trial_ends_at": None,
                "cancel_at_period_end": False,
            }
        else:
            # Status stays as is until Stripe ends the period
            updates = {"cancel_at_period_end": True}
        self.db.update_subscription_record(record.id, updates)

        self._log_activity(
            user_id,
            "Canceled subscription immediately" if immediately else "Scheduled subscription cancellation",
        )
        return SubscriptionResult(
            success=True,
            message=(
                "Subscription canceled immediately"
                if immediately
                else "Subscription will cancel at the end of the billing period"
            ),
        )

    @service_action("Failed to reactivate subscription")
    async def reactivate_subscription(self, user_id: str) -> SubscriptionResult:
        record = self._get_record(user_id)
        if not record.stripe_subscription_id:
            raise NotFoundError("No subscription found")

        self.billing.reactivate_subscription(record.stripe_subscription_id)

        try:
            snapshot = self.billing.get_subscription(record.stripe_subscription_id)
            new_status = map_status(snapshot)
        except ProviderError as e:
            logger.warning(f"[Subscription] Could not refetch {record.stripe_subscription_id}: {e.detail}")
            new_status = SubscriptionStatus.ACTIVE

        self.db.update_subscription_record(
            record.id, {"status": new_status, "cancel_at_period_end": False}
        )
        self._log_activity(user_id, "Reactivated subscription")
        return SubscriptionResult(success=True, message="Subscription reactivated successfully")

    @service_action("Failed to get billing portal")
    async def get_billing_portal_url(self, user_id: str, return_url: Optional[str] = None) -> SubscriptionResult:
        record = self._get_record(user_id)
        if not record.stripe_customer_id:
            raise NotFoundError("No billing account found")

        if not return_url:
            frontend_url = os.getenv("FRONTEND_URL", "http://localhost:5173")
            return_url = f"{frontend_url}/dashboard/settings/subscription"
        url = self.billing.create_billing_portal_session(record.stripe_customer_id, return_url)
        return SubscriptionResult(success=True, data={"url": url})

    # ==================== WEBHOOK EVENTS ====================

    async def apply_subscription_snapshot(self, snapshot: ProviderSubscriptionSnapshot) -> bool:
        """Bring the record owning `snapshot.customer_id` in line with Stripe.

        Returns True when the stored record changed.
        """
        record = self.db.get_subscription_record_by_customer(snapshot.customer_id) if snapshot.customer_id else None
        if not record:
            logger.error(f"[Stripe] Landlord not found for customer: {snapshot.customer_id}")
            return False

        if record.stripe_subscription_id and record.stripe_subscription_id != snapshot.id:
            logger.warning(
                f"[Stripe] Ignoring event for subscription {snapshot.id}; "
                f"landlord {record.id} is on {record.stripe_subscription_id}"
            )
            return False

        result = reconcile(record, snapshot)
        changes = dict(result.changes)
        if not record.stripe_subscription_id:
            changes["stripe_subscription_id"] = snapshot.id
        if record.cancel_at_period_end != snapshot.cancel_at_period_end:
            changes["cancel_at_period_end"] = snapshot.cancel_at_period_end
        if not changes:
            return False

        updated = self.db.update_subscription_record(record.id, changes)
        await self._after_status_change(record, updated, snapshot.id)
        logger.info(
            f"[Stripe] Subscription {snapshot.id} synced: {record.status.value} -> {updated.status.value}"
        )
        return True

    async def mark_subscription_deleted(self, snapshot: ProviderSubscriptionSnapshot) -> bool:
        record = self.db.get_subscription_record_by_customer(snapshot.customer_id) if snapshot.customer_id else None
        if not record:
            logger.error(f"[Stripe] Landlord not found for customer: {snapshot.customer_id}")
            return False

        self.db.update_subscription_record(
            record.id,
            {"status": SubscriptionStatus.CANCELED, "trial_ends_at": None, "cancel_at_period_end": False},
        )
        self._log_activity(record.owner_id, "Subscription canceled", {"subscription_id": snapshot.id})
        logger.info(f"[Stripe] Subscription deleted: {snapshot.id}")
        return True

    async def notify_trial_will_end(self, snapshot: ProviderSubscriptionSnapshot) -> bool:
        record = self.db.get_subscription_record_by_customer(snapshot.customer_id) if snapshot.customer_id else None
        if not record:
            logger.error(f"[Stripe] Landlord not found for customer: {snapshot.customer_id}")
            return False

        trial_end = coerce_timestamp(snapshot.trial_end)
        if not trial_end:
            logger.error(f"[Stripe] Invalid trial end date for subscription: {snapshot.id}")
            return False

        seconds_left = (trial_end - datetime.now(timezone.utc)).total_seconds()
        days_remaining = max(0, -(-int(seconds_left) // 86400))
        await self.notifier.notify(
            record.owner_id,
            f"Trial ending in {days_remaining} day{'s' if days_remaining != 1 else ''}",
            f"Your {TRIAL_DAYS}-day trial ends on {trial_end.strftime('%B %d, %Y')}. Add a payment method "
            f"to continue your {record.tier.value} subscription without interruption.",
        )
        logger.info(f"[Stripe] Trial ending notification sent for {snapshot.id} ({days_remaining} days)")
        return True

    async def apply_invoice_paid(self, customer_id: Optional[str], invoice: ProviderInvoice) -> bool:
        record = self.db.get_subscription_record_by_customer(customer_id) if customer_id else None
        if not record:
            logger.error(f"[Stripe] Landlord not found for customer: {customer_id}")
            return False

        was_in_trial = record.status == SubscriptionStatus.TRIAL
        is_first_payment = invoice.billing_reason in FIRST_PAYMENT_BILLING_REASONS
        amount = (invoice.amount_paid or 0) / 100

        converted = was_in_trial and is_first_payment and (invoice.amount_paid or 0) > 0
        if converted:
            self.db.update_subscription_record(
                record.id,
                {"status": SubscriptionStatus.ACTIVE, "trial_ends_at": None},
                expected_statuses=[SubscriptionStatus.TRIAL],
            )
            await self.notifier.notify(
                record.owner_id,
                "First payment received - Welcome!",
                f"Your first payment of ${amount:.2f} has been processed. "
                f"Your {record.tier.value} subscription is now fully active!",
                notification_type=NotificationType.PAYMENT_RECEIVED,
            )
            logger.info(f"[Stripe] Trial conversion payment received: {invoice.id}")

        self._log_activity(
            record.owner_id,
            f"Subscription payment of ${amount:.2f} processed",
            {"invoice_id": invoice.id, "amount": amount, "was_trial_conversion": converted},
            activity_type=ActivityType.PAYMENT_MADE,
        )
        return converted

    async def apply_invoice_payment_failed(self, customer_id: Optional[str], invoice: ProviderInvoice) -> bool:
        record = self.db.get_subscription_record_by_customer(customer_id) if customer_id else None
        if not record:
            logger.error(f"[Stripe] Landlord not found for customer: {customer_id}")
            return False

        self.db.update_subscription_record(record.id, {"status": SubscriptionStatus.PAST_DUE})
        await self.notifier.notify(
            record.owner_id,
            "Subscription Payment Failed",
            "Your subscription payment has failed. Please update your payment method to continue using the service.",
            notification_type=NotificationType.PAYMENT_FAILED,
        )
        logger.warning(f"[Stripe] Invoice payment failed: {invoice.id}")
        return True


_service: Optional[SubscriptionService] = None


def get_subscription_service() -> SubscriptionService:
    """FastAPI dependency returning the process-wide service."""
    global _service
    if _service is None:
        from app.database import db
        from app.stripe_client import StripeBillingClient
        _service = SubscriptionService(db, StripeBillingClient())
    return _service
