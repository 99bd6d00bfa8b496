"""
Subscription service tests.

Runs every call site against a real SQLite database and the FakeBilling
client from conftest.

Coverage:
  - Start trial (happy path, conflicts, validation, provider failures, compensation)
  - Sync (conversion, no-op, missing subscription, provider failure)
  - Current subscription (no subscription, drift persisted, provider fallback)
  - Tier change, cancel, reactivate, billing portal, property limit
  - Webhook-driven updates (subscription snapshot, deletion, invoices, trial ending)
"""

import time
from datetime import datetime, timedelta, timezone

import pytest

from app.errors import PersistenceError
from app.models import (
    Property, ProviderInvoice, SubscriptionStatus, SubscriptionTier, User, UserRole,
)

pytestmark = pytest.mark.asyncio

DAY = 86400


def _record(database, user):
    return database.get_subscription_record(user.id)


# ---------------------------------------------------------------------------
# start_free_trial()
# ---------------------------------------------------------------------------

class TestStartFreeTrial:

    async def test_starts_professional_trial(self, service, database, billing, landlord):
        result = await service.start_free_trial(landlord.id, "PROFESSIONAL")

        assert result.success is True
        assert result.data["tier"] == "PROFESSIONAL"
        assert result.data["setup_intent_client_secret"] == "seti_secret"

        record = _record(database, landlord)
        assert record.tier == SubscriptionTier.PROFESSIONAL
        assert record.status == SubscriptionStatus.TRIAL
        assert record.property_limit == 10
        assert record.trial_used is True
        assert record.stripe_customer_id == "cus_test"
        assert record.stripe_subscription_id == "sub_1"
        expected_end = datetime.now(timezone.utc) + timedelta(days=14)
        assert abs((record.trial_ends_at - expected_end).total_seconds()) <= 2

        assert billing.called("create_subscription") == [("cus_test", "price_professional", 14)]
        actions = [entry.action for entry in database.list_activity_logs(landlord.id)]
        assert actions == ["Started PROFESSIONAL plan trial"]

    async def test_second_trial_is_rejected_without_changes(self, service, database, billing, landlord):
        await service.start_free_trial(landlord.id, "PROFESSIONAL")
        before = _record(database, landlord)

        result = await service.start_free_trial(landlord.id, "PREMIUM")

        assert result.success is False
        assert result.error_code == "conflict"
        assert _record(database, landlord) == before
        assert len(billing.called("create_subscription")) == 1

    async def test_used_trial_is_rejected(self, service, database, billing, landlord):
        record = _record(database, landlord)
        database.update_subscription_record(
            record.id, {"trial_used": True, "status": SubscriptionStatus.CANCELED}
        )

        result = await service.start_free_trial(landlord.id, "BASIC")

        assert result.success is False
        assert result.error_code == "conflict"
        assert result.error == "Free trial has already been used for this account"
        assert billing.calls == []

    async def test_invalid_tier(self, service, billing, landlord):
        result = await service.start_free_trial(landlord.id, "GOLD")
        assert result.success is False
        assert result.error_code == "validation"
        assert billing.calls == []

    async def test_enterprise_is_not_self_serve(self, service, landlord):
        result = await service.start_free_trial(landlord.id, "ENTERPRISE")
        assert result.success is False
        assert result.error_code == "validation"

    async def test_missing_landlord_profile(self, service, database):
        user = database.save_user(User(email="x@example.com", name="X", role=UserRole.LANDLORD))
        result = await service.start_free_trial(user.id, "BASIC")
        assert result.success is False
        assert result.error_code == "not_found"

    async def test_customer_is_kept_when_subscription_fails(self, service, database, billing, landlord):
        billing.fail_on.add("create_subscription")

        result = await service.start_free_trial(landlord.id, "BASIC")

        assert result.success is False
        assert result.error_code == "provider"
        assert result.error == "Failed to connect to payment provider. Please try again."
        record = _record(database, landlord)
        assert record.stripe_customer_id == "cus_test"
        assert record.trial_used is False
        assert record.status == SubscriptionStatus.INACTIVE

    async def test_existing_customer_is_reused(self, service, database, billing, landlord):
        record = _record(database, landlord)
        database.update_subscription_record(record.id, {"stripe_customer_id": "cus_existing"})

        result = await service.start_free_trial(landlord.id, "BASIC")

        assert result.success is True
        assert billing.called("create_customer") == []
        assert billing.called("create_subscription")[0][0] == "cus_existing"

    async def test_invalid_trial_end_fails_and_cancels(self, service, database, billing, landlord):
        billing.trial_end_override = 12345

        result = await service.start_free_trial(landlord.id, "BASIC")

        assert result.success is False
        assert result.error == "Failed to set up trial period. Please contact support."
        assert billing.called("cancel_subscription") == [("sub_1", True)]
        assert _record(database, landlord).status == SubscriptionStatus.INACTIVE

    async def test_persistence_failure_cancels_remote_subscription(
        self, service, database, billing, landlord, monkeypatch
    ):
        original = database.update_subscription_record

        def failing_update(record_id, updates, **kwargs):
            if "stripe_subscription_id" in updates:
                raise PersistenceError("Failed to save subscription.", detail="disk full")
            return original(record_id, updates, **kwargs)

        monkeypatch.setattr(database, "update_subscription_record", failing_update)

        result = await service.start_free_trial(landlord.id, "BASIC")

        assert result.success is False
        assert result.error_code == "persistence"
        assert result.error == "Failed to save subscription. Please contact support."
        assert billing.called("cancel_subscription") == [("sub_1", True)]

    async def test_concurrent_trial_start_loses_conditional_update(
        self, service, database, billing, landlord, monkeypatch
    ):
        original = database.update_subscription_record

        def racing_update(record_id, updates, **kwargs):
            if kwargs.get("require_trial_unused"):
                # Another request finishes its trial start between our check and our write
                original(record_id, {"trial_used": True})
            return original(record_id, updates, **kwargs)

        monkeypatch.setattr(database, "update_subscription_record", racing_update)

        result = await service.start_free_trial(landlord.id, "PROFESSIONAL")

        assert result.success is False
        assert result.error_code == "conflict"
        assert result.error == "Free trial has already been used for this account"
        assert billing.called("cancel_subscription") == [("sub_1", True)]
        record = _record(database, landlord)
        assert record.stripe_subscription_id is None
        assert record.status == SubscriptionStatus.INACTIVE

    async def test_setup_intent_failure_does_not_fail_trial(self, service, billing, landlord):
        billing.fail_on.add("create_setup_intent")
        result = await service.start_free_trial(landlord.id, "BASIC")
        assert result.success is True
        assert result.data["setup_intent_client_secret"] is None


# ---------------------------------------------------------------------------
# sync_subscription_status()
# ---------------------------------------------------------------------------

class TestSync:

    async def test_converted_trial_becomes_active(self, service, database, billing, landlord):
        await service.start_free_trial(landlord.id, "PROFESSIONAL")
        now = int(time.time())
        billing.subscriptions["sub_1"] = billing.subscriptions["sub_1"].model_copy(update={
            "status": "active",
            "current_period_end": now + 30 * DAY,
            "latest_invoice": ProviderInvoice(id="in_1", status="paid", amount_paid=2999, total=2999),
        })

        result = await service.sync_subscription_status(landlord.id)

        assert result.success is True
        assert result.data == {"updated": True, "old_status": "TRIAL", "new_status": "ACTIVE"}
        record = _record(database, landlord)
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.trial_ends_at is None
        assert record.trial_used is True
        titles = [n.title for n in database.list_notifications(landlord.id)]
        assert titles == ["Welcome to your paid subscription!"]

    async def test_millisecond_period_end_is_dropped(self, service, database, billing, landlord):
        await service.start_free_trial(landlord.id, "PROFESSIONAL")
        billing.subscriptions["sub_1"] = billing.subscriptions["sub_1"].model_copy(update={
            "status": "active",
            "current_period_end": int(time.time()) * 1000,
            "latest_invoice": ProviderInvoice(id="in_1", status="paid", amount_paid=2999, total=2999),
        })

        result = await service.sync_subscription_status(landlord.id)

        assert result.success is True
        assert result.data["new_status"] == "ACTIVE"
        assert _record(database, landlord).current_period_end is None

    async def test_already_up_to_date(self, service, database, billing, landlord):
        await service.start_free_trial(landlord.id, "BASIC")
        before = _record(database, landlord)

        result = await service.sync_subscription_status(landlord.id)

        assert result.success is True
        assert result.data["updated"] is False
        assert result.message == "Subscription status is already up to date"
        assert _record(database, landlord) == before

    async def test_without_subscription(self, service, landlord):
        result = await service.sync_subscription_status(landlord.id)
        assert result.success is False
        assert result.error_code == "not_found"

    async def test_provider_failure(self, service, database, billing, landlord):
        await service.start_free_trial(landlord.id, "BASIC")
        billing.fail_on.add("get_subscription")

        result = await service.sync_subscription_status(landlord.id)

        assert result.success is False
        assert result.error_code == "provider"
        assert _record(database, landlord).status == SubscriptionStatus.TRIAL


# ---------------------------------------------------------------------------
# get_current_subscription() / can_add_property()
# ---------------------------------------------------------------------------

class TestCurrentSubscription:

    async def test_without_subscription(self, service, landlord):
        result = await service.get_current_subscription(landlord.id)
        assert result.success is True
        assert result.data["has_subscription"] is False
        assert result.data["can_start_trial"] is True
        assert [p["tier"] for p in result.data["available_plans"]] == [
            "BASIC", "PROFESSIONAL", "PREMIUM", "ENTERPRISE"
        ]

    async def test_reports_trial_and_usage(self, service, database, landlord):
        await service.start_free_trial(landlord.id, "BASIC")
        database.save_property(Property(landlord_id=landlord.id, address="1 Main St", name="Main"))

        result = await service.get_current_subscription(landlord.id)

        subscription = result.data["subscription"]
        assert subscription["status"] == "TRIAL"
        assert subscription["stripe_status"] == "trialing"
        assert subscription["is_trialing"] is True
        assert subscription["property_count"] == 1
        assert subscription["property_limit"] == 5
        assert subscription["property_usage"] == 20.0
        assert subscription["needs_sync"] is False

    async def test_persists_drift(self, service, database, billing, landlord):
        await service.start_free_trial(landlord.id, "BASIC")
        billing.subscriptions["sub_1"] = billing.subscriptions["sub_1"].model_copy(
            update={"status": "past_due", "trial_end": None}
        )

        result = await service.get_current_subscription(landlord.id)

        assert result.data["subscription"]["status"] == "PAST_DUE"
        assert _record(database, landlord).status == SubscriptionStatus.PAST_DUE

    async def test_falls_back_to_stored_state(self, service, billing, landlord):
        await service.start_free_trial(landlord.id, "BASIC")
        billing.fail_on.add("get_subscription")

        result = await service.get_current_subscription(landlord.id)

        assert result.success is True
        assert result.data["subscription"]["needs_sync"] is True
        assert result.data["subscription"]["status"] == "TRIAL"

    async def test_can_add_property(self, service, database, landlord):
        result = await service.can_add_property(landlord.id)
        assert result.data["can_add"] is True
        assert result.data["limit"] == 5

        for i in range(5):
            database.save_property(Property(landlord_id=landlord.id, address=f"{i} Elm St", name=f"Elm {i}"))
        result = await service.can_add_property(landlord.id)
        assert result.data["can_add"] is False
        assert result.data["current_count"] == 5

    async def test_deleted_properties_do_not_count(self, service, database, landlord):
        database.save_property(Property(
            landlord_id=landlord.id, address="Gone", name="Gone", deleted_at=datetime.now(timezone.utc)
        ))
        result = await service.can_add_property(landlord.id)
        assert result.data["current_count"] == 0


# ---------------------------------------------------------------------------
# change / cancel / reactivate / portal
# ---------------------------------------------------------------------------

class TestChanges:

    async def test_change_tier_updates_limit(self, service, database, billing, landlord):
        await service.start_free_trial(landlord.id, "BASIC")

        result = await service.change_subscription_tier(landlord.id, "PREMIUM")

        assert result.success is True
        assert result.message == "Successfully changed to PREMIUM plan"
        record = _record(database, landlord)
        assert record.tier == SubscriptionTier.PREMIUM
        assert record.property_limit == 20
        assert record.status == SubscriptionStatus.TRIAL
        assert billing.called("update_subscription_price") == [("sub_1", "price_premium")]

    async def test_downgrade_below_property_count_is_refused(self, service, database, billing, landlord):
        await service.start_free_trial(landlord.id, "PROFESSIONAL")
        for i in range(6):
            database.save_property(Property(landlord_id=landlord.id, address=f"{i} Oak St", name=f"Oak {i}"))

        result = await service.change_subscription_tier(landlord.id, "BASIC")

        assert result.success is False
        assert result.error_code == "conflict"
        assert "Cannot downgrade" in result.error
        assert billing.called("update_subscription_price") == []

    async def test_change_without_subscription(self, service, landlord):
        result = await service.change_subscription_tier(landlord.id, "PREMIUM")
        assert result.error_code == "not_found"

    async def test_cancel_immediately(self, service, database, billing, landlord):
        await service.start_free_trial(landlord.id, "BASIC")

        result = await service.cancel_subscription(landlord.id, immediately=True)

        assert result.success is True
        record = _record(database, landlord)
        assert record.status == SubscriptionStatus.CANCELED
        assert record.trial_ends_at is None
        assert record.trial_used is True
        assert billing.called("cancel_subscription") == [("sub_1", True)]

    async def test_cancel_at_period_end_keeps_status(self, service, database, landlord):
        await service.start_free_trial(landlord.id, "BASIC")

        result = await service.cancel_subscription(landlord.id)

        assert result.message == "Subscription will cancel at the end of the billing period"
        record = _record(database, landlord)
        assert record.status == SubscriptionStatus.TRIAL
        assert record.cancel_at_period_end is True

    async def test_reactivate_falls_back_to_active(self, service, database, billing, landlord):
        await service.start_free_trial(landlord.id, "BASIC")
        await service.cancel_subscription(landlord.id)
        billing.fail_on.add("get_subscription")

        result = await service.reactivate_subscription(landlord.id)

        assert result.success is True
        record = _record(database, landlord)
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.cancel_at_period_end is False

    async def test_reactivate_provider_failure(self, service, billing, landlord):
        await service.start_free_trial(landlord.id, "BASIC")
        billing.fail_on.add("reactivate_subscription")
        result = await service.reactivate_subscription(landlord.id)
        assert result.success is False
        assert result.error_code == "provider"

    async def test_billing_portal(self, service, landlord, monkeypatch):
        monkeypatch.setenv("FRONTEND_URL", "https://app.example.com")
        await service.start_free_trial(landlord.id, "BASIC")

        result = await service.get_billing_portal_url(landlord.id)

        assert result.success is True
        assert "return=https://app.example.com/dashboard/settings/subscription" in result.data["url"]

    async def test_billing_portal_without_customer(self, service, landlord):
        result = await service.get_billing_portal_url(landlord.id)
        assert result.error == "No billing account found"


# ---------------------------------------------------------------------------
# Webhook-driven updates
# ---------------------------------------------------------------------------

class TestWebhookUpdates:

    async def test_subscription_snapshot_applies_drift(self, service, database, billing, landlord, make_snapshot):
        await service.start_free_trial(landlord.id, "BASIC")

        changed = await service.apply_subscription_snapshot(
            make_snapshot(id="sub_1", status="past_due", cancel_at_period_end=True)
        )

        assert changed is True
        record = _record(database, landlord)
        assert record.status == SubscriptionStatus.PAST_DUE
        assert record.cancel_at_period_end is True

    async def test_subscription_snapshot_with_millisecond_timestamps(
        self, service, database, landlord, make_snapshot
    ):
        await service.start_free_trial(landlord.id, "BASIC")
        now_ms = int(time.time()) * 1000

        changed = await service.apply_subscription_snapshot(
            make_snapshot(id="sub_1", status="active", current_period_end=now_ms, trial_end=now_ms)
        )

        assert changed is True
        record = _record(database, landlord)
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.current_period_end is None
        assert record.trial_ends_at is None

    async def test_subscription_snapshot_for_unknown_customer(self, service, make_snapshot):
        assert await service.apply_subscription_snapshot(make_snapshot(customer_id="cus_unknown")) is False

    async def test_subscription_snapshot_records_new_subscription_id(self, service, database, landlord, make_snapshot):
        record = _record(database, landlord)
        database.update_subscription_record(record.id, {"stripe_customer_id": "cus_test"})

        await service.apply_subscription_snapshot(make_snapshot(id="sub_new", status="active"))

        record = _record(database, landlord)
        assert record.stripe_subscription_id == "sub_new"
        assert record.status == SubscriptionStatus.ACTIVE

    async def test_deleted_subscription(self, service, database, landlord, make_snapshot):
        await service.start_free_trial(landlord.id, "BASIC")
        await service.mark_subscription_deleted(make_snapshot(id="sub_1", status="canceled"))
        record = _record(database, landlord)
        assert record.status == SubscriptionStatus.CANCELED
        assert record.trial_ends_at is None

    async def test_first_paid_invoice_converts_trial(self, service, database, landlord):
        await service.start_free_trial(landlord.id, "BASIC")
        invoice = ProviderInvoice(
            id="in_1", status="paid", amount_paid=2900, total=2900, billing_reason="subscription_cycle"
        )

        converted = await service.apply_invoice_paid("cus_test", invoice)

        assert converted is True
        record = _record(database, landlord)
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.trial_ends_at is None
        titles = [n.title for n in database.list_notifications(landlord.id)]
        assert titles == ["First payment received - Welcome!"]

    async def test_zero_invoice_does_not_convert(self, service, database, landlord):
        await service.start_free_trial(landlord.id, "BASIC")
        invoice = ProviderInvoice(id="in_0", status="paid", amount_paid=0, billing_reason="subscription_create")
        assert await service.apply_invoice_paid("cus_test", invoice) is False
        assert _record(database, landlord).status == SubscriptionStatus.TRIAL

    async def test_payment_failed_marks_past_due(self, service, database, landlord):
        await service.start_free_trial(landlord.id, "BASIC")
        await service.apply_invoice_payment_failed("cus_test", ProviderInvoice(id="in_2", status="open"))
        assert _record(database, landlord).status == SubscriptionStatus.PAST_DUE
        titles = [n.title for n in database.list_notifications(landlord.id)]
        assert titles == ["Subscription Payment Failed"]

    async def test_trial_will_end_notification(self, service, database, landlord, make_snapshot):
        await service.start_free_trial(landlord.id, "BASIC")
        snapshot = make_snapshot(id="sub_1", status="trialing", trial_end=int(time.time()) + 3 * DAY - 60)

        assert await service.notify_trial_will_end(snapshot) is True

        titles = [n.title for n in database.list_notifications(landlord.id)]
        assert titles == ["Trial ending in 3 days"]

    async def test_trial_will_end_with_bad_timestamp(self, service, database, landlord, make_snapshot):
        await service.start_free_trial(landlord.id, "BASIC")
        snapshot = make_snapshot(id="sub_1", status="trialing", trial_end=5)
        assert await service.notify_trial_will_end(snapshot) is False
        assert database.list_notifications(landlord.id) == []
