"""
Subscription status reconciliation between our database and Stripe.

Stripe owns the subscription lifecycle. These helpers turn a subscription
snapshot into our own status vocabulary and decide whether the stored
SubscriptionRecord has drifted from it. All of them are pure: no database,
no network, and they never raise on odd snapshot data.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from app.models import (
    ProviderStatus, ProviderSubscriptionSnapshot, SubscriptionRecord, SubscriptionStatus,
)

logger = logging.getLogger(__name__)

# 2000-01-01T00:00:00Z. Anything earlier is not a real billing timestamp.
EPOCH_FLOOR = 946684800

# Allowed difference between stored and remote period end before we rewrite it
PERIOD_END_TOLERANCE_SECONDS = 60

# Stripe "paid" invoice status. The status field is the authoritative signal;
# the legacy boolean `paid` attribute is not consulted.
INVOICE_PAID = "paid"

# Status used for provider values we do not recognise
UNKNOWN_STATUS_FALLBACK = SubscriptionStatus.ACTIVE

# Applied only after trial detection has run, so TRIALING here means
# "nominally trialing but already converted to paid".
STATUS_MAP: dict[ProviderStatus, SubscriptionStatus] = {
    ProviderStatus.TRIALING: SubscriptionStatus.ACTIVE,
    ProviderStatus.ACTIVE: SubscriptionStatus.ACTIVE,
    ProviderStatus.PAST_DUE: SubscriptionStatus.PAST_DUE,
    ProviderStatus.CANCELED: SubscriptionStatus.CANCELED,
    ProviderStatus.INCOMPLETE: SubscriptionStatus.INACTIVE,
    ProviderStatus.INCOMPLETE_EXPIRED: SubscriptionStatus.CANCELED,
    ProviderStatus.PAUSED: SubscriptionStatus.PAUSED,
    ProviderStatus.UNPAID: SubscriptionStatus.PAST_DUE,
}


@dataclass
class ReconcileResult:
    updated: bool
    next: SubscriptionRecord
    changes: dict = field(default_factory=dict)


def coerce_timestamp(raw_seconds: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe unix timestamp to an aware UTC datetime.

    None and 0 mean "not set". Values before 2000-01-01, or too large for a
    datetime (e.g. milliseconds), are logged and dropped instead of raising.
    """
    if not raw_seconds:
        return None
    try:
        seconds = int(raw_seconds)
    except (TypeError, ValueError, OverflowError):
        logger.warning(f"[Subscription] Invalid timestamp detected: {raw_seconds!r}")
        return None
    if seconds < EPOCH_FLOOR:
        logger.warning(f"[Subscription] Invalid timestamp detected: {seconds}")
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.warning(f"[Subscription] Invalid timestamp detected: {seconds}")
        return None


def is_actually_in_trial(snapshot: ProviderSubscriptionSnapshot, now: Optional[float] = None) -> bool:
    """True only while the subscription is trialing and nothing has been charged yet.

    Stripe keeps reporting "trialing" for the whole trial window, even when an
    invoice has already collected money. A paid invoice with a positive amount
    means the trial converted.
    """
    if snapshot.status != ProviderStatus.TRIALING.value:
        return False

    now = time.time() if now is None else now
    if not snapshot.trial_end or snapshot.trial_end <= now:
        return False

    invoice = snapshot.latest_invoice
    if invoice is None:
        return True

    if invoice.status == INVOICE_PAID and (invoice.amount_paid or 0) > 0:
        return False

    # $0 invoices are issued when the trial starts and do not mean conversion
    if (invoice.amount_paid or 0) == 0 or (invoice.total or 0) == 0:
        return True

    return True


def map_status(snapshot: ProviderSubscriptionSnapshot, now: Optional[float] = None) -> SubscriptionStatus:
    """Translate a Stripe subscription into our SubscriptionStatus."""
    if is_actually_in_trial(snapshot, now=now):
        return SubscriptionStatus.TRIAL

    try:
        provider_status = ProviderStatus(snapshot.status)
    except ValueError:
        logger.warning(
            f"[Subscription] Unknown Stripe status '{snapshot.status}' for {snapshot.id}, "
            f"falling back to {UNKNOWN_STATUS_FALLBACK.value}"
        )
        return UNKNOWN_STATUS_FALLBACK
    return STATUS_MAP[provider_status]


def is_trial_conversion(previous: SubscriptionStatus, current: SubscriptionStatus) -> bool:
    return previous == SubscriptionStatus.TRIAL and current == SubscriptionStatus.ACTIVE


def _period_end_drifted(remote: Optional[datetime], local: Optional[datetime]) -> bool:
    if remote is None:
        return local is not None
    if local is None:
        return False
    if local.tzinfo is None:
        local = local.replace(tzinfo=timezone.utc)
    return abs((remote - local).total_seconds()) > PERIOD_END_TOLERANCE_SECONDS


def reconcile(
    local: SubscriptionRecord,
    snapshot: ProviderSubscriptionSnapshot,
    now: Optional[float] = None,
) -> ReconcileResult:
    """Compare a stored record with a fresh Stripe snapshot.

    Only status, trial_ends_at and current_period_end are ever rewritten.
    Tier, trial_used and the Stripe identifiers are left alone.
    """
    is_trialing = is_actually_in_trial(snapshot, now=now)
    correct_status = map_status(snapshot, now=now)
    current_period_end = coerce_timestamp(snapshot.current_period_end)
    trial_end = coerce_timestamp(snapshot.trial_end)

    needs_sync = (
        local.status != correct_status
        or (is_trialing and local.trial_ends_at is None)
        or _period_end_drifted(current_period_end, local.current_period_end)
    )
    if not needs_sync:
        return ReconcileResult(updated=False, next=local)

    changes = {
        "status": correct_status,
        "trial_ends_at": trial_end if is_trialing else None,
        "current_period_end": current_period_end,
    }
    return ReconcileResult(updated=True, next=local.model_copy(update=changes), changes=changes)
