from pydantic import BaseModel, Field
from typing import Optional, Any
from datetime import datetime, timezone
from enum import Enum
import uuid


class UserRole(str, Enum):
    ADMIN = "admin"
    LANDLORD = "landlord"
    TENANT = "tenant"
    VENDOR = "vendor"


class SubscriptionTier(str, Enum):
    # Ordered by increasing entitlement
    BASIC = "BASIC"
    PROFESSIONAL = "PROFESSIONAL"
    PREMIUM = "PREMIUM"
    ENTERPRISE = "ENTERPRISE"


class SubscriptionStatus(str, Enum):
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    INACTIVE = "INACTIVE"
    PAUSED = "PAUSED"


class ProviderStatus(str, Enum):
    """Subscription statuses as reported by Stripe."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"
    UNPAID = "unpaid"


class ActivityType(str, Enum):
    SUBSCRIPTION_CHANGED = "subscription_changed"
    PAYMENT_MADE = "payment_made"


class NotificationType(str, Enum):
    SYSTEM = "system"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"


def gen_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    id: str = Field(default_factory=gen_id)
    email: str
    name: str
    role: UserRole
    created_at: datetime = Field(default_factory=utcnow)


class SubscriptionRecord(BaseModel):
    """Billing state of a landlord account, mirrored from Stripe."""
    id: str = Field(default_factory=gen_id)
    owner_id: str  # User id of the landlord
    tier: SubscriptionTier = SubscriptionTier.BASIC
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    property_limit: int = 5
    trial_ends_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    trial_used: bool = False
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ProviderInvoice(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None  # draft / open / paid / uncollectible / void
    amount_paid: int = 0  # Smallest currency unit (cents)
    total: int = 0
    billing_reason: Optional[str] = None


class ProviderSubscriptionSnapshot(BaseModel):
    """Read-only view of a Stripe subscription."""
    id: str
    customer_id: Optional[str] = None
    status: str
    trial_end: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    latest_invoice: Optional[ProviderInvoice] = None
    price_id: Optional[str] = None


class ProviderCustomer(BaseModel):
    id: str
    email: Optional[str] = None


class Property(BaseModel):
    id: str = Field(default_factory=gen_id)
    landlord_id: str
    address: str
    name: str
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class ActivityLog(BaseModel):
    id: str = Field(default_factory=gen_id)
    user_id: str
    type: ActivityType
    action: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    id: str = Field(default_factory=gen_id)
    user_id: str
    type: NotificationType = NotificationType.SYSTEM
    title: str
    message: str
    action_url: Optional[str] = None
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class SubscriptionResult(BaseModel):
    success: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


class TierRequest(BaseModel):
    tier: SubscriptionTier


class CancelRequest(BaseModel):
    immediately: bool = False


class TokenData(BaseModel):
    user_id: str
    email: str
    role: UserRole
