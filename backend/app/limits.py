"""
Subscription plan catalog and property limits.
These constants define what a landlord can do at each subscription tier.
"""
import os

from app.errors import ProviderError
from app.models import SubscriptionTier

# ==================== TRIAL ====================
TRIAL_DAYS = 14

# Tiers a landlord can pick without talking to sales
SELF_SERVE_TIERS = (
    SubscriptionTier.BASIC,
    SubscriptionTier.PROFESSIONAL,
    SubscriptionTier.PREMIUM,
)

# ==================== PLANS ====================
# Price ids are read from the environment at call time:
# STRIPE_<TIER>_PRICE_ID = monthly recurring price for the tier
SUBSCRIPTION_PLANS = {
    SubscriptionTier.BASIC: {
        "name": "Basic",
        "price": 29,
        "property_limit": 5,
        "features": [
            "Up to 5 properties",
            "Unlimited tenants",
            "Online rent collection",
            "Maintenance tracking",
            "Basic reporting",
        ],
    },
    SubscriptionTier.PROFESSIONAL: {
        "name": "Professional",
        "price": 49,
        "property_limit": 10,
        "features": [
            "Up to 10 properties",
            "Everything in Basic",
            "Automated rent reminders",
            "Advanced reporting",
            "Document storage",
            "Priority support",
        ],
    },
    SubscriptionTier.PREMIUM: {
        "name": "Premium",
        "price": 79,
        "property_limit": 20,
        "features": [
            "Up to 20 properties",
            "Everything in Professional",
            "Multi-property analytics",
            "Custom lease templates",
            "API access",
            "Dedicated support",
        ],
    },
    SubscriptionTier.ENTERPRISE: {
        "name": "Enterprise",
        "price": None,  # Negotiated
        "property_limit": 999,
        "features": [
            "Unlimited properties",
            "Everything in Premium",
            "Account manager",
        ],
    },
}


def get_tier_property_limit(tier: SubscriptionTier) -> int:
    """Property entitlement for a tier. The only place property_limit comes from."""
    return SUBSCRIPTION_PLANS[SubscriptionTier(tier)]["property_limit"]


def get_price_id(tier: SubscriptionTier) -> str:
    """Resolve a tier to its Stripe price id, raising if it is not configured."""
    tier = SubscriptionTier(tier)
    price_id = os.getenv(f"STRIPE_{tier.value}_PRICE_ID", "")
    if not price_id:
        raise ProviderError(
            "This plan is not available right now. Please contact support.",
            detail=f"STRIPE_{tier.value}_PRICE_ID not set",
        )
    return price_id


def get_plan(tier: SubscriptionTier) -> dict:
    tier = SubscriptionTier(tier)
    plan = SUBSCRIPTION_PLANS[tier]
    return {
        "tier": tier.value,
        "name": plan["name"],
        "price": plan["price"],
        "property_limit": plan["property_limit"],
        "features": list(plan["features"]),
        "self_serve": tier in SELF_SERVE_TIERS,
    }


def list_plans() -> list[dict]:
    return [get_plan(tier) for tier in SubscriptionTier]


def check_can_add_property(property_limit: int, current_property_count: int) -> tuple[bool, str]:
    """Check if a landlord can add another property."""
    if current_property_count >= property_limit:
        return False, f"Your plan allows {property_limit} properties. Upgrade to add more."
    return True, ""
