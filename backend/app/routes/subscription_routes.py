"""Landlord subscription routes."""
from typing import Optional
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.auth import require_landlord
from app.errors import HTTP_STATUS_BY_CODE
from app.limits import list_plans
from app.models import TokenData, TierRequest, CancelRequest, SubscriptionResult
from app.subscription_service import SubscriptionService, get_subscription_service

router = APIRouter(prefix="/subscription", tags=["subscription"])


def _respond(result: SubscriptionResult):
    if result.success:
        return result.model_dump(exclude_none=True)
    status_code = HTTP_STATUS_BY_CODE.get(result.error_code, 500)
    return JSONResponse(status_code=status_code, content=result.model_dump(exclude_none=True))


@router.get("/plans")
async def get_plans():
    return {"plans": list_plans()}


@router.get("")
async def get_current_subscription(
    current_user: TokenData = Depends(require_landlord),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return _respond(await service.get_current_subscription(current_user.user_id))


@router.post("/trial")
async def start_trial(
    data: TierRequest,
    current_user: TokenData = Depends(require_landlord),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return _respond(await service.start_free_trial(current_user.user_id, data.tier))


@router.post("/sync")
async def sync_subscription(
    current_user: TokenData = Depends(require_landlord),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return _respond(await service.sync_subscription_status(current_user.user_id))


@router.post("/change-tier")
async def change_tier(
    data: TierRequest,
    current_user: TokenData = Depends(require_landlord),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return _respond(await service.change_subscription_tier(current_user.user_id, data.tier))


@router.post("/cancel")
async def cancel_subscription(
    data: CancelRequest,
    current_user: TokenData = Depends(require_landlord),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return _respond(await service.cancel_subscription(current_user.user_id, immediately=data.immediately))


@router.post("/reactivate")
async def reactivate_subscription(
    current_user: TokenData = Depends(require_landlord),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return _respond(await service.reactivate_subscription(current_user.user_id))


@router.get("/portal")
async def billing_portal(
    return_url: Optional[str] = None,
    current_user: TokenData = Depends(require_landlord),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return _respond(await service.get_billing_portal_url(current_user.user_id, return_url))


@router.get("/can-add-property")
async def can_add_property(
    current_user: TokenData = Depends(require_landlord),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return _respond(await service.can_add_property(current_user.user_id))
