from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from opsflow.api.deps import as_http_error, get_claim_coordinator, get_offer_service
from opsflow.core.security import get_current_user, require_role
from opsflow.domain.errors import DomainError
from opsflow.services.offer_broadcast import OfferBroadcastService
from opsflow.services.offer_claim import OfferClaimCoordinator

router = APIRouter(prefix="/offers", tags=["offers"])


class BroadcastRequest(BaseModel):
    request_id: str
    ttl_minutes: int | None = Field(default=None, description="defaults to OFFER_DEFAULT_TTL_MINUTES")
    eligible_user_ids: list[str] | None = Field(
        default=None, description="omitted: active profiles in OFFER_ELIGIBLE_ROLES"
    )


@router.post("", status_code=201)
async def broadcast_offer(
    req: BroadcastRequest,
    user: dict = Depends(require_role()),
    service: OfferBroadcastService = Depends(get_offer_service),
):
    try:
        result = await service.broadcast(
            req.request_id,
            eligible_user_ids=req.eligible_user_ids,
            ttl_minutes=req.ttl_minutes,
            actor_id=user["user_id"],
            tenant_id=user["tenant_id"],
        )
    except DomainError as e:
        raise as_http_error(e)
    return {"success": True, "data": result.to_dict()}


@router.get("/mine")
async def my_open_offers(
    user: dict = Depends(get_current_user),
    service: OfferBroadcastService = Depends(get_offer_service),
):
    offers = await service.list_open_offers_for_user(user["user_id"])
    return {"success": True, "data": [o.to_dict() for o in offers]}


@router.post("/requests/{request_id}/accept")
async def accept_offer(
    request_id: str,
    user: dict = Depends(get_current_user),
    coordinator: OfferClaimCoordinator = Depends(get_claim_coordinator),
):
    """A lost race is a normal 200 response with won=false and a reason."""
    try:
        result = await coordinator.accept_for_request(request_id, user["user_id"])
    except DomainError as e:
        raise as_http_error(e)
    return {"success": True, "data": result.to_dict()}


@router.post("/requests/{request_id}/decline")
async def decline_offer(
    request_id: str,
    user: dict = Depends(get_current_user),
    coordinator: OfferClaimCoordinator = Depends(get_claim_coordinator),
):
    try:
        declined = await coordinator.decline_for_request(request_id, user["user_id"])
    except DomainError as e:
        raise as_http_error(e)
    return {"success": True, "data": {"request_id": request_id, "declined": declined}}


@router.post("/{offer_id}/cancel")
async def cancel_offer(
    offer_id: str,
    user: dict = Depends(require_role()),
    service: OfferBroadcastService = Depends(get_offer_service),
):
    try:
        cancelled = await service.cancel(offer_id, actor_id=user["user_id"], tenant_id=user["tenant_id"])
    except DomainError as e:
        raise as_http_error(e)
    return {"success": True, "data": {"offer_id": offer_id, "cancelled": cancelled}}
