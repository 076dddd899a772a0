"""Owner actions that cascade into reservations."""
import logging

from fastapi import APIRouter, Body, HTTPException, Request, status

from app.api.deps import CurrentUserDep, EngineDep
from app.core.audit import AuditAction, audit_owner_cascade
from app.core.errors import ReservationError, http_error
from app.schemas.reservation import CascadeResult, PurchaseRequest, PurchaseResultPublic, ReservationPublic

logger = logging.getLogger("giftregistry.api.gifts")

router = APIRouter(tags=["gifts"])


@router.delete("/gift-items/{gift_item_id}", response_model=CascadeResult)
async def delete_gift_item(
    gift_item_id: int,
    request: Request,
    engine: EngineDep,
    current_user: CurrentUserDep,
) -> CascadeResult:
    try:
        notices = await engine.on_item_deleted(gift_item_id, owner_id=current_user.id)
    except ReservationError as exc:
        raise http_error(exc) from exc

    audit_owner_cascade(AuditAction.GIFT_DELETE, request, current_user.id, gift_item_id, len(notices))
    return CascadeResult(affected_reservations=len(notices))


@router.post("/gift-items/{gift_item_id}/purchase", response_model=PurchaseResultPublic)
async def mark_gift_purchased(
    gift_item_id: int,
    request: Request,
    engine: EngineDep,
    current_user: CurrentUserDep,
    payload: PurchaseRequest | None = Body(default=None),
) -> PurchaseResultPublic:
    price = payload.purchased_price if payload else None
    try:
        result = await engine.on_item_purchased(
            gift_item_id,
            current_user.id,
            price,
            owner_id=current_user.id,
        )
    except ReservationError as exc:
        raise http_error(exc) from exc

    audit_owner_cascade(
        AuditAction.GIFT_PURCHASE,
        request,
        current_user.id,
        gift_item_id,
        1 if result.reservation else 0,
    )
    reservation = None
    if result.reservation is not None:
        reservation = ReservationPublic.model_validate(result.reservation).model_copy(
            update={"guest_name": None, "reservation_token": None}
        )
    return PurchaseResultPublic(
        gift_item_id=result.item.id,
        purchased_at=result.item.purchased_at,
        reservation=reservation,
        notified=result.notified,
    )


@router.delete("/wishlists/{wishlist_id}", response_model=CascadeResult)
async def delete_wishlist(
    wishlist_id: int,
    request: Request,
    engine: EngineDep,
    current_user: CurrentUserDep,
    confirm: bool = False,
) -> CascadeResult:
    """
    Delete a wish list with all of its gifts.

    If any gift is still reserved the caller must repeat the request with
    confirm=true; the reservers are then notified that their gift is gone.
    """
    try:
        if not confirm:
            wishlist = await engine.catalog.get_wishlist(wishlist_id)
            if wishlist.owner_id != current_user.id:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only owner can delete wishlist")
            active = await engine.active_reservation_count(wishlist_id)
            if active:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=f"Wishlist has {active} active reservations; repeat with confirm=true to delete it",
                )
        notices = await engine.on_wishlist_deleted(wishlist_id, owner_id=current_user.id)
    except ReservationError as exc:
        raise http_error(exc) from exc

    audit_owner_cascade(AuditAction.WISHLIST_DELETE, request, current_user.id, wishlist_id, len(notices))
    return CascadeResult(affected_reservations=len(notices))
