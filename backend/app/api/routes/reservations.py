import logging

from fastapi import APIRouter, Body, Request, status

from app.api.deps import CurrentUserDep, EngineDep, OptionalUserDep
from app.core.audit import AuditAction, audit_log, audit_reservation_action
from app.core.config import settings
from app.core.errors import ReservationError, http_error
from app.core.rate_limit import check_rate_limit
from app.core.reservation_engine import GuestActor, ReservationIdRef, TokenRef, UserActor
from app.core.reservation_store import ReservationRecord
from app.schemas.reservation import (
    GuestCancelRequest,
    GuestReservationCreate,
    LinkGuestResult,
    Pagination,
    ReservationDetailPublic,
    ReservationPage,
    ReservationPublic,
    ReservationStatusPublic,
)

logger = logging.getLogger("giftregistry.api.reservations")

router = APIRouter(prefix="/reservations", tags=["reservations"])


def _public(record: ReservationRecord, *, include_guest: bool = True) -> ReservationPublic:
    data = ReservationPublic.model_validate(record)
    if include_guest:
        return data
    return data.model_copy(update={"guest_name": None, "reservation_token": None})


def _clamp(limit: int, offset: int) -> tuple[int, int]:
    return min(max(1, limit), 100), max(0, offset)


@router.post("/items/{gift_item_id}", response_model=ReservationPublic, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    gift_item_id: int,
    request: Request,
    engine: EngineDep,
    current_user: OptionalUserDep,
    payload: GuestReservationCreate | None = Body(default=None),
) -> ReservationPublic:
    """
    Reserve a gift item.

    Authenticated callers reserve as themselves. Anonymous callers must send
    guest_name and guest_email and get back the reservation_token that
    later lets them view or cancel the reservation.
    """
    if current_user is not None:
        actor = UserActor(current_user.id)
    else:
        check_rate_limit(
            request,
            max_requests=settings.guest_rate_limit_requests,
            key_suffix=f"guest-reserve:{gift_item_id}",
        )
        payload = payload or GuestReservationCreate()
        actor = GuestActor(name=payload.guest_name, email=payload.guest_email)

    try:
        record = await engine.reserve(gift_item_id, actor)
    except ReservationError as exc:
        raise http_error(exc) from exc

    audit_reservation_action(
        AuditAction.RESERVATION_CREATE,
        request,
        current_user.id if current_user else None,
        record.id,
        record.gift_item_id,
        details={"reserver_kind": record.reserver_kind.value},
    )
    return _public(record)


@router.delete("/{reservation_id}", response_model=ReservationPublic)
async def cancel_reservation(
    reservation_id: int,
    request: Request,
    engine: EngineDep,
    current_user: CurrentUserDep,
) -> ReservationPublic:
    try:
        record = await engine.cancel(ReservationIdRef(reservation_id), UserActor(current_user.id))
    except ReservationError as exc:
        raise http_error(exc) from exc

    audit_reservation_action(
        AuditAction.RESERVATION_CANCEL,
        request,
        current_user.id,
        record.id,
        record.gift_item_id,
        details={"reason": record.cancel_reason},
    )
    return _public(record, include_guest=record.reserved_by_user_id == current_user.id)


@router.post("/cancel", response_model=ReservationPublic)
async def cancel_guest_reservation(
    request: Request,
    engine: EngineDep,
    current_user: OptionalUserDep,
    payload: GuestCancelRequest | None = Body(default=None),
) -> ReservationPublic:
    check_rate_limit(request, max_requests=settings.guest_rate_limit_requests, key_suffix="guest-cancel")
    token = payload.reservation_token if payload else None
    actor = UserActor(current_user.id) if current_user else GuestActor()
    try:
        record = await engine.cancel(TokenRef(token), actor)
    except ReservationError as exc:
        raise http_error(exc) from exc

    audit_reservation_action(
        AuditAction.RESERVATION_CANCEL,
        request,
        current_user.id if current_user else None,
        record.id,
        record.gift_item_id,
        details={"reason": record.cancel_reason, "reservation_token": token},
    )
    return _public(record)


@router.delete("/items/{gift_item_id}", response_model=ReservationPublic)
async def cancel_my_reservation_for_item(
    gift_item_id: int,
    request: Request,
    engine: EngineDep,
    current_user: CurrentUserDep,
) -> ReservationPublic:
    try:
        record = await engine.cancel_for_item(gift_item_id, current_user.id)
    except ReservationError as exc:
        raise http_error(exc) from exc

    audit_reservation_action(
        AuditAction.RESERVATION_CANCEL,
        request,
        current_user.id,
        record.id,
        record.gift_item_id,
        details={"reason": record.cancel_reason},
    )
    return _public(record)


@router.get("/me", response_model=ReservationPage)
async def list_my_reservations(
    engine: EngineDep,
    current_user: CurrentUserDep,
    limit: int = 20,
    offset: int = 0,
) -> ReservationPage:
    """
    Reservations made by the current user, newest first.

    Query params:
      limit  – max items to return (default 20, max 100)
      offset – skip first N reservations
    """
    limit, offset = _clamp(limit, offset)
    try:
        items, total = await engine.list_for_user(current_user.id, limit, offset)
    except ReservationError as exc:
        raise http_error(exc) from exc
    return ReservationPage(
        items=[ReservationDetailPublic.model_validate(item) for item in items],
        pagination=Pagination(total=total, limit=limit, offset=offset),
    )


@router.get("/guest", response_model=list[ReservationDetailPublic])
async def list_guest_reservations(engine: EngineDep, token: str | None = None) -> list[ReservationDetailPublic]:
    try:
        items = await engine.list_for_guest(token)
    except ReservationError as exc:
        raise http_error(exc) from exc
    return [ReservationDetailPublic.model_validate(item) for item in items]


@router.get("/owner", response_model=ReservationPage)
async def list_reservations_on_my_gifts(
    engine: EngineDep,
    current_user: CurrentUserDep,
    limit: int = 20,
    offset: int = 0,
) -> ReservationPage:
    limit, offset = _clamp(limit, offset)
    try:
        items, total = await engine.list_for_owner(current_user.id, limit, offset)
    except ReservationError as exc:
        raise http_error(exc) from exc
    return ReservationPage(
        items=[ReservationDetailPublic.model_validate(item) for item in items],
        pagination=Pagination(total=total, limit=limit, offset=offset),
    )


@router.get("/items/{gift_item_id}/status", response_model=ReservationStatusPublic)
async def get_reservation_status(gift_item_id: int, engine: EngineDep) -> ReservationStatusPublic:
    try:
        view = await engine.reservation_status(gift_item_id)
    except ReservationError as exc:
        raise http_error(exc) from exc
    return ReservationStatusPublic.model_validate(view)


@router.post("/link-guest", response_model=LinkGuestResult)
async def link_guest_reservations(
    request: Request,
    engine: EngineDep,
    current_user: CurrentUserDep,
) -> LinkGuestResult:
    try:
        linked = await engine.link_guest_reservations(current_user.id)
    except ReservationError as exc:
        raise http_error(exc) from exc
    if linked:
        audit_log(AuditAction.RESERVATION_LINK, request=request, user_id=current_user.id, details={"linked": linked})
    return LinkGuestResult(linked=linked)
