"""
Reservation business rules and the cascades triggered by owner actions.

Owner actions run in two phases. collect_* mutates inside the request's
transaction and returns the notices to send; notify_* runs only after the
commit, and its failures are logged and swallowed so a mail outage never
undoes a deletion or a purchase.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Awaitable, Callable, Union
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.catalog import GiftItemCatalog, GiftItemInfo, UserDirectory
from app.core.config import settings
from app.core.errors import BadRequestError, ConflictError, ForbiddenError, InternalError, NotFoundError
from app.core.notifications import ReservationNotice, ReservationNotifier
from app.core.pii import PiiCipher
from app.core.reservation_store import ReservationDetail, ReservationRecord, ReservationStore
from app.models.models import ReservationStatus, ReserverKind, utcnow

logger = logging.getLogger("giftregistry.reservations")

GUEST_CANCEL_REASON = "Guest cancelled reservation"
USER_CANCEL_REASON = "User cancelled reservation"
OWNER_CANCEL_REASON = "Owner cancelled reservation"


@dataclass(frozen=True)
class UserActor:
    user_id: int


@dataclass(frozen=True)
class GuestActor:
    name: str | None = None
    email: str | None = None


Actor = Union[UserActor, GuestActor]


@dataclass(frozen=True)
class ReservationIdRef:
    reservation_id: int


@dataclass(frozen=True)
class TokenRef:
    token: str | None


ReservationRef = Union[ReservationIdRef, TokenRef]


@dataclass(frozen=True)
class ReservationStatusView:
    gift_item_id: int
    is_reserved: bool
    is_purchased: bool
    status: str | None = None
    reserved_at: datetime | None = None
    reserver_name: str | None = None


@dataclass(frozen=True)
class PurchaseResult:
    item: GiftItemInfo
    reservation: ReservationRecord | None
    notified: bool = False


def validate_token(token: str | None) -> str:
    if not token or not token.strip():
        raise BadRequestError("A reservation token is required")
    try:
        return str(UUID(token.strip()))
    except ValueError:
        raise BadRequestError("Invalid reservation token") from None


class ReservationEngine:
    def __init__(
        self,
        db: AsyncSession,
        cipher: PiiCipher,
        notifier: ReservationNotifier,
        *,
        store: ReservationStore | None = None,
        catalog: GiftItemCatalog | None = None,
        users: UserDirectory | None = None,
        guest_ttl: timedelta | None = None,
    ) -> None:
        self.db = db
        self.notifier = notifier
        self.store = store or ReservationStore(db, cipher)
        self.catalog = catalog or GiftItemCatalog(db)
        self.users = users or UserDirectory(db)
        self.guest_ttl = guest_ttl or timedelta(days=settings.guest_reservation_ttl_days)

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception("Commit failed")
            raise InternalError() from exc

    # -- reserve / cancel -------------------------------------------------

    async def reserve(self, gift_item_id: int, actor: Actor) -> ReservationRecord:
        if isinstance(actor, GuestActor):
            guest_name = (actor.name or "").strip()
            guest_email = (actor.email or "").strip()
            if not guest_name or not guest_email:
                raise BadRequestError("Guest name and email are required")

        item = await self.catalog.get_item(gift_item_id)
        if item.is_purchased:
            raise ConflictError("This gift has already been purchased")

        if isinstance(actor, UserActor):
            if item.owner_id == actor.user_id:
                raise BadRequestError("You cannot reserve a gift from your own wish list")
            row = self.store.new_user_reservation(
                wishlist_id=item.wishlist_id,
                gift_item_id=item.id,
                user_id=actor.user_id,
            )
        else:
            row = self.store.new_guest_reservation(
                wishlist_id=item.wishlist_id,
                gift_item_id=item.id,
                guest_name=guest_name,
                guest_email=guest_email,
                token=str(uuid4()),
                expires_at=utcnow() + self.guest_ttl,
            )

        try:
            record = await self.store.reserve_if_available(gift_item_id, row)
        except ConflictError:
            logger.info("Reservation conflict gift_item_id=%s kind=%s", gift_item_id, _actor_kind(actor).value)
            raise
        logger.info(
            "Reservation created id=%s gift_item_id=%s kind=%s",
            record.id,
            record.gift_item_id,
            record.reserver_kind.value,
        )
        return record

    async def cancel(self, identifier: ReservationRef, actor: Actor) -> ReservationRecord:
        """
        Cancel an active reservation.

        A token authorizes on its own. An id requires the reserving user or
        the owner of the wish list; an owner cancelling someone else's
        reservation notifies the reserver. Cancelling a reservation that is
        already terminal returns it unchanged.
        """
        owner_cancel = False
        if isinstance(identifier, TokenRef):
            token = validate_token(identifier.token)
            record = await self.store.get_by_token(token)
            ref: int | str = token
            reason = GUEST_CANCEL_REASON
        else:
            if not isinstance(actor, UserActor):
                raise BadRequestError("A reservation token is required")
            record = await self.store.get_by_id(identifier.reservation_id)
            ref = record.id
            if record.reserved_by_user_id == actor.user_id:
                reason = USER_CANCEL_REASON
            else:
                item = await self.catalog.get_item(record.gift_item_id)
                if item.owner_id != actor.user_id:
                    raise ForbiddenError()
                reason = OWNER_CANCEL_REASON
                owner_cancel = True

        updated, changed = await self.store.update_status(
            ref,
            ReservationStatus.CANCELLED,
            cancelled_at=utcnow(),
            cancel_reason=reason,
        )
        await self._commit()

        if not changed:
            logger.info("Cancel ignored, reservation id=%s already %s", updated.id, updated.status)
            return updated

        logger.info("Reservation cancelled id=%s gift_item_id=%s reason=%r", updated.id, updated.gift_item_id, reason)
        if owner_cancel:
            item = await self.catalog.get_item(updated.gift_item_id)
            notice = await self._notice_for(updated, item)
            if notice is not None:
                await self.notify_cancelled([notice])
        return updated

    async def cancel_for_item(self, gift_item_id: int, user_id: int) -> ReservationRecord:
        record = await self.store.get_active_for_item(gift_item_id)
        if record is None or record.reserved_by_user_id != user_id:
            raise NotFoundError("You have no active reservation on this gift")
        return await self.cancel(ReservationIdRef(record.id), UserActor(user_id))

    async def expire_stale(self, now: datetime | None = None) -> int:
        expired = await self.store.expire_stale(now or utcnow())
        await self._commit()
        if expired:
            logger.info("Expired %d stale guest reservations", expired)
        return expired

    # -- reads ------------------------------------------------------------

    async def reservation_status(self, gift_item_id: int) -> ReservationStatusView:
        item = await self.catalog.get_item(gift_item_id)
        active = await self.store.get_active_for_item(gift_item_id)
        if active is None:
            return ReservationStatusView(gift_item_id=item.id, is_reserved=False, is_purchased=item.is_purchased)

        reserver_name = None
        if active.reserver_kind is ReserverKind.AUTHENTICATED_USER and active.reserved_by_user_id is not None:
            reserver_name = await self.users.get_display_name(active.reserved_by_user_id)
        return ReservationStatusView(
            gift_item_id=item.id,
            is_reserved=True,
            is_purchased=item.is_purchased,
            status=active.status,
            reserved_at=active.reserved_at,
            reserver_name=reserver_name,
        )

    async def list_for_user(self, user_id: int, limit: int = 20, offset: int = 0) -> tuple[list[ReservationDetail], int]:
        items = await self.store.list_for_user(user_id, limit, offset)
        total = await self.store.count_for_user(user_id)
        return items, total

    async def list_for_guest(self, token: str | None) -> list[ReservationDetail]:
        return await self.store.list_for_guest_token(validate_token(token))

    async def list_for_owner(self, owner_id: int, limit: int = 20, offset: int = 0) -> tuple[list[ReservationDetail], int]:
        items = await self.store.list_for_owner(owner_id, limit, offset)
        total = await self.store.count_for_owner(owner_id)
        return items, total

    async def active_reservation_count(self, wishlist_id: int) -> int:
        return await self.store.count_active_for_wishlist(wishlist_id)

    async def link_guest_reservations(self, user_id: int) -> int:
        email = await self.users.get_email_for_user(user_id)
        if not email:
            return 0
        linked = await self.store.link_guest_reservations_to_user(email, user_id)
        await self._commit()
        return linked

    # -- cascades ---------------------------------------------------------

    async def _notice_for(
        self,
        record: ReservationRecord,
        item: GiftItemInfo,
        item_name: str | None = None,
    ) -> ReservationNotice | None:
        if record.reserver_kind is ReserverKind.GUEST:
            email = record.guest_email
        elif record.reserved_by_user_id is not None:
            email = await self.users.get_email_for_user(record.reserved_by_user_id)
        else:
            email = None
        if not email:
            logger.info("No contact for reservation_id=%s gift_item_id=%s", record.id, record.gift_item_id)
            return None
        return ReservationNotice(
            reservation_id=record.id,
            gift_item_id=record.gift_item_id,
            email=email,
            item_name=item_name or item.name,
            list_title=item.wishlist_title,
            guest_name=record.guest_name,
        )

    def _ensure_owner(self, owner_id: int | None, actual_owner_id: int) -> None:
        if owner_id is not None and owner_id != actual_owner_id:
            raise ForbiddenError("Only the wish list owner can do this")

    async def collect_item_deleted(
        self,
        gift_item_id: int,
        item_name: str | None = None,
        *,
        owner_id: int | None = None,
    ) -> list[ReservationNotice]:
        item = await self.catalog.get_item(gift_item_id)
        self._ensure_owner(owner_id, item.owner_id)
        removed = await self.store.delete_for_item_returning_active(gift_item_id)
        await self.catalog.delete_item(gift_item_id)

        notices = []
        for record in removed:
            notice = await self._notice_for(record, item, item_name)
            if notice is not None:
                notices.append(notice)
        return notices

    async def collect_wishlist_deleted(
        self,
        wishlist_id: int,
        items: list[GiftItemInfo] | None = None,
        *,
        owner_id: int | None = None,
    ) -> list[ReservationNotice]:
        wishlist = await self.catalog.get_wishlist(wishlist_id)
        self._ensure_owner(owner_id, wishlist.owner_id)
        if items is None:
            items = await self.catalog.items_for_wishlist(wishlist_id)

        notices = []
        for item in items:
            for record in await self.store.delete_for_item_returning_active(item.id):
                notice = await self._notice_for(record, item)
                if notice is not None:
                    notices.append(notice)
        await self.catalog.delete_wishlist(wishlist_id)
        return notices

    async def _deliver(
        self,
        kind: str,
        notice: ReservationNotice,
        send: Callable[[], Awaitable[None]],
    ) -> bool:
        try:
            await send()
        except Exception as e:
            logger.warning(
                "Failed to send %s notification reservation_id=%s gift_item_id=%s: %s",
                kind,
                notice.reservation_id,
                notice.gift_item_id,
                e,
            )
            return False
        return True

    async def notify_removed(self, notices: list[ReservationNotice]) -> int:
        sent = 0
        for notice in notices:
            ok = await self._deliver(
                "reservation-removed",
                notice,
                lambda n=notice: self.notifier.send_reservation_removed(n.email, n.item_name, n.list_title),
            )
            sent += int(ok)
        return sent

    async def notify_cancelled(self, notices: list[ReservationNotice]) -> int:
        sent = 0
        for notice in notices:
            ok = await self._deliver(
                "reservation-cancelled",
                notice,
                lambda n=notice: self.notifier.send_reservation_cancelled(n.email, n.item_name, n.list_title),
            )
            sent += int(ok)
        return sent

    async def notify_purchased(self, notice: ReservationNotice) -> bool:
        ok = await self._deliver(
            "purchase-confirmation",
            notice,
            lambda: self.notifier.send_purchase_confirmation(
                notice.email, notice.item_name, notice.list_title, notice.guest_name
            ),
        )
        if ok:
            await self.store.mark_notification_sent(notice.reservation_id)
            await self._commit()
        return ok

    async def on_item_deleted(
        self,
        gift_item_id: int,
        item_name: str | None = None,
        *,
        owner_id: int | None = None,
    ) -> list[ReservationNotice]:
        notices = await self.collect_item_deleted(gift_item_id, item_name, owner_id=owner_id)
        await self._commit()
        logger.info("Gift item deleted id=%s affected_reservations=%d", gift_item_id, len(notices))
        await self.notify_removed(notices)
        return notices

    async def on_wishlist_deleted(
        self,
        wishlist_id: int,
        items: list[GiftItemInfo] | None = None,
        *,
        owner_id: int | None = None,
    ) -> list[ReservationNotice]:
        notices = await self.collect_wishlist_deleted(wishlist_id, items, owner_id=owner_id)
        await self._commit()
        logger.info("Wishlist deleted id=%s affected_reservations=%d", wishlist_id, len(notices))
        await self.notify_removed(notices)
        return notices

    async def on_item_purchased(
        self,
        gift_item_id: int,
        purchased_by_user_id: int,
        purchased_price: Decimal | float | None = None,
        *,
        owner_id: int | None = None,
    ) -> PurchaseResult:
        """
        Record the purchase and fulfil the active reservation, then send one
        purchase confirmation to the reserver.
        """
        current = await self.catalog.get_item(gift_item_id)
        self._ensure_owner(owner_id, current.owner_id)
        item = await self.catalog.mark_purchased(gift_item_id, purchased_by_user_id, purchased_price)

        fulfilled = None
        notice = None
        active = await self.store.get_active_for_item(gift_item_id)
        if active is not None:
            fulfilled, changed = await self.store.update_status(active.id, ReservationStatus.FULFILLED)
            if changed and not fulfilled.notification_sent:
                notice = await self._notice_for(fulfilled, item)
        await self._commit()
        logger.info(
            "Gift item purchased id=%s fulfilled_reservation=%s",
            gift_item_id,
            fulfilled.id if fulfilled else None,
        )

        notified = False
        if notice is not None:
            notified = await self.notify_purchased(notice)
        return PurchaseResult(item=item, reservation=fulfilled, notified=notified)


def _actor_kind(actor: Actor) -> ReserverKind:
    if isinstance(actor, GuestActor):
        return ReserverKind.GUEST
    return ReserverKind.AUTHENTICATED_USER
