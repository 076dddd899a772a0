"""
Persistence for reservations and the atomic reserve-if-available primitive.

Mutual exclusion per gift item is enforced twice: the gift row is locked with
SELECT ... FOR UPDATE (PostgreSQL), and the partial unique index
ux_reservations_active_gift_item rejects a second active row. On SQLite the
row lock is a no-op and the index alone decides the race.

Guest PII is sealed on the way in and revealed on the way out, so everything
this module returns carries plaintext.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import logging

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, InternalError, NotFoundError
from app.core.pii import CipherText, PiiCipher, PlainText, StoredText
from app.models.models import GiftItem, Reservation, ReservationStatus, ReserverKind, User, Wishlist, utcnow

logger = logging.getLogger("giftregistry.reservation_store")

LISTED_STATUSES = (ReservationStatus.ACTIVE.value, ReservationStatus.CANCELLED.value)


@dataclass(frozen=True)
class ReservationRecord:
    id: int
    wishlist_id: int
    gift_item_id: int
    reserved_by_user_id: int | None
    guest_name: str | None
    guest_email: str | None
    reservation_token: str | None
    status: str
    reserved_at: datetime
    expires_at: datetime | None
    cancelled_at: datetime | None
    cancel_reason: str | None
    notification_sent: bool

    @property
    def reserver_kind(self) -> ReserverKind:
        if self.reservation_token is not None:
            return ReserverKind.GUEST
        return ReserverKind.AUTHENTICATED_USER

    @property
    def is_active(self) -> bool:
        return self.status == ReservationStatus.ACTIVE.value


@dataclass(frozen=True)
class ReservationDetail:
    """Reservation joined with the display fields of its gift and wish list."""

    id: int
    gift_item_id: int
    wishlist_id: int
    status: str
    reserved_at: datetime
    expires_at: datetime | None
    cancelled_at: datetime | None
    gift_name: str
    gift_image_url: str | None
    gift_price: Decimal | None
    wishlist_title: str
    owner_name: str
    reserver_kind: ReserverKind


def stored_guest_name(row: Reservation) -> StoredText | None:
    if row.encrypted_guest_name:
        return CipherText(row.encrypted_guest_name)
    if row.guest_name:
        return PlainText(row.guest_name)
    return None


def stored_guest_email(row: Reservation) -> StoredText | None:
    if row.encrypted_guest_email:
        return CipherText(row.encrypted_guest_email)
    if row.guest_email:
        return PlainText(row.guest_email)
    return None


def _normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


class ReservationStore:
    def __init__(self, db: AsyncSession, cipher: PiiCipher) -> None:
        self.db = db
        self.cipher = cipher

    # -- mapping ----------------------------------------------------------

    def new_guest_reservation(
        self,
        *,
        wishlist_id: int,
        gift_item_id: int,
        guest_name: str,
        guest_email: str,
        token: str,
        expires_at: datetime,
    ) -> Reservation:
        """Build an unsaved guest row with its contact fields sealed."""
        row = Reservation(
            wishlist_id=wishlist_id,
            gift_item_id=gift_item_id,
            reservation_token=token,
            status=ReservationStatus.ACTIVE.value,
            reserved_at=utcnow(),
            expires_at=expires_at,
        )
        self._apply_contact(row, guest_name, guest_email)
        return row

    def new_user_reservation(self, *, wishlist_id: int, gift_item_id: int, user_id: int) -> Reservation:
        return Reservation(
            wishlist_id=wishlist_id,
            gift_item_id=gift_item_id,
            reserved_by_user_id=user_id,
            status=ReservationStatus.ACTIVE.value,
            reserved_at=utcnow(),
        )

    def _apply_contact(self, row: Reservation, name: str | None, email: str | None) -> None:
        for value, plain_attr, cipher_attr in (
            (name, "guest_name", "encrypted_guest_name"),
            (email, "guest_email", "encrypted_guest_email"),
        ):
            sealed = self.cipher.seal(value)
            setattr(row, plain_attr, sealed.value if isinstance(sealed, PlainText) else None)
            setattr(row, cipher_attr, sealed.value if isinstance(sealed, CipherText) else None)

    def _to_record(self, row: Reservation, *, lenient: bool = False) -> ReservationRecord:
        if lenient:
            name = self._reveal_or_none(stored_guest_name(row), row.id)
            email = self._reveal_or_none(stored_guest_email(row), row.id)
        else:
            name = self.cipher.reveal(stored_guest_name(row))
            email = self.cipher.reveal(stored_guest_email(row))
        return ReservationRecord(
            id=row.id,
            wishlist_id=row.wishlist_id,
            gift_item_id=row.gift_item_id,
            reserved_by_user_id=row.reserved_by_user_id,
            guest_name=name,
            guest_email=email,
            reservation_token=row.reservation_token,
            status=row.status,
            reserved_at=row.reserved_at,
            expires_at=row.expires_at,
            cancelled_at=row.cancelled_at,
            cancel_reason=row.cancel_reason,
            notification_sent=bool(row.notification_sent),
        )

    def _reveal_or_none(self, stored: StoredText | None, reservation_id: int) -> str | None:
        try:
            return self.cipher.reveal(stored)
        except InternalError:
            logger.warning("Skipping undecryptable guest contact reservation_id=%s", reservation_id)
            return None

    # -- reserve ----------------------------------------------------------

    async def lock_gift_item(self, gift_item_id: int) -> datetime | None:
        """
        Take the gift row lock that serializes reservations of one item.

        Returns the item's purchased_at. Raises NotFoundError for an unknown item.
        """
        result = await self.db.execute(
            select(GiftItem.id, GiftItem.purchased_at).where(GiftItem.id == gift_item_id).with_for_update()
        )
        locked = result.one_or_none()
        if locked is None:
            raise NotFoundError("Gift item not found")
        return locked.purchased_at

    async def reserve_if_available(self, gift_item_id: int, reservation: Reservation) -> ReservationRecord:
        """
        Insert an active reservation unless the item already has one or is purchased.

        Runs as one transaction and commits on success. A lost race shows up
        either as the pre-check hit or as a unique violation on flush/commit;
        both become ConflictError.
        """
        try:
            if await self.lock_gift_item(gift_item_id) is not None:
                raise ConflictError("This gift has already been purchased")

            existing = await self.db.execute(
                select(Reservation.id).where(
                    Reservation.gift_item_id == gift_item_id,
                    Reservation.status == ReservationStatus.ACTIVE.value,
                )
            )
            if existing.scalar_one_or_none() is not None:
                raise ConflictError()

            self.db.add(reservation)
            await self.db.flush()
            await self.db.commit()
        except (ConflictError, NotFoundError):
            await self.db.rollback()
            raise
        except IntegrityError:
            await self.db.rollback()
            logger.info("Reservation race lost on gift_item_id=%s", gift_item_id)
            raise ConflictError() from None
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception("Failed to create reservation for gift_item_id=%s", gift_item_id)
            raise InternalError() from exc

        return self._to_record(reservation)

    # -- reads ------------------------------------------------------------

    async def _fetch_row(self, *criteria) -> Reservation | None:
        result = await self.db.execute(
            select(Reservation).where(*criteria).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_active_for_item(self, gift_item_id: int) -> ReservationRecord | None:
        row = await self._fetch_row(
            Reservation.gift_item_id == gift_item_id,
            Reservation.status == ReservationStatus.ACTIVE.value,
        )
        return self._to_record(row) if row is not None else None

    async def get_by_id(self, reservation_id: int) -> ReservationRecord:
        row = await self._fetch_row(Reservation.id == reservation_id)
        if row is None:
            raise NotFoundError()
        return self._to_record(row)

    async def get_by_token(self, token: str | None) -> ReservationRecord:
        if not token:
            raise NotFoundError()
        row = await self._fetch_row(Reservation.reservation_token == token)
        if row is None:
            raise NotFoundError()
        return self._to_record(row)

    # -- transitions ------------------------------------------------------

    async def update_status(
        self,
        ref: int | str,
        new_status: ReservationStatus,
        *,
        cancelled_at: datetime | None = None,
        cancel_reason: str | None = None,
    ) -> tuple[ReservationRecord, bool]:
        """
        Move an active reservation to a terminal status.

        ref is a reservation id or a guest token. Rows that are already
        terminal are returned untouched with changed=False.
        """
        if isinstance(ref, str):
            if not ref:
                raise NotFoundError()
            match = Reservation.reservation_token == ref
        else:
            match = Reservation.id == ref

        values: dict = {"status": new_status.value, "updated_at": utcnow()}
        if cancelled_at is not None:
            values["cancelled_at"] = cancelled_at
        if cancel_reason is not None:
            values["cancel_reason"] = cancel_reason

        try:
            result = await self.db.execute(
                update(Reservation)
                .where(match, Reservation.status == ReservationStatus.ACTIVE.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            row = await self._fetch_row(match)
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception("Failed to move reservation to %s", new_status.value)
            raise InternalError() from exc
        if row is None:
            raise NotFoundError()
        return self._to_record(row), result.rowcount > 0

    async def expire_stale(self, now: datetime) -> int:
        try:
            result = await self.db.execute(
                update(Reservation)
                .where(
                    Reservation.status == ReservationStatus.ACTIVE.value,
                    Reservation.reservation_token.is_not(None),
                    Reservation.expires_at.is_not(None),
                    Reservation.expires_at < now,
                )
                .values(status=ReservationStatus.EXPIRED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception("Failed to expire stale reservations")
            raise InternalError() from exc
        return result.rowcount or 0

    async def mark_notification_sent(self, reservation_id: int) -> None:
        await self.db.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id)
            .values(notification_sent=True)
            .execution_options(synchronize_session=False)
        )

    # -- listings ---------------------------------------------------------

    def _detail_query(self):
        return (
            select(Reservation, GiftItem, Wishlist.title, User.name)
            .join(GiftItem, GiftItem.id == Reservation.gift_item_id)
            .join(Wishlist, Wishlist.id == Reservation.wishlist_id)
            .join(User, User.id == Wishlist.owner_id)
        )

    @staticmethod
    def _to_detail(row: Reservation, item: GiftItem, wishlist_title: str, owner_name: str) -> ReservationDetail:
        return ReservationDetail(
            id=row.id,
            gift_item_id=row.gift_item_id,
            wishlist_id=row.wishlist_id,
            status=row.status,
            reserved_at=row.reserved_at,
            expires_at=row.expires_at,
            cancelled_at=row.cancelled_at,
            gift_name=item.name,
            gift_image_url=item.image_url,
            gift_price=item.price,
            wishlist_title=wishlist_title,
            owner_name=owner_name,
            reserver_kind=row.reserver_kind,
        )

    async def list_for_user(self, user_id: int, limit: int = 20, offset: int = 0) -> list[ReservationDetail]:
        result = await self.db.execute(
            self._detail_query()
            .where(
                Reservation.reserved_by_user_id == user_id,
                Reservation.status.in_(LISTED_STATUSES),
            )
            .order_by(Reservation.reserved_at.desc(), Reservation.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [self._to_detail(*row) for row in result.all()]

    async def count_for_user(self, user_id: int) -> int:
        result = await self.db.execute(
            select(func.count(Reservation.id)).where(
                Reservation.reserved_by_user_id == user_id,
                Reservation.status.in_(LISTED_STATUSES),
            )
        )
        return int(result.scalar_one())

    async def list_for_guest_token(self, token: str) -> list[ReservationDetail]:
        if not token:
            return []
        result = await self.db.execute(
            self._detail_query()
            .where(
                Reservation.reservation_token == token,
                Reservation.status.in_(LISTED_STATUSES),
            )
            .order_by(Reservation.reserved_at.desc())
        )
        return [self._to_detail(*row) for row in result.all()]

    async def list_for_owner(self, owner_id: int, limit: int = 20, offset: int = 0) -> list[ReservationDetail]:
        """Active reservations on the owner's gifts. Reserver identity is not exposed."""
        result = await self.db.execute(
            self._detail_query()
            .where(
                Wishlist.owner_id == owner_id,
                Reservation.status == ReservationStatus.ACTIVE.value,
            )
            .order_by(Reservation.reserved_at.desc(), Reservation.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [self._to_detail(*row) for row in result.all()]

    async def count_for_owner(self, owner_id: int) -> int:
        result = await self.db.execute(
            select(func.count(Reservation.id))
            .join(Wishlist, Wishlist.id == Reservation.wishlist_id)
            .where(
                Wishlist.owner_id == owner_id,
                Reservation.status == ReservationStatus.ACTIVE.value,
            )
        )
        return int(result.scalar_one())

    async def count_active_for_wishlist(self, wishlist_id: int) -> int:
        result = await self.db.execute(
            select(func.count(Reservation.id)).where(
                Reservation.wishlist_id == wishlist_id,
                Reservation.status == ReservationStatus.ACTIVE.value,
            )
        )
        return int(result.scalar_one())

    # -- cascades ---------------------------------------------------------

    async def delete_for_item_returning_active(self, gift_item_id: int) -> list[ReservationRecord]:
        """
        Delete every reservation of a gift item and return the ones that were active.

        Runs inside the caller's transaction; nothing is committed here. The
        gift row lock keeps a concurrent reserve out until the caller commits.
        """
        await self.lock_gift_item(gift_item_id)
        result = await self.db.execute(
            select(Reservation)
            .where(
                Reservation.gift_item_id == gift_item_id,
                Reservation.status == ReservationStatus.ACTIVE.value,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        active = [self._to_record(row, lenient=True) for row in result.scalars().all()]

        await self.db.execute(
            delete(Reservation)
            .where(Reservation.gift_item_id == gift_item_id)
            .execution_options(synchronize_session=False)
        )
        return active

    async def link_guest_reservations_to_user(self, email: str, user_id: int) -> int:
        """
        Attach active guest reservations made with this email to an account.

        Linked rows become authenticated reservations: the token, guest
        contact and expiry are cleared. Not committed here.
        """
        wanted = _normalize_email(email)
        if not wanted:
            return 0

        result = await self.db.execute(
            select(Reservation).where(
                Reservation.reservation_token.is_not(None),
                Reservation.status == ReservationStatus.ACTIVE.value,
            )
        )
        matched: list[int] = []
        for row in result.scalars().all():
            guest_email = self._reveal_or_none(stored_guest_email(row), row.id)
            if _normalize_email(guest_email) == wanted:
                matched.append(row.id)

        if not matched:
            return 0

        await self.db.execute(
            update(Reservation)
            .where(Reservation.id.in_(matched), Reservation.status == ReservationStatus.ACTIVE.value)
            .values(
                reserved_by_user_id=user_id,
                reservation_token=None,
                guest_name=None,
                encrypted_guest_name=None,
                guest_email=None,
                encrypted_guest_email=None,
                expires_at=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info("Linked %d guest reservations to user_id=%s", len(matched), user_id)
        return len(matched)
