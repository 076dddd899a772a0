from datetime import datetime, timezone
from enum import Enum as StrEnumBase

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.session import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    wishlists: Mapped[list["Wishlist"]] = relationship(back_populates="owner")


class Wishlist(Base):
    __tablename__ = "wishlists"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    owner: Mapped[User] = relationship(back_populates="wishlists")
    gift_items: Mapped[list["GiftItem"]] = relationship(back_populates="wishlist")


class GiftItem(Base):
    __tablename__ = "gift_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    wishlist_id: Mapped[int] = mapped_column(ForeignKey("wishlists.id", ondelete="CASCADE"), nullable=False, index=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    link: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    price: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    purchased_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    purchased_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    purchased_price: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    wishlist: Mapped[Wishlist] = relationship(back_populates="gift_items")


class ReservationStatus(str, StrEnumBase):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"


class ReserverKind(str, StrEnumBase):
    AUTHENTICATED_USER = "authenticated_user"
    GUEST = "guest"


class Reservation(Base):
    __tablename__ = "reservations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    wishlist_id: Mapped[int] = mapped_column(ForeignKey("wishlists.id", ondelete="CASCADE"), nullable=False, index=True)
    gift_item_id: Mapped[int] = mapped_column(ForeignKey("gift_items.id", ondelete="CASCADE"), nullable=False, index=True)
    reserved_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    guest_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    encrypted_guest_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    guest_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    encrypted_guest_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    reservation_token: Mapped[str | None] = mapped_column(String(36), unique=True, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ReservationStatus.ACTIVE.value, index=True)
    reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notification_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        # Database-level guarantee: one active reservation per gift item.
        Index(
            "ux_reservations_active_gift_item",
            "gift_item_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        CheckConstraint(
            "status IN ('active', 'cancelled', 'fulfilled', 'expired')",
            name="ck_reservations_status",
        ),
        CheckConstraint(
            "NOT (reserved_by_user_id IS NOT NULL AND reservation_token IS NOT NULL)",
            name="ck_reservations_single_reserver_kind",
        ),
        CheckConstraint(
            "NOT (reserved_by_user_id IS NOT NULL AND "
            "(guest_email IS NOT NULL OR encrypted_guest_email IS NOT NULL))",
            name="ck_reservations_user_or_guest_contact",
        ),
    )

    @property
    def reserver_kind(self) -> ReserverKind:
        if self.reservation_token is not None:
            return ReserverKind.GUEST
        return ReserverKind.AUTHENTICATED_USER
