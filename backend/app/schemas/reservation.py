from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, EmailStr, Field, field_validator

from app.models.models import ReserverKind


class GuestReservationCreate(BaseModel):
    guest_name: str | None = Field(default=None, max_length=120)
    guest_email: EmailStr | None = None

    @field_validator("guest_name")
    @classmethod
    def _guest_name_strip(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class GuestCancelRequest(BaseModel):
    reservation_token: str | None = None


class PurchaseRequest(BaseModel):
    purchased_price: Decimal | None = Field(default=None, ge=0)


class ReservationPublic(BaseModel):
    id: int
    gift_item_id: int
    wishlist_id: int
    status: str
    reserver_kind: ReserverKind
    reserved_at: datetime
    expires_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    guest_name: str | None = None
    reservation_token: str | None = None

    class Config:
        from_attributes = True


class ReservationDetailPublic(BaseModel):
    id: int
    gift_item_id: int
    wishlist_id: int
    status: str
    reserver_kind: ReserverKind
    reserved_at: datetime
    expires_at: datetime | None = None
    cancelled_at: datetime | None = None
    gift_name: str
    gift_image_url: str | None = None
    gift_price: Decimal | None = None
    wishlist_title: str
    owner_name: str

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int


class ReservationPage(BaseModel):
    items: list[ReservationDetailPublic]
    pagination: Pagination


class ReservationStatusPublic(BaseModel):
    gift_item_id: int
    is_reserved: bool
    is_purchased: bool
    status: str | None = None
    reserved_at: datetime | None = None
    reserver_name: str | None = None

    class Config:
        from_attributes = True


class LinkGuestResult(BaseModel):
    linked: int


class CascadeResult(BaseModel):
    affected_reservations: int


class PurchaseResultPublic(BaseModel):
    gift_item_id: int
    purchased_at: datetime | None = None
    reservation: ReservationPublic | None = None
    notified: bool = False
