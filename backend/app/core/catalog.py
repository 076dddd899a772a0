"""
Gift-item / wish-list and user lookups the reservation engine depends on.

These are thin SQLAlchemy gateways bound to the caller's session: writes are
flushed, never committed, so they join whatever transaction the engine runs.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, NotFoundError
from app.models.models import GiftItem, User, Wishlist

logger = logging.getLogger("giftregistry.catalog")


@dataclass(frozen=True)
class GiftItemInfo:
    id: int
    name: str
    owner_id: int
    wishlist_id: int
    wishlist_title: str
    purchased_at: datetime | None = None

    @property
    def is_purchased(self) -> bool:
        return self.purchased_at is not None


class GiftItemCatalog:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    def _item_query(self):
        return select(GiftItem, Wishlist.title).join(Wishlist, Wishlist.id == GiftItem.wishlist_id)

    @staticmethod
    def _to_info(item: GiftItem, wishlist_title: str) -> GiftItemInfo:
        return GiftItemInfo(
            id=item.id,
            name=item.name,
            owner_id=item.owner_id,
            wishlist_id=item.wishlist_id,
            wishlist_title=wishlist_title,
            purchased_at=item.purchased_at,
        )

    async def get_item(self, gift_item_id: int) -> GiftItemInfo:
        result = await self.db.execute(self._item_query().where(GiftItem.id == gift_item_id))
        row = result.first()
        if row is None:
            raise NotFoundError("Gift item not found")
        return self._to_info(row[0], row[1])

    async def items_for_wishlist(self, wishlist_id: int) -> list[GiftItemInfo]:
        result = await self.db.execute(
            self._item_query()
            .where(GiftItem.wishlist_id == wishlist_id)
            .order_by(GiftItem.id.asc())
        )
        return [self._to_info(item, title) for item, title in result.all()]

    async def get_wishlist(self, wishlist_id: int) -> Wishlist:
        result = await self.db.execute(select(Wishlist).where(Wishlist.id == wishlist_id))
        wishlist = result.scalar_one_or_none()
        if wishlist is None:
            raise NotFoundError("Wishlist not found")
        return wishlist

    async def mark_purchased(
        self,
        gift_item_id: int,
        purchased_by_user_id: int,
        purchased_price: Decimal | float | None,
    ) -> GiftItemInfo:
        result = await self.db.execute(
            update(GiftItem)
            .where(GiftItem.id == gift_item_id, GiftItem.purchased_at.is_(None))
            .values(
                purchased_by_user_id=purchased_by_user_id,
                purchased_at=datetime.now(timezone.utc),
                purchased_price=purchased_price,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Either missing or already purchased; get_item raises for the former.
            await self.get_item(gift_item_id)
            raise ConflictError("This gift has already been marked as purchased")
        self.db.expire_all()
        return await self.get_item(gift_item_id)

    async def delete_item(self, gift_item_id: int) -> None:
        result = await self.db.execute(
            delete(GiftItem)
            .where(GiftItem.id == gift_item_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("Gift item not found")

    async def delete_wishlist(self, wishlist_id: int) -> None:
        await self.db.execute(
            delete(GiftItem)
            .where(GiftItem.wishlist_id == wishlist_id)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(
            delete(Wishlist)
            .where(Wishlist.id == wishlist_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("Wishlist not found")


class UserDirectory:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_email_for_user(self, user_id: int) -> str | None:
        result = await self.db.execute(select(User.email).where(User.id == user_id))
        email = result.scalar_one_or_none()
        if not email:
            logger.debug("No email on record for user_id=%s", user_id)
        return email or None

    async def get_display_name(self, user_id: int) -> str | None:
        result = await self.db.execute(select(User.name).where(User.id == user_id))
        return result.scalar_one_or_none()
