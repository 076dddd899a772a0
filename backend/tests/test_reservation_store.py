"""
Reservation store: the reserve-if-available primitive, conditional status
transitions, expiry, PII columns and the cascade helpers.
"""
import asyncio
from datetime import timedelta
from unittest.mock import patch
from uuid import uuid4

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, OperationalError

from app.core.catalog import GiftItemCatalog
from app.core.errors import ConflictError, InternalError, NotFoundError
from app.core.pii import PiiCipher
from app.core.reservation_store import ReservationStore
from app.models.models import Reservation, ReservationStatus, ReserverKind, User, utcnow


async def reserve_guest(session, cipher, registry, item_id=None, email="guest@example.com", ttl_days=30):
    store = ReservationStore(session, cipher)
    item_id = item_id or registry.item_id
    row = store.new_guest_reservation(
        wishlist_id=registry.wishlist_id,
        gift_item_id=item_id,
        guest_name="Gina Guest",
        guest_email=email,
        token=str(uuid4()),
        expires_at=utcnow() + timedelta(days=ttl_days),
    )
    return await store.reserve_if_available(item_id, row)


async def reserve_user(session, cipher, registry, user_id, item_id=None):
    store = ReservationStore(session, cipher)
    item_id = item_id or registry.item_id
    row = store.new_user_reservation(wishlist_id=registry.wishlist_id, gift_item_id=item_id, user_id=user_id)
    return await store.reserve_if_available(item_id, row)


class TestReserveIfAvailable:
    @pytest.mark.anyio
    async def test_user_reservation_is_active(self, session_factory, cipher, registry):
        async with session_factory() as session:
            record = await reserve_user(session, cipher, registry, registry.friend_id)

        assert record.status == ReservationStatus.ACTIVE.value
        assert record.reserver_kind is ReserverKind.AUTHENTICATED_USER
        assert record.reservation_token is None
        assert record.expires_at is None

    @pytest.mark.anyio
    async def test_second_reservation_conflicts(self, session_factory, cipher, registry):
        async with session_factory() as session:
            await reserve_user(session, cipher, registry, registry.friend_id)
        async with session_factory() as session:
            with pytest.raises(ConflictError):
                await reserve_guest(session, cipher, registry)

    @pytest.mark.anyio
    async def test_unknown_item_is_not_found(self, session_factory, cipher, registry):
        async with session_factory() as session:
            with pytest.raises(NotFoundError):
                await reserve_user(session, cipher, registry, registry.friend_id, item_id=9999)

    @pytest.mark.anyio
    async def test_concurrent_reservers_exactly_one_wins(self, session_factory, cipher, registry):
        async def attempt(n: int):
            async with session_factory() as session:
                return await reserve_guest(session, cipher, registry, email=f"guest{n}@example.com")

        results = await asyncio.gather(*[attempt(n) for n in range(6)], return_exceptions=True)

        winners = [r for r in results if not isinstance(r, BaseException)]
        losers = [r for r in results if isinstance(r, BaseException)]
        assert len(winners) == 1
        assert len(losers) == 5
        assert all(isinstance(exc, ConflictError) for exc in losers)

        async with session_factory() as session:
            rows = (await session.execute(
                select(Reservation).where(Reservation.gift_item_id == registry.item_id)
            )).scalars().all()
        assert len(rows) == 1

    @pytest.mark.anyio
    async def test_other_items_are_independent(self, session_factory, cipher, registry):
        async with session_factory() as session:
            await reserve_user(session, cipher, registry, registry.friend_id)
        async with session_factory() as session:
            record = await reserve_user(session, cipher, registry, registry.friend_id, item_id=registry.second_item_id)
        assert record.gift_item_id == registry.second_item_id


class TestStatusTransitions:
    @pytest.mark.anyio
    async def test_terminal_transition_is_idempotent(self, session_factory, cipher, registry):
        async with session_factory() as session:
            created = await reserve_user(session, cipher, registry, registry.friend_id)

        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            first, changed = await store.update_status(
                created.id, ReservationStatus.CANCELLED, cancelled_at=utcnow(), cancel_reason="first"
            )
            await session.commit()
            second, changed_again = await store.update_status(
                created.id, ReservationStatus.CANCELLED, cancelled_at=utcnow(), cancel_reason="second"
            )
            await session.commit()

        assert changed is True
        assert changed_again is False
        assert second.status == ReservationStatus.CANCELLED.value
        assert second.cancel_reason == "first"
        assert second.cancelled_at == first.cancelled_at

    @pytest.mark.anyio
    async def test_terminal_rows_never_reactivate(self, session_factory, cipher, registry):
        async with session_factory() as session:
            created = await reserve_user(session, cipher, registry, registry.friend_id)
        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            await store.update_status(created.id, ReservationStatus.FULFILLED)
            await session.commit()
            record, changed = await store.update_status(created.id, ReservationStatus.EXPIRED)

        assert changed is False
        assert record.status == ReservationStatus.FULFILLED.value

    @pytest.mark.anyio
    async def test_update_by_token(self, session_factory, cipher, registry):
        async with session_factory() as session:
            created = await reserve_guest(session, cipher, registry)
        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            record, changed = await store.update_status(created.reservation_token, ReservationStatus.CANCELLED)
        assert changed is True
        assert record.id == created.id

    @pytest.mark.anyio
    async def test_missing_reservation_is_not_found(self, session_factory, cipher, registry):
        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            with pytest.raises(NotFoundError):
                await store.update_status(4242, ReservationStatus.CANCELLED)
            with pytest.raises(NotFoundError):
                await store.update_status("", ReservationStatus.CANCELLED)

    @pytest.mark.anyio
    async def test_cancelled_item_can_be_reserved_again(self, session_factory, cipher, registry):
        async with session_factory() as session:
            created = await reserve_user(session, cipher, registry, registry.friend_id)
        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            await store.update_status(created.id, ReservationStatus.CANCELLED)
            await session.commit()
        async with session_factory() as session:
            again = await reserve_guest(session, cipher, registry)
        assert again.id != created.id


class TestLookups:
    @pytest.mark.anyio
    async def test_get_by_token_requires_a_token(self, session_factory, cipher, registry):
        async with session_factory() as session:
            await reserve_user(session, cipher, registry, registry.friend_id)
            store = ReservationStore(session, cipher)
            with pytest.raises(NotFoundError):
                await store.get_by_token(None)
            with pytest.raises(NotFoundError):
                await store.get_by_token("")

    @pytest.mark.anyio
    async def test_get_by_token_returns_plaintext_contact(self, session_factory, cipher, registry):
        async with session_factory() as session:
            created = await reserve_guest(session, cipher, registry)
        async with session_factory() as session:
            record = await ReservationStore(session, cipher).get_by_token(created.reservation_token)
        assert record.guest_name == "Gina Guest"
        assert record.guest_email == "guest@example.com"
        assert record.reserver_kind is ReserverKind.GUEST

    @pytest.mark.anyio
    async def test_get_active_for_item(self, session_factory, cipher, registry):
        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            assert await store.get_active_for_item(registry.item_id) is None
            created = await reserve_user(session, cipher, registry, registry.friend_id)
            active = await store.get_active_for_item(registry.item_id)
        assert active.id == created.id


class TestGuestPii:
    @pytest.mark.anyio
    async def test_encrypted_mode_leaves_plaintext_columns_empty(self, session_factory, cipher, registry):
        async with session_factory() as session:
            created = await reserve_guest(session, cipher, registry)
        async with session_factory() as session:
            row = (await session.execute(select(Reservation).where(Reservation.id == created.id))).scalar_one()

        assert row.guest_name is None
        assert row.guest_email is None
        assert row.encrypted_guest_name and row.encrypted_guest_name != "Gina Guest"
        assert cipher.decrypt(row.encrypted_guest_email) == "guest@example.com"

    @pytest.mark.anyio
    async def test_disabled_mode_leaves_ciphertext_columns_empty(self, session_factory, registry):
        plain = PiiCipher(None)
        async with session_factory() as session:
            created = await reserve_guest(session, plain, registry)
        async with session_factory() as session:
            row = (await session.execute(select(Reservation).where(Reservation.id == created.id))).scalar_one()

        assert row.encrypted_guest_name is None
        assert row.encrypted_guest_email is None
        assert row.guest_name == "Gina Guest"
        assert row.guest_email == "guest@example.com"

    @pytest.mark.anyio
    async def test_plaintext_rows_stay_readable_after_enabling_encryption(self, session_factory, cipher, registry):
        async with session_factory() as session:
            created = await reserve_guest(session, PiiCipher(None), registry)
        async with session_factory() as session:
            record = await ReservationStore(session, cipher).get_by_id(created.id)
        assert record.guest_email == "guest@example.com"


class TestTokenExclusivity:
    @pytest.mark.anyio
    async def test_guest_has_token_and_no_user(self, session_factory, cipher, registry):
        async with session_factory() as session:
            record = await reserve_guest(session, cipher, registry)
        assert record.reservation_token
        assert record.reserved_by_user_id is None
        assert record.expires_at is not None

    @pytest.mark.anyio
    async def test_database_rejects_user_with_token(self, session_factory, registry):
        async with session_factory() as session:
            session.add(Reservation(
                wishlist_id=registry.wishlist_id,
                gift_item_id=registry.item_id,
                reserved_by_user_id=registry.friend_id,
                reservation_token=str(uuid4()),
                status=ReservationStatus.ACTIVE.value,
            ))
            with pytest.raises(IntegrityError):
                await session.commit()

    @pytest.mark.anyio
    async def test_database_rejects_second_active_row(self, session_factory, registry):
        async with session_factory() as session:
            for user_id in (registry.friend_id, registry.other_id):
                session.add(Reservation(
                    wishlist_id=registry.wishlist_id,
                    gift_item_id=registry.item_id,
                    reserved_by_user_id=user_id,
                    status=ReservationStatus.ACTIVE.value,
                ))
            with pytest.raises(IntegrityError):
                await session.commit()


class TestExpiry:
    @pytest.mark.anyio
    async def test_expire_stale_only_touches_overdue_guests(self, session_factory, cipher, registry):
        async with session_factory() as session:
            guest = await reserve_guest(session, cipher, registry, ttl_days=1)
        async with session_factory() as session:
            user = await reserve_user(session, cipher, registry, registry.friend_id, item_id=registry.second_item_id)

        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            assert await store.expire_stale(utcnow()) == 0
            assert await store.expire_stale(utcnow() + timedelta(days=2)) == 1
            await session.commit()
            assert await store.expire_stale(utcnow() + timedelta(days=2)) == 0

            expired = await store.get_by_id(guest.id)
            untouched = await store.get_by_id(user.id)

        assert expired.status == ReservationStatus.EXPIRED.value
        assert untouched.status == ReservationStatus.ACTIVE.value

    @pytest.mark.anyio
    async def test_expired_item_is_reservable_again(self, session_factory, cipher, registry):
        async with session_factory() as session:
            await reserve_guest(session, cipher, registry, ttl_days=1)
        async with session_factory() as session:
            await ReservationStore(session, cipher).expire_stale(utcnow() + timedelta(days=2))
            await session.commit()
        async with session_factory() as session:
            record = await reserve_user(session, cipher, registry, registry.friend_id)
        assert record.status == ReservationStatus.ACTIVE.value

    @pytest.mark.anyio
    async def test_cancel_after_expiry_is_noop(self, session_factory, cipher, registry):
        async with session_factory() as session:
            guest = await reserve_guest(session, cipher, registry, ttl_days=1)
        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            await store.expire_stale(utcnow() + timedelta(days=2))
            await session.commit()
            record, changed = await store.update_status(guest.id, ReservationStatus.CANCELLED)
        assert changed is False
        assert record.status == ReservationStatus.EXPIRED.value


class TestCascadeHelpers:
    @pytest.mark.anyio
    async def test_delete_for_item_returns_only_active(self, session_factory, cipher, registry):
        async with session_factory() as session:
            old = await reserve_user(session, cipher, registry, registry.other_id)
        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            await store.update_status(old.id, ReservationStatus.CANCELLED)
            await session.commit()
        async with session_factory() as session:
            active = await reserve_guest(session, cipher, registry)

        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            removed = await store.delete_for_item_returning_active(registry.item_id)
            await session.commit()
            remaining = (await session.execute(
                select(Reservation).where(Reservation.gift_item_id == registry.item_id)
            )).scalars().all()

        assert [r.id for r in removed] == [active.id]
        assert removed[0].guest_email == "guest@example.com"
        assert remaining == []

    @pytest.mark.anyio
    async def test_count_active_for_wishlist(self, session_factory, cipher, registry):
        async with session_factory() as session:
            await reserve_guest(session, cipher, registry)
        async with session_factory() as session:
            await reserve_user(session, cipher, registry, registry.friend_id, item_id=registry.second_item_id)
        async with session_factory() as session:
            assert await ReservationStore(session, cipher).count_active_for_wishlist(registry.wishlist_id) == 2

    @pytest.mark.anyio
    async def test_link_guest_reservations_matches_normalized_email(self, session_factory, cipher, registry):
        async with session_factory() as session:
            guest = await reserve_guest(session, cipher, registry, email="  Friend@Example.COM ")
        async with session_factory() as session:
            await reserve_guest(session, cipher, registry, item_id=registry.second_item_id, email="someone@example.com")

        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            linked = await store.link_guest_reservations_to_user("friend@example.com", registry.friend_id)
            await session.commit()
            record = await store.get_by_id(guest.id)

        assert linked == 1
        assert record.reserved_by_user_id == registry.friend_id
        assert record.reservation_token is None
        assert record.guest_email is None
        assert record.reserver_kind is ReserverKind.AUTHENTICATED_USER

    @pytest.mark.anyio
    async def test_link_skips_undecryptable_rows(self, session_factory, cipher, registry):
        async with session_factory() as session:
            await reserve_guest(session, cipher, registry, email="friend@example.com")
        rotated = PiiCipher(Fernet.generate_key())
        async with session_factory() as session:
            linked = await ReservationStore(session, rotated).link_guest_reservations_to_user(
                "friend@example.com", registry.friend_id
            )
        assert linked == 0


class TestGiftRowLock:
    @pytest.mark.anyio
    async def test_purchased_item_is_rejected_under_the_lock(self, session_factory, cipher, registry):
        async with session_factory() as session:
            await GiftItemCatalog(session).mark_purchased(registry.item_id, registry.owner_id, None)
            await session.commit()

        async with session_factory() as session:
            with pytest.raises(ConflictError) as err:
                await reserve_user(session, cipher, registry, registry.friend_id)
        assert err.value.detail == "This gift has already been purchased"

        async with session_factory() as session:
            active = await ReservationStore(session, cipher).get_active_for_item(registry.item_id)
        assert active is None

    @pytest.mark.anyio
    async def test_lock_reports_purchase_state(self, session_factory, cipher, registry):
        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            assert await store.lock_gift_item(registry.item_id) is None
            with pytest.raises(NotFoundError):
                await store.lock_gift_item(9999)

    @pytest.mark.anyio
    async def test_item_cascade_locks_the_gift_row_first(self, session_factory, cipher, registry):
        async with session_factory() as session:
            await reserve_guest(session, cipher, registry)

        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            with patch.object(store, "lock_gift_item", wraps=store.lock_gift_item) as lock:
                removed = await store.delete_for_item_returning_active(registry.item_id)
            await session.rollback()

        lock.assert_awaited_once_with(registry.item_id)
        assert len(removed) == 1


class TestPersistenceFailures:
    @pytest.mark.anyio
    async def test_expire_stale_maps_driver_errors(self, session_factory, cipher, registry):
        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            failure = OperationalError("UPDATE reservations", {}, Exception("connection lost"))
            with patch.object(session, "execute", side_effect=failure):
                with pytest.raises(InternalError):
                    await store.expire_stale(utcnow())

    @pytest.mark.anyio
    async def test_update_status_maps_driver_errors(self, session_factory, cipher, registry):
        async with session_factory() as session:
            created = await reserve_user(session, cipher, registry, registry.friend_id)

        async with session_factory() as session:
            store = ReservationStore(session, cipher)
            failure = OperationalError("UPDATE reservations", {}, Exception("connection lost"))
            with patch.object(session, "execute", side_effect=failure):
                with pytest.raises(InternalError):
                    await store.update_status(created.id, ReservationStatus.CANCELLED)


class TestReserverIntegrity:
    @pytest.mark.anyio
    async def test_user_with_reservations_cannot_be_deleted(self, session_factory, cipher, registry):
        async with session_factory() as session:
            await reserve_user(session, cipher, registry, registry.friend_id)

        async with session_factory() as session:
            with pytest.raises(IntegrityError):
                await session.execute(delete(User).where(User.id == registry.friend_id))
                await session.commit()
            await session.rollback()

        async with session_factory() as session:
            record = await ReservationStore(session, cipher).get_active_for_item(registry.item_id)
        assert record.reserved_by_user_id == registry.friend_id
        assert record.reserver_kind is ReserverKind.AUTHENTICATED_USER
