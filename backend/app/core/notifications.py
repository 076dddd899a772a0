"""Notification requests the reservation engine emits after a cascade commits."""
from dataclasses import dataclass
from typing import Protocol

from app.core import mailer


@dataclass(frozen=True)
class ReservationNotice:
    """One resolved recipient of a cascade notification."""

    reservation_id: int
    gift_item_id: int
    email: str
    item_name: str
    list_title: str
    guest_name: str | None = None


class ReservationNotifier(Protocol):
    async def send_reservation_removed(self, email: str, item_name: str, list_title: str) -> None:
        ...

    async def send_purchase_confirmation(
        self,
        email: str,
        item_name: str,
        list_title: str,
        guest_name: str | None,
    ) -> None:
        ...

    async def send_reservation_cancelled(self, email: str, item_name: str, list_title: str) -> None:
        ...


class EmailReservationNotifier:
    async def send_reservation_removed(self, email: str, item_name: str, list_title: str) -> None:
        await mailer.send_email(email, mailer.build_reservation_removed_email(item_name, list_title))

    async def send_purchase_confirmation(
        self,
        email: str,
        item_name: str,
        list_title: str,
        guest_name: str | None,
    ) -> None:
        await mailer.send_email(
            email,
            mailer.build_purchase_confirmation_email(item_name, list_title, guest_name),
        )

    async def send_reservation_cancelled(self, email: str, item_name: str, list_title: str) -> None:
        await mailer.send_email(email, mailer.build_reservation_cancelled_email(item_name, list_title))


email_notifier = EmailReservationNotifier()
