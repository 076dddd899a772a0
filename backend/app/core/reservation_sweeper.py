"""Periodic expiry of guest reservations whose TTL has passed."""
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.audit import AuditAction, audit_log
from app.core.errors import ReservationError
from app.core.notifications import email_notifier
from app.core.pii import get_cipher
from app.core.reservation_engine import ReservationEngine

logger = logging.getLogger("giftregistry.sweeper")


async def sweep_once(session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with session_factory() as session:
        engine = ReservationEngine(session, get_cipher(), email_notifier)
        expired = await engine.expire_stale()
    if expired:
        audit_log(AuditAction.RESERVATION_EXPIRE, details={"expired": expired})
    return expired


class ReservationSweeper:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], interval_seconds: float) -> None:
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.interval_seconds <= 0 or self.running:
            return
        self._task = asyncio.create_task(self._run(), name="reservation-sweeper")
        logger.info("Reservation sweeper started interval=%ss", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reservation sweeper stopped")

    async def _run(self) -> None:
        while True:
            try:
                await sweep_once(self.session_factory)
            except ReservationError as exc:
                # Next tick retries; the cause was logged by the store.
                logger.warning("Reservation sweep failed: %s", exc.detail)
            except Exception:
                logger.exception("Reservation sweep crashed, retrying next tick")
            await asyncio.sleep(self.interval_seconds)
