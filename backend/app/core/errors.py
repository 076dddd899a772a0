"""Error taxonomy shared by the reservation store, engine and routes."""

import logging

from fastapi import HTTPException, status

logger = logging.getLogger("giftregistry.errors")


class ReservationError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "Something went wrong, please try again"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def to_http(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.detail)


class ConflictError(ReservationError):
    """Gift item is already actively reserved (expected outcome, not a failure)."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = "This gift has already been reserved"


class NotFoundError(ReservationError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Reservation not found"


class BadRequestError(ReservationError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid request"


class ForbiddenError(ReservationError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "You are not allowed to manage this reservation"


class InternalError(ReservationError):
    """Persistence or encryption failure. The cause is logged, never returned."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def to_http(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.default_detail)


def http_error(exc: ReservationError) -> HTTPException:
    """Translate for the HTTP layer. Conflicts are routine; internal failures keep their cause in the log."""
    if isinstance(exc, InternalError):
        logger.error("Reservation operation failed: %s", exc.detail, exc_info=exc)
    elif isinstance(exc, ConflictError):
        logger.info("Reservation conflict: %s", exc.detail)
    return exc.to_http()
