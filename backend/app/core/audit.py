"""Audit logging for reservation and owner cascade operations."""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi import Request


logger = logging.getLogger("giftregistry.audit")

SENSITIVE_KEYS = ("token", "reservation_token", "guest_email", "guest_name", "email", "secret", "authorization")


class AuditAction(str, Enum):
    RESERVATION_CREATE = "reservation_create"
    RESERVATION_CANCEL = "reservation_cancel"
    RESERVATION_EXPIRE = "reservation_expire"
    RESERVATION_LINK = "reservation_link"

    GIFT_DELETE = "gift_delete"
    GIFT_PURCHASE = "gift_purchase"
    WISHLIST_DELETE = "wishlist_delete"

    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"


def audit_log(
    action: AuditAction,
    request: Request | None = None,
    user_id: int | str | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    """
    Log an audit event.

    Args:
        action: The action being performed
        request: FastAPI request object (for IP, user agent)
        user_id: ID of the user performing the action, None for guests
        details: Additional details; guest PII and tokens are redacted
        success: Whether the action was successful
    """
    event: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action.value,
        "success": success,
    }

    if user_id is not None:
        event["user_id"] = str(user_id)

    if request:
        client_host = request.client.host if request.client else None
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_host = forwarded.split(",")[0].strip()
        event["ip"] = client_host
        event["user_agent"] = request.headers.get("User-Agent", "")[:200]
        event["request_id"] = request.headers.get("X-Request-Id", "")

    if details:
        event["details"] = {
            key: "***REDACTED***" if key in SENSITIVE_KEYS else value
            for key, value in details.items()
        }

    if success:
        logger.info("AUDIT: %s", event)
    else:
        logger.warning("AUDIT: %s", event)


def audit_reservation_action(
    action: AuditAction,
    request: Request | None,
    user_id: int | None,
    reservation_id: int,
    gift_item_id: int,
    details: dict[str, Any] | None = None,
) -> None:
    event_details: dict[str, Any] = {"reservation_id": reservation_id, "gift_item_id": gift_item_id}
    if details:
        event_details.update(details)
    audit_log(action, request=request, user_id=user_id, details=event_details)


def audit_owner_cascade(
    action: AuditAction,
    request: Request,
    user_id: int,
    target_id: int,
    affected_reservations: int,
) -> None:
    """Log an owner action that removed or fulfilled reservations."""
    key = "wishlist_id" if action is AuditAction.WISHLIST_DELETE else "gift_item_id"
    audit_log(
        action,
        request=request,
        user_id=user_id,
        details={key: target_id, "affected_reservations": affected_reservations},
    )


def audit_rate_limit_exceeded(request: Request, endpoint: str, retry_after: int) -> None:
    audit_log(
        AuditAction.RATE_LIMIT_EXCEEDED,
        request=request,
        details={"endpoint": endpoint, "retry_after": retry_after},
        success=False,
    )
