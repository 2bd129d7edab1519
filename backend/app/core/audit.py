"""Audit trail for account and invite events."""

from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Any

from fastapi import Request


logger = logging.getLogger("giftify.audit")

_SENSITIVE_KEYS = {"password", "token", "secret", "authorization", "invite_code", "code"}


class AuditAction(str, Enum):
    SIGNUP = "signup"
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    INVITE_GENERATED = "invite_generated"
    INVITE_CONSUMED = "invite_consumed"
    INVITE_REJECTED = "invite_rejected"


def _client_host(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def audit_log(
    action: AuditAction,
    request: Request | None = None,
    user_id: str | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    event: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action.value,
        "success": success,
    }
    if user_id is not None:
        event["user_id"] = user_id
    if request is not None:
        event["ip"] = _client_host(request)
        event["user_agent"] = request.headers.get("User-Agent", "")[:200]
        event["request_id"] = getattr(request.state, "request_id", "")
    if details:
        event["details"] = {
            key: "***REDACTED***" if key in _SENSITIVE_KEYS else value
            for key, value in details.items()
        }

    if success:
        logger.info("AUDIT: %s", event)
    else:
        logger.warning("AUDIT: %s", event)
