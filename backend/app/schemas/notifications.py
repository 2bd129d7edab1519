from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel

from app.models.models import NotificationV2
from app.notifications.registry import get_config


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_notification(row: NotificationV2, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
    """Render a notification row with its generated title and message."""
    config = get_config(row.type)
    meta = metadata if metadata is not None else (row.payload or {})
    return {
        "id": row.id,
        "type": row.type,
        "category_id": row.category_id,
        "metadata": meta,
        "title": config.title(meta),
        "message": config.message(meta),
        "action_url": row.action_url or config.action_url(meta),
        "priority": row.priority,
        "status": row.status,
        "group_key": row.group_key,
        "group_count": row.group_count,
        "read_at": _iso(row.read_at),
        "archived_at": _iso(row.archived_at),
        "expires_at": _iso(row.expires_at),
        "created_at": _iso(row.created_at),
    }


class PreferenceUpdate(BaseModel):
    enabled: bool
    settings: dict[str, Any] | None = None


NotificationListStatus = Literal["inbox", "archived"]
