"""Fluent builder for sending typed notifications.

    result = await (
        create_notification("split_joined", meta)
        .to(participant_ids)
        .with_auto_group_key()
        .send(db)
    )

``send`` commits its own work and never raises: failures roll back, are
logged and come back as ``{"success": False, "count": 0, "error": ...}``.
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.procedures import create_notification_v2
from app.notifications.registry import get_config, parse_metadata
from app.realtime.manager import manager
from app.schemas.notifications import serialize_notification


logger = logging.getLogger("giftify.notifications")


class NotificationBuilder:
    def __init__(self, notification_type: str, metadata: dict[str, Any]) -> None:
        self._type = notification_type
        self._config = get_config(notification_type)
        self._metadata = parse_metadata(notification_type, metadata)
        self._user_ids: list[str] = []
        self._dedup_key: str | None = None
        self._group_key: str | None = None
        self._priority: int | None = None
        self._action_url: str | None = None

    def to(self, user_ids: str | list[str]) -> "NotificationBuilder":
        if isinstance(user_ids, str):
            user_ids = [user_ids]
        self._user_ids.extend(user_ids)
        return self

    def with_dedup_key(self, key: str) -> "NotificationBuilder":
        self._dedup_key = key
        return self

    def with_group_key(self, key: str) -> "NotificationBuilder":
        self._group_key = key
        return self

    def with_auto_group_key(self) -> "NotificationBuilder":
        if self._config.group_key is not None:
            self._group_key = self._config.group_key(self._metadata)
        return self

    def with_priority(self, priority: int) -> "NotificationBuilder":
        self._priority = priority
        return self

    def with_action_url(self, url: str) -> "NotificationBuilder":
        self._action_url = url
        return self

    async def send(self, db: AsyncSession) -> dict[str, Any]:
        if not self._user_ids:
            return {"success": False, "count": 0, "error": "No user IDs provided"}

        try:
            rows = await create_notification_v2(
                db,
                user_ids=self._user_ids,
                notification_type=self._type,
                metadata=self._metadata,
                priority=self._priority,
                action_url=self._action_url or self._config.action_url(self._metadata),
                dedup_key=self._dedup_key,
                group_key=self._group_key,
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.warning("Failed to create %s notifications: %s", self._type, e)
            return {"success": False, "count": 0, "error": str(e)}

        for row in rows:
            try:
                await manager.send_to_user(
                    row.user_id,
                    {"type": "notification", "notification": serialize_notification(row)},
                )
            except Exception as e:
                logger.warning("Failed to push notification %s to user %s: %s", row.id, row.user_id, e)

        logger.info("Sent %s notification to %d/%d users", self._type, len(rows), len(set(self._user_ids)))
        return {"success": True, "count": len(rows)}


def create_notification(notification_type: str, metadata: dict[str, Any]) -> NotificationBuilder:
    """Start a notification; raises ``pydantic.ValidationError`` on bad metadata."""
    return NotificationBuilder(notification_type, metadata)
