"""Recipient selection for common notification audiences."""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.procedures import get_friend_ids, get_split_participant_ids, get_wishlist_viewer_ids
from app.models.models import Wishlist
from app.notifications.builder import create_notification


_NOTHING_TO_SEND = {"success": True, "count": 0}


async def notify_user(
    db: AsyncSession,
    user_id: str,
    notification_type: str,
    metadata: dict[str, Any],
    dedup_key: str | None = None,
) -> dict[str, Any]:
    builder = create_notification(notification_type, metadata).to(user_id)
    if dedup_key:
        builder.with_dedup_key(dedup_key)
    return await builder.send(db)


async def notify_friends(
    db: AsyncSession,
    user_id: str,
    notification_type: str,
    metadata: dict[str, Any],
) -> dict[str, Any]:
    friend_ids = await get_friend_ids(db, user_id)
    if not friend_ids:
        return _NOTHING_TO_SEND
    return await create_notification(notification_type, metadata).to(friend_ids).send(db)


async def notify_wishlist_viewers(
    db: AsyncSession,
    wishlist: Wishlist,
    notification_type: str,
    metadata: dict[str, Any],
    exclude: str | None = None,
) -> dict[str, Any]:
    """Notify every friend allowed to see ``wishlist`` under its privacy."""
    viewer_ids = [uid for uid in await get_wishlist_viewer_ids(db, wishlist) if uid != exclude]
    if not viewer_ids:
        return _NOTHING_TO_SEND
    return await (
        create_notification(notification_type, metadata).to(viewer_ids).with_auto_group_key().send(db)
    )


async def notify_split_participants(
    db: AsyncSession,
    split_claim_id: str,
    notification_type: str,
    metadata: dict[str, Any],
    exclude: str | None = None,
) -> dict[str, Any]:
    participant_ids = await get_split_participant_ids(db, split_claim_id, exclude=exclude)
    if not participant_ids:
        return _NOTHING_TO_SEND
    return await (
        create_notification(notification_type, metadata).to(participant_ids).with_auto_group_key().send(db)
    )
