import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import ValidationError
from sqlalchemy import func, select, update

from app.api.deps import CurrentUserDep, DbSessionDep
from app.api.helpers import next_birthday
from app.db.procedures import archive_expired_notifications, get_friend_ids
from app.models.models import (
    NotificationPreference,
    NotificationStatusEnum,
    NotificationV2,
    User,
    utcnow,
)
from app.notifications.fanout import notify_user
from app.notifications.registry import CATEGORIES, UnknownNotificationType, parse_metadata
from app.realtime.manager import manager
from app.schemas.notifications import NotificationListStatus, PreferenceUpdate, serialize_notification


router = APIRouter(prefix="/notifications", tags=["notifications"])
logger = logging.getLogger("giftify.notifications")

DEFAULT_LIMIT = 50
BIRTHDAY_REMINDER_DAYS = 7


async def _push_update(user_id: str, message: dict[str, Any]) -> None:
    try:
        await manager.send_to_user(user_id, {"type": "notification_updated", **message})
    except Exception as e:
        logger.warning("Failed to push notification update to user %s: %s", user_id, e)


def _render(row: NotificationV2) -> dict[str, Any] | None:
    try:
        metadata = parse_metadata(row.type, row.payload or {})
    except (ValidationError, UnknownNotificationType) as e:
        logger.error("Skipping notification with invalid metadata id=%s type=%s: %s", row.id, row.type, e)
        return None
    return serialize_notification(row, metadata)


async def _get_own_notification(db, notification_id: str, user_id: str) -> NotificationV2:
    result = await db.execute(
        select(NotificationV2).where(NotificationV2.id == notification_id, NotificationV2.user_id == user_id)
    )
    row = result.scalar_one_or_none()
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return row


@router.get("")
async def list_notifications(
    db: DbSessionDep,
    current_user: CurrentUserDep,
    status_filter: NotificationListStatus = Query(default="inbox", alias="status"),
    limit: int = Query(default=DEFAULT_LIMIT, ge=1, le=200),
) -> list[dict]:
    user_id = current_user.id
    archived = await archive_expired_notifications(db, user_id)
    if archived:
        await db.commit()
        logger.info("Auto-archived %d expired notifications user_id=%s", archived, user_id)

    result = await db.execute(
        select(NotificationV2)
        .where(NotificationV2.user_id == user_id, NotificationV2.status == status_filter)
        .order_by(NotificationV2.created_at.desc())
        .limit(limit)
    )
    return [rendered for row in result.scalars().all() if (rendered := _render(row)) is not None]


@router.get("/unread-count")
async def unread_count(db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    result = await db.execute(
        select(func.count(NotificationV2.id)).where(
            NotificationV2.user_id == current_user.id,
            NotificationV2.status == NotificationStatusEnum.INBOX.value,
            NotificationV2.read_at.is_(None),
        )
    )
    return {"count": result.scalar_one()}


@router.post("/read-all")
async def mark_all_read(db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    user_id = current_user.id
    result = await db.execute(
        update(NotificationV2)
        .where(
            NotificationV2.user_id == user_id,
            NotificationV2.status == NotificationStatusEnum.INBOX.value,
            NotificationV2.read_at.is_(None),
        )
        .values(read_at=utcnow())
    )
    await db.commit()
    count = result.rowcount or 0
    await _push_update(user_id, {"action": "read_all", "count": count})
    return {"success": True, "count": count}


@router.post("/archive-read")
async def archive_read(db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    user_id = current_user.id
    result = await db.execute(
        update(NotificationV2)
        .where(
            NotificationV2.user_id == user_id,
            NotificationV2.status == NotificationStatusEnum.INBOX.value,
            NotificationV2.read_at.is_not(None),
        )
        .values(status=NotificationStatusEnum.ARCHIVED.value, archived_at=utcnow())
    )
    await db.commit()
    count = result.rowcount or 0
    await _push_update(user_id, {"action": "archive_read", "count": count})
    return {"success": True, "count": count}


async def _update_one(db, notification_id: str, user_id: str, **values: Any) -> dict:
    row = await _get_own_notification(db, notification_id, user_id)
    for key, value in values.items():
        setattr(row, key, value)
    await db.commit()
    rendered = _render(row)
    await _push_update(user_id, {"notification": rendered or {"id": row.id, "status": row.status}})
    return {"success": True}


@router.post("/{notification_id}/read")
async def mark_read(notification_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    return await _update_one(db, notification_id, current_user.id, read_at=utcnow())


@router.post("/{notification_id}/unread")
async def mark_unread(notification_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    return await _update_one(db, notification_id, current_user.id, read_at=None)


@router.post("/{notification_id}/archive")
async def archive_notification(notification_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    return await _update_one(
        db,
        notification_id,
        current_user.id,
        status=NotificationStatusEnum.ARCHIVED.value,
        archived_at=utcnow(),
    )


@router.post("/{notification_id}/unarchive")
async def unarchive_notification(notification_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    # A restored notification must not be swept straight back into the archive
    return await _update_one(
        db,
        notification_id,
        current_user.id,
        status=NotificationStatusEnum.INBOX.value,
        archived_at=None,
        expires_at=None,
    )


@router.get("/preferences")
async def list_preferences(db: DbSessionDep, current_user: CurrentUserDep) -> list[dict]:
    result = await db.execute(select(NotificationPreference).where(NotificationPreference.user_id == current_user.id))
    existing = {pref.category_id: pref for pref in result.scalars().all()}

    missing = [cid for cid in CATEGORIES if cid not in existing]
    if missing:
        for category_id in missing:
            pref = NotificationPreference(user_id=current_user.id, category_id=category_id, enabled=True, settings={})
            db.add(pref)
            existing[category_id] = pref
        await db.commit()

    return [
        {
            "category_id": category.id,
            "name": category.name,
            "description": category.description,
            "enabled": existing[category.id].enabled,
            "settings": existing[category.id].settings or {},
        }
        for category in sorted(CATEGORIES.values(), key=lambda c: c.sort_order)
    ]


@router.put("/preferences/{category_id}")
async def update_preference(
    category_id: str,
    payload: PreferenceUpdate,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> dict:
    if category_id not in CATEGORIES:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown notification category")

    result = await db.execute(
        select(NotificationPreference).where(
            NotificationPreference.user_id == current_user.id,
            NotificationPreference.category_id == category_id,
        )
    )
    pref = result.scalar_one_or_none()
    if pref is None:
        pref = NotificationPreference(user_id=current_user.id, category_id=category_id, settings={})
        db.add(pref)
    pref.enabled = payload.enabled
    if payload.settings is not None:
        pref.settings = payload.settings
    await db.commit()
    return {"success": True, "category_id": category_id, "enabled": pref.enabled}


@router.post("/birthday-reminders")
async def send_birthday_reminders(db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    """Remind the viewer about friends whose birthday is within a week."""
    user_id = current_user.id
    friend_ids = await get_friend_ids(db, user_id)
    if not friend_ids:
        return {"success": True, "count": 0}

    result = await db.execute(select(User).where(User.id.in_(friend_ids), User.birthday.is_not(None)))
    today = utcnow().date()
    reminders = []
    for friend in result.scalars().all():
        upcoming, days_until = next_birthday(friend.birthday, today)
        if days_until > BIRTHDAY_REMINDER_DAYS:
            continue
        reminders.append(
            (
                {
                    "friend_id": friend.id,
                    "friend_name": friend.display_name,
                    "friend_avatar_url": friend.avatar_url,
                    "birthday_date": upcoming.isoformat(),
                    "days_until": days_until,
                },
                f"birthday_{friend.id}_{upcoming.year}",
            )
        )

    sent = 0
    for meta, dedup_key in reminders:
        outcome = await notify_user(db, user_id, "birthday_reminder", meta, dedup_key=dedup_key)
        if not outcome["success"]:
            logger.warning("Failed to send birthday reminder to %s: %s", user_id, outcome.get("error"))
            continue
        sent += outcome["count"]
    return {"success": True, "count": sent}
