"""Multi-statement database operations shared by several routers.

Each helper runs inside the caller's session and never commits; the caller
owns the transaction boundary.
"""

from datetime import timedelta
import logging
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.models import (
    ClaimStatusEnum,
    Friendship,
    FriendshipStatusEnum,
    InviteCode,
    ItemClaim,
    NotificationCategory,
    NotificationPreference,
    NotificationStatusEnum,
    NotificationV2,
    PrivacyLevelEnum,
    SplitClaim,
    SplitClaimParticipant,
    User,
    Wishlist,
    WishlistCollaborator,
    WishlistItem,
    WishlistSelectedFriend,
    utcnow,
)
from app.notifications.registry import CATEGORIES, get_config


logger = logging.getLogger("giftify.db")

FRIEND_VISIBLE_PRIVACY = (PrivacyLevelEnum.FRIENDS.value, PrivacyLevelEnum.PUBLIC.value)


class InviteError(Exception):
    """An invite code could not be consumed."""


# Friendships

def _pair_clause(user1: str, user2: str):
    return or_(
        and_(Friendship.requester_id == user1, Friendship.addressee_id == user2),
        and_(Friendship.requester_id == user2, Friendship.addressee_id == user1),
    )


async def get_friendship(db: AsyncSession, user1: str, user2: str) -> Friendship | None:
    result = await db.execute(select(Friendship).where(_pair_clause(user1, user2)))
    return result.scalars().first()


async def are_friends(db: AsyncSession, user1: str, user2: str) -> bool:
    if user1 == user2:
        return False
    result = await db.execute(
        select(Friendship.id).where(
            _pair_clause(user1, user2),
            Friendship.status == FriendshipStatusEnum.ACCEPTED.value,
        )
    )
    return result.first() is not None


async def get_friend_ids(db: AsyncSession, user_id: str) -> list[str]:
    result = await db.execute(
        select(Friendship.requester_id, Friendship.addressee_id).where(
            or_(Friendship.requester_id == user_id, Friendship.addressee_id == user_id),
            Friendship.status == FriendshipStatusEnum.ACCEPTED.value,
        )
    )
    return [addressee if requester == user_id else requester for requester, addressee in result.all()]


# Wishlist access

async def is_wishlist_collaborator(db: AsyncSession, wishlist_id: str, user_id: str) -> bool:
    result = await db.execute(
        select(WishlistCollaborator.id).where(
            WishlistCollaborator.wishlist_id == wishlist_id,
            WishlistCollaborator.user_id == user_id,
        )
    )
    return result.first() is not None


async def is_selected_friend(db: AsyncSession, wishlist_id: str, user_id: str) -> bool:
    result = await db.execute(
        select(WishlistSelectedFriend.id).where(
            WishlistSelectedFriend.wishlist_id == wishlist_id,
            WishlistSelectedFriend.friend_id == user_id,
        )
    )
    return result.first() is not None


async def can_edit_wishlist(db: AsyncSession, wishlist: Wishlist, user_id: str) -> bool:
    if wishlist.owner_id == user_id:
        return True
    return await is_wishlist_collaborator(db, wishlist.id, user_id)


async def can_view_wishlist(db: AsyncSession, wishlist: Wishlist, user_id: str) -> bool:
    """Owner and collaborators always; others per privacy unless archived."""
    if await can_edit_wishlist(db, wishlist, user_id):
        return True
    if wishlist.is_archived:
        return False
    if wishlist.privacy == PrivacyLevelEnum.PUBLIC.value:
        return True
    if wishlist.privacy == PrivacyLevelEnum.FRIENDS.value:
        return await are_friends(db, wishlist.owner_id, user_id)
    if wishlist.privacy == PrivacyLevelEnum.SELECTED_FRIENDS.value:
        return await are_friends(db, wishlist.owner_id, user_id) and await is_selected_friend(
            db, wishlist.id, user_id
        )
    return False


async def get_wishlist_viewer_ids(db: AsyncSession, wishlist: Wishlist) -> list[str]:
    """Friends of the owner who may see ``wishlist``, owner and collaborators excluded."""
    if wishlist.privacy == PrivacyLevelEnum.PRIVATE.value:
        return []
    friend_ids = await get_friend_ids(db, wishlist.owner_id)
    if wishlist.privacy == PrivacyLevelEnum.SELECTED_FRIENDS.value:
        result = await db.execute(
            select(WishlistSelectedFriend.friend_id).where(WishlistSelectedFriend.wishlist_id == wishlist.id)
        )
        selected = set(result.scalars().all())
        friend_ids = [fid for fid in friend_ids if fid in selected]

    result = await db.execute(
        select(WishlistCollaborator.user_id).where(WishlistCollaborator.wishlist_id == wishlist.id)
    )
    collaborators = set(result.scalars().all())
    return [fid for fid in friend_ids if fid not in collaborators]


# Invites

async def validate_invite_code(db: AsyncSession, code: str) -> dict[str, Any]:
    result = await db.execute(
        select(InviteCode, User.display_name)
        .join(User, User.id == InviteCode.inviter_id)
        .where(InviteCode.code == code)
    )
    row = result.first()
    if row is None:
        return {"valid": False, "inviter_id": None, "inviter_name": None, "error_message": "Invalid invite code"}

    invite, inviter_name = row
    if invite.used_at is not None:
        error = "This invite code has already been used"
    elif invite.expires_at <= utcnow():
        error = "This invite code has expired"
    else:
        error = None
    return {
        "valid": error is None,
        "inviter_id": invite.inviter_id,
        "inviter_name": inviter_name,
        "error_message": error,
    }


async def consume_invite_and_befriend(db: AsyncSession, code: str, new_user_id: str) -> Friendship:
    """Mark ``code`` used by ``new_user_id`` and make them friends with the inviter."""
    result = await db.execute(select(InviteCode).where(InviteCode.code == code).with_for_update())
    invite = result.scalar_one_or_none()
    if invite is None:
        raise InviteError("Invalid invite code")
    if invite.used_at is not None:
        raise InviteError("This invite code has already been used")
    if invite.expires_at <= utcnow():
        raise InviteError("This invite code has expired")
    if invite.inviter_id == new_user_id:
        raise InviteError("Cannot use your own invite code")

    invite.used_at = utcnow()
    invite.used_by = new_user_id

    friendship = await get_friendship(db, invite.inviter_id, new_user_id)
    if friendship is None:
        friendship = Friendship(
            requester_id=invite.inviter_id,
            addressee_id=new_user_id,
            status=FriendshipStatusEnum.ACCEPTED.value,
        )
        db.add(friendship)
    else:
        friendship.status = FriendshipStatusEnum.ACCEPTED.value
    await db.flush()
    return friendship


# Claims

async def fulfill_claims_for_item(db: AsyncSession, item_id: str, owner_id: str) -> list[dict[str, Any]]:
    """Close every active claim on an item its owner marked as received."""
    result = await db.execute(
        select(WishlistItem.id)
        .join(Wishlist, Wishlist.id == WishlistItem.wishlist_id)
        .where(WishlistItem.id == item_id, Wishlist.owner_id == owner_id)
    )
    if result.first() is None:
        raise PermissionError("Only the wishlist owner can fulfil claims")

    now = utcnow()
    fulfilled: list[dict[str, Any]] = []

    solo = await db.execute(
        select(ItemClaim).where(ItemClaim.item_id == item_id, ItemClaim.status == ClaimStatusEnum.ACTIVE.value)
    )
    for claim in solo.scalars().all():
        claim.status = ClaimStatusEnum.FULFILLED.value
        claim.fulfilled_at = now
        fulfilled.append({"claim_id": claim.id, "claim_type": "solo", "claimer_ids": [claim.claimed_by]})

    splits = await db.execute(
        select(SplitClaim).where(
            SplitClaim.item_id == item_id,
            SplitClaim.claim_status == ClaimStatusEnum.ACTIVE.value,
        )
    )
    for split in splits.scalars().all():
        split.claim_status = ClaimStatusEnum.FULFILLED.value
        split.fulfilled_at = now
        participant_ids = await get_split_participant_ids(db, split.id)
        fulfilled.append({"claim_id": split.id, "claim_type": "split", "claimer_ids": participant_ids})

    await db.flush()
    return fulfilled


async def get_split_participant_ids(db: AsyncSession, split_claim_id: str, exclude: str | None = None) -> list[str]:
    query = select(SplitClaimParticipant.user_id).where(SplitClaimParticipant.split_claim_id == split_claim_id)
    if exclude:
        query = query.where(SplitClaimParticipant.user_id != exclude)
    result = await db.execute(query.order_by(SplitClaimParticipant.joined_at))
    return list(result.scalars().all())


async def get_active_claimer_ids(db: AsyncSession, item_ids: list[str]) -> list[str]:
    """Users holding an active solo claim or split participation on any of ``item_ids``."""
    if not item_ids:
        return []
    solo = await db.execute(
        select(ItemClaim.claimed_by).where(
            ItemClaim.item_id.in_(item_ids),
            ItemClaim.status == ClaimStatusEnum.ACTIVE.value,
        )
    )
    split = await db.execute(
        select(SplitClaimParticipant.user_id)
        .join(SplitClaim, SplitClaim.id == SplitClaimParticipant.split_claim_id)
        .where(
            SplitClaim.item_id.in_(item_ids),
            SplitClaim.claim_status == ClaimStatusEnum.ACTIVE.value,
        )
    )
    return list(dict.fromkeys([*solo.scalars().all(), *split.scalars().all()]))


# Notifications

async def seed_notification_categories(db: AsyncSession) -> None:
    result = await db.execute(select(NotificationCategory.id))
    existing = set(result.scalars().all())
    missing = [c for c in CATEGORIES.values() if c.id not in existing]
    if not missing:
        return
    for category in missing:
        db.add(
            NotificationCategory(
                id=category.id,
                name=category.name,
                description=category.description,
                sort_order=category.sort_order,
            )
        )
    await db.commit()
    logger.info("Seeded %d notification categories", len(missing))


async def create_notification_v2(
    db: AsyncSession,
    *,
    user_ids: list[str],
    notification_type: str,
    metadata: dict[str, Any],
    priority: int | None = None,
    action_url: str | None = None,
    dedup_key: str | None = None,
    group_key: str | None = None,
) -> list[NotificationV2]:
    """Insert (or fold into an unread group) one notification per recipient.

    Recipients who disabled the type's category, or who already have a
    notification with ``dedup_key``, are skipped. Returns the rows written.
    """
    config = get_config(notification_type)
    recipients = list(dict.fromkeys(uid for uid in user_ids if uid))
    if not recipients:
        return []

    disabled = await db.execute(
        select(NotificationPreference.user_id).where(
            NotificationPreference.user_id.in_(recipients),
            NotificationPreference.category_id == config.category_id,
            NotificationPreference.enabled.is_(False),
        )
    )
    skip = set(disabled.scalars().all())

    if dedup_key:
        duplicates = await db.execute(
            select(NotificationV2.user_id).where(
                NotificationV2.user_id.in_(recipients),
                NotificationV2.dedup_key == dedup_key,
            )
        )
        skip.update(duplicates.scalars().all())

    recipients = [uid for uid in recipients if uid not in skip]
    if not recipients:
        return []

    groups: dict[str, NotificationV2] = {}
    if group_key:
        grouped = await db.execute(
            select(NotificationV2)
            .where(
                NotificationV2.user_id.in_(recipients),
                NotificationV2.group_key == group_key,
                NotificationV2.status == NotificationStatusEnum.INBOX.value,
                NotificationV2.read_at.is_(None),
            )
            .order_by(NotificationV2.created_at.desc())
        )
        for row in grouped.scalars().all():
            groups.setdefault(row.user_id, row)

    now = utcnow()
    expires_at = now + timedelta(days=config.auto_archive_after_days) if config.auto_archive_after_days else None
    effective_priority = priority if priority is not None else config.priority
    written: list[NotificationV2] = []

    for user_id in recipients:
        row = groups.get(user_id)
        if row is not None:
            row.type = notification_type
            row.category_id = config.category_id
            row.payload = metadata
            row.priority = effective_priority
            row.action_url = action_url
            row.created_at = now
            row.expires_at = expires_at
            row.group_count = (row.group_count or 1) + 1
        else:
            row = NotificationV2(
                user_id=user_id,
                type=notification_type,
                category_id=config.category_id,
                payload=metadata,
                priority=effective_priority,
                action_url=action_url,
                dedup_key=dedup_key,
                group_key=group_key,
                group_count=1,
                status=NotificationStatusEnum.INBOX.value,
                created_at=now,
                expires_at=expires_at,
            )
            db.add(row)
        written.append(row)

    await db.flush()
    return written


async def archive_expired_notifications(db: AsyncSession, user_id: str) -> int:
    now = utcnow()
    result = await db.execute(
        update(NotificationV2)
        .where(
            NotificationV2.user_id == user_id,
            NotificationV2.status == NotificationStatusEnum.INBOX.value,
            NotificationV2.expires_at.is_not(None),
            NotificationV2.expires_at <= now,
        )
        .values(status=NotificationStatusEnum.ARCHIVED.value, archived_at=now)
    )
    return result.rowcount or 0
