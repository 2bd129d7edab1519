from datetime import datetime
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import and_, func, or_, select

from app.api.deps import CurrentUserDep, DbSessionDep
from app.api.helpers import iso, next_birthday, profile_summary, serialize_item, serialize_wishlist
from app.core.view_cache import view_cache
from app.db.procedures import FRIEND_VISIBLE_PRIVACY, get_friend_ids
from app.models.models import (
    ClaimStatusEnum,
    ItemClaim,
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


router = APIRouter(prefix="/dashboard", tags=["dashboard"])
logger = logging.getLogger("giftify.dashboard")

FEED_PAGE_SIZE = 12
UPCOMING_BIRTHDAYS = 5
PREVIEW_WISHLISTS = 3


def _parse_cursor(cursor: str | None) -> tuple[datetime, str | None] | None:
    """``"<created_at>|<item id>"``; a bare timestamp is still accepted."""
    if not cursor:
        return None
    created_at, _, item_id = cursor.partition("|")
    try:
        return datetime.fromisoformat(created_at), item_id or None
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid cursor") from None


def _make_cursor(item: WishlistItem) -> str:
    return f"{iso(item.created_at)}|{item.id}"


async def _item_counts(db, wishlist_ids: list[str]) -> dict[str, int]:
    if not wishlist_ids:
        return {}
    result = await db.execute(
        select(WishlistItem.wishlist_id, func.count(WishlistItem.id))
        .where(WishlistItem.wishlist_id.in_(wishlist_ids))
        .group_by(WishlistItem.wishlist_id)
    )
    return {wishlist_id: int(count) for wishlist_id, count in result.all()}


@router.get("/feed")
async def get_feed(
    db: DbSessionDep,
    current_user: CurrentUserDep,
    cursor: str | None = Query(default=None),
    limit: int = Query(default=FEED_PAGE_SIZE, ge=1, le=50),
) -> dict:
    """Newest items across friends' wishlists the viewer is allowed to see."""
    before = _parse_cursor(cursor)
    friend_ids = await get_friend_ids(db, current_user.id)
    if not friend_ids:
        return {"items": [], "next_cursor": None, "has_more": False}

    selected = select(WishlistSelectedFriend.wishlist_id).where(WishlistSelectedFriend.friend_id == current_user.id)
    collaborating = select(WishlistCollaborator.wishlist_id).where(WishlistCollaborator.user_id == current_user.id)
    query = (
        select(WishlistItem, Wishlist, User)
        .join(Wishlist, Wishlist.id == WishlistItem.wishlist_id)
        .join(User, User.id == Wishlist.owner_id)
        .where(
            Wishlist.owner_id.in_(friend_ids),
            Wishlist.is_archived.is_(False),
            Wishlist.id.not_in(collaborating),
            or_(
                Wishlist.privacy.in_(FRIEND_VISIBLE_PRIVACY),
                and_(Wishlist.privacy == PrivacyLevelEnum.SELECTED_FRIENDS.value, Wishlist.id.in_(selected)),
            ),
        )
        .order_by(WishlistItem.created_at.desc(), WishlistItem.id.desc())
        .limit(limit + 1)
    )
    if before is not None:
        before_at, before_id = before
        if before_id is None:
            query = query.where(WishlistItem.created_at < before_at)
        else:
            query = query.where(
                or_(
                    WishlistItem.created_at < before_at,
                    and_(WishlistItem.created_at == before_at, WishlistItem.id < before_id),
                )
            )

    rows = (await db.execute(query)).all()
    has_more = len(rows) > limit
    rows = rows[:limit]
    if not rows:
        return {"items": [], "next_cursor": None, "has_more": False}

    item_ids = [item.id for item, _, _ in rows]
    claims = await db.execute(
        select(ItemClaim.item_id, ItemClaim.claimed_by).where(
            ItemClaim.item_id.in_(item_ids),
            ItemClaim.status == ClaimStatusEnum.ACTIVE.value,
        )
    )
    claimed_by = dict(claims.all())
    splits = await db.execute(
        select(SplitClaim.item_id).where(
            SplitClaim.item_id.in_(item_ids),
            SplitClaim.claim_status == ClaimStatusEnum.ACTIVE.value,
        )
    )
    split_items = set(splits.scalars().all())

    items: list[dict[str, Any]] = []
    for item, wishlist, owner in rows:
        items.append(
            {
                **serialize_item(item),
                "wishlist": {"id": wishlist.id, "name": wishlist.name},
                "owner": profile_summary(owner),
                "is_claimed": item.id in claimed_by,
                "claimed_by_me": claimed_by.get(item.id) == current_user.id,
                "has_split_claim": item.id in split_items,
            }
        )
    return {
        "items": items,
        "next_cursor": _make_cursor(rows[-1][0]) if has_more else None,
        "has_more": has_more,
    }


@router.get("/birthdays")
async def upcoming_birthdays(
    db: DbSessionDep,
    current_user: CurrentUserDep,
    days_ahead: int = Query(default=30, ge=0, le=366),
) -> list[dict]:
    friend_ids = await get_friend_ids(db, current_user.id)
    if not friend_ids:
        return []

    result = await db.execute(select(User).where(User.id.in_(friend_ids), User.birthday.is_not(None)))
    today = utcnow().date()
    upcoming = []
    for friend in result.scalars().all():
        occurrence, days_until = next_birthday(friend.birthday, today)
        if days_until <= days_ahead:
            upcoming.append(
                {
                    **profile_summary(friend),
                    "birthday": iso(friend.birthday),
                    "next_birthday": iso(occurrence),
                    "days_until": days_until,
                }
            )
    upcoming.sort(key=lambda b: (b["days_until"], b["display_name"].lower()))
    return upcoming[:UPCOMING_BIRTHDAYS]


@router.get("/wishlists-preview")
async def wishlists_preview(db: DbSessionDep, current_user: CurrentUserDep) -> list[dict]:
    result = await db.execute(
        select(Wishlist)
        .where(Wishlist.owner_id == current_user.id, Wishlist.is_archived.is_(False))
        .order_by(Wishlist.created_at.desc())
        .limit(PREVIEW_WISHLISTS)
    )
    wishlists = result.scalars().all()
    counts = await _item_counts(db, [w.id for w in wishlists])
    return [{**serialize_wishlist(w), "item_count": counts.get(w.id, 0)} for w in wishlists]


async def _compute_stats(db, user_id: str) -> dict[str, int]:
    total_wishlists = await db.execute(
        select(func.count(Wishlist.id)).where(Wishlist.owner_id == user_id, Wishlist.is_archived.is_(False))
    )
    total_items = await db.execute(
        select(func.count(WishlistItem.id))
        .join(Wishlist, Wishlist.id == WishlistItem.wishlist_id)
        .where(Wishlist.owner_id == user_id, Wishlist.is_archived.is_(False))
    )
    solo_claims = await db.execute(
        select(func.count(ItemClaim.id)).where(
            ItemClaim.claimed_by == user_id,
            ItemClaim.status == ClaimStatusEnum.ACTIVE.value,
        )
    )
    split_claims = await db.execute(
        select(func.count(SplitClaimParticipant.id))
        .join(SplitClaim, SplitClaim.id == SplitClaimParticipant.split_claim_id)
        .where(
            SplitClaimParticipant.user_id == user_id,
            SplitClaim.claim_status == ClaimStatusEnum.ACTIVE.value,
        )
    )
    return {
        "total_wishlists": total_wishlists.scalar_one(),
        "total_items": total_items.scalar_one(),
        "friends_count": len(await get_friend_ids(db, user_id)),
        "claimed_items_count": solo_claims.scalar_one() + split_claims.scalar_one(),
    }


@router.get("/stats")
async def dashboard_stats(db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    cached = await view_cache.get(current_user.id, "dashboard_stats")
    if cached is not None:
        return cached

    stats = await _compute_stats(db, current_user.id)
    await view_cache.set(current_user.id, "dashboard_stats", stats)
    return stats
