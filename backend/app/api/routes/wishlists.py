import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import delete, func, or_, select

from app.api.deps import CurrentUserDep, DbSessionDep
from app.api.helpers import (
    best_effort,
    get_owned_wishlist,
    get_viewable_wishlist,
    profile_summary,
    serialize_item,
    serialize_wishlist,
)
from app.core import storage
from app.core.view_cache import invalidate_views, view_cache
from app.db.procedures import can_edit_wishlist, get_active_claimer_ids
from app.models.models import (
    ClaimStatusEnum,
    ItemClaim,
    PrivacyLevelEnum,
    SplitClaim,
    User,
    Wishlist,
    WishlistCollaborator,
    WishlistItem,
    WishlistSelectedFriend,
)
from app.notifications.fanout import notify_wishlist_viewers
from app.schemas.wishlist import WishlistCreate, WishlistUpdate


router = APIRouter(prefix="/wishlists", tags=["wishlists"])
logger = logging.getLogger("giftify.wishlists")


async def collaborator_ids(db, wishlist_id: str) -> list[str]:
    result = await db.execute(
        select(WishlistCollaborator.user_id).where(WishlistCollaborator.wishlist_id == wishlist_id)
    )
    return list(result.scalars().all())


async def invalidate_wishlist_views(db, wishlist: Wishlist) -> None:
    """Owner and collaborators see the wishlist in their own lists and stats."""
    await invalidate_views(wishlist.owner_id, *await collaborator_ids(db, wishlist.id))


def _owner_meta(wishlist: Wishlist, owner: User) -> dict[str, Any]:
    return {
        "wishlist_id": wishlist.id,
        "wishlist_name": wishlist.name,
        "owner_id": owner.id,
        "owner_name": owner.display_name,
        "owner_avatar_url": owner.avatar_url,
    }


async def _list_wishlists(db, user: User, archived: bool) -> list[dict[str, Any]]:
    collaborating = select(WishlistCollaborator.wishlist_id).where(WishlistCollaborator.user_id == user.id)
    item_counts = (
        select(WishlistItem.wishlist_id, func.count(WishlistItem.id).label("item_count"))
        .group_by(WishlistItem.wishlist_id)
        .subquery()
    )
    result = await db.execute(
        select(Wishlist, func.coalesce(item_counts.c.item_count, 0))
        .outerjoin(item_counts, item_counts.c.wishlist_id == Wishlist.id)
        .where(
            or_(Wishlist.owner_id == user.id, Wishlist.id.in_(collaborating)),
            Wishlist.is_archived.is_(archived),
        )
        .order_by(Wishlist.created_at.desc())
    )
    return [
        {
            **serialize_wishlist(wishlist),
            "item_count": int(count),
            "is_collaborator": wishlist.owner_id != user.id,
        }
        for wishlist, count in result.all()
    ]


@router.get("")
async def list_my_wishlists(
    db: DbSessionDep,
    current_user: CurrentUserDep,
    archived: bool = Query(default=False),
) -> list[dict]:
    view = "wishlists_archived" if archived else "wishlists_active"
    cached = await view_cache.get(current_user.id, view)
    if cached is not None:
        return cached

    wishlists = await _list_wishlists(db, current_user, archived)
    await view_cache.set(current_user.id, view, wishlists)
    return wishlists


@router.get("/{wishlist_id}")
async def get_wishlist(wishlist_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    wishlist = await get_viewable_wishlist(db, wishlist_id, current_user)
    owner = await db.get(User, wishlist.owner_id)
    is_editor = await can_edit_wishlist(db, wishlist, current_user.id)

    result = await db.execute(
        select(WishlistItem).where(WishlistItem.wishlist_id == wishlist.id).order_by(WishlistItem.created_at.desc())
    )
    items = [serialize_item(item) for item in result.scalars().all()]

    if not is_editor and items:
        item_ids = [item["id"] for item in items]
        claims = await db.execute(
            select(ItemClaim.item_id, ItemClaim.claimed_by).where(
                ItemClaim.item_id.in_(item_ids),
                ItemClaim.status == ClaimStatusEnum.ACTIVE.value,
            )
        )
        claimed = dict(claims.all())
        splits = await db.execute(
            select(SplitClaim.item_id).where(
                SplitClaim.item_id.in_(item_ids),
                SplitClaim.claim_status == ClaimStatusEnum.ACTIVE.value,
            )
        )
        split_items = set(splits.scalars().all())
        for item in items:
            item["is_claimed"] = item["id"] in claimed
            item["claimed_by_me"] = claimed.get(item["id"]) == current_user.id
            item["has_split_claim"] = item["id"] in split_items

    return {
        **serialize_wishlist(wishlist),
        "owner": profile_summary(owner),
        "is_owner": wishlist.owner_id == current_user.id,
        "is_collaborator": is_editor and wishlist.owner_id != current_user.id,
        "items": items,
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_wishlist(payload: WishlistCreate, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    wishlist = Wishlist(
        owner_id=current_user.id,
        name=payload.name,
        description=payload.description,
        privacy=payload.privacy,
    )
    db.add(wishlist)
    await db.commit()
    await db.refresh(wishlist)
    logger.info("Wishlist created id=%s owner_id=%s privacy=%s", wishlist.id, current_user.id, wishlist.privacy)

    response = {"success": True, "wishlist": serialize_wishlist(wishlist)}
    await invalidate_views(current_user.id)
    await best_effort(
        notify_wishlist_viewers(
            db,
            wishlist,
            "wishlist_created",
            {**_owner_meta(wishlist, current_user), "privacy": wishlist.privacy},
        ),
        "wishlist_created notification",
    )
    return response


@router.put("/{wishlist_id}")
async def update_wishlist(
    wishlist_id: str,
    payload: WishlistUpdate,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> dict:
    wishlist = await get_owned_wishlist(db, wishlist_id, current_user)
    if wishlist.privacy == PrivacyLevelEnum.SELECTED_FRIENDS.value and payload.privacy != wishlist.privacy:
        await db.execute(delete(WishlistSelectedFriend).where(WishlistSelectedFriend.wishlist_id == wishlist.id))

    wishlist.name = payload.name
    wishlist.description = payload.description
    wishlist.privacy = payload.privacy
    await db.commit()
    await db.refresh(wishlist)

    response = {"success": True, "wishlist": serialize_wishlist(wishlist)}
    await invalidate_wishlist_views(db, wishlist)
    return response


@router.delete("/{wishlist_id}")
async def delete_wishlist(wishlist_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    wishlist = await get_owned_wishlist(db, wishlist_id, current_user)
    result = await db.execute(
        select(WishlistItem.id, WishlistItem.custom_image_url).where(WishlistItem.wishlist_id == wishlist.id)
    )
    rows = result.all()
    image_paths = [path for path in (storage.extract_storage_path(url) for _, url in rows) if path]
    # Claimers lose their claims in the cascade
    affected = [
        wishlist.owner_id,
        *await collaborator_ids(db, wishlist.id),
        *await get_active_claimer_ids(db, [item_id for item_id, _ in rows]),
    ]

    await db.delete(wishlist)
    await db.commit()
    logger.info("Wishlist deleted id=%s owner_id=%s", wishlist_id, current_user.id)

    for path in image_paths:
        try:
            storage.delete_file(path)
        except Exception as e:
            logger.warning("Failed to delete item image %s: %s", path, e)
    await invalidate_views(*affected)
    return {"success": True}


@router.post("/{wishlist_id}/archive")
async def archive_wishlist(wishlist_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    wishlist = await get_owned_wishlist(db, wishlist_id, current_user)
    if wishlist.is_archived:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Wishlist is already archived")

    wishlist.is_archived = True
    await db.commit()
    logger.info("Wishlist archived id=%s", wishlist.id)

    meta = _owner_meta(wishlist, current_user)
    await invalidate_wishlist_views(db, wishlist)
    await best_effort(
        notify_wishlist_viewers(db, wishlist, "wishlist_archived", meta),
        "wishlist_archived notification",
    )
    return {"success": True}


@router.post("/{wishlist_id}/unarchive")
async def unarchive_wishlist(wishlist_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    wishlist = await get_owned_wishlist(db, wishlist_id, current_user)
    if not wishlist.is_archived:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Wishlist is not archived")

    wishlist.is_archived = False
    await db.commit()
    await invalidate_wishlist_views(db, wishlist)
    return {"success": True}
