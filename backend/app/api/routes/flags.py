import logging

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from app.api.deps import CurrentUserDep, DbSessionDep
from app.api.helpers import best_effort, get_editable_wishlist, get_item_or_404, get_viewable_wishlist, iso
from app.core.view_cache import invalidate_views
from app.db.procedures import can_edit_wishlist
from app.models.models import FlagStatusEnum, ItemOwnershipFlag, WishlistItem, utcnow
from app.notifications.fanout import notify_user


router = APIRouter(tags=["flags"])
logger = logging.getLogger("giftify.flags")

UNDER_REVIEW_MESSAGE = "This item is already under review"


def _serialize_flag(flag: ItemOwnershipFlag) -> dict:
    return {
        "id": flag.id,
        "item_id": flag.item_id,
        "flagged_by": flag.flagged_by,
        "status": flag.status,
        "created_at": iso(flag.created_at),
        "resolved_at": iso(flag.resolved_at),
    }


@router.post("/wishlists/{wishlist_id}/items/{item_id}/flag", status_code=status.HTTP_201_CREATED)
async def flag_item(wishlist_id: str, item_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    """Tell the owner a friend thinks they already have this item."""
    wishlist = await get_viewable_wishlist(db, wishlist_id, current_user)
    if await can_edit_wishlist(db, wishlist, current_user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot flag items on your own wishlist")
    item = await get_item_or_404(db, wishlist.id, item_id)

    existing = await db.execute(select(ItemOwnershipFlag.status).where(ItemOwnershipFlag.item_id == item.id))
    existing_status = existing.scalar_one_or_none()
    if existing_status == FlagStatusEnum.PENDING.value:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=UNDER_REVIEW_MESSAGE)
    if existing_status is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="This item has already been reviewed")

    flag = ItemOwnershipFlag(item_id=item.id, flagged_by=current_user.id)
    db.add(flag)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=UNDER_REVIEW_MESSAGE) from None
    await db.refresh(flag)
    logger.info("Item flagged flag_id=%s item_id=%s by=%s", flag.id, item.id, current_user.id)

    response = {"success": True, "flag": _serialize_flag(flag)}
    meta = {
        "flag_id": flag.id,
        "item_id": item.id,
        "item_title": item.title,
        "item_image_url": item.custom_image_url or item.image_url,
        "wishlist_id": wishlist.id,
        "wishlist_name": wishlist.name,
        "wishlist_owner_id": wishlist.owner_id,
        "flagger_id": current_user.id,
        "flagger_name": current_user.display_name,
        "flagger_avatar_url": current_user.avatar_url,
    }
    await best_effort(
        notify_user(db, wishlist.owner_id, "item_flagged_already_owned", meta, dedup_key=f"flag_{flag.id}"),
        "item_flagged_already_owned notification",
    )
    return response


async def _resolve_flag(db, flag_id: str, user, resolution: FlagStatusEnum) -> dict:
    result = await db.execute(
        select(ItemOwnershipFlag)
        .where(ItemOwnershipFlag.id == flag_id)
        .options(selectinload(ItemOwnershipFlag.item).selectinload(WishlistItem.wishlist))
    )
    flag = result.scalar_one_or_none()
    if flag is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Flag not found")
    item = flag.item
    wishlist = item.wishlist
    if wishlist.owner_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    if flag.status != FlagStatusEnum.PENDING.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="This flag has already been resolved")

    flag.status = resolution.value
    flag.resolved_at = utcnow()
    if resolution is FlagStatusEnum.CONFIRMED:
        item.is_purchased = True
    await db.commit()
    logger.info("Flag resolved flag_id=%s status=%s", flag.id, flag.status)

    meta = {
        "flag_id": flag.id,
        "item_id": item.id,
        "item_title": item.title,
        "wishlist_id": wishlist.id,
        "wishlist_name": wishlist.name,
        "owner_id": user.id,
        "owner_name": user.display_name,
        "flagger_id": flag.flagged_by,
    }
    notification_type = "flag_confirmed" if resolution is FlagStatusEnum.CONFIRMED else "flag_denied"
    response = {"success": True, "flag": _serialize_flag(flag)}
    await invalidate_views(user.id)
    await best_effort(notify_user(db, flag.flagged_by, notification_type, meta), f"{notification_type} notification")
    return response


@router.post("/flags/{flag_id}/confirm")
async def confirm_flag(flag_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    return await _resolve_flag(db, flag_id, current_user, FlagStatusEnum.CONFIRMED)


@router.post("/flags/{flag_id}/deny")
async def deny_flag(flag_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    return await _resolve_flag(db, flag_id, current_user, FlagStatusEnum.DENIED)


@router.get("/wishlists/{wishlist_id}/flags")
async def list_flags(wishlist_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> list[dict]:
    wishlist = await get_editable_wishlist(db, wishlist_id, current_user)
    result = await db.execute(
        select(ItemOwnershipFlag)
        .join(WishlistItem, WishlistItem.id == ItemOwnershipFlag.item_id)
        .where(WishlistItem.wishlist_id == wishlist.id)
        .options(selectinload(ItemOwnershipFlag.flagger))
        .order_by(ItemOwnershipFlag.created_at.desc())
    )
    return [
        {
            **_serialize_flag(flag),
            "flagger": {"id": flag.flagger.id, "display_name": flag.flagger.display_name},
        }
        for flag in result.scalars().all()
    ]
