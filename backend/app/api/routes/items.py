import logging
from typing import Any

from fastapi import APIRouter, File, HTTPException, UploadFile, status

from app.api.deps import CurrentUserDep, DbSessionDep
from app.api.helpers import (
    best_effort,
    get_editable_wishlist,
    get_item_or_404,
    iso,
    parse_price,
    serialize_item,
)
from app.api.routes.wishlists import invalidate_wishlist_views
from app.core import storage
from app.core.link_metadata import LinkMetadataError, fetch_link_metadata
from app.core.view_cache import invalidate_views
from app.db.procedures import fulfill_claims_for_item, get_active_claimer_ids
from app.models.models import User, Wishlist, WishlistItem, utcnow
from app.notifications.builder import create_notification
from app.notifications.fanout import notify_wishlist_viewers
from app.schemas.wishlist import (
    ItemCreate,
    ItemUpdate,
    LinkMetadataRequest,
    PurchasedUpdate,
    ReceivedUpdate,
)


router = APIRouter(tags=["items"])
logger = logging.getLogger("giftify.items")


def _remove_stored_image(url: str | None) -> None:
    path = storage.extract_storage_path(url)
    if not path:
        return
    try:
        storage.delete_file(path)
    except Exception as e:
        logger.warning("Failed to delete item image %s: %s", path, e)


async def _send_gift_received(
    db,
    wishlist: Wishlist,
    item: dict[str, Any],
    owner: User,
    fulfilled: list[dict[str, Any]],
    marked_at: str,
) -> dict[str, Any]:
    sent = 0
    for claim in fulfilled:
        meta = {
            "item_id": item["id"],
            "item_title": item["title"],
            "item_image_url": item["custom_image_url"] or item["image_url"],
            "wishlist_id": wishlist.id,
            "wishlist_name": wishlist.name,
            "recipient_id": owner.id,
            "recipient_name": owner.display_name,
            "claim_type": claim["claim_type"],
            "claim_id": claim["claim_id"],
            "marked_at": marked_at,
        }
        result = await create_notification("gift_received", meta).to(claim["claimer_ids"]).send(db)
        if not result["success"]:
            return result
        sent += result["count"]
    return {"success": True, "count": sent}


@router.post("/wishlists/{wishlist_id}/items", status_code=status.HTTP_201_CREATED)
async def create_item(
    wishlist_id: str,
    payload: ItemCreate,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> dict:
    wishlist = await get_editable_wishlist(db, wishlist_id, current_user)
    item = WishlistItem(wishlist_id=wishlist.id, **payload.model_dump())
    db.add(item)
    await db.commit()
    await db.refresh(item)
    logger.info("Item created id=%s wishlist_id=%s by=%s", item.id, wishlist.id, current_user.id)

    serialized = serialize_item(item)
    owner = current_user if wishlist.owner_id == current_user.id else await db.get(User, wishlist.owner_id)
    meta = {
        "wishlist_id": wishlist.id,
        "wishlist_name": wishlist.name,
        "item_id": item.id,
        "item_title": item.title,
        "item_image_url": item.image_url,
        "item_price": parse_price(item.price),
        "item_currency": item.currency,
        "owner_id": owner.id,
        "owner_name": owner.display_name,
        "owner_avatar_url": owner.avatar_url,
    }
    await invalidate_wishlist_views(db, wishlist)
    await best_effort(
        notify_wishlist_viewers(db, wishlist, "item_added", meta, exclude=current_user.id),
        "item_added notification",
    )
    return {"success": True, "item": serialized}


@router.put("/wishlists/{wishlist_id}/items/{item_id}")
async def update_item(
    wishlist_id: str,
    item_id: str,
    payload: ItemUpdate,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> dict:
    await get_editable_wishlist(db, wishlist_id, current_user)
    item = await get_item_or_404(db, wishlist_id, item_id)
    for key, value in payload.model_dump().items():
        setattr(item, key, value)
    await db.commit()
    await db.refresh(item)
    return {"success": True, "item": serialize_item(item)}


@router.delete("/wishlists/{wishlist_id}/items/{item_id}")
async def delete_item(wishlist_id: str, item_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    wishlist = await get_editable_wishlist(db, wishlist_id, current_user)
    item = await get_item_or_404(db, wishlist_id, item_id)
    custom_image_url = item.custom_image_url
    claimer_ids = await get_active_claimer_ids(db, [item.id])

    await db.delete(item)
    await db.commit()
    logger.info("Item deleted id=%s wishlist_id=%s", item_id, wishlist_id)

    _remove_stored_image(custom_image_url)
    await invalidate_wishlist_views(db, wishlist)
    await invalidate_views(*claimer_ids)
    return {"success": True}


@router.post("/wishlists/{wishlist_id}/items/{item_id}/purchased")
async def mark_purchased(
    wishlist_id: str,
    item_id: str,
    payload: PurchasedUpdate,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> dict:
    await get_editable_wishlist(db, wishlist_id, current_user)
    item = await get_item_or_404(db, wishlist_id, item_id)
    item.is_purchased = payload.purchased
    await db.commit()
    return {"success": True, "is_purchased": payload.purchased}


@router.post("/wishlists/{wishlist_id}/items/{item_id}/received")
async def mark_received(
    wishlist_id: str,
    item_id: str,
    payload: ReceivedUpdate,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> dict:
    wishlist = await get_editable_wishlist(db, wishlist_id, current_user)
    item = await get_item_or_404(db, wishlist_id, item_id)

    if not payload.received:
        item.is_received = False
        item.received_at = None
        await db.commit()
        return {"success": True, "fulfilled_claims": []}

    now = utcnow()
    item.is_received = True
    item.received_at = now
    try:
        # Claims are fulfilled on behalf of the recipient, even when a collaborator marks it
        fulfilled = await fulfill_claims_for_item(db, item.id, wishlist.owner_id)
    except PermissionError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized") from None
    await db.commit()
    logger.info("Item received id=%s fulfilled_claims=%d", item.id, len(fulfilled))

    serialized = serialize_item(item)
    owner = await db.get(User, wishlist.owner_id)
    affected = {uid for claim in fulfilled for uid in claim["claimer_ids"]}
    await invalidate_wishlist_views(db, wishlist)
    if fulfilled:
        await invalidate_views(*affected)
        await best_effort(
            _send_gift_received(db, wishlist, serialized, owner, fulfilled, iso(now)),
            "gift_received notification",
        )
    return {"success": True, "fulfilled_claims": fulfilled}


@router.post("/wishlists/{wishlist_id}/items/{item_id}/image")
async def upload_item_image(
    wishlist_id: str,
    item_id: str,
    db: DbSessionDep,
    current_user: CurrentUserDep,
    file: UploadFile | None = File(default=None),
) -> dict:
    if file is None or not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file provided")

    await get_editable_wishlist(db, wishlist_id, current_user)
    item = await get_item_or_404(db, wishlist_id, item_id, detail="Item not found in this wishlist")

    data = await file.read(storage.max_upload_bytes() + 1)
    ext = storage.validate_image(file.content_type, data)

    path = storage.item_image_path(current_user.id, item.id, ext)
    try:
        storage.save_file(path, data)
    except OSError:
        logger.exception("Failed to store item image path=%s", path)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to upload image")

    previous_url = item.custom_image_url
    image_url = storage.build_public_url(path)
    item.custom_image_url = image_url
    item.image_url = None
    await db.commit()

    if previous_url and previous_url != image_url:
        _remove_stored_image(previous_url)
    return {"success": True, "image_url": image_url}


@router.delete("/wishlists/{wishlist_id}/items/{item_id}/image")
async def remove_item_image(
    wishlist_id: str,
    item_id: str,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> dict:
    await get_editable_wishlist(db, wishlist_id, current_user)
    item = await get_item_or_404(db, wishlist_id, item_id, detail="Item not found in this wishlist")
    if not item.custom_image_url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No custom image to remove")

    previous_url = item.custom_image_url
    item.custom_image_url = None
    await db.commit()

    _remove_stored_image(previous_url)
    return {"success": True}


@router.post("/link-metadata")
async def get_link_metadata(payload: LinkMetadataRequest, current_user: CurrentUserDep) -> dict:
    try:
        return await fetch_link_metadata(payload.url)
    except LinkMetadataError as e:
        logger.info("Link metadata unavailable user_id=%s url=%s: %s", current_user.id, payload.url, e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Failed to fetch link metadata") from None
