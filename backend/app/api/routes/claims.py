import logging

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from app.api.deps import CurrentUserDep, DbSessionDep
from app.api.helpers import get_item_or_404, get_viewable_wishlist, iso
from app.api.routes.claim_history import record_claim_history_event
from app.core.view_cache import invalidate_views
from app.db.procedures import can_edit_wishlist
from app.models.models import ClaimStatusEnum, ItemClaim, SplitClaim, WishlistItem, utcnow


router = APIRouter(prefix="/wishlists", tags=["claims"])
logger = logging.getLogger("giftify.claims")

ALREADY_CLAIMED_MESSAGE = "This item has already been claimed by someone else"


def _serialize_claim(claim: ItemClaim) -> dict:
    return {
        "id": claim.id,
        "item_id": claim.item_id,
        "claimed_by": claim.claimed_by,
        "status": claim.status,
        "created_at": iso(claim.created_at),
        "cancelled_at": iso(claim.cancelled_at),
    }


@router.get("/{wishlist_id}/claims")
async def list_wishlist_claims(wishlist_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> list[dict]:
    wishlist = await get_viewable_wishlist(db, wishlist_id, current_user)
    if await can_edit_wishlist(db, wishlist, current_user.id):
        # Claims stay a surprise for the people receiving the gift
        return []

    result = await db.execute(
        select(ItemClaim)
        .join(WishlistItem, WishlistItem.id == ItemClaim.item_id)
        .where(WishlistItem.wishlist_id == wishlist.id, ItemClaim.status == ClaimStatusEnum.ACTIVE.value)
        .options(selectinload(ItemClaim.claimer))
        .order_by(ItemClaim.created_at)
    )
    return [
        {
            **_serialize_claim(claim),
            "claimer": {"id": claim.claimer.id, "display_name": claim.claimer.display_name},
        }
        for claim in result.scalars().all()
    ]


@router.post("/{wishlist_id}/items/{item_id}/claim", status_code=status.HTTP_201_CREATED)
async def claim_item(wishlist_id: str, item_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    wishlist = await get_viewable_wishlist(db, wishlist_id, current_user)
    if await can_edit_wishlist(db, wishlist, current_user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot claim items on your own wishlist")
    item = await get_item_or_404(db, wishlist.id, item_id)

    claims = await db.execute(select(ItemClaim).where(ItemClaim.item_id == item.id))
    existing = claims.scalars().all()
    own_claim = next((c for c in existing if c.claimed_by == current_user.id), None)
    if own_claim is not None and own_claim.status != ClaimStatusEnum.CANCELLED.value:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="You already claimed this item")
    if any(c.status == ClaimStatusEnum.ACTIVE.value for c in existing if c is not own_claim):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=ALREADY_CLAIMED_MESSAGE)

    split = await db.execute(
        select(SplitClaim.id).where(
            SplitClaim.item_id == item.id,
            SplitClaim.claim_status == ClaimStatusEnum.ACTIVE.value,
        )
    )
    if split.first() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This item has a split claim in progress. Join the split instead!",
        )

    if own_claim is not None:
        own_claim.status = ClaimStatusEnum.ACTIVE.value
        own_claim.cancelled_at = None
        claim = own_claim
        event_type = "uncancelled"
    else:
        claim = ItemClaim(item_id=item.id, claimed_by=current_user.id)
        db.add(claim)
        event_type = "claimed"

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Claim race lost item_id=%s user_id=%s", item_id, current_user.id)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=ALREADY_CLAIMED_MESSAGE) from None

    await db.refresh(claim)
    response = {"success": True, "claim": _serialize_claim(claim)}
    logger.info("Item claimed item_id=%s claim_id=%s event=%s", item_id, claim.id, event_type)

    await record_claim_history_event(
        db,
        event_type,
        current_user.id,
        item_claim_id=response["claim"]["id"],
        metadata={"item_id": item_id, "wishlist_id": wishlist_id},
    )
    await invalidate_views(current_user.id)
    return response


@router.delete("/{wishlist_id}/items/{item_id}/claim")
async def unclaim_item(wishlist_id: str, item_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    result = await db.execute(
        select(ItemClaim)
        .join(WishlistItem, WishlistItem.id == ItemClaim.item_id)
        .where(
            WishlistItem.wishlist_id == wishlist_id,
            ItemClaim.item_id == item_id,
            ItemClaim.claimed_by == current_user.id,
            ItemClaim.status == ClaimStatusEnum.ACTIVE.value,
        )
    )
    claim = result.scalar_one_or_none()
    if claim is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Claim not found")

    claim.status = ClaimStatusEnum.CANCELLED.value
    claim.cancelled_at = utcnow()
    await db.commit()
    claim_id = claim.id
    logger.info("Claim cancelled claim_id=%s", claim_id)

    await record_claim_history_event(
        db,
        "cancelled",
        current_user.id,
        item_claim_id=claim_id,
        metadata={"item_id": item_id, "wishlist_id": wishlist_id},
    )
    await invalidate_views(current_user.id)
    return {"success": True}
