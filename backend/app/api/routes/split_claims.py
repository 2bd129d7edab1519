"""Group gifts: several friends sharing the cost of one item.

A split starts ``pending`` with its initiator as the first participant and
flips to ``confirmed`` once ``target_participants`` people have joined (or
the initiator confirms early). ``claim_status`` tracks the claim lifecycle
independently: active, cancelled when the initiator walks away, fulfilled
when the owner marks the item received.
"""

import logging
import math
from typing import Any

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from app.api.deps import CurrentUserDep, DbSessionDep
from app.api.helpers import (
    best_effort,
    get_item_or_404,
    get_viewable_wishlist,
    iso,
    parse_price,
    profile_summary,
)
from app.api.routes.claim_history import record_claim_history_event
from app.core.view_cache import invalidate_views
from app.db.procedures import can_edit_wishlist, can_view_wishlist
from app.models.models import (
    ClaimStatusEnum,
    FlagStatusEnum,
    ItemClaim,
    ItemOwnershipFlag,
    SplitClaim,
    SplitClaimParticipant,
    SplitStatusEnum,
    User,
    WishlistItem,
    utcnow,
)
from app.notifications.fanout import notify_split_participants, notify_wishlist_viewers
from app.schemas.social import MIN_SPLIT_PARTICIPANTS, SplitClaimCreate


router = APIRouter(tags=["split-claims"])
logger = logging.getLogger("giftify.split_claims")

OWN_WISHLIST_MESSAGE = "Cannot perform this action on your own wishlist"
SPLIT_IN_PROGRESS_MESSAGE = "This item already has a split claim in progress"


def _split_options():
    return (
        selectinload(SplitClaim.initiator),
        selectinload(SplitClaim.participants).selectinload(SplitClaimParticipant.user),
        selectinload(SplitClaim.item).selectinload(WishlistItem.wishlist),
    )


async def _load_split(db, split_id: str) -> SplitClaim | None:
    result = await db.execute(
        select(SplitClaim)
        .where(SplitClaim.id == split_id)
        .options(*_split_options())
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _get_split_or_404(db, split_id: str, user: User) -> SplitClaim:
    split = await _load_split(db, split_id)
    if split is None or not await can_view_wishlist(db, split.item.wishlist, user.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Split claim not found")
    return split


def cost_per_person(price: str | None, participants: int) -> float | None:
    amount = parse_price(price)
    if amount is None or participants <= 0:
        return None
    return float(math.ceil(amount / participants))


def serialize_split(split: SplitClaim, viewer_id: str) -> dict[str, Any]:
    participants = [
        {**profile_summary(p.user), "joined_at": iso(p.joined_at)} for p in split.participants
    ]
    return {
        "id": split.id,
        "item_id": split.item_id,
        "initiated_by": split.initiated_by,
        "initiator": profile_summary(split.initiator),
        "target_participants": split.target_participants,
        "current_participants": len(participants),
        "status": split.status,
        "claim_status": split.claim_status,
        "created_at": iso(split.created_at),
        "confirmed_at": iso(split.confirmed_at),
        "participants": participants,
        "is_participant": any(p["id"] == viewer_id for p in participants),
        "is_initiator": split.initiated_by == viewer_id,
    }


def _split_meta(split: SplitClaim) -> dict[str, Any]:
    item = split.item
    wishlist = item.wishlist
    return {
        "split_claim_id": split.id,
        "item_id": item.id,
        "item_title": item.title,
        "item_image_url": item.custom_image_url or item.image_url,
        "wishlist_id": wishlist.id,
        "wishlist_name": wishlist.name,
        "wishlist_owner_id": wishlist.owner_id,
        "target_participants": split.target_participants,
    }


def _confirmed_meta(split: SplitClaim) -> dict[str, Any]:
    return {
        **_split_meta(split),
        "participants": [
            {"user_id": p.user.id, "display_name": p.user.display_name, "avatar_url": p.user.avatar_url}
            for p in split.participants
        ],
        "cost_per_person": cost_per_person(split.item.price, len(split.participants)),
    }


@router.get("/wishlists/{wishlist_id}/split-claims")
async def list_split_claims(wishlist_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> list[dict]:
    wishlist = await get_viewable_wishlist(db, wishlist_id, current_user)
    if await can_edit_wishlist(db, wishlist, current_user.id):
        return []

    result = await db.execute(
        select(SplitClaim)
        .join(WishlistItem, WishlistItem.id == SplitClaim.item_id)
        .where(WishlistItem.wishlist_id == wishlist.id, SplitClaim.claim_status == ClaimStatusEnum.ACTIVE.value)
        .options(*_split_options())
        .order_by(SplitClaim.created_at)
    )
    return [serialize_split(split, current_user.id) for split in result.scalars().all()]


@router.get("/items/{item_id}/split-claim")
async def get_item_split_claim(item_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict | None:
    result = await db.execute(
        select(WishlistItem).where(WishlistItem.id == item_id).options(selectinload(WishlistItem.wishlist))
    )
    item = result.scalar_one_or_none()
    if item is None or not await can_view_wishlist(db, item.wishlist, current_user.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found")
    if await can_edit_wishlist(db, item.wishlist, current_user.id):
        return None

    result = await db.execute(
        select(SplitClaim)
        .where(SplitClaim.item_id == item.id, SplitClaim.claim_status == ClaimStatusEnum.ACTIVE.value)
        .options(*_split_options())
    )
    split = result.scalar_one_or_none()
    return serialize_split(split, current_user.id) if split else None


@router.post("/wishlists/{wishlist_id}/items/{item_id}/split-claims", status_code=status.HTTP_201_CREATED)
async def create_split_claim(
    wishlist_id: str,
    item_id: str,
    payload: SplitClaimCreate,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> dict:
    wishlist = await get_viewable_wishlist(db, wishlist_id, current_user)
    if await can_edit_wishlist(db, wishlist, current_user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=OWN_WISHLIST_MESSAGE)
    item = await get_item_or_404(db, wishlist.id, item_id)

    solo = await db.execute(
        select(ItemClaim.id).where(ItemClaim.item_id == item.id, ItemClaim.status == ClaimStatusEnum.ACTIVE.value)
    )
    if solo.first() is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="This item already has a solo claim")

    existing = await db.execute(
        select(SplitClaim.id).where(
            SplitClaim.item_id == item.id,
            SplitClaim.claim_status == ClaimStatusEnum.ACTIVE.value,
        )
    )
    if existing.first() is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=SPLIT_IN_PROGRESS_MESSAGE)

    flag = await db.execute(select(ItemOwnershipFlag.status).where(ItemOwnershipFlag.item_id == item.id))
    flag_status = flag.scalar_one_or_none()
    if flag_status == FlagStatusEnum.PENDING.value:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="This item is under review by the owner")
    if flag_status == FlagStatusEnum.CONFIRMED.value:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="The owner already has this item")

    split = SplitClaim(item_id=item.id, initiated_by=current_user.id, target_participants=payload.target_participants)
    db.add(split)
    try:
        await db.flush()
        db.add(SplitClaimParticipant(split_claim_id=split.id, user_id=current_user.id))
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=SPLIT_IN_PROGRESS_MESSAGE) from None

    split = await _load_split(db, split.id)
    response = {"success": True, "split_claim": serialize_split(split, current_user.id)}
    owner = await db.get(User, wishlist.owner_id)
    meta = {
        **_split_meta(split),
        "item_price": parse_price(item.price),
        "item_currency": item.currency,
        "wishlist_owner_name": owner.display_name,
        "initiator_id": current_user.id,
        "initiator_name": current_user.display_name,
        "initiator_avatar_url": current_user.avatar_url,
        "cost_per_person": cost_per_person(item.price, split.target_participants),
    }
    logger.info("Split claim created id=%s item_id=%s target=%d", split.id, item.id, split.target_participants)

    await record_claim_history_event(
        db,
        "joined_split",
        current_user.id,
        split_claim_id=split.id,
        metadata={"item_id": item.id, "wishlist_id": wishlist.id, "is_initiator": True},
    )
    await invalidate_views(current_user.id)
    await best_effort(
        notify_wishlist_viewers(db, wishlist, "split_initiated", meta, exclude=current_user.id),
        "split_initiated notification",
    )
    return response


@router.post("/split-claims/{split_id}/join")
async def join_split_claim(split_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    split = await _get_split_or_404(db, split_id, current_user)
    if await can_edit_wishlist(db, split.item.wishlist, current_user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=OWN_WISHLIST_MESSAGE)
    if split.claim_status != ClaimStatusEnum.ACTIVE.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Split claim is no longer active")
    if split.status == SplitStatusEnum.CONFIRMED.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Split claim is already confirmed")
    if any(p.user_id == current_user.id for p in split.participants):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="You are already participating in this split"
        )
    if len(split.participants) >= split.target_participants:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Split claim is full")

    db.add(SplitClaimParticipant(split_claim_id=split.id, user_id=current_user.id))
    current = len(split.participants) + 1
    confirmed = current >= split.target_participants
    if confirmed:
        split.status = SplitStatusEnum.CONFIRMED.value
        split.confirmed_at = utcnow()
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="You are already participating in this split"
        ) from None

    split = await _load_split(db, split_id)
    joined_meta = {
        **_split_meta(split),
        "joiner_id": current_user.id,
        "joiner_name": current_user.display_name,
        "joiner_avatar_url": current_user.avatar_url,
        "current_participants": current,
    }
    confirmed_meta = _confirmed_meta(split) if confirmed else None
    participant_ids = [p.user_id for p in split.participants]
    logger.info("Split claim joined id=%s user_id=%s confirmed=%s", split_id, current_user.id, confirmed)

    await record_claim_history_event(
        db,
        "joined_split",
        current_user.id,
        split_claim_id=split_id,
        metadata={"item_id": joined_meta["item_id"], "is_initiator": False},
    )
    await invalidate_views(*participant_ids)
    await best_effort(
        notify_split_participants(db, split_id, "split_joined", joined_meta, exclude=current_user.id),
        "split_joined notification",
    )
    if confirmed_meta is not None:
        await best_effort(
            notify_split_participants(db, split_id, "split_confirmed", confirmed_meta),
            "split_confirmed notification",
        )
    return {"success": True, "confirmed": confirmed}


@router.post("/split-claims/{split_id}/leave")
async def leave_split_claim(split_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    split = await _load_split(db, split_id)
    if split is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Split claim not found")
    if split.claim_status != ClaimStatusEnum.ACTIVE.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Split claim is no longer active")
    if split.status == SplitStatusEnum.CONFIRMED.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot leave a confirmed split claim")
    membership = next((p for p in split.participants if p.user_id == current_user.id), None)
    if membership is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="You are not participating in this split"
        )

    participant_ids = [p.user_id for p in split.participants]
    meta = _split_meta(split)

    if split.initiated_by == current_user.id:
        split.claim_status = ClaimStatusEnum.CANCELLED.value
        split.cancelled_at = utcnow()
        await db.commit()
        logger.info("Split claim cancelled by initiator id=%s", split_id)

        await record_claim_history_event(
            db,
            "split_cancelled",
            current_user.id,
            split_claim_id=split_id,
            metadata={"item_id": meta["item_id"], "participants": len(participant_ids)},
        )
        await invalidate_views(*participant_ids)
        cancelled_meta = {
            **{k: v for k, v in meta.items() if k not in {"item_image_url", "target_participants"}},
            "canceller_id": current_user.id,
            "canceller_name": current_user.display_name,
            "reason": "initiator_left",
        }
        await best_effort(
            notify_split_participants(db, split_id, "split_cancelled", cancelled_meta, exclude=current_user.id),
            "split_cancelled notification",
        )
        return {"success": True, "cancelled": True}

    await db.delete(membership)
    await db.commit()
    remaining = len(participant_ids) - 1
    logger.info("Split claim left id=%s user_id=%s remaining=%d", split_id, current_user.id, remaining)

    await record_claim_history_event(
        db,
        "left_split",
        current_user.id,
        split_claim_id=split_id,
        metadata={"item_id": meta["item_id"]},
    )
    await invalidate_views(*participant_ids)
    left_meta = {
        **{k: v for k, v in meta.items() if k != "item_image_url"},
        "leaver_id": current_user.id,
        "leaver_name": current_user.display_name,
        "remaining_participants": remaining,
    }
    await best_effort(
        notify_split_participants(db, split_id, "split_left", left_meta, exclude=current_user.id),
        "split_left notification",
    )
    return {"success": True, "cancelled": False}


@router.post("/split-claims/{split_id}/confirm")
async def confirm_split_claim(split_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    split = await _load_split(db, split_id)
    if split is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Split claim not found")
    if split.initiated_by != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the initiator can manually confirm")
    if split.status == SplitStatusEnum.CONFIRMED.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Split claim is already confirmed")
    if split.claim_status != ClaimStatusEnum.ACTIVE.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Split claim is no longer active")

    count = len(split.participants)
    if count < MIN_SPLIT_PARTICIPANTS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Need at least 2 participants to confirm")
    if count > split.target_participants:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Too many participants for this split")

    split.status = SplitStatusEnum.CONFIRMED.value
    split.confirmed_at = utcnow()
    await db.commit()
    logger.info("Split claim confirmed manually id=%s participants=%d", split_id, count)

    meta = _confirmed_meta(split)
    await invalidate_views(*(p.user_id for p in split.participants))
    await best_effort(
        notify_split_participants(db, split_id, "split_confirmed", meta, exclude=current_user.id),
        "split_confirmed notification",
    )
    return {"success": True}
