from collections import defaultdict
from datetime import datetime
import logging
from typing import Any

from fastapi import APIRouter, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.api.deps import CurrentUserDep, DbSessionDep
from app.api.helpers import iso, profile_summary, serialize_item
from app.models.models import (
    ClaimHistoryEvent,
    ClaimStatusEnum,
    ItemClaim,
    SplitClaim,
    SplitClaimParticipant,
    Wishlist,
    WishlistItem,
)


router = APIRouter(prefix="/claims", tags=["claims"])
logger = logging.getLogger("giftify.claim_history")

CLAIM_EVENT_TYPES = {"claimed", "cancelled", "uncancelled", "joined_split", "left_split", "split_cancelled"}


async def record_claim_history_event(
    db: AsyncSession,
    event_type: str,
    user_id: str,
    *,
    item_claim_id: str | None = None,
    split_claim_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """Append to the claim audit trail in its own commit; never raises."""
    if event_type not in CLAIM_EVENT_TYPES:
        logger.error("Unknown claim history event type=%s", event_type)
        return False
    if (item_claim_id is None) == (split_claim_id is None):
        logger.error("Claim history event needs exactly one claim id type=%s", event_type)
        return False

    try:
        db.add(
            ClaimHistoryEvent(
                event_type=event_type,
                user_id=user_id,
                item_claim_id=item_claim_id,
                split_claim_id=split_claim_id,
                event_metadata=metadata or {},
            )
        )
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.warning("Failed to record claim history event %s: %s", event_type, e)
        return False
    return True


def _period_date(entry: dict[str, Any]) -> datetime:
    if entry["status"] == ClaimStatusEnum.CANCELLED.value and entry["cancelled_at"]:
        return datetime.fromisoformat(entry["cancelled_at"])
    return datetime.fromisoformat(entry["created_at"])


def group_claims_by_period(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Bucket entries by year/month, newest period and newest entry first."""
    buckets: dict[tuple[int, int], list[dict[str, Any]]] = defaultdict(list)
    for entry in entries:
        moment = _period_date(entry)
        buckets[(moment.year, moment.month)].append(entry)

    periods = []
    for (year, month) in sorted(buckets, reverse=True):
        claims = sorted(buckets[(year, month)], key=_period_date, reverse=True)
        periods.append(
            {
                "year": year,
                "month": month,
                "label": datetime(year, month, 1).strftime("%B %Y"),
                "claims": claims,
            }
        )
    return periods


def _claim_context(item: WishlistItem) -> dict[str, Any]:
    wishlist = item.wishlist
    return {
        "item": serialize_item(item),
        "wishlist": {"id": wishlist.id, "name": wishlist.name},
        "friend": profile_summary(wishlist.owner),
    }


async def _solo_entries(db: AsyncSession, user_id: str, statuses: list[str]) -> list[dict[str, Any]]:
    result = await db.execute(
        select(ItemClaim)
        .where(ItemClaim.claimed_by == user_id, ItemClaim.status.in_(statuses))
        .options(selectinload(ItemClaim.item).selectinload(WishlistItem.wishlist).selectinload(Wishlist.owner))
    )
    return [
        {
            "type": "solo",
            "id": claim.id,
            "claimed_by": claim.claimed_by,
            "status": claim.status,
            "created_at": iso(claim.created_at),
            "cancelled_at": iso(claim.cancelled_at),
            **_claim_context(claim.item),
        }
        for claim in result.scalars().all()
    ]


async def _split_entries(db: AsyncSession, user_id: str, statuses: list[str]) -> list[dict[str, Any]]:
    # Splits the user is still in, plus cancelled ones they started
    participating = select(SplitClaimParticipant.split_claim_id).where(SplitClaimParticipant.user_id == user_id)
    result = await db.execute(
        select(SplitClaim)
        .where(
            SplitClaim.claim_status.in_(statuses),
            (SplitClaim.id.in_(participating)) | (SplitClaim.initiated_by == user_id),
        )
        .options(
            selectinload(SplitClaim.participants).selectinload(SplitClaimParticipant.user),
            selectinload(SplitClaim.item).selectinload(WishlistItem.wishlist).selectinload(Wishlist.owner),
        )
    )
    entries = []
    for split in result.scalars().all():
        participants = [
            {"id": p.user.id, "display_name": p.user.display_name} for p in split.participants
        ]
        entries.append(
            {
                "type": "split",
                "id": split.id,
                "claimed_by": user_id,
                "status": split.claim_status,
                "split_status": split.status,
                "initiated_by": split.initiated_by,
                "is_initiator": split.initiated_by == user_id,
                "target_participants": split.target_participants,
                "current_participants": len(participants),
                "participants": participants,
                "created_at": iso(split.created_at),
                "cancelled_at": iso(split.cancelled_at),
                **_claim_context(split.item),
            }
        )
    return entries


@router.get("/history")
async def get_claim_history(
    db: DbSessionDep,
    current_user: CurrentUserDep,
    status: list[str] = Query(default=["active", "cancelled", "fulfilled"]),
    type: list[str] = Query(default=["solo", "split"]),
) -> dict:
    entries: list[dict[str, Any]] = []
    if "solo" in type:
        entries.extend(await _solo_entries(db, current_user.id, status))
    if "split" in type:
        entries.extend(await _split_entries(db, current_user.id, status))

    return {
        "periods": group_claims_by_period(entries),
        "total_active": sum(1 for e in entries if e["status"] == ClaimStatusEnum.ACTIVE.value),
        "total_cancelled": sum(1 for e in entries if e["status"] == ClaimStatusEnum.CANCELLED.value),
        "total_fulfilled": sum(1 for e in entries if e["status"] == ClaimStatusEnum.FULFILLED.value),
    }


@router.get("/mine")
async def get_my_claims(db: DbSessionDep, current_user: CurrentUserDep) -> list[dict]:
    """Active solo claims grouped by the friend whose wishlist they are on."""
    entries = await _solo_entries(db, current_user.id, [ClaimStatusEnum.ACTIVE.value])
    by_friend: dict[str, dict[str, Any]] = {}
    for entry in sorted(entries, key=lambda e: e["created_at"], reverse=True):
        friend = entry["friend"]
        group = by_friend.setdefault(friend["id"], {"friend": friend, "claims": []})
        group["claims"].append(
            {
                "id": entry["id"],
                "created_at": entry["created_at"],
                "item": entry["item"],
                "wishlist": entry["wishlist"],
            }
        )
    return sorted(by_friend.values(), key=lambda g: g["friend"]["display_name"].lower())
