"""Joint wishlists: the primary owner shares editing with friends.

Collaborators can edit items but, like the owner, never see claims.
"""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from app.api.deps import CurrentUserDep, DbSessionDep
from app.api.helpers import (
    best_effort,
    get_owned_wishlist,
    get_viewable_wishlist,
    get_wishlist_or_404,
    iso,
    profile_summary,
)
from app.core.view_cache import invalidate_views
from app.db.procedures import get_friend_ids
from app.models.models import User, Wishlist, WishlistCollaborator
from app.notifications.builder import create_notification
from app.notifications.fanout import notify_user
from app.schemas.wishlist import CollaboratorAdd, ConvertToJoint


router = APIRouter(prefix="/wishlists", tags=["collaborators"])
logger = logging.getLogger("giftify.collaborators")

MAX_COLLABORATORS = 10
SELF_COLLABORATOR_MESSAGE = "Cannot add yourself as a collaborator"


async def _collaborator_ids(db, wishlist_id: str) -> set[str]:
    result = await db.execute(
        select(WishlistCollaborator.user_id).where(WishlistCollaborator.wishlist_id == wishlist_id)
    )
    return set(result.scalars().all())


def _invited_meta(wishlist: Wishlist, owner: User, inviter: User, invited_user_id: str) -> dict[str, Any]:
    return {
        "wishlist_id": wishlist.id,
        "wishlist_name": wishlist.name,
        "primary_owner_id": owner.id,
        "primary_owner_name": owner.display_name,
        "inviter_id": inviter.id,
        "inviter_name": inviter.display_name,
        "invited_user_id": invited_user_id,
    }


async def _notify_invited(db, wishlist: Wishlist, owner: User, user_ids: list[str]) -> dict[str, Any]:
    sent = 0
    for user_id in user_ids:
        result = await create_notification(
            "collaborator_invited", _invited_meta(wishlist, owner, owner, user_id)
        ).to(user_id).send(db)
        if not result["success"]:
            return result
        sent += result["count"]
    return {"success": True, "count": sent}


@router.get("/{wishlist_id}/collaborators")
async def list_collaborators(wishlist_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> list[dict]:
    wishlist = await get_viewable_wishlist(db, wishlist_id, current_user)
    result = await db.execute(
        select(WishlistCollaborator)
        .where(WishlistCollaborator.wishlist_id == wishlist.id)
        .options(selectinload(WishlistCollaborator.user), selectinload(WishlistCollaborator.inviter))
        .order_by(WishlistCollaborator.invited_at)
    )
    return [
        {
            "id": row.id,
            "user": profile_summary(row.user),
            "invited_by": profile_summary(row.inviter),
            "invited_at": iso(row.invited_at),
        }
        for row in result.scalars().all()
    ]


@router.get("/{wishlist_id}/collaborators/available")
async def list_available_collaborators(
    wishlist_id: str,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> list[dict]:
    wishlist = await get_owned_wishlist(db, wishlist_id, current_user)
    existing = await _collaborator_ids(db, wishlist.id)
    candidate_ids = [fid for fid in await get_friend_ids(db, current_user.id) if fid not in existing]
    if not candidate_ids:
        return []
    result = await db.execute(select(User).where(User.id.in_(candidate_ids)).order_by(User.display_name))
    return [profile_summary(user) for user in result.scalars().all()]


@router.post("/{wishlist_id}/collaborators", status_code=status.HTTP_201_CREATED)
async def add_collaborator(
    wishlist_id: str,
    payload: CollaboratorAdd,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> dict:
    wishlist = await get_wishlist_or_404(db, wishlist_id)
    if wishlist.owner_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the primary owner can add collaborators")
    if wishlist.is_archived:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot add collaborators to archived wishlist")
    if payload.friend_id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=SELF_COLLABORATOR_MESSAGE)
    if payload.friend_id not in await get_friend_ids(db, current_user.id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Can only add friends as collaborators")
    if payload.friend_id in await _collaborator_ids(db, wishlist.id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="This friend is already a collaborator")

    db.add(WishlistCollaborator(wishlist_id=wishlist.id, user_id=payload.friend_id, invited_by=current_user.id))
    wishlist.is_joint = True
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="This friend is already a collaborator") from None
    logger.info("Collaborator added wishlist_id=%s user_id=%s", wishlist.id, payload.friend_id)

    meta = _invited_meta(wishlist, current_user, current_user, payload.friend_id)
    await invalidate_views(current_user.id, payload.friend_id)
    await best_effort(
        notify_user(db, payload.friend_id, "collaborator_invited", meta),
        "collaborator_invited notification",
    )
    return {"success": True}


async def _remove_collaborator(db, wishlist: Wishlist, user_id: str, actor: User) -> dict:
    result = await db.execute(
        select(WishlistCollaborator).where(
            WishlistCollaborator.wishlist_id == wishlist.id,
            WishlistCollaborator.user_id == user_id,
        )
    )
    collaborator = result.scalar_one_or_none()
    if collaborator is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Collaborator not found")

    await db.delete(collaborator)
    await db.flush()
    remaining = await db.execute(
        select(func.count(WishlistCollaborator.id)).where(WishlistCollaborator.wishlist_id == wishlist.id)
    )
    if remaining.scalar_one() == 0:
        wishlist.is_joint = False
    await db.commit()
    self_removal = user_id == actor.id
    logger.info("Collaborator removed wishlist_id=%s user_id=%s self=%s", wishlist.id, user_id, self_removal)

    meta = {
        "wishlist_id": wishlist.id,
        "wishlist_name": wishlist.name,
        "primary_owner_id": wishlist.owner_id,
        "leaver_id": actor.id,
        "leaver_name": actor.display_name,
    }
    await invalidate_views(wishlist.owner_id, user_id)
    if self_removal:
        await best_effort(
            notify_user(db, wishlist.owner_id, "collaborator_left", meta),
            "collaborator_left notification",
        )
    return {"success": True}


@router.delete("/{wishlist_id}/collaborators/{user_id}")
async def remove_collaborator(wishlist_id: str, user_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    wishlist = await get_wishlist_or_404(db, wishlist_id)
    is_owner = wishlist.owner_id == current_user.id
    self_removal = user_id == current_user.id
    if not is_owner and not self_removal:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    if wishlist.is_archived and not self_removal:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot remove collaborators from archived wishlist",
        )
    return await _remove_collaborator(db, wishlist, user_id, current_user)


@router.post("/{wishlist_id}/leave")
async def leave_wishlist(wishlist_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    wishlist = await get_wishlist_or_404(db, wishlist_id)
    if wishlist.owner_id == current_user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Primary owner cannot leave. Transfer ownership or delete the wishlist.",
        )
    if current_user.id not in await _collaborator_ids(db, wishlist.id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You are not a collaborator on this wishlist",
        )
    return await _remove_collaborator(db, wishlist, current_user.id, current_user)


@router.post("/{wishlist_id}/convert-to-joint")
async def convert_to_joint(
    wishlist_id: str,
    payload: ConvertToJoint,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> dict:
    friend_ids = list(dict.fromkeys(payload.friend_ids))
    if not friend_ids:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Must add at least one collaborator")
    if len(friend_ids) > MAX_COLLABORATORS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot add more than {MAX_COLLABORATORS} collaborators",
        )

    wishlist = await get_wishlist_or_404(db, wishlist_id)
    if wishlist.owner_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the primary owner can convert to joint wishlist",
        )
    if wishlist.is_archived:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot convert archived wishlist")
    if current_user.id in friend_ids:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=SELF_COLLABORATOR_MESSAGE)
    my_friends = set(await get_friend_ids(db, current_user.id))
    if any(fid not in my_friends for fid in friend_ids):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="All collaborators must be your friends")
    if await _collaborator_ids(db, wishlist.id) & set(friend_ids):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Some friends are already collaborators")

    db.add_all(
        WishlistCollaborator(wishlist_id=wishlist.id, user_id=fid, invited_by=current_user.id) for fid in friend_ids
    )
    wishlist.is_joint = True
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Some friends are already collaborators") from None
    logger.info("Wishlist converted to joint id=%s collaborators=%d", wishlist.id, len(friend_ids))

    await invalidate_views(current_user.id, *friend_ids)
    await best_effort(
        _notify_invited(db, wishlist, current_user, friend_ids),
        "collaborator_invited notifications",
    )
    return {"success": True, "count": len(friend_ids)}
