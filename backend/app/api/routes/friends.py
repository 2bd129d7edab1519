import logging

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import selectinload

from app.api.deps import CurrentUserDep, DbSessionDep
from app.api.helpers import best_effort, iso, profile_summary, serialize_wishlist
from app.core.view_cache import invalidate_views
from app.db.procedures import FRIEND_VISIBLE_PRIVACY, are_friends, get_friendship
from app.models.models import (
    Friendship,
    FriendshipStatusEnum,
    PrivacyLevelEnum,
    User,
    Wishlist,
    WishlistCollaborator,
    WishlistItem,
    WishlistSelectedFriend,
)
from app.notifications.fanout import notify_user
from app.schemas.auth import ProfileSummary
from app.schemas.social import FriendRequestCreate


router = APIRouter(prefix="/friends", tags=["friends"])
logger = logging.getLogger("giftify.friends")

SEARCH_LIMIT = 10


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def _get_request_or_404(db, request_id: str) -> Friendship:
    friendship = await db.get(Friendship, request_id)
    if friendship is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Friend request not found")
    return friendship


@router.get("/search")
async def search_users(
    db: DbSessionDep,
    current_user: CurrentUserDep,
    q: str = Query(default=""),
) -> list[dict]:
    term = q.strip()
    if not term:
        return []
    result = await db.execute(
        select(User)
        .where(
            User.display_name.ilike(f"%{_escape_like(term)}%", escape="\\"),
            User.id != current_user.id,
        )
        .order_by(User.display_name)
        .limit(SEARCH_LIMIT)
    )
    return [profile_summary(user) for user in result.scalars().all()]


@router.get("")
async def list_friends(db: DbSessionDep, current_user: CurrentUserDep) -> list[dict]:
    result = await db.execute(
        select(Friendship)
        .where(
            or_(Friendship.requester_id == current_user.id, Friendship.addressee_id == current_user.id),
            Friendship.status == FriendshipStatusEnum.ACCEPTED.value,
        )
        .options(selectinload(Friendship.requester), selectinload(Friendship.addressee))
    )
    friends = []
    for friendship in result.scalars().all():
        friend = friendship.addressee if friendship.requester_id == current_user.id else friendship.requester
        friends.append(
            {
                **ProfileSummary.model_validate(friend).model_dump(mode="json"),
                "friendship_id": friendship.id,
                "since": iso(friendship.updated_at),
            }
        )
    return sorted(friends, key=lambda f: f["display_name"].lower())


@router.get("/requests")
async def list_friend_requests(db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    result = await db.execute(
        select(Friendship)
        .where(
            or_(Friendship.requester_id == current_user.id, Friendship.addressee_id == current_user.id),
            Friendship.status == FriendshipStatusEnum.PENDING.value,
        )
        .options(selectinload(Friendship.requester), selectinload(Friendship.addressee))
        .order_by(Friendship.created_at.desc())
    )
    incoming, outgoing = [], []
    for friendship in result.scalars().all():
        if friendship.addressee_id == current_user.id:
            incoming.append(
                {"id": friendship.id, "from": profile_summary(friendship.requester), "created_at": iso(friendship.created_at)}
            )
        else:
            outgoing.append(
                {"id": friendship.id, "to": profile_summary(friendship.addressee), "created_at": iso(friendship.created_at)}
            )
    return {"incoming": incoming, "outgoing": outgoing}


@router.post("/requests", status_code=status.HTTP_201_CREATED)
async def send_friend_request(payload: FriendRequestCreate, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    if payload.addressee_id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot send friend request to yourself")
    addressee = await db.get(User, payload.addressee_id)
    if addressee is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    friendship = await get_friendship(db, current_user.id, addressee.id)
    if friendship is not None:
        if friendship.status == FriendshipStatusEnum.ACCEPTED.value:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="You are already friends")
        if friendship.status == FriendshipStatusEnum.PENDING.value:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Friend request already pending")
        # A declined pair may try again, this time from the current user
        friendship.requester_id = current_user.id
        friendship.addressee_id = addressee.id
        friendship.status = FriendshipStatusEnum.PENDING.value
    else:
        friendship = Friendship(requester_id=current_user.id, addressee_id=addressee.id)
        db.add(friendship)
    await db.commit()
    await db.refresh(friendship)
    logger.info("Friend request sent id=%s from=%s to=%s", friendship.id, current_user.id, addressee.id)

    response = {"success": True, "request": {"id": friendship.id, "to": profile_summary(addressee)}}
    meta = {
        "friendship_id": friendship.id,
        "requester_id": current_user.id,
        "requester_name": current_user.display_name,
        "requester_avatar_url": current_user.avatar_url,
    }
    await best_effort(
        notify_user(db, addressee.id, "friend_request_received", meta, dedup_key=f"friend_request_{friendship.id}"),
        "friend_request_received notification",
    )
    return response


@router.post("/requests/{request_id}/accept")
async def accept_friend_request(request_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    friendship = await _get_request_or_404(db, request_id)
    if friendship.addressee_id != current_user.id or friendship.status != FriendshipStatusEnum.PENDING.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")

    friendship.status = FriendshipStatusEnum.ACCEPTED.value
    await db.commit()
    requester_id = friendship.requester_id
    logger.info("Friend request accepted id=%s", request_id)

    meta = {
        "friendship_id": request_id,
        "accepter_id": current_user.id,
        "accepter_name": current_user.display_name,
        "accepter_avatar_url": current_user.avatar_url,
    }
    await invalidate_views(current_user.id, requester_id)
    await best_effort(
        notify_user(db, requester_id, "friend_request_accepted", meta, dedup_key=f"friend_accepted_{request_id}"),
        "friend_request_accepted notification",
    )
    return {"success": True}


@router.post("/requests/{request_id}/decline")
async def decline_friend_request(request_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    friendship = await _get_request_or_404(db, request_id)
    if friendship.addressee_id != current_user.id or friendship.status != FriendshipStatusEnum.PENDING.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")

    friendship.status = FriendshipStatusEnum.DECLINED.value
    await db.commit()
    return {"success": True}


@router.delete("/requests/{request_id}")
async def cancel_friend_request(request_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    friendship = await _get_request_or_404(db, request_id)
    if friendship.requester_id != current_user.id or friendship.status != FriendshipStatusEnum.PENDING.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")

    await db.delete(friendship)
    await db.commit()
    return {"success": True}


@router.delete("/{friendship_id}")
async def remove_friend(friendship_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    friendship = await db.get(Friendship, friendship_id)
    if friendship is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Friend not found")
    if current_user.id not in (friendship.requester_id, friendship.addressee_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")

    other_id = friendship.addressee_id if friendship.requester_id == current_user.id else friendship.requester_id
    await db.delete(friendship)
    await db.commit()
    logger.info("Friendship removed id=%s by=%s", friendship_id, current_user.id)

    await invalidate_views(current_user.id, other_id)
    return {"success": True}


@router.get("/{friend_id}")
async def get_friend_profile(friend_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    friend = await db.get(User, friend_id)
    if friend is None or not await are_friends(db, current_user.id, friend_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Friend not found")
    return ProfileSummary.model_validate(friend).model_dump(mode="json")


@router.get("/{friend_id}/wishlists")
async def list_friend_wishlists(friend_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> list[dict]:
    if not await are_friends(db, current_user.id, friend_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Friend not found")

    collaborating = set(
        (
            await db.execute(
                select(WishlistCollaborator.wishlist_id).where(WishlistCollaborator.user_id == current_user.id)
            )
        ).scalars().all()
    )
    selected = select(WishlistSelectedFriend.wishlist_id).where(WishlistSelectedFriend.friend_id == current_user.id)
    result = await db.execute(
        select(Wishlist)
        .where(
            Wishlist.owner_id == friend_id,
            Wishlist.is_archived.is_(False),
            or_(
                Wishlist.privacy.in_(FRIEND_VISIBLE_PRIVACY),
                and_(
                    Wishlist.privacy == PrivacyLevelEnum.SELECTED_FRIENDS.value,
                    Wishlist.id.in_(selected),
                ),
                Wishlist.id.in_(collaborating),
            ),
        )
        .order_by(Wishlist.created_at.desc())
    )
    wishlists = result.scalars().all()
    if not wishlists:
        return []

    wishlist_ids = [w.id for w in wishlists]
    totals = dict(
        (
            await db.execute(
                select(WishlistItem.wishlist_id, func.count(WishlistItem.id))
                .where(WishlistItem.wishlist_id.in_(wishlist_ids))
                .group_by(WishlistItem.wishlist_id)
            )
        ).all()
    )
    available = dict(
        (
            await db.execute(
                select(WishlistItem.wishlist_id, func.count(WishlistItem.id))
                .where(
                    WishlistItem.wishlist_id.in_(wishlist_ids),
                    WishlistItem.is_purchased.is_(False),
                    WishlistItem.is_received.is_(False),
                )
                .group_by(WishlistItem.wishlist_id)
            )
        ).all()
    )

    response = []
    for wishlist in wishlists:
        is_collaborator = wishlist.id in collaborating
        counts = totals if is_collaborator else available
        response.append(
            {
                **serialize_wishlist(wishlist),
                "item_count": int(counts.get(wishlist.id, 0)),
                "is_current_user_collaborator": is_collaborator,
            }
        )
    return response
