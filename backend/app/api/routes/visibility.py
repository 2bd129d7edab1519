import logging

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import delete, func, select

from app.api.deps import CurrentUserDep, DbSessionDep
from app.api.helpers import get_owned_wishlist
from app.core.view_cache import invalidate_views
from app.db.procedures import get_friend_ids
from app.models.models import PrivacyLevelEnum, User, WishlistSelectedFriend
from app.schemas.wishlist import SelectedFriendsUpdate


router = APIRouter(prefix="/wishlists", tags=["visibility"])
logger = logging.getLogger("giftify.visibility")


@router.get("/{wishlist_id}/selected-friends")
async def list_selectable_friends(wishlist_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> list[dict]:
    wishlist = await get_owned_wishlist(db, wishlist_id, current_user)
    friend_ids = await get_friend_ids(db, current_user.id)
    if not friend_ids:
        return []

    friends = await db.execute(select(User).where(User.id.in_(friend_ids)))
    selected = await db.execute(
        select(WishlistSelectedFriend.friend_id).where(WishlistSelectedFriend.wishlist_id == wishlist.id)
    )
    selected_ids = set(selected.scalars().all())
    return sorted(
        (
            {
                "id": friend.id,
                "display_name": friend.display_name,
                "avatar_url": friend.avatar_url,
                "is_selected": friend.id in selected_ids,
            }
            for friend in friends.scalars().all()
        ),
        key=lambda f: f["display_name"].lower(),
    )


@router.put("/{wishlist_id}/selected-friends")
async def update_selected_friends(
    wishlist_id: str,
    payload: SelectedFriendsUpdate,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> dict:
    wishlist = await get_owned_wishlist(db, wishlist_id, current_user)
    if wishlist.privacy != PrivacyLevelEnum.SELECTED_FRIENDS.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Wishlist privacy must be set to 'selected_friends'",
        )

    requested = list(dict.fromkeys(payload.friend_ids))
    friend_ids = set(await get_friend_ids(db, current_user.id))
    if any(fid not in friend_ids for fid in requested):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Some selected users are not your friends")

    previous = await db.execute(
        select(WishlistSelectedFriend.friend_id).where(WishlistSelectedFriend.wishlist_id == wishlist.id)
    )
    affected = set(previous.scalars().all()) | set(requested)

    await db.execute(delete(WishlistSelectedFriend).where(WishlistSelectedFriend.wishlist_id == wishlist.id))
    db.add_all(WishlistSelectedFriend(wishlist_id=wishlist.id, friend_id=fid) for fid in requested)
    await db.commit()
    logger.info("Selected friends updated wishlist_id=%s count=%d", wishlist_id, len(requested))

    # Friends gaining or losing access see a different dashboard
    await invalidate_views(*affected)
    return {"success": True, "count": len(requested)}


@router.get("/{wishlist_id}/selected-friends/count")
async def count_selected_friends(wishlist_id: str, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    wishlist = await get_owned_wishlist(db, wishlist_id, current_user)
    if wishlist.privacy != PrivacyLevelEnum.SELECTED_FRIENDS.value:
        return {"count": 0}
    result = await db.execute(
        select(func.count(WishlistSelectedFriend.id)).where(WishlistSelectedFriend.wishlist_id == wishlist.id)
    )
    return {"count": result.scalar_one()}
