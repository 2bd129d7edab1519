"""Lookups and serializers shared by the wishlist-centric routers."""

from collections.abc import Awaitable
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import logging
import math
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.procedures import can_edit_wishlist, can_view_wishlist
from app.models.models import User, Wishlist, WishlistItem


logger = logging.getLogger("giftify.api")


def iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value else None


def parse_price(price: str | None) -> float | None:
    if not price:
        return None
    try:
        amount = float(Decimal(price.replace(",", ".")))
    except InvalidOperation:
        return None
    return amount if math.isfinite(amount) else None


def profile_summary(user: User | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return {"id": user.id, "display_name": user.display_name, "avatar_url": user.avatar_url}


def serialize_wishlist(wishlist: Wishlist) -> dict[str, Any]:
    return {
        "id": wishlist.id,
        "owner_id": wishlist.owner_id,
        "name": wishlist.name,
        "description": wishlist.description,
        "privacy": wishlist.privacy,
        "is_archived": wishlist.is_archived,
        "is_joint": wishlist.is_joint,
        "created_at": iso(wishlist.created_at),
        "updated_at": iso(wishlist.updated_at),
    }


def serialize_item(item: WishlistItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "wishlist_id": item.wishlist_id,
        "title": item.title,
        "url": item.url,
        "description": item.description,
        "image_url": item.image_url,
        "custom_image_url": item.custom_image_url,
        "price": item.price,
        "currency": item.currency,
        "notes": item.notes,
        "is_purchased": item.is_purchased,
        "is_received": item.is_received,
        "received_at": iso(item.received_at),
        "created_at": iso(item.created_at),
        "updated_at": iso(item.updated_at),
    }


async def get_wishlist_or_404(db: AsyncSession, wishlist_id: str) -> Wishlist:
    wishlist = await db.get(Wishlist, wishlist_id)
    if wishlist is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Wishlist not found")
    return wishlist


async def get_owned_wishlist(db: AsyncSession, wishlist_id: str, user: User) -> Wishlist:
    wishlist = await get_wishlist_or_404(db, wishlist_id)
    if wishlist.owner_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    return wishlist


async def get_editable_wishlist(db: AsyncSession, wishlist_id: str, user: User) -> Wishlist:
    wishlist = await get_wishlist_or_404(db, wishlist_id)
    if not await can_edit_wishlist(db, wishlist, user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    return wishlist


async def get_viewable_wishlist(db: AsyncSession, wishlist_id: str, user: User) -> Wishlist:
    """Hidden wishlists are indistinguishable from missing ones."""
    wishlist = await db.get(Wishlist, wishlist_id)
    if wishlist is None or not await can_view_wishlist(db, wishlist, user.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Wishlist not found")
    return wishlist


async def get_item_or_404(
    db: AsyncSession,
    wishlist_id: str,
    item_id: str,
    detail: str = "Item not found",
) -> WishlistItem:
    result = await db.execute(
        select(WishlistItem).where(WishlistItem.id == item_id, WishlistItem.wishlist_id == wishlist_id)
    )
    item = result.scalar_one_or_none()
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    return item


async def best_effort(awaitable: Awaitable[Any], what: str) -> None:
    """Await a side effect whose failure must not fail the request."""
    try:
        result = await awaitable
    except Exception as e:
        logger.warning("Failed to send %s: %s", what, e)
        return
    if isinstance(result, dict) and result.get("success") is False:
        logger.warning("Failed to send %s: %s", what, result.get("error"))


def next_birthday(birthday: date, today: date) -> tuple[date, int]:
    """The upcoming occurrence of ``birthday`` and how many days away it is."""

    def occurrence(year: int) -> date:
        # Feb 29 birthdays are celebrated on Feb 28 in common years
        try:
            return birthday.replace(year=year)
        except ValueError:
            return birthday.replace(year=year, day=28)

    upcoming = occurrence(today.year)
    if upcoming < today:
        upcoming = occurrence(today.year + 1)
    return upcoming, (upcoming - today).days
