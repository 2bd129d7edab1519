from datetime import date, datetime, timezone
from enum import Enum as StrEnumBase
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.session import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid4())


def _active_only(column: str, value: str = "active") -> dict[str, object]:
    clause = text(f"{column} = '{value}'")
    return {"sqlite_where": clause, "postgresql_where": clause}


class PrivacyLevelEnum(str, StrEnumBase):
    PRIVATE = "private"
    FRIENDS = "friends"
    SELECTED_FRIENDS = "selected_friends"
    # Legacy rows; treated like "friends" for fan-out
    PUBLIC = "public"


class FriendshipStatusEnum(str, StrEnumBase):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class ClaimStatusEnum(str, StrEnumBase):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    FULFILLED = "fulfilled"


class SplitStatusEnum(str, StrEnumBase):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class FlagStatusEnum(str, StrEnumBase):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DENIED = "denied"


class NotificationStatusEnum(str, StrEnumBase):
    INBOX = "inbox"
    ARCHIVED = "archived"


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[str] = mapped_column(String(120), nullable=False)
    avatar_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    birthday: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    wishlists: Mapped[list["Wishlist"]] = relationship(back_populates="owner")


class Friendship(Base):
    __tablename__ = "friendships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    requester_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    addressee_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default=FriendshipStatusEnum.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    requester: Mapped[User] = relationship(foreign_keys=[requester_id])
    addressee: Mapped[User] = relationship(foreign_keys=[addressee_id])

    __table_args__ = (
        UniqueConstraint("requester_id", "addressee_id", name="uq_friendship_pair"),
        CheckConstraint("requester_id <> addressee_id", name="ck_friendship_not_self"),
    )


class InviteCode(Base):
    __tablename__ = "invite_codes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(8), unique=True, index=True, nullable=False)
    inviter_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    used_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    inviter: Mapped[User] = relationship(foreign_keys=[inviter_id])
    invitee: Mapped[User | None] = relationship(foreign_keys=[used_by])


class Wishlist(Base):
    __tablename__ = "wishlists"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    privacy: Mapped[str] = mapped_column(String(20), default=PrivacyLevelEnum.FRIENDS.value)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    is_joint: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    owner: Mapped[User] = relationship(back_populates="wishlists")
    items: Mapped[list["WishlistItem"]] = relationship(back_populates="wishlist", cascade="all, delete-orphan")
    collaborators: Mapped[list["WishlistCollaborator"]] = relationship(
        back_populates="wishlist",
        cascade="all, delete-orphan",
    )
    selected_friends: Mapped[list["WishlistSelectedFriend"]] = relationship(
        back_populates="wishlist",
        cascade="all, delete-orphan",
    )


class WishlistItem(Base):
    __tablename__ = "wishlist_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    wishlist_id: Mapped[str] = mapped_column(ForeignKey("wishlists.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    custom_image_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    price: Mapped[str | None] = mapped_column(String(50), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_purchased: Mapped[bool] = mapped_column(Boolean, default=False)
    is_received: Mapped[bool] = mapped_column(Boolean, default=False)
    received_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    wishlist: Mapped[Wishlist] = relationship(back_populates="items")
    claims: Mapped[list["ItemClaim"]] = relationship(back_populates="item", cascade="all, delete-orphan")
    split_claims: Mapped[list["SplitClaim"]] = relationship(back_populates="item", cascade="all, delete-orphan")
    ownership_flag: Mapped["ItemOwnershipFlag | None"] = relationship(
        back_populates="item",
        uselist=False,
        cascade="all, delete-orphan",
    )


class ItemClaim(Base):
    __tablename__ = "item_claims"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    item_id: Mapped[str] = mapped_column(ForeignKey("wishlist_items.id"), nullable=False, index=True)
    claimed_by: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default=ClaimStatusEnum.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    item: Mapped[WishlistItem] = relationship(back_populates="claims")
    claimer: Mapped[User] = relationship()
    history: Mapped[list["ClaimHistoryEvent"]] = relationship(
        back_populates="item_claim",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("item_id", "claimed_by", name="uq_item_claim_user"),
        Index("uq_item_claims_one_active", "item_id", unique=True, **_active_only("status")),
    )


class SplitClaim(Base):
    __tablename__ = "split_claims"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    item_id: Mapped[str] = mapped_column(ForeignKey("wishlist_items.id"), nullable=False, index=True)
    initiated_by: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    target_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=SplitStatusEnum.PENDING.value)
    claim_status: Mapped[str] = mapped_column(String(20), default=ClaimStatusEnum.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    item: Mapped[WishlistItem] = relationship(back_populates="split_claims")
    initiator: Mapped[User] = relationship()
    participants: Mapped[list["SplitClaimParticipant"]] = relationship(
        back_populates="split_claim",
        cascade="all, delete-orphan",
        order_by="SplitClaimParticipant.joined_at",
    )
    history: Mapped[list["ClaimHistoryEvent"]] = relationship(
        back_populates="split_claim",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("target_participants BETWEEN 2 AND 10", name="ck_split_target_range"),
        Index("uq_split_claims_one_active", "item_id", unique=True, **_active_only("claim_status")),
    )


class SplitClaimParticipant(Base):
    __tablename__ = "split_claim_participants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    split_claim_id: Mapped[str] = mapped_column(ForeignKey("split_claims.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    split_claim: Mapped[SplitClaim] = relationship(back_populates="participants")
    user: Mapped[User] = relationship()

    __table_args__ = (UniqueConstraint("split_claim_id", "user_id", name="uq_split_participant"),)


class ItemOwnershipFlag(Base):
    __tablename__ = "item_ownership_flags"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    item_id: Mapped[str] = mapped_column(ForeignKey("wishlist_items.id"), unique=True, nullable=False)
    flagged_by: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=FlagStatusEnum.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    item: Mapped[WishlistItem] = relationship(back_populates="ownership_flag")
    flagger: Mapped[User] = relationship()


class WishlistCollaborator(Base):
    __tablename__ = "wishlist_collaborators"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    wishlist_id: Mapped[str] = mapped_column(ForeignKey("wishlists.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    invited_by: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    invited_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    wishlist: Mapped[Wishlist] = relationship(back_populates="collaborators")
    user: Mapped[User] = relationship(foreign_keys=[user_id])
    inviter: Mapped[User] = relationship(foreign_keys=[invited_by])

    __table_args__ = (UniqueConstraint("wishlist_id", "user_id", name="uq_wishlist_collaborator"),)


class WishlistSelectedFriend(Base):
    __tablename__ = "wishlist_selected_friends"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    wishlist_id: Mapped[str] = mapped_column(ForeignKey("wishlists.id"), nullable=False, index=True)
    friend_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    wishlist: Mapped[Wishlist] = relationship(back_populates="selected_friends")

    __table_args__ = (UniqueConstraint("wishlist_id", "friend_id", name="uq_wishlist_selected_friend"),)


class ClaimHistoryEvent(Base):
    __tablename__ = "claim_history_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    item_claim_id: Mapped[str | None] = mapped_column(ForeignKey("item_claims.id"), nullable=True, index=True)
    split_claim_id: Mapped[str | None] = mapped_column(ForeignKey("split_claims.id"), nullable=True, index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    event_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    item_claim: Mapped[ItemClaim | None] = relationship(back_populates="history")
    split_claim: Mapped[SplitClaim | None] = relationship(back_populates="history")

    __table_args__ = (
        CheckConstraint(
            "(item_claim_id IS NULL) <> (split_claim_id IS NULL)",
            name="ck_history_exactly_one_claim",
        ),
    )


class NotificationCategory(Base):
    __tablename__ = "notification_categories"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str] = mapped_column(String(500), default="")
    sort_order: Mapped[int] = mapped_column(Integer, default=0)


class NotificationV2(Base):
    __tablename__ = "notifications_v2"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    category_id: Mapped[str] = mapped_column(String(40), nullable=False)
    payload: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    priority: Mapped[int] = mapped_column(Integer, default=3)
    status: Mapped[str] = mapped_column(String(20), default=NotificationStatusEnum.INBOX.value)
    action_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    dedup_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    group_key: Mapped[str | None] = mapped_column(String(200), nullable=True, index=True)
    group_count: Mapped[int] = mapped_column(Integer, default=1)
    read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    __table_args__ = (UniqueConstraint("user_id", "dedup_key", name="uq_notification_dedup"),)


class NotificationPreference(Base):
    __tablename__ = "notification_preferences_v2"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    category_id: Mapped[str] = mapped_column(String(40), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    settings: Mapped[dict] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("user_id", "category_id", name="uq_notification_preference"),)
