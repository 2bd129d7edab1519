"""Typed metadata payloads stored with each notification."""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

# Any RFC 4122 shaped id, regardless of version nibble
Uuid = Annotated[
    str,
    StringConstraints(pattern=r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"),
]


class _Metadata(BaseModel):
    model_config = ConfigDict(extra="allow")


# Social

class FriendRequestReceivedMetadata(_Metadata):
    friendship_id: Uuid
    requester_id: Uuid
    requester_name: str
    requester_avatar_url: str | None = None


class FriendRequestAcceptedMetadata(_Metadata):
    friendship_id: Uuid
    accepter_id: Uuid
    accepter_name: str
    accepter_avatar_url: str | None = None


# Reminders

class BirthdayReminderMetadata(_Metadata):
    friend_id: Uuid
    friend_name: str
    friend_avatar_url: str | None = None
    birthday_date: str
    days_until: int = Field(ge=0)


# Wishlist activity

class WishlistCreatedMetadata(_Metadata):
    wishlist_id: Uuid
    wishlist_name: str
    owner_id: Uuid
    owner_name: str
    owner_avatar_url: str | None = None
    privacy: str


class ItemAddedMetadata(_Metadata):
    wishlist_id: Uuid
    wishlist_name: str
    item_id: Uuid
    item_title: str
    item_image_url: str | None = None
    item_price: float | None = None
    item_currency: str | None = None
    owner_id: Uuid
    owner_name: str
    owner_avatar_url: str | None = None


class WishlistArchivedMetadata(_Metadata):
    wishlist_id: Uuid
    wishlist_name: str
    owner_id: Uuid
    owner_name: str
    owner_avatar_url: str | None = None


# Gift claims

class SplitInitiatedMetadata(_Metadata):
    split_claim_id: Uuid
    item_id: Uuid
    item_title: str
    item_image_url: str | None = None
    item_price: float | None = None
    item_currency: str | None = None
    wishlist_id: Uuid
    wishlist_name: str
    wishlist_owner_id: Uuid
    wishlist_owner_name: str
    initiator_id: Uuid
    initiator_name: str
    initiator_avatar_url: str | None = None
    target_participants: int = Field(gt=0)
    cost_per_person: float | None = None


class SplitJoinedMetadata(_Metadata):
    split_claim_id: Uuid
    item_id: Uuid
    item_title: str
    item_image_url: str | None = None
    wishlist_id: Uuid
    wishlist_name: str
    wishlist_owner_id: Uuid
    joiner_id: Uuid
    joiner_name: str
    joiner_avatar_url: str | None = None
    current_participants: int = Field(gt=0)
    target_participants: int = Field(gt=0)


class SplitLeftMetadata(_Metadata):
    split_claim_id: Uuid
    item_id: Uuid
    item_title: str
    wishlist_id: Uuid
    wishlist_name: str
    wishlist_owner_id: Uuid
    leaver_id: Uuid
    leaver_name: str
    remaining_participants: int = Field(ge=0)
    target_participants: int = Field(gt=0)


class SplitParticipantInfo(BaseModel):
    user_id: Uuid
    display_name: str
    avatar_url: str | None = None


class SplitConfirmedMetadata(_Metadata):
    split_claim_id: Uuid
    item_id: Uuid
    item_title: str
    item_image_url: str | None = None
    wishlist_id: Uuid
    wishlist_name: str
    wishlist_owner_id: Uuid
    participants: list[SplitParticipantInfo]
    target_participants: int = Field(gt=0)
    cost_per_person: float | None = None


class SplitCancelledMetadata(_Metadata):
    split_claim_id: Uuid | None = None
    item_id: Uuid
    item_title: str
    wishlist_id: Uuid
    wishlist_name: str
    wishlist_owner_id: Uuid
    canceller_id: Uuid
    canceller_name: str
    reason: str | None = None


class GiftReceivedMetadata(_Metadata):
    item_id: Uuid
    item_title: str
    item_image_url: str | None = None
    wishlist_id: Uuid
    wishlist_name: str
    recipient_id: Uuid
    recipient_name: str
    claim_type: Literal["solo", "split"]
    claim_id: Uuid
    marked_at: str


class GiftMarkedGivenMetadata(_Metadata):
    item_id: Uuid
    item_title: str
    item_image_url: str | None = None
    wishlist_id: Uuid
    wishlist_name: str
    giver_id: Uuid
    giver_name: str
    recipient_id: Uuid
    recipient_name: str
    marked_at: str


# Ownership flags

class ItemFlaggedMetadata(_Metadata):
    flag_id: Uuid
    item_id: Uuid
    item_title: str
    item_image_url: str | None = None
    wishlist_id: Uuid
    wishlist_name: str
    wishlist_owner_id: Uuid
    flagger_id: Uuid
    flagger_name: str
    flagger_avatar_url: str | None = None
    reason: str | None = None


class FlagConfirmedMetadata(_Metadata):
    flag_id: Uuid
    item_id: Uuid
    item_title: str
    wishlist_id: Uuid
    wishlist_name: str
    owner_id: Uuid
    owner_name: str
    flagger_id: Uuid


class FlagDeniedMetadata(_Metadata):
    flag_id: Uuid
    item_id: Uuid
    item_title: str
    wishlist_id: Uuid
    wishlist_name: str
    owner_id: Uuid
    owner_name: str
    flagger_id: Uuid
    denial_reason: str | None = None


# Collaboration

class CollaboratorInvitedMetadata(_Metadata):
    wishlist_id: Uuid
    wishlist_name: str
    primary_owner_id: Uuid
    primary_owner_name: str
    inviter_id: Uuid
    inviter_name: str
    invited_user_id: Uuid


class CollaboratorLeftMetadata(_Metadata):
    wishlist_id: Uuid
    wishlist_name: str
    primary_owner_id: Uuid
    leaver_id: Uuid
    leaver_name: str
