"""Notification types: category, priority, text and behaviour for each."""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from app.notifications import metadata as m


@dataclass(frozen=True)
class NotificationCategoryConfig:
    id: str
    name: str
    description: str
    sort_order: int


CATEGORIES: dict[str, NotificationCategoryConfig] = {
    c.id: c
    for c in (
        NotificationCategoryConfig("social", "Social", "Friend requests and new friendships", 1),
        NotificationCategoryConfig("wishlist_activity", "Wishlist activity", "New wishlists and items from friends", 2),
        NotificationCategoryConfig("gift_claims", "Gift claims", "Split gifts and received gifts", 3),
        NotificationCategoryConfig("ownership_flags", "Ownership flags", "Items flagged as already owned", 4),
        NotificationCategoryConfig("reminders", "Reminders", "Upcoming birthdays", 5),
        NotificationCategoryConfig("collaboration", "Collaboration", "Joint wishlist invitations", 6),
    )
}


Meta = dict[str, Any]


@dataclass(frozen=True)
class NotificationTypeConfig:
    type: str
    category_id: str
    metadata_model: type[BaseModel]
    priority: int
    title: Callable[[Meta], str]
    message: Callable[[Meta], str]
    action_url: Callable[[Meta], str]
    auto_archive_after_days: int | None = None
    group_key: Callable[[Meta], str | None] | None = None


def _amount(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"


def _item_url(meta: Meta, owner_key: str = "wishlist_owner_id") -> str:
    return f"/friends/{meta[owner_key]}/wishlists/{meta['wishlist_id']}#item-{meta['item_id']}"


def _birthday_message(meta: Meta) -> str:
    days = meta["days_until"]
    if days == 0:
        return f"Today is {meta['friend_name']}'s birthday! 🎉"
    if days == 1:
        return f"{meta['friend_name']}'s birthday is tomorrow"
    return f"{meta['friend_name']}'s birthday is in {days} days"


def _split_initiated_message(meta: Meta) -> str:
    cost = meta.get("cost_per_person")
    cost_info = f" ({meta.get('item_currency') or '$'}{_amount(cost)} per person)" if cost else ""
    return f"{meta['initiator_name']} started a split for \"{meta['item_title']}\"{cost_info}"


def _split_group(meta: Meta) -> str | None:
    split_id = meta.get("split_claim_id")
    return f"split_{split_id}" if split_id else None


_TYPES = (
    NotificationTypeConfig(
        type="friend_request_received",
        category_id="social",
        metadata_model=m.FriendRequestReceivedMetadata,
        priority=5,
        title=lambda meta: "New Friend Request",
        message=lambda meta: f"{meta['requester_name']} sent you a friend request",
        action_url=lambda meta: "/friends",
    ),
    NotificationTypeConfig(
        type="friend_request_accepted",
        category_id="social",
        metadata_model=m.FriendRequestAcceptedMetadata,
        priority=4,
        title=lambda meta: "Friend Request Accepted",
        message=lambda meta: f"{meta['accepter_name']} accepted your friend request",
        action_url=lambda meta: f"/friends/{meta['accepter_id']}",
        auto_archive_after_days=7,
    ),
    NotificationTypeConfig(
        type="birthday_reminder",
        category_id="reminders",
        metadata_model=m.BirthdayReminderMetadata,
        priority=5,
        title=lambda meta: "Birthday Reminder",
        message=_birthday_message,
        action_url=lambda meta: f"/friends/{meta['friend_id']}",
        auto_archive_after_days=1,
    ),
    NotificationTypeConfig(
        type="wishlist_created",
        category_id="wishlist_activity",
        metadata_model=m.WishlistCreatedMetadata,
        priority=2,
        title=lambda meta: "New Wishlist",
        message=lambda meta: f"{meta['owner_name']} created a new wishlist: {meta['wishlist_name']}",
        action_url=lambda meta: f"/friends/{meta['owner_id']}/wishlists/{meta['wishlist_id']}",
        auto_archive_after_days=14,
    ),
    NotificationTypeConfig(
        type="item_added",
        category_id="wishlist_activity",
        metadata_model=m.ItemAddedMetadata,
        priority=2,
        title=lambda meta: "New Item Added",
        message=lambda meta: f"{meta['owner_name']} added \"{meta['item_title']}\" to {meta['wishlist_name']}",
        action_url=lambda meta: _item_url(meta, "owner_id"),
        auto_archive_after_days=14,
        group_key=lambda meta: f"item_added_{meta['wishlist_id']}",
    ),
    NotificationTypeConfig(
        type="wishlist_archived",
        category_id="wishlist_activity",
        metadata_model=m.WishlistArchivedMetadata,
        priority=1,
        title=lambda meta: "Wishlist Archived",
        message=lambda meta: f"{meta['owner_name']} archived their wishlist: {meta['wishlist_name']}",
        action_url=lambda meta: f"/friends/{meta['owner_id']}",
        auto_archive_after_days=3,
    ),
    NotificationTypeConfig(
        type="split_initiated",
        category_id="gift_claims",
        metadata_model=m.SplitInitiatedMetadata,
        priority=4,
        title=lambda meta: "Split Gift Started",
        message=_split_initiated_message,
        action_url=_item_url,
        group_key=_split_group,
    ),
    NotificationTypeConfig(
        type="split_joined",
        category_id="gift_claims",
        metadata_model=m.SplitJoinedMetadata,
        priority=3,
        title=lambda meta: "Someone Joined Split",
        message=lambda meta: (
            f"{meta['joiner_name']} joined the split for \"{meta['item_title']}\" "
            f"({meta['current_participants']}/{meta['target_participants']})"
        ),
        action_url=_item_url,
        group_key=_split_group,
    ),
    NotificationTypeConfig(
        type="split_left",
        category_id="gift_claims",
        metadata_model=m.SplitLeftMetadata,
        priority=3,
        title=lambda meta: "Someone Left Split",
        message=lambda meta: (
            f"{meta['leaver_name']} left the split for \"{meta['item_title']}\" "
            f"({meta['remaining_participants']}/{meta['target_participants']} remaining)"
        ),
        action_url=_item_url,
        group_key=_split_group,
    ),
    NotificationTypeConfig(
        type="split_confirmed",
        category_id="gift_claims",
        metadata_model=m.SplitConfirmedMetadata,
        priority=5,
        title=lambda meta: "Split Confirmed!",
        message=lambda meta: (
            f"The split for \"{meta['item_title']}\" is now confirmed "
            f"with {len(meta['participants'])} participants"
        ),
        action_url=_item_url,
    ),
    NotificationTypeConfig(
        type="split_cancelled",
        category_id="gift_claims",
        metadata_model=m.SplitCancelledMetadata,
        priority=4,
        title=lambda meta: "Split Cancelled",
        message=lambda meta: f"{meta['canceller_name']} cancelled the split for \"{meta['item_title']}\"",
        action_url=_item_url,
        auto_archive_after_days=3,
    ),
    NotificationTypeConfig(
        type="gift_received",
        category_id="gift_claims",
        metadata_model=m.GiftReceivedMetadata,
        priority=5,
        title=lambda meta: "Gift Received!",
        message=lambda meta: (
            f"{meta['recipient_name']} marked \"{meta['item_title']}\" as received. Thank you for the gift!"
        ),
        action_url=lambda meta: _item_url(meta, "recipient_id"),
        auto_archive_after_days=7,
    ),
    NotificationTypeConfig(
        type="gift_marked_given",
        category_id="gift_claims",
        metadata_model=m.GiftMarkedGivenMetadata,
        priority=3,
        title=lambda meta: "Gift Marked as Given",
        message=lambda meta: (
            f"{meta['giver_name']} marked \"{meta['item_title']}\" as given to {meta['recipient_name']}"
        ),
        action_url=lambda meta: _item_url(meta, "recipient_id"),
    ),
    NotificationTypeConfig(
        type="item_flagged_already_owned",
        category_id="ownership_flags",
        metadata_model=m.ItemFlaggedMetadata,
        priority=4,
        title=lambda meta: "Item Flagged",
        message=lambda meta: f"{meta['flagger_name']} thinks you may already own \"{meta['item_title']}\"",
        action_url=lambda meta: f"/wishlists/{meta['wishlist_id']}#item-{meta['item_id']}",
    ),
    NotificationTypeConfig(
        type="flag_confirmed",
        category_id="ownership_flags",
        metadata_model=m.FlagConfirmedMetadata,
        priority=3,
        title=lambda meta: "Flag Confirmed",
        message=lambda meta: f"{meta['owner_name']} confirmed they already own \"{meta['item_title']}\"",
        action_url=lambda meta: _item_url(meta, "owner_id"),
        auto_archive_after_days=3,
    ),
    NotificationTypeConfig(
        type="flag_denied",
        category_id="ownership_flags",
        metadata_model=m.FlagDeniedMetadata,
        priority=2,
        title=lambda meta: "Flag Denied",
        message=lambda meta: f"{meta['owner_name']} confirmed they don't own \"{meta['item_title']}\"",
        action_url=lambda meta: _item_url(meta, "owner_id"),
        auto_archive_after_days=3,
    ),
    NotificationTypeConfig(
        type="collaborator_invited",
        category_id="collaboration",
        metadata_model=m.CollaboratorInvitedMetadata,
        priority=4,
        title=lambda meta: "Invited to Collaborate",
        message=lambda meta: f"{meta['inviter_name']} invited you to collaborate on \"{meta['wishlist_name']}\"",
        action_url=lambda meta: f"/wishlists/{meta['wishlist_id']}",
    ),
    NotificationTypeConfig(
        type="collaborator_left",
        category_id="collaboration",
        metadata_model=m.CollaboratorLeftMetadata,
        priority=2,
        title=lambda meta: "Collaborator Left",
        message=lambda meta: f"{meta['leaver_name']} left the collaboration on \"{meta['wishlist_name']}\"",
        action_url=lambda meta: f"/wishlists/{meta['wishlist_id']}",
        auto_archive_after_days=7,
    ),
)

NOTIFICATION_TYPES: dict[str, NotificationTypeConfig] = {config.type: config for config in _TYPES}


class UnknownNotificationType(KeyError):
    pass


def get_config(notification_type: str) -> NotificationTypeConfig:
    try:
        return NOTIFICATION_TYPES[notification_type]
    except KeyError:
        raise UnknownNotificationType(f"Unknown notification type: {notification_type}") from None


def parse_metadata(notification_type: str, raw: Meta) -> Meta:
    """Validate ``raw`` against the type's model; raises ``pydantic.ValidationError``."""
    model = get_config(notification_type).metadata_model
    return model.model_validate(raw).model_dump(mode="json", exclude_none=True)


def types_for_category(category_id: str) -> list[str]:
    return [config.type for config in _TYPES if config.category_id == category_id]
