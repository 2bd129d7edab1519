from decimal import Decimal, InvalidOperation

from pydantic import BaseModel, Field, field_validator

from app.models.models import PrivacyLevelEnum

_PRIVACY_VALUES = {level.value for level in PrivacyLevelEnum}


def _strip_or_none(value: object) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def _required(value: str | None, message: str) -> str:
    normalized = (value or "").strip()
    if not normalized:
        raise ValueError(message)
    return normalized


def _privacy(value: str | None) -> str | None:
    if value is None:
        return None
    if value not in _PRIVACY_VALUES:
        raise ValueError("Invalid privacy setting")
    return value


class WishlistCreate(BaseModel):
    name: str = Field(default="", max_length=255, validate_default=True)
    description: str | None = None
    privacy: str = PrivacyLevelEnum.FRIENDS.value

    @field_validator("name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        return _required(value, "Name is required")

    @field_validator("description", mode="before")
    @classmethod
    def _description_strip(cls, value: object) -> str | None:
        return _strip_or_none(value)

    @field_validator("privacy")
    @classmethod
    def _privacy_valid(cls, value: str) -> str:
        return _privacy(value)


class WishlistUpdate(WishlistCreate):
    pass


def _price(value: object) -> str | None:
    normalized = _strip_or_none(value)
    if normalized is None:
        return None
    try:
        amount = Decimal(normalized.replace(",", "."))
        if not amount.is_finite() or amount < 0:
            raise ValueError("Price must be a number")
    except InvalidOperation:
        raise ValueError("Price must be a number") from None
    return normalized


class ItemCreate(BaseModel):
    url: str = Field(default="", validate_default=True)
    title: str = Field(default="", max_length=500, validate_default=True)
    description: str | None = None
    image_url: str | None = None
    price: str | None = None
    currency: str | None = Field(default=None, max_length=10)
    notes: str | None = None

    @field_validator("url")
    @classmethod
    def _url_required(cls, value: str) -> str:
        return _required(value, "URL is required")

    @field_validator("title")
    @classmethod
    def _title_required(cls, value: str) -> str:
        return _required(value, "Title is required")

    @field_validator("description", "image_url", "currency", "notes", mode="before")
    @classmethod
    def _text_strip(cls, value: object) -> str | None:
        return _strip_or_none(value)

    @field_validator("price", mode="before")
    @classmethod
    def _price_valid(cls, value: object) -> str | None:
        return _price(value)


class ItemUpdate(BaseModel):
    title: str = Field(default="", max_length=500, validate_default=True)
    description: str | None = None
    price: str | None = None
    currency: str | None = Field(default=None, max_length=10)
    notes: str | None = None

    @field_validator("title")
    @classmethod
    def _title_required(cls, value: str) -> str:
        return _required(value, "Title is required")

    @field_validator("description", "currency", "notes", mode="before")
    @classmethod
    def _text_strip(cls, value: object) -> str | None:
        return _strip_or_none(value)

    @field_validator("price", mode="before")
    @classmethod
    def _price_valid(cls, value: object) -> str | None:
        return _price(value)


class PurchasedUpdate(BaseModel):
    purchased: bool


class ReceivedUpdate(BaseModel):
    received: bool


class LinkMetadataRequest(BaseModel):
    url: str = Field(default="", validate_default=True)

    @field_validator("url")
    @classmethod
    def _url_required(cls, value: str) -> str:
        return _required(value, "URL is required")


class SelectedFriendsUpdate(BaseModel):
    friend_ids: list[str] = Field(default_factory=list)


class CollaboratorAdd(BaseModel):
    friend_id: str


class ConvertToJoint(BaseModel):
    friend_ids: list[str] = Field(default_factory=list)
