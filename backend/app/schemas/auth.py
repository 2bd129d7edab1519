from datetime import date, datetime
import re

from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, Field, field_validator

INVITE_CODE_PATTERN = re.compile(r"^[A-Z0-9]{8}$")


def _required(value: str | None, message: str) -> str:
    normalized = (value or "").strip()
    if not normalized:
        raise ValueError(message)
    return normalized


class SignupRequest(BaseModel):
    email: str = Field(default="", validate_default=True)
    password: str = Field(default="", validate_default=True)
    display_name: str = Field(default="", validate_default=True)
    invite_code: str | None = None

    @field_validator("email")
    @classmethod
    def _email_valid(cls, value: str) -> str:
        normalized = _required(value, "Email is required")
        try:
            return validate_email(normalized, check_deliverability=False).normalized.lower()
        except EmailNotValidError:
            raise ValueError("Invalid email format") from None

    @field_validator("password")
    @classmethod
    def _password_valid(cls, value: str) -> str:
        if not value:
            raise ValueError("Password is required")
        if len(value) < 6:
            raise ValueError("Password must be at least 6 characters")
        return value

    @field_validator("display_name")
    @classmethod
    def _display_name_strip(cls, value: str) -> str:
        return _required(value, "Display name is required")

    @field_validator("invite_code")
    @classmethod
    def _invite_code_format(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        normalized = value.strip().upper()
        if not INVITE_CODE_PATTERN.match(normalized):
            raise ValueError("Invalid invite code format")
        return normalized


class LoginRequest(BaseModel):
    email: str = Field(default="", validate_default=True)
    password: str = Field(default="", validate_default=True)

    @field_validator("email")
    @classmethod
    def _email_strip(cls, value: str) -> str:
        return _required(value, "Email is required").lower()

    @field_validator("password")
    @classmethod
    def _password_present(cls, value: str) -> str:
        if not value:
            raise ValueError("Password is required")
        return value


class UserPublic(BaseModel):
    id: str
    email: str
    display_name: str
    avatar_url: str | None = None
    birthday: date | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ProfileSummary(BaseModel):
    """What other users get to see about someone."""

    id: str
    display_name: str
    avatar_url: str | None = None
    birthday: date | None = None

    model_config = {"from_attributes": True}


class ProfileUpdate(BaseModel):
    display_name: str | None = Field(default=None, max_length=120)
    birthday: date | None = None
    avatar_url: str | None = None

    @field_validator("display_name", "avatar_url", mode="before")
    @classmethod
    def _empty_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = str(value).strip()
        return normalized or None

    @field_validator("birthday", mode="before")
    @classmethod
    def _empty_birthday(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value
