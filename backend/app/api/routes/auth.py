from typing import TypedDict
import logging

from fastapi import APIRouter, Cookie, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.api.deps import CurrentUserDep, DbSessionDep
from app.core.audit import AuditAction, audit_log
from app.core.config import settings
from app.core.rate_limit import check_rate_limit
from app.core.security import (
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    get_password_hash,
    verify_password,
)
from app.core.view_cache import invalidate_views
from app.db.procedures import InviteError, consume_invite_and_befriend, validate_invite_code
from app.models.models import User
from app.schemas.auth import LoginRequest, SignupRequest, UserPublic


router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("giftify.auth")

SIGNUP_SUCCESS_MESSAGE = "Account created successfully. Please sign in."
STALE_INVITE_MESSAGE = "This invite code is no longer valid. Please request a new invite."


class CookieOptions(TypedDict, total=False):
    samesite: str
    secure: bool


def _cookie_options() -> CookieOptions:
    """Lax cookies over plain HTTP locally, cross-site secure cookies elsewhere."""
    environment = (settings.environment or "local").lower()
    if environment in ("local", "test"):
        return {"samesite": "lax", "secure": False}
    return {"samesite": "none", "secure": True}


def _set_session_cookies(response: Response, user_id: str) -> None:
    response.set_cookie(
        "access_token",
        create_access_token(user_id),
        httponly=True,
        max_age=settings.access_token_expire_minutes * 60,
        path="/",
        **_cookie_options(),
    )
    response.set_cookie(
        "refresh_token",
        create_refresh_token(user_id),
        httponly=True,
        max_age=settings.refresh_token_expire_minutes * 60,
        path="/",
        **_cookie_options(),
    )


def _clear_session_cookies(response: Response) -> None:
    response.delete_cookie("access_token", path="/", **_cookie_options())
    response.delete_cookie("refresh_token", path="/", **_cookie_options())


@router.post("/signup", status_code=status.HTTP_201_CREATED)
async def signup(payload: SignupRequest, db: DbSessionDep, request: Request) -> dict:
    check_rate_limit(request, "signup", max_requests=5, window_seconds=300)

    if payload.invite_code is None and settings.invite_only_signup:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invite code is required")

    if payload.invite_code is not None:
        validation = await validate_invite_code(db, payload.invite_code)
        if not validation["valid"]:
            audit_log(
                AuditAction.INVITE_REJECTED,
                request=request,
                details={"email": payload.email, "reason": validation["error_message"]},
                success=False,
            )
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=validation["error_message"])

    existing = await db.execute(select(User.id).where(User.email == payload.email))
    if existing.first() is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="An account with this email already exists",
        )

    user = User(
        email=payload.email,
        hashed_password=get_password_hash(payload.password),
        display_name=payload.display_name,
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="An account with this email already exists",
        ) from None

    friendship = None
    if payload.invite_code is not None:
        try:
            friendship = await consume_invite_and_befriend(db, payload.invite_code, user.id)
        except (InviteError, IntegrityError) as e:
            # The user row is in the same transaction, so this also undoes the account
            await db.rollback()
            logger.warning("Invite consumption failed email=%s error=%s", payload.email, e)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=STALE_INVITE_MESSAGE) from None

    await db.commit()
    if friendship is not None:
        await invalidate_views(friendship.requester_id, friendship.addressee_id)

    audit_log(AuditAction.SIGNUP, request=request, user_id=user.id, details={"email": user.email})
    if payload.invite_code is not None:
        audit_log(AuditAction.INVITE_CONSUMED, request=request, user_id=user.id)
    return {"success": True, "message": SIGNUP_SUCCESS_MESSAGE, "user_id": user.id}


@router.post("/login", response_model=UserPublic)
async def login(payload: LoginRequest, response: Response, db: DbSessionDep, request: Request) -> UserPublic:
    check_rate_limit(request, "login", max_requests=settings.rate_limit_login_requests, window_seconds=60)

    result = await db.execute(select(User).where(User.email == payload.email))
    user = result.scalar_one_or_none()
    if user is None or not verify_password(payload.password, user.hashed_password):
        reason = "user_not_found" if user is None else "invalid_password"
        audit_log(
            AuditAction.LOGIN_FAILED,
            request=request,
            details={"email": payload.email, "reason": reason},
            success=False,
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid email or password")

    _set_session_cookies(response, user.id)
    audit_log(AuditAction.LOGIN, request=request, user_id=user.id)
    logger.info("Auth login success user_id=%s", user.id)
    return UserPublic.model_validate(user)


@router.post("/logout")
async def logout(response: Response, request: Request) -> dict:
    _clear_session_cookies(response)
    audit_log(AuditAction.LOGOUT, request=request)
    return {"success": True}


@router.post("/refresh")
async def refresh(
    response: Response,
    db: DbSessionDep,
    refresh_token: str | None = Cookie(default=None, alias="refresh_token"),
) -> dict:
    if not refresh_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_refresh_token(refresh_token)
    user = await db.get(User, payload["sub"]) if payload else None
    if user is None:
        _clear_session_cookies(response)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    _set_session_cookies(response, user.id)
    return {"success": True}


@router.get("/me", response_model=UserPublic)
async def me(current_user: CurrentUserDep) -> UserPublic:
    return UserPublic.model_validate(current_user)
