from datetime import timedelta
import logging
import secrets

from fastapi import APIRouter, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from app.api.deps import CurrentUserDep, DbSessionDep
from app.api.helpers import iso, profile_summary
from app.core.audit import AuditAction, audit_log
from app.core.config import settings
from app.core.rate_limit import check_rate_limit
from app.db.procedures import validate_invite_code
from app.models.models import InviteCode, utcnow
from app.schemas.auth import INVITE_CODE_PATTERN


router = APIRouter(prefix="/invites", tags=["invites"])
logger = logging.getLogger("giftify.invites")

# No 0/O or 1/I, codes get read aloud and typed on phones
INVITE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
INVITE_CODE_LENGTH = 8
MAX_GENERATION_ATTEMPTS = 5


def generate_invite_code() -> str:
    return "".join(secrets.choice(INVITE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_invite(db: DbSessionDep, current_user: CurrentUserDep, request: Request) -> dict:
    user_id = current_user.id
    expires_at = utcnow() + timedelta(days=settings.invite_code_ttl_days)

    for attempt in range(1, MAX_GENERATION_ATTEMPTS + 1):
        invite = InviteCode(code=generate_invite_code(), inviter_id=user_id, expires_at=expires_at)
        db.add(invite)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("Invite code collision attempt=%d", attempt)
            continue

        audit_log(AuditAction.INVITE_GENERATED, request=request, user_id=user_id)
        return {"success": True, "code": invite.code, "expires_at": iso(invite.expires_at)}

    logger.error("Invite code generation exhausted user_id=%s", user_id)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Failed to generate unique code, please try again",
    )


@router.get("/validate/{code}")
async def validate_invite(code: str, db: DbSessionDep, request: Request) -> dict:
    check_rate_limit(request, "invite_validate", max_requests=settings.rate_limit_invite_requests, window_seconds=60)

    normalized = code.strip().upper()
    if not INVITE_CODE_PATTERN.match(normalized):
        return {"valid": False, "inviter_id": None, "inviter_name": None, "error": "Invalid invite code format"}

    result = await validate_invite_code(db, normalized)
    return {
        "valid": result["valid"],
        "inviter_id": result["inviter_id"],
        "inviter_name": result["inviter_name"] or "A friend",
        "error": result["error_message"],
    }


@router.get("")
async def list_my_invites(db: DbSessionDep, current_user: CurrentUserDep) -> list[dict]:
    result = await db.execute(
        select(InviteCode)
        .where(InviteCode.inviter_id == current_user.id)
        .options(selectinload(InviteCode.invitee))
        .order_by(InviteCode.created_at.desc())
    )
    now = utcnow()
    return [
        {
            "id": invite.id,
            "code": invite.code,
            "created_at": iso(invite.created_at),
            "expires_at": iso(invite.expires_at),
            "used_at": iso(invite.used_at),
            "is_expired": invite.used_at is None and invite.expires_at <= now,
            "used_by": profile_summary(invite.invitee),
        }
        for invite in result.scalars().all()
    ]
