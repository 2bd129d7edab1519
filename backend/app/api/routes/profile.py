from fastapi import APIRouter

from app.api.deps import CurrentUserDep, DbSessionDep
from app.core.view_cache import invalidate_views
from app.schemas.auth import ProfileUpdate, UserPublic


router = APIRouter(prefix="/profile", tags=["profile"])


@router.get("", response_model=UserPublic)
async def get_profile(current_user: CurrentUserDep) -> UserPublic:
    return UserPublic.model_validate(current_user)


@router.put("")
async def update_profile(payload: ProfileUpdate, db: DbSessionDep, current_user: CurrentUserDep) -> dict:
    for key, value in payload.model_dump(exclude_unset=True).items():
        if key == "display_name" and value is None:
            # Display name cannot be blanked out
            continue
        setattr(current_user, key, value)

    await db.commit()
    await db.refresh(current_user)
    await invalidate_views(current_user.id)
    return {"success": True, "profile": UserPublic.model_validate(current_user).model_dump(mode="json")}
