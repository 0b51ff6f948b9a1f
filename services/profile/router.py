"""
services/profile/router.py
Recovery profile management: the attributes matching runs on, the active
procedure context, and a guide's call settings.
"""

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import get_current_user
from shared.models.models import RecoveryProfile, User
from shared.schemas.schemas import ActiveProcedureRequest, ProfileResponse, ProfileUpdateRequest

router = APIRouter(prefix="/profile", tags=["Profile"])


async def get_profile_for_user(user_id, db: AsyncSession):
    result = await db.execute(select(RecoveryProfile).where(RecoveryProfile.user_id == user_id))
    return result.scalar_one_or_none()


async def _get_own_profile_or_404(user: User, db: AsyncSession) -> RecoveryProfile:
    profile = await get_profile_for_user(user.id, db)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found. Create one first.")
    return profile


@router.get("/me", response_model=ProfileResponse)
async def get_my_profile(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    profile = await _get_own_profile_or_404(current_user, db)
    return ProfileResponse.model_validate(profile)


@router.put("/me", response_model=ProfileResponse)
async def upsert_my_profile(
    data: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Create or update the caller's recovery profile.
    Call settings (availability for calls, hourly rate) are guide-only.
    """
    if not current_user.is_guide and (data.is_available_for_calls or data.hourly_rate is not None):
        raise HTTPException(status_code=403, detail="Only guides can configure call settings")

    if data.hourly_rate is not None and not (
        Decimal(str(settings.MIN_CALL_RATE)) <= data.hourly_rate <= Decimal(str(settings.MAX_CALL_RATE))
    ):
        raise HTTPException(
            status_code=400,
            detail=f"Hourly rate must be between ${settings.MIN_CALL_RATE:.0f} and ${settings.MAX_CALL_RATE:.0f}",
        )

    updates = data.model_dump(exclude_none=True)
    profile = await get_profile_for_user(current_user.id, db)
    if profile is None:
        profile = RecoveryProfile(user_id=current_user.id, **updates)
        db.add(profile)
    else:
        for field, value in updates.items():
            setattr(profile, field, value)

    # The active procedure must stay one of the listed procedures
    if profile.active_procedure_type not in profile.procedure_types:
        profile.active_procedure_type = profile.procedure_type

    await db.commit()
    await db.refresh(profile)

    await RedisCache(redis).invalidate_guide(current_user.id)
    return ProfileResponse.model_validate(profile)


@router.patch("/me/active-procedure", response_model=ProfileResponse)
async def switch_active_procedure(
    data: ActiveProcedureRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Switch which of the caller's procedures drives matching."""
    profile = await _get_own_profile_or_404(current_user, db)
    if data.procedure_type not in (profile.procedure_types or []):
        raise HTTPException(status_code=400, detail="Procedure is not part of your profile")

    profile.active_procedure_type = data.procedure_type
    profile.procedure_type = data.procedure_type

    await db.commit()
    await db.refresh(profile)

    await RedisCache(redis).invalidate_guide(current_user.id)
    return ProfileResponse.model_validate(profile)
