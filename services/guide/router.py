"""
services/guide/router.py
Guide discovery: listing with match scoring, public guide profiles,
per-guide match breakdowns and bookable availability.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.profile.router import get_profile_for_user
from shared.middleware.auth import get_current_user, get_optional_user
from shared.models.models import (
    ACTIVE_CALL_STATUSES,
    AvailabilityWindow,
    BlockedDate,
    Call,
    RecoveryProfile,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    AvailabilityWindowResponse,
    BookedInterval,
    GuideAvailabilityResponse,
    GuideListResponse,
    GuideResponse,
    MatchResponse,
)
from shared.utils.matching import (
    calculate_match_score,
    guide_match_profile,
    rank_by_match,
    seeker_match_profile,
)
from shared.utils.scheduling import as_utc, to_local

router = APIRouter(prefix="/guides", tags=["Guides"])

GUIDE_ROLES = (UserRole.GUIDE, UserRole.BOTH)


# ── Helpers ───────────────────────────────────────────────────

def _guide_response(user: User, profile: RecoveryProfile) -> GuideResponse:
    return GuideResponse(
        user_id=user.id,
        name=user.name,
        bio=profile.bio,
        procedure_type=profile.procedure_type,
        procedure_types=profile.procedure_types or [],
        procedure_details=profile.procedure_details,
        age_range=profile.age_range,
        gender=profile.gender,
        activity_level=profile.activity_level,
        recovery_goals=profile.recovery_goals or [],
        complicating_factors=profile.complicating_factors or [],
        lifestyle_context=profile.lifestyle_context or [],
        time_since_surgery=profile.time_since_surgery,
        is_available_for_calls=profile.is_available_for_calls,
        hourly_rate=profile.hourly_rate,
    )


async def _get_guide_or_404(guide_id: UUID, db: AsyncSession) -> Tuple[User, RecoveryProfile]:
    result = await db.execute(
        select(User, RecoveryProfile)
        .join(RecoveryProfile, RecoveryProfile.user_id == User.id)
        .where(User.id == guide_id, User.role.in_(GUIDE_ROLES), User.is_active == True)
    )
    row = result.first()
    if not row:
        raise HTTPException(status_code=404, detail="Guide not found")
    return row[0], row[1]


# ── Endpoints ─────────────────────────────────────────────────

@router.get("", response_model=GuideListResponse)
async def list_guides(
    procedure: Optional[str] = Query(None, description="Only guides supporting this procedure"),
    available_for_calls: Optional[bool] = Query(None),
    match_procedure: Optional[str] = Query(None, description="Score against this procedure instead of the active one"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """
    List guides. When the caller has a recovery profile every candidate is
    scored and the list is sorted by match score (best first) before paging.
    """
    query = (
        select(User, RecoveryProfile)
        .join(RecoveryProfile, RecoveryProfile.user_id == User.id)
        .where(User.role.in_(GUIDE_ROLES), User.is_active == True)
        .order_by(User.created_at, User.id)
    )
    if available_for_calls is not None:
        query = query.where(RecoveryProfile.is_available_for_calls == available_for_calls)
    if current_user:
        query = query.where(User.id != current_user.id)

    rows = (await db.execute(query)).all()

    # procedure_types is a JSON list, so membership is filtered here
    if procedure:
        wanted = procedure.lower()
        rows = [
            (u, p) for u, p in rows
            if wanted in [t.lower() for t in (p.procedure_types or [p.procedure_type])]
        ]

    items: List[GuideResponse] = [_guide_response(u, p) for u, p in rows]

    seeker_profile = (
        await get_profile_for_user(current_user.id, db) if current_user else None
    )
    if seeker_profile:
        seeker = seeker_match_profile(seeker_profile, match_procedure)
        ranked = rank_by_match(
            seeker,
            [(item, guide_match_profile(p)) for item, (_, p) in zip(items, rows)],
        )
        items = []
        for item, result in ranked:
            item.match = MatchResponse(**result.to_dict())
            items.append(item)

    total = len(items)
    start = (page - 1) * page_size
    return GuideListResponse(
        items=items[start:start + page_size],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total else 0,
    )


@router.get("/{guide_id}", response_model=GuideResponse)
async def get_guide(
    guide_id: UUID,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Get a guide's public profile. Cached for 5 minutes."""
    cache = RedisCache(redis)
    cached = await cache.get_guide(guide_id)
    if cached:
        return GuideResponse(**cached)

    user, profile = await _get_guide_or_404(guide_id, db)
    response = _guide_response(user, profile)
    await cache.set_guide(guide_id, response.model_dump())
    return response


@router.get("/{guide_id}/match", response_model=MatchResponse)
async def get_match(
    guide_id: UUID,
    match_procedure: Optional[str] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Score breakdown between the caller and one guide."""
    _, guide_profile = await _get_guide_or_404(guide_id, db)
    seeker_profile = await get_profile_for_user(current_user.id, db)
    if not seeker_profile:
        raise HTTPException(status_code=404, detail="Create your recovery profile to see match scores")

    result = calculate_match_score(
        seeker_match_profile(seeker_profile, match_procedure),
        guide_match_profile(guide_profile),
    )
    return MatchResponse(**result.to_dict())


@router.get("/{guide_id}/availability", response_model=GuideAvailabilityResponse)
async def get_guide_availability(
    guide_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    """
    Everything a client needs to offer bookable times: the weekly windows,
    upcoming booked intervals and future blocked dates.
    """
    await _get_guide_or_404(guide_id, db)
    now = datetime.now(timezone.utc)

    windows = (await db.execute(
        select(AvailabilityWindow)
        .where(AvailabilityWindow.guide_id == guide_id)
        .order_by(AvailabilityWindow.day_of_week, AvailabilityWindow.start_time)
    )).scalars().all()

    # Include a call already in progress; no call is longer than the longest duration
    longest = timedelta(minutes=max(settings.ALLOWED_CALL_DURATIONS))
    calls = (await db.execute(
        select(Call)
        .where(
            Call.guide_id == guide_id,
            Call.status.in_(ACTIVE_CALL_STATUSES),
            Call.scheduled_at > now - longest,
        )
        .order_by(Call.scheduled_at)
    )).scalars().all()
    calls = [c for c in calls if as_utc(c.scheduled_at) + timedelta(minutes=c.duration_minutes) > now]

    tz_name = windows[0].timezone if windows else settings.DEFAULT_AVAILABILITY_TIMEZONE
    today = to_local(now, tz_name).date
    blocked = (await db.execute(
        select(BlockedDate.date)
        .where(BlockedDate.guide_id == guide_id, BlockedDate.date >= today)
        .order_by(BlockedDate.date)
    )).scalars().all()

    return GuideAvailabilityResponse(
        windows=[AvailabilityWindowResponse.model_validate(w) for w in windows],
        booked=[
            BookedInterval(
                start=as_utc(c.scheduled_at),
                end=as_utc(c.scheduled_at) + timedelta(minutes=c.duration_minutes),
            )
            for c in calls
        ],
        blocked_dates=list(blocked),
    )
