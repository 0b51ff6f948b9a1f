"""
services/availability/router.py
A guide's own calendar: recurring weekly windows and one-off blocked dates.
"""

import logging
from datetime import datetime, timezone
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from shared.middleware.auth import require_guide
from shared.models.models import AvailabilityWindow, BlockedDate, User
from shared.schemas.schemas import (
    AvailabilityWindowCreate,
    AvailabilityWindowResponse,
    BlockedDateCreate,
    BlockedDateResponse,
    MessageResponse,
)
from shared.utils.scheduling import WindowSpec, to_local, validate_new_window

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/availability", tags=["Availability"])


def window_spec(window: AvailabilityWindow) -> WindowSpec:
    return WindowSpec(
        day_of_week=window.day_of_week,
        start_time=window.start_time,
        end_time=window.end_time,
        timezone=window.timezone,
    )


async def _guide_timezone(guide_id, db: AsyncSession) -> str:
    tz_name = await db.scalar(
        select(AvailabilityWindow.timezone)
        .where(AvailabilityWindow.guide_id == guide_id)
        .order_by(AvailabilityWindow.day_of_week, AvailabilityWindow.start_time)
        .limit(1)
    )
    return tz_name or settings.DEFAULT_AVAILABILITY_TIMEZONE


# ── Weekly windows ────────────────────────────────────────────

@router.get("", response_model=List[AvailabilityWindowResponse])
async def list_windows(
    current_user: User = Depends(require_guide),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(AvailabilityWindow)
        .where(AvailabilityWindow.guide_id == current_user.id)
        .order_by(AvailabilityWindow.day_of_week, AvailabilityWindow.start_time)
    )
    return [AvailabilityWindowResponse.model_validate(w) for w in result.scalars()]


@router.post("", response_model=AvailabilityWindowResponse, status_code=status.HTTP_201_CREATED)
async def create_window(
    data: AvailabilityWindowCreate,
    current_user: User = Depends(require_guide),
    db: AsyncSession = Depends(get_db),
):
    """Add a weekly window. Overlapping an existing window on the same day is a 409."""
    result = await db.execute(
        select(AvailabilityWindow).where(
            AvailabilityWindow.guide_id == current_user.id,
            AvailabilityWindow.day_of_week == data.day_of_week,
        )
    )
    validate_new_window(
        [window_spec(w) for w in result.scalars()],
        WindowSpec(data.day_of_week, data.start_time, data.end_time, data.timezone),
    )

    window = AvailabilityWindow(guide_id=current_user.id, **data.model_dump())
    db.add(window)
    await db.commit()

    logger.info(
        f"Guide {current_user.id} added window day={data.day_of_week} "
        f"{data.start_time}-{data.end_time} {data.timezone}"
    )
    return AvailabilityWindowResponse.model_validate(window)


@router.delete("/{window_id}", response_model=MessageResponse)
async def delete_window(
    window_id: UUID,
    current_user: User = Depends(require_guide),
    db: AsyncSession = Depends(get_db),
):
    window = await db.scalar(
        select(AvailabilityWindow).where(
            AvailabilityWindow.id == window_id,
            AvailabilityWindow.guide_id == current_user.id,
        )
    )
    if not window:
        raise HTTPException(status_code=404, detail="Availability window not found")

    await db.delete(window)
    await db.commit()
    return MessageResponse(message="Availability window removed")


# ── Blocked dates ─────────────────────────────────────────────

@router.get("/blocked-dates", response_model=List[BlockedDateResponse])
async def list_blocked_dates(
    current_user: User = Depends(require_guide),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(BlockedDate)
        .where(BlockedDate.guide_id == current_user.id)
        .order_by(BlockedDate.date)
    )
    return [BlockedDateResponse.model_validate(b) for b in result.scalars()]


@router.post("/blocked-dates", response_model=BlockedDateResponse, status_code=status.HTTP_201_CREATED)
async def create_blocked_date(
    data: BlockedDateCreate,
    current_user: User = Depends(require_guide),
    db: AsyncSession = Depends(get_db),
):
    """Block a future calendar date (in the guide's timezone)."""
    tz_name = await _guide_timezone(current_user.id, db)
    today = to_local(datetime.now(timezone.utc), tz_name).date
    if data.date <= today:
        raise HTTPException(status_code=400, detail="Blocked dates must be in the future")

    blocked = BlockedDate(guide_id=current_user.id, date=data.date, reason=data.reason)
    db.add(blocked)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="This date is already blocked")

    return BlockedDateResponse.model_validate(blocked)


@router.delete("/blocked-dates/{blocked_id}", response_model=MessageResponse)
async def delete_blocked_date(
    blocked_id: UUID,
    current_user: User = Depends(require_guide),
    db: AsyncSession = Depends(get_db),
):
    blocked = await db.scalar(
        select(BlockedDate).where(
            BlockedDate.id == blocked_id,
            BlockedDate.guide_id == current_user.id,
        )
    )
    if not blocked:
        raise HTTPException(status_code=404, detail="Blocked date not found")

    await db.delete(blocked)
    await db.commit()
    return MessageResponse(message="Blocked date removed")
