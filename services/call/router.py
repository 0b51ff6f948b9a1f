"""
services/call/router.py
Call booking and lifecycle.
States: REQUESTED → CONFIRMED → COMPLETED
        REQUESTED → CANCELLED (declined), CONFIRMED → CANCELLED

Booking runs the availability validator, then reserves every 15-minute
quantum of the call in call_slot_reservations inside the same transaction
as the call insert. The unique (guide_id, slot_start) constraint rejects a
concurrent second writer even when both passed validation.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.availability.router import window_spec
from services.notification.router import build_notification, format_call_time
from shared.middleware.auth import get_current_user, require_internal_service
from shared.models.models import (
    ACTIVE_CALL_STATUSES,
    AvailabilityWindow,
    BlockedDate,
    Call,
    CallAuditLog,
    CallSlotReservation,
    CallStatus,
    NotificationType,
    RecoveryProfile,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    CallCancelRequest,
    CallCreateRequest,
    CallResponse,
    ErrorResponse,
    PaidCallCreateRequest,
)
from shared.utils.exceptions import BookingConflictError
from shared.utils.scheduling import (
    as_utc,
    check_transition,
    is_refund_eligible,
    slot_starts,
    validate_booking,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calls", tags=["Calls"])


# ── Helpers ───────────────────────────────────────────────────

async def _get_call_or_404(call_id: UUID, db: AsyncSession) -> Call:
    result = await db.execute(select(Call).where(Call.id == call_id))
    call = result.scalar_one_or_none()
    if not call:
        raise HTTPException(status_code=404, detail="Call not found")
    return call


def _require_party(call: Call, user: User, guide_only: bool = False) -> str:
    """Return "guide" or "seeker" for the caller, or raise 403."""
    if call.guide_id == user.id:
        return "guide"
    if call.seeker_id == user.id and not guide_only:
        return "seeker"
    raise HTTPException(status_code=403, detail="Not authorized for this call")


async def _get_user(user_id, db: AsyncSession) -> Optional[User]:
    return await db.scalar(select(User).where(User.id == user_id))


async def _log_status_change(
    db: AsyncSession,
    call: Call,
    from_status: Optional[str],
    to_status: str,
    changed_by_id=None,
    reason: str = None,
):
    """Append an immutable audit log entry for every status change."""
    db.add(CallAuditLog(
        call_id=call.id,
        from_status=from_status,
        to_status=to_status,
        changed_by_id=changed_by_id,
        reason=reason,
    ))


async def _release_reservations(db: AsyncSession, call: Call):
    await db.execute(delete(CallSlotReservation).where(CallSlotReservation.call_id == call.id))


async def _load_calendar(guide_id, db: AsyncSession):
    windows = (await db.execute(
        select(AvailabilityWindow)
        .where(AvailabilityWindow.guide_id == guide_id)
        .order_by(AvailabilityWindow.day_of_week, AvailabilityWindow.start_time)
    )).scalars().all()

    blocked = (await db.execute(
        select(BlockedDate.date).where(BlockedDate.guide_id == guide_id)
    )).scalars().all()

    existing: List[Tuple[datetime, int]] = [
        (row.scheduled_at, row.duration_minutes)
        for row in (await db.execute(
            select(Call.scheduled_at, Call.duration_minutes).where(
                Call.guide_id == guide_id,
                Call.status.in_(ACTIVE_CALL_STATUSES),
            )
        )).all()
    ]
    return [window_spec(w) for w in windows], blocked, existing


async def _book_call(
    db: AsyncSession,
    redis,
    seeker: User,
    data: CallCreateRequest,
    initial_status: CallStatus,
    payment_reference: str = None,
) -> Call:
    """Validate, reserve and insert a call. All-or-nothing."""
    if seeker.id == data.guide_id:
        raise HTTPException(status_code=400, detail="You cannot book a call with yourself")

    guide = await _get_user(data.guide_id, db)
    if not guide or not guide.is_active or guide.role not in (UserRole.GUIDE, UserRole.BOTH):
        raise HTTPException(status_code=404, detail="Guide not found")

    profile = await db.scalar(select(RecoveryProfile).where(RecoveryProfile.user_id == guide.id))
    if not profile or not profile.is_available_for_calls:
        raise HTTPException(status_code=400, detail="This guide is not currently accepting calls")

    windows, blocked, existing = await _load_calendar(guide.id, db)
    pricing = validate_booking(
        data.scheduled_at,
        data.duration_minutes,
        windows,
        blocked,
        existing,
        hourly_rate=profile.hourly_rate,
    )

    # A rollback expires loaded instances, so keep plain ids
    guide_id, seeker_id = guide.id, seeker.id
    guide_name, seeker_name = guide.name, seeker.name

    start = as_utc(data.scheduled_at)
    cache = RedisCache(redis)
    if not await cache.lock_slot(guide_id, start, seeker_id):
        raise BookingConflictError(
            "This time slot is being booked by someone else. Please try again in a moment."
        )

    try:
        call = Call(
            seeker_id=seeker_id,
            guide_id=guide_id,
            scheduled_at=start,
            duration_minutes=data.duration_minutes,
            questions_in_advance=data.questions_in_advance,
            status=initial_status,
            price=pricing.price,
            platform_fee=pricing.platform_fee,
            guide_payout=pricing.guide_payout,
            payment_reference=payment_reference,
            confirmed_at=datetime.now(timezone.utc) if initial_status == CallStatus.CONFIRMED else None,
        )
        db.add(call)
        await db.flush()

        db.add_all([
            CallSlotReservation(guide_id=guide_id, call_id=call.id, slot_start=slot)
            for slot in slot_starts(start, data.duration_minutes)
        ])
        try:
            await db.flush()
        except IntegrityError:
            logger.info(f"Slot reservation conflict for guide {guide_id} at {start.isoformat()}")
            await db.rollback()
            raise BookingConflictError()

        await _log_status_change(db, call, None, initial_status.value, seeker_id)

        when = format_call_time(start)
        if initial_status == CallStatus.REQUESTED:
            db.add(build_notification(
                guide_id, NotificationType.CALL_REQUESTED, call.id,
                name=seeker_name, duration=data.duration_minutes, when=when,
            ))
        else:
            db.add(build_notification(
                guide_id, NotificationType.CALL_CONFIRMED, call.id,
                name=seeker_name, duration=data.duration_minutes, when=when,
            ))
            db.add(build_notification(
                seeker_id, NotificationType.CALL_CONFIRMED, call.id,
                name=guide_name, duration=data.duration_minutes, when=when,
            ))

        await db.commit()
    finally:
        await cache.release_slot(guide_id, start)

    logger.info(
        f"Call {call.id} booked ({initial_status.value}) guide={guide_id} "
        f"seeker={seeker_id} at {start.isoformat()} for {data.duration_minutes}min"
    )
    return call


def _call_response(call: Call, refund_eligible: Optional[bool] = None) -> CallResponse:
    response = CallResponse.model_validate(call)
    response.refund_eligible = refund_eligible
    return response


# ── Booking ───────────────────────────────────────────────────

BOOKING_REJECTIONS = {
    400: {"model": ErrorResponse, "description": "Rejected by availability validation"},
    409: {"model": ErrorResponse, "description": "Slot already booked or being booked"},
}


@router.post(
    "",
    response_model=CallResponse,
    status_code=status.HTTP_201_CREATED,
    responses=BOOKING_REJECTIONS,
)
async def request_call(
    data: CallCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Request a call. The guide confirms or declines it."""
    call = await _book_call(db, redis, current_user, data, CallStatus.REQUESTED)
    return _call_response(call)


@router.post(
    "/paid",
    response_model=CallResponse,
    status_code=status.HTTP_201_CREATED,
    include_in_schema=False,
    responses=BOOKING_REJECTIONS,
    dependencies=[Depends(require_internal_service)],
)
async def create_paid_call(
    data: PaidCallCreateRequest,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Internal endpoint called by the payment service after checkout succeeds.
    Paid calls skip REQUESTED and start CONFIRMED.
    """
    seeker = await _get_user(data.seeker_id, db)
    if not seeker or not seeker.is_active:
        raise HTTPException(status_code=404, detail="Seeker not found")

    call = await _book_call(
        db, redis, seeker, data, CallStatus.CONFIRMED, payment_reference=data.payment_reference
    )
    return _call_response(call)


# ── Reads ─────────────────────────────────────────────────────

@router.get("", response_model=List[CallResponse])
async def list_my_calls(
    role: Optional[str] = Query(None, pattern="^(seeker|guide)$"),
    status_filter: Optional[CallStatus] = Query(None, alias="status"),
    upcoming: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Calls where the caller is the seeker, the guide, or either."""
    if role == "seeker":
        query = select(Call).where(Call.seeker_id == current_user.id)
    elif role == "guide":
        query = select(Call).where(Call.guide_id == current_user.id)
    else:
        query = select(Call).where(
            or_(Call.seeker_id == current_user.id, Call.guide_id == current_user.id)
        )

    if status_filter:
        query = query.where(Call.status == status_filter)
    if upcoming:
        query = query.where(Call.scheduled_at >= datetime.now(timezone.utc)).order_by(Call.scheduled_at)
    else:
        query = query.order_by(Call.scheduled_at.desc())

    query = query.offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return [_call_response(c) for c in result.scalars()]


@router.get("/{call_id}", response_model=CallResponse)
async def get_call(
    call_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    call = await _get_call_or_404(call_id, db)
    if current_user.role != UserRole.ADMIN:
        _require_party(call, current_user)
    return _call_response(call)


# ── Lifecycle ─────────────────────────────────────────────────

@router.post("/{call_id}/confirm", response_model=CallResponse)
async def confirm_call(
    call_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Guide confirms a requested call. REQUESTED → CONFIRMED."""
    call = await _get_call_or_404(call_id, db)
    _require_party(call, current_user, guide_only=True)

    prev_status = call.status.value
    call.status = check_transition(call.status, "confirm")
    call.confirmed_at = datetime.now(timezone.utc)

    await _log_status_change(db, call, prev_status, call.status.value, current_user.id)
    db.add(build_notification(
        call.seeker_id, NotificationType.CALL_CONFIRMED, call.id,
        name=current_user.name, duration=call.duration_minutes,
        when=format_call_time(call.scheduled_at),
    ))

    await db.commit()
    return _call_response(call)


@router.post("/{call_id}/decline", response_model=CallResponse)
async def decline_call(
    call_id: UUID,
    data: Optional[CallCancelRequest] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Guide declines a requested call. REQUESTED → CANCELLED; frees the slot."""
    call = await _get_call_or_404(call_id, db)
    _require_party(call, current_user, guide_only=True)

    reason = data.reason if data else None
    prev_status = call.status.value
    call.status = check_transition(call.status, "decline")
    call.cancelled_at = datetime.now(timezone.utc)
    call.cancelled_by = "guide"
    call.cancellation_reason = reason

    await _release_reservations(db, call)
    await _log_status_change(db, call, prev_status, call.status.value, current_user.id, reason)
    db.add(build_notification(
        call.seeker_id, NotificationType.CALL_DECLINED, call.id,
        name=current_user.name, when=format_call_time(call.scheduled_at),
    ))

    await db.commit()
    return _call_response(call)


@router.post("/{call_id}/cancel", response_model=CallResponse)
async def cancel_call(
    call_id: UUID,
    data: Optional[CallCancelRequest] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Either party cancels a confirmed call. CONFIRMED → CANCELLED.
    Cancelling at least CALL_REFUND_CUTOFF_HOURS ahead is refund-eligible;
    the refund itself is issued by the payment service.
    """
    call = await _get_call_or_404(call_id, db)
    party = _require_party(call, current_user)

    reason = data.reason if data else None
    prev_status = call.status.value
    call.status = check_transition(call.status, "cancel")
    now = datetime.now(timezone.utc)
    call.cancelled_at = now
    call.cancelled_by = party
    call.cancellation_reason = reason
    refund_eligible = is_refund_eligible(call.scheduled_at, now)

    await _release_reservations(db, call)
    await _log_status_change(db, call, prev_status, call.status.value, current_user.id, reason)

    other_id = call.seeker_id if party == "guide" else call.guide_id
    db.add(build_notification(
        other_id, NotificationType.CALL_CANCELLED, call.id,
        name=current_user.name, when=format_call_time(call.scheduled_at),
    ))

    await db.commit()
    logger.info(f"Call {call.id} cancelled by {party}, refund_eligible={refund_eligible}")
    return _call_response(call, refund_eligible=refund_eligible)


@router.post("/{call_id}/complete", response_model=CallResponse)
async def complete_call(
    call_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Either party marks a confirmed call as completed. CONFIRMED → COMPLETED."""
    call = await _get_call_or_404(call_id, db)
    party = _require_party(call, current_user)

    prev_status = call.status.value
    call.status = check_transition(call.status, "complete")
    call.completed_at = datetime.now(timezone.utc)

    await _release_reservations(db, call)
    await _log_status_change(db, call, prev_status, call.status.value, current_user.id)

    other_id = call.seeker_id if party == "guide" else call.guide_id
    db.add(build_notification(
        other_id, NotificationType.CALL_COMPLETED, call.id,
        name=current_user.name, when=format_call_time(call.scheduled_at),
    ))

    await db.commit()
    return _call_response(call)
