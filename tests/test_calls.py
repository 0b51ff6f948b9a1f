"""
tests/test_calls.py
Tests for call booking: availability validation over HTTP, slot
reservations, the paid-call path and the call lifecycle.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from shared.models.models import (
    AvailabilityWindow,
    BlockedDate,
    Call,
    CallAuditLog,
    CallSlotReservation,
    CallStatus,
    Notification,
    NotificationType,
    RecoveryProfile,
    User,
)
from shared.utils.scheduling import to_local
from tests.conftest import INTERNAL_HEADERS, auth_headers, future_utc, next_local


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


async def _book(client: AsyncClient, seeker: User, guide: User, start: datetime, duration: int = 30):
    return await client.post("/calls", headers=auth_headers(seeker), json={
        "guide_id": str(guide.id),
        "scheduled_at": start.isoformat(),
        "duration_minutes": duration,
        "questions_in_advance": "How long before you could run?",
    })


async def _confirmed_call(client, seeker, guide, start) -> str:
    response = await _book(client, seeker, guide, start)
    call_id = response.json()["id"]
    await client.post(f"/calls/{call_id}/confirm", headers=auth_headers(guide))
    return call_id


# ── Booking ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_book_call_success(
    client: AsyncClient, session_factory, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    start = future_utc()
    response = await _book(client, seeker, guide, start)
    assert response.status_code == 201

    data = response.json()
    assert data["status"] == "REQUESTED"
    assert data["duration_minutes"] == 30
    assert _parse(data["scheduled_at"]) == start
    assert data["price"] == "30.00"
    assert data["platform_fee"] == "7.50"
    assert data["guide_payout"] == "22.50"

    async with session_factory() as s:
        slots = (await s.execute(
            select(CallSlotReservation).where(CallSlotReservation.call_id == uuid.UUID(data["id"]))
        )).scalars().all()
        assert len(slots) == 2

        audit = (await s.execute(select(CallAuditLog))).scalars().all()
        assert [(a.from_status, a.to_status) for a in audit] == [(None, "REQUESTED")]

        notification = await s.scalar(select(Notification).where(Notification.user_id == guide.id))
        assert notification.type == NotificationType.CALL_REQUESTED
        assert "Sam Seeker" in notification.body


@pytest.mark.asyncio
async def test_sixty_minute_call_price(
    client: AsyncClient, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    response = await _book(client, seeker, guide, future_utc(), duration=60)
    assert response.status_code == 201
    assert response.json()["price"] == "60.00"
    assert response.json()["guide_payout"] == "45.00"


@pytest.mark.asyncio
async def test_default_rate_when_guide_has_none(
    client: AsyncClient, db, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    guide_profile.hourly_rate = None
    await db.commit()

    response = await _book(client, seeker, guide, future_utc(), duration=60)
    assert response.status_code == 201
    assert response.json()["price"] == "50.00"


@pytest.mark.asyncio
@pytest.mark.parametrize("start, duration, code", [
    (future_utc(days=-1), 30, "PAST_DATE"),
    (future_utc(minute=7), 30, "INVALID_INTERVAL"),
    (future_utc(), 45, "INVALID_DURATION"),
])
async def test_booking_rejections(
    client: AsyncClient, seeker: User, guide: User, guide_profile: RecoveryProfile,
    start, duration, code,
):
    response = await _book(client, seeker, guide, start, duration)
    assert response.status_code == 400
    assert response.json()["code"] == code


@pytest.mark.asyncio
async def test_booking_outside_windows(
    client: AsyncClient, db, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    db.add(AvailabilityWindow(guide_id=guide.id, day_of_week=1, start_time="09:00", end_time="12:00"))
    await db.commit()

    # Tuesday 10:00 New York
    response = await _book(client, seeker, guide, next_local(2, 10))
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "OUTSIDE_AVAILABILITY"
    assert "available hours" in body["detail"]

    # Monday 11:30 New York for an hour runs past noon
    response = await _book(client, seeker, guide, next_local(1, 11, 30), duration=60)
    assert response.json()["code"] == "OUTSIDE_AVAILABILITY"

    response = await _book(client, seeker, guide, next_local(1, 11, 0), duration=60)
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_booking_on_blocked_date(
    client: AsyncClient, db, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    start = future_utc(hour=16)
    db.add(BlockedDate(guide_id=guide.id, date=to_local(start, "America/New_York").date))
    await db.commit()

    response = await _book(client, seeker, guide, start)
    assert response.status_code == 400
    assert response.json()["code"] == "DATE_BLOCKED"


@pytest.mark.asyncio
async def test_overlapping_booking_conflicts(
    client: AsyncClient, seeker: User, other_seeker: User, guide: User, guide_profile: RecoveryProfile
):
    start = future_utc()
    assert (await _book(client, seeker, guide, start, duration=60)).status_code == 201

    response = await _book(client, other_seeker, guide, start + timedelta(minutes=30))
    assert response.status_code == 409
    assert response.json()["code"] == "SLOT_TAKEN"

    # Back-to-back is fine
    response = await _book(client, other_seeker, guide, start + timedelta(minutes=60))
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_reservation_constraint_rejects_race_loser(
    client: AsyncClient, db, session_factory, seeker: User, other_seeker: User,
    guide: User, guide_profile: RecoveryProfile,
):
    """
    A slot already reserved by a writer the validator could not see yet
    (modelled as a reservation whose call does not count as active) makes
    the insert fail and nothing is written.
    """
    start = future_utc()
    winner = Call(
        seeker_id=other_seeker.id,
        guide_id=guide.id,
        scheduled_at=start,
        duration_minutes=30,
        status=CallStatus.CANCELLED,
        price=30,
        platform_fee=7.5,
        guide_payout=22.5,
    )
    db.add(winner)
    await db.flush()
    db.add(CallSlotReservation(guide_id=guide.id, call_id=winner.id, slot_start=start + timedelta(minutes=15)))
    await db.commit()

    response = await _book(client, seeker, guide, start)
    assert response.status_code == 409
    assert response.json()["code"] == "SLOT_TAKEN"

    async with session_factory() as s:
        assert await s.scalar(select(func.count(Call.id))) == 1
        assert await s.scalar(select(func.count(CallSlotReservation.id))) == 1
        assert await s.scalar(select(func.count(Notification.id))) == 0


@pytest.mark.asyncio
async def test_slot_lock_held_conflicts(
    client: AsyncClient, fake_redis, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    start = future_utc()
    await fake_redis.set(f"slot_lock:{guide.id}:{start.isoformat()}", "someone-else")

    response = await _book(client, seeker, guide, start)
    assert response.status_code == 409
    assert "being booked" in response.json()["detail"]


@pytest.mark.asyncio
async def test_slot_lock_released_after_booking(
    client: AsyncClient, fake_redis, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    start = future_utc()
    await _book(client, seeker, guide, start)
    assert await fake_redis.exists(f"slot_lock:{guide.id}:{start.isoformat()}") == 0


@pytest.mark.asyncio
async def test_cannot_book_yourself(client: AsyncClient, guide: User, guide_profile: RecoveryProfile):
    response = await _book(client, guide, guide, future_utc())
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_cannot_book_a_seeker(client: AsyncClient, seeker: User, other_seeker: User):
    response = await _book(client, seeker, other_seeker, future_utc())
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_guide_not_accepting_calls(
    client: AsyncClient, db, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    guide_profile.is_available_for_calls = False
    await db.commit()

    response = await _book(client, seeker, guide, future_utc())
    assert response.status_code == 400


# ── Paid path ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_paid_call_starts_confirmed(
    client: AsyncClient, session_factory, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    response = await client.post("/calls/paid", headers=INTERNAL_HEADERS, json={
        "guide_id": str(guide.id),
        "seeker_id": str(seeker.id),
        "scheduled_at": future_utc().isoformat(),
        "duration_minutes": 60,
        "payment_reference": "cs_test_123",
    })
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "CONFIRMED"
    assert data["payment_reference"] == "cs_test_123"
    assert data["confirmed_at"] is not None

    async with session_factory() as s:
        types = (await s.execute(select(Notification.type))).scalars().all()
        assert types == [NotificationType.CALL_CONFIRMED, NotificationType.CALL_CONFIRMED]


@pytest.mark.asyncio
async def test_paid_call_requires_internal_token(
    client: AsyncClient, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    payload = {
        "guide_id": str(guide.id),
        "seeker_id": str(seeker.id),
        "scheduled_at": future_utc().isoformat(),
        "payment_reference": "cs_test_123",
    }
    response = await client.post("/calls/paid", json=payload)
    assert response.status_code == 403

    response = await client.post("/calls/paid", headers={"X-Internal-Token": "wrong"}, json=payload)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_paid_call_still_validated(
    client: AsyncClient, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    response = await client.post("/calls/paid", headers=INTERNAL_HEADERS, json={
        "guide_id": str(guide.id),
        "seeker_id": str(seeker.id),
        "scheduled_at": future_utc(minute=10).isoformat(),
        "payment_reference": "cs_test_123",
    })
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_INTERVAL"


# ── Reads ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_call_visible_to_parties_only(
    client: AsyncClient, seeker: User, other_seeker: User, guide: User,
    admin_user: User, guide_profile: RecoveryProfile,
):
    call_id = (await _book(client, seeker, guide, future_utc())).json()["id"]

    assert (await client.get(f"/calls/{call_id}", headers=auth_headers(seeker))).status_code == 200
    assert (await client.get(f"/calls/{call_id}", headers=auth_headers(guide))).status_code == 200
    assert (await client.get(f"/calls/{call_id}", headers=auth_headers(admin_user))).status_code == 200
    assert (await client.get(f"/calls/{call_id}", headers=auth_headers(other_seeker))).status_code == 403


@pytest.mark.asyncio
async def test_list_calls_by_role(
    client: AsyncClient, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    await _book(client, seeker, guide, future_utc(days=3))
    await _book(client, seeker, guide, future_utc(days=4))

    response = await client.get("/calls", headers=auth_headers(guide), params={"role": "guide"})
    assert len(response.json()) == 2

    response = await client.get("/calls", headers=auth_headers(guide), params={"role": "seeker"})
    assert response.json() == []

    response = await client.get("/calls", headers=auth_headers(seeker), params={"upcoming": True})
    starts = [_parse(c["scheduled_at"]) for c in response.json()]
    assert starts == sorted(starts)


# ── Lifecycle ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_guide_confirms_call(
    client: AsyncClient, session_factory, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    call_id = (await _book(client, seeker, guide, future_utc())).json()["id"]

    response = await client.post(f"/calls/{call_id}/confirm", headers=auth_headers(seeker))
    assert response.status_code == 403

    response = await client.post(f"/calls/{call_id}/confirm", headers=auth_headers(guide))
    assert response.status_code == 200
    assert response.json()["status"] == "CONFIRMED"

    async with session_factory() as s:
        notification = await s.scalar(select(Notification).where(Notification.user_id == seeker.id))
        assert notification.type == NotificationType.CALL_CONFIRMED


@pytest.mark.asyncio
async def test_decline_frees_the_slot(
    client: AsyncClient, seeker: User, other_seeker: User, guide: User, guide_profile: RecoveryProfile
):
    start = future_utc()
    call_id = (await _book(client, seeker, guide, start)).json()["id"]

    response = await client.post(
        f"/calls/{call_id}/decline", headers=auth_headers(guide), json={"reason": "Travelling"}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "CANCELLED"
    assert data["cancelled_by"] == "guide"
    assert data["cancellation_reason"] == "Travelling"

    assert (await _book(client, other_seeker, guide, start)).status_code == 201


@pytest.mark.asyncio
async def test_cannot_decline_confirmed_call(
    client: AsyncClient, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    call_id = await _confirmed_call(client, seeker, guide, future_utc())
    response = await client.post(f"/calls/{call_id}/decline", headers=auth_headers(guide))
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_TRANSITION"


@pytest.mark.asyncio
async def test_cancel_well_ahead_is_refund_eligible(
    client: AsyncClient, seeker: User, other_seeker: User, guide: User, guide_profile: RecoveryProfile
):
    start = future_utc(days=3)
    call_id = await _confirmed_call(client, seeker, guide, start)

    response = await client.post(f"/calls/{call_id}/cancel", headers=auth_headers(seeker))
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "CANCELLED"
    assert data["cancelled_by"] == "seeker"
    assert data["refund_eligible"] is True

    assert (await _book(client, other_seeker, guide, start)).status_code == 201


@pytest.mark.asyncio
async def test_late_cancel_not_refund_eligible(
    client: AsyncClient, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    soon = (datetime.now(timezone.utc) + timedelta(hours=3)).replace(second=0, microsecond=0)
    soon = soon.replace(minute=soon.minute - soon.minute % 15)
    call_id = await _confirmed_call(client, seeker, guide, soon)

    response = await client.post(f"/calls/{call_id}/cancel", headers=auth_headers(guide))
    assert response.status_code == 200
    assert response.json()["cancelled_by"] == "guide"
    assert response.json()["refund_eligible"] is False


@pytest.mark.asyncio
async def test_requested_call_cannot_be_cancelled(
    client: AsyncClient, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    call_id = (await _book(client, seeker, guide, future_utc())).json()["id"]
    response = await client.post(f"/calls/{call_id}/cancel", headers=auth_headers(seeker))
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_TRANSITION"


@pytest.mark.asyncio
async def test_complete_is_terminal(
    client: AsyncClient, session_factory, seeker: User, guide: User, guide_profile: RecoveryProfile
):
    call_id = await _confirmed_call(client, seeker, guide, future_utc())

    response = await client.post(f"/calls/{call_id}/complete", headers=auth_headers(guide))
    assert response.status_code == 200
    assert response.json()["status"] == "COMPLETED"
    assert response.json()["completed_at"] is not None

    response = await client.post(f"/calls/{call_id}/cancel", headers=auth_headers(seeker))
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_TRANSITION"

    async with session_factory() as s:
        statuses = (await s.execute(
            select(CallAuditLog.to_status).where(CallAuditLog.call_id == uuid.UUID(call_id))
        )).scalars().all()
        assert set(statuses) == {"REQUESTED", "CONFIRMED", "COMPLETED"}
        assert await s.scalar(select(func.count(CallSlotReservation.id))) == 0


@pytest.mark.asyncio
async def test_outsider_cannot_touch_call(
    client: AsyncClient, seeker: User, other_seeker: User, guide: User, guide_profile: RecoveryProfile
):
    call_id = await _confirmed_call(client, seeker, guide, future_utc())
    response = await client.post(f"/calls/{call_id}/cancel", headers=auth_headers(other_seeker))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unknown_call_404(client: AsyncClient, seeker: User):
    response = await client.get(f"/calls/{uuid.uuid4()}", headers=auth_headers(seeker))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_booking_rejections_documented(client: AsyncClient):
    response = await client.get("/openapi.json")
    responses = response.json()["paths"]["/calls"]["post"]["responses"]
    for code in ("400", "409"):
        schema = responses[code]["content"]["application/json"]["schema"]
        assert schema["$ref"] == "#/components/schemas/ErrorResponse"
