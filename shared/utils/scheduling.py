"""
shared/utils/scheduling.py
Availability validation, call pricing and the call state machine.

Everything here is pure: callers load windows, blocked dates and existing
calls, then hand them in. Instants are UTC; window times are wall-clock
times in the window's own IANA timezone.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from config.settings import settings
from shared.models.models import CallStatus
from shared.utils.exceptions import (
    BlockedDateError,
    BookingConflictError,
    IntervalQuantizationError,
    InvalidDurationError,
    InvalidTransitionError,
    OutsideAvailabilityError,
    OverlappingWindowError,
    PastDateError,
)

CENT = Decimal("0.01")


class WindowSpec(NamedTuple):
    """The parts of an AvailabilityWindow the validator needs."""
    day_of_week: int        # 0 = Sunday
    start_time: str         # "HH:MM"
    end_time: str
    timezone: str = "America/New_York"


class LocalMoment(NamedTuple):
    date: date
    day_of_week: int        # 0 = Sunday
    time_of_day: str        # "HH:MM"


@dataclass(frozen=True)
class CallPricing:
    price: Decimal
    platform_fee: Decimal
    guide_payout: Decimal


# ── Time helpers ──────────────────────────────────────────────

def as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC (SQLite drops tzinfo)."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def to_local(instant: datetime, tz_name: str) -> LocalMoment:
    """Convert an instant to the calendar date, weekday and HH:MM in `tz_name`."""
    local = as_utc(instant).astimezone(ZoneInfo(tz_name))
    return LocalMoment(
        date=local.date(),
        day_of_week=(local.weekday() + 1) % 7,
        time_of_day=local.strftime("%H:%M"),
    )


def parse_hhmm(value: str) -> time:
    """Parse a 24-hour "HH:MM" string. Raises ValueError on anything else."""
    hours, sep, minutes = value.partition(":")
    if not sep or len(hours) != 2 or len(minutes) != 2:
        raise ValueError(f"Expected HH:MM, got {value!r}")
    return time(int(hours), int(minutes))


def intervals_overlap(start_a, end_a, start_b, end_b) -> bool:
    """Half-open overlap test: [a) and [b) overlap iff a starts before b ends and vice versa."""
    return start_a < end_b and start_b < end_a


def slot_starts(start: datetime, duration_minutes: int) -> List[datetime]:
    """Every booking quantum covered by [start, start + duration)."""
    step = timedelta(minutes=settings.BOOKING_INTERVAL_MINUTES)
    start = as_utc(start)
    end = start + timedelta(minutes=duration_minutes)
    slots = []
    current = start
    while current < end:
        slots.append(current)
        current += step
    return slots


# ── Booking validation ────────────────────────────────────────

def calculate_call_price(
    hourly_rate,
    duration_minutes: int,
    fee_percent: Optional[float] = None,
) -> CallPricing:
    """A 60-minute call costs the hourly rate, a 30-minute call half of it."""
    rate = Decimal(str(hourly_rate))
    pct = Decimal(str(settings.PLATFORM_FEE_PERCENT if fee_percent is None else fee_percent))

    price = rate if duration_minutes == 60 else rate / 2
    price = price.quantize(CENT, rounding=ROUND_HALF_UP)
    fee = (price * pct / 100).quantize(CENT, rounding=ROUND_HALF_UP)
    return CallPricing(price=price, platform_fee=fee, guide_payout=price - fee)


def _fits_window(start: datetime, end: datetime, window: WindowSpec) -> bool:
    local_start = to_local(start, window.timezone)
    if local_start.day_of_week != window.day_of_week:
        return False
    # The local end must fall on the same local date; "00:15" the next day
    # would otherwise compare as early in the window.
    local_end = to_local(end, window.timezone)
    if local_end.date != local_start.date:
        return False
    return window.start_time <= local_start.time_of_day and local_end.time_of_day <= window.end_time


def validate_booking(
    proposed_start: datetime,
    duration_minutes: int,
    windows: Sequence[WindowSpec],
    blocked_dates: Iterable[date],
    existing_calls: Iterable[Tuple[datetime, int]],
    hourly_rate=None,
    now: Optional[datetime] = None,
    fee_percent: Optional[float] = None,
) -> CallPricing:
    """
    Check a proposed call against the guide's calendar and price it.

    Checks run in order and the first failure raises:
    duration, past, 15-minute quantization, window fit (only when the guide
    has windows), blocked date, conflict with an active call.
    `existing_calls` holds (scheduled_at, duration_minutes) of active calls.
    """
    if duration_minutes not in settings.ALLOWED_CALL_DURATIONS:
        raise InvalidDurationError()

    start = as_utc(proposed_start)
    now = as_utc(now) if now else datetime.now(timezone.utc)
    if start <= now:
        raise PastDateError()

    if (
        start.minute % settings.BOOKING_INTERVAL_MINUTES != 0
        or start.second != 0
        or start.microsecond != 0
    ):
        raise IntervalQuantizationError()

    end = start + timedelta(minutes=duration_minutes)

    # No windows configured means no restriction
    if windows and not any(_fits_window(start, end, w) for w in windows):
        raise OutsideAvailabilityError()

    tz_name = windows[0].timezone if windows else settings.DEFAULT_AVAILABILITY_TIMEZONE
    if to_local(start, tz_name).date in set(blocked_dates):
        raise BlockedDateError()

    for call_start, call_duration in existing_calls:
        call_start = as_utc(call_start)
        call_end = call_start + timedelta(minutes=call_duration)
        if intervals_overlap(start, end, call_start, call_end):
            raise BookingConflictError()

    rate = settings.DEFAULT_HOURLY_RATE if hourly_rate is None else hourly_rate
    return calculate_call_price(rate, duration_minutes, fee_percent)


def validate_new_window(existing: Iterable[WindowSpec], candidate: WindowSpec) -> None:
    """Reject a window overlapping another window on the same day."""
    if candidate.start_time >= candidate.end_time:
        raise ValueError("start_time must be before end_time")
    for window in existing:
        if window.day_of_week != candidate.day_of_week:
            continue
        if intervals_overlap(
            candidate.start_time, candidate.end_time, window.start_time, window.end_time
        ):
            raise OverlappingWindowError()


# ── Call lifecycle ────────────────────────────────────────────

# action → (allowed current status, resulting status)
CALL_TRANSITIONS = {
    "confirm": (CallStatus.REQUESTED, CallStatus.CONFIRMED),
    "decline": (CallStatus.REQUESTED, CallStatus.CANCELLED),
    "cancel": (CallStatus.CONFIRMED, CallStatus.CANCELLED),
    "complete": (CallStatus.CONFIRMED, CallStatus.COMPLETED),
}


def check_transition(current: CallStatus, action: str) -> CallStatus:
    """Return the status `action` leads to, or raise InvalidTransitionError."""
    allowed_from, target = CALL_TRANSITIONS[action]
    if current != allowed_from:
        raise InvalidTransitionError(
            f"Cannot {action} a call that is {CallStatus(current).value.lower()}"
        )
    return target


def is_refund_eligible(scheduled_at: datetime, now: Optional[datetime] = None) -> bool:
    now = as_utc(now) if now else datetime.now(timezone.utc)
    cutoff = timedelta(hours=settings.CALL_REFUND_CUTOFF_HOURS)
    return as_utc(scheduled_at) - now >= cutoff
