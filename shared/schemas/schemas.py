"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date as CalendarDate, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from shared.models.models import Gender, UserRole
from shared.utils.matching import AGE_RANGES
from shared.utils.scheduling import as_utc

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Auth ──────────────────────────────────────────────────────

class RegisterRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    name: str = Field(..., min_length=2, max_length=255)
    role: UserRole = UserRole.SEEKER

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: UserRole) -> UserRole:
        if v == UserRole.ADMIN:
            raise ValueError("Cannot self-register as admin")
        return v


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str


class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class UserResponse(BaseSchema):
    id: uuid.UUID
    email: EmailStr
    name: str
    role: str
    subscription_status: str
    created_at: datetime


class AuthResponse(TokenResponse):
    user: UserResponse


# ── Recovery profile ──────────────────────────────────────────

class ProcedureProfile(BaseSchema):
    procedure_details: Optional[str] = Field(None, max_length=255)
    # None means "use the flat profile field"; [] means "none for this procedure"
    recovery_goals: Optional[List[str]] = None
    complicating_factors: Optional[List[str]] = None


class ProfileUpdateRequest(BaseSchema):
    bio: Optional[str] = Field(None, max_length=2000)
    procedure_type: str = Field(..., min_length=1, max_length=255)
    procedure_types: List[str] = []
    procedure_details: Optional[str] = Field(None, max_length=255)
    procedure_profiles: Optional[Dict[str, ProcedureProfile]] = None
    age_range: str
    gender: Optional[Gender] = None
    activity_level: str = Field(..., min_length=1, max_length=30)
    recovery_goals: List[str] = []
    complicating_factors: List[str] = []
    lifestyle_context: List[str] = []
    time_since_surgery: Optional[str] = Field(None, max_length=50)
    is_available_for_calls: Optional[bool] = None
    hourly_rate: Optional[Decimal] = Field(None, ge=0)

    @field_validator("age_range")
    @classmethod
    def validate_age_range(cls, v: str) -> str:
        if v.lower() not in AGE_RANGES:
            raise ValueError(f"age_range must be one of {list(AGE_RANGES)}")
        return v

    @model_validator(mode="after")
    def include_primary_procedure(self) -> "ProfileUpdateRequest":
        if self.procedure_type not in self.procedure_types:
            self.procedure_types = [self.procedure_type, *self.procedure_types]
        return self


class ActiveProcedureRequest(BaseSchema):
    procedure_type: str = Field(..., min_length=1, max_length=255)


class ProfileResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    bio: Optional[str]
    procedure_type: str
    procedure_types: List[str]
    active_procedure_type: Optional[str]
    procedure_details: Optional[str]
    procedure_profiles: Optional[Dict[str, Any]]
    age_range: str
    gender: Optional[str]
    activity_level: str
    recovery_goals: List[str]
    complicating_factors: List[str]
    lifestyle_context: List[str]
    time_since_surgery: Optional[str]
    is_available_for_calls: bool
    hourly_rate: Optional[Decimal]


# ── Matching / discovery ──────────────────────────────────────

class MatchBreakdownItem(BaseSchema):
    attribute: str
    matched: bool
    weight: int


class MatchResponse(BaseSchema):
    score: int = Field(..., ge=0, le=100)
    breakdown: List[MatchBreakdownItem]


class GuideResponse(BaseSchema):
    user_id: uuid.UUID
    name: str
    bio: Optional[str]
    procedure_type: str
    procedure_types: List[str]
    procedure_details: Optional[str]
    age_range: str
    gender: Optional[str]
    activity_level: str
    recovery_goals: List[str]
    complicating_factors: List[str]
    lifestyle_context: List[str]
    time_since_surgery: Optional[str]
    is_available_for_calls: bool
    hourly_rate: Optional[Decimal]
    match: Optional[MatchResponse] = None


class GuideListResponse(BaseSchema):
    items: List[GuideResponse]
    total: int
    page: int
    page_size: int
    pages: int


# ── Availability ──────────────────────────────────────────────

class AvailabilityWindowCreate(BaseSchema):
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday")
    start_time: str = Field(..., pattern=HHMM_PATTERN)
    end_time: str = Field(..., pattern=HHMM_PATTERN)
    timezone: str = "America/New_York"

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @model_validator(mode="after")
    def validate_order(self) -> "AvailabilityWindowCreate":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self


class AvailabilityWindowResponse(BaseSchema):
    id: uuid.UUID
    day_of_week: int
    start_time: str
    end_time: str
    timezone: str


class BlockedDateCreate(BaseSchema):
    date: CalendarDate
    reason: Optional[str] = Field(None, max_length=255)


class BlockedDateResponse(BaseSchema):
    id: uuid.UUID
    date: CalendarDate
    reason: Optional[str]


class BookedInterval(BaseSchema):
    start: datetime
    end: datetime


class GuideAvailabilityResponse(BaseSchema):
    windows: List[AvailabilityWindowResponse]
    booked: List[BookedInterval]
    blocked_dates: List[CalendarDate]


# ── Calls ─────────────────────────────────────────────────────

class CallCreateRequest(BaseSchema):
    guide_id: uuid.UUID
    scheduled_at: datetime
    duration_minutes: int = 30
    questions_in_advance: Optional[str] = Field(None, max_length=2000)


class PaidCallCreateRequest(CallCreateRequest):
    """Sent by the payment service once checkout succeeds."""
    seeker_id: uuid.UUID
    payment_reference: str = Field(..., min_length=1, max_length=255)


class CallCancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class CallResponse(BaseSchema):
    id: uuid.UUID
    seeker_id: uuid.UUID
    guide_id: uuid.UUID
    scheduled_at: datetime
    duration_minutes: int
    questions_in_advance: Optional[str]
    status: str
    price: Decimal
    platform_fee: Decimal
    guide_payout: Decimal
    payment_reference: Optional[str]
    cancellation_reason: Optional[str]
    cancelled_by: Optional[str]
    confirmed_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: datetime
    refund_eligible: Optional[bool] = None

    @field_validator("scheduled_at", "confirmed_at", "completed_at", "cancelled_at", "created_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v else v


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    title: str
    body: str
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime
    call_id: Optional[uuid.UUID]


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
