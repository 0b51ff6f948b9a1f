"""
shared/models/models.py
All SQLAlchemy ORM models for the Recovery Guide Platform.
UUID primary keys throughout; list attributes are stored as JSON.
"""

import uuid
from datetime import date as CalendarDate, datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    SEEKER = "SEEKER"
    GUIDE = "GUIDE"
    BOTH = "BOTH"        # Seeks guidance for one procedure, guides for another
    ADMIN = "ADMIN"


class SubscriptionStatus(str, PyEnum):
    NONE = "NONE"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"


class Gender(str, PyEnum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"


class CallStatus(str, PyEnum):
    REQUESTED = "REQUESTED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class NotificationType(str, PyEnum):
    CALL_REQUESTED = "CALL_REQUESTED"
    CALL_CONFIRMED = "CALL_CONFIRMED"
    CALL_DECLINED = "CALL_DECLINED"
    CALL_CANCELLED = "CALL_CANCELLED"
    CALL_COMPLETED = "CALL_COMPLETED"
    CALL_REMINDER = "CALL_REMINDER"


ACTIVE_CALL_STATUSES = (CallStatus.REQUESTED, CallStatus.CONFIRMED)


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account with credential-based login."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.SEEKER
    )
    subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.NONE
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    profile: Mapped[Optional["RecoveryProfile"]] = relationship(
        back_populates="user", uselist=False
    )
    notifications: Mapped[List["Notification"]] = relationship(back_populates="user")

    __table_args__ = (Index("ix_users_role", "role"),)

    @property
    def is_guide(self) -> bool:
        return self.role in (UserRole.GUIDE, UserRole.BOTH, UserRole.ADMIN)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class RecoveryProfile(TimestampMixin, Base):
    """
    Recovery attributes used for matching, plus a guide's call settings.
    One per user. Seekers may track several procedures; the active one
    drives matching.
    """
    __tablename__ = "recovery_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    procedure_type: Mapped[str] = mapped_column(String(255), nullable=False)
    procedure_types: Mapped[List[str]] = mapped_column(JSON, default=list)
    active_procedure_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    procedure_details: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    procedure_profiles: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    # e.g. {"ACL Reconstruction": {"recovery_goals": [...], "procedure_details": "Allograft"}}

    age_range: Mapped[str] = mapped_column(String(10), nullable=False)
    gender: Mapped[Optional[Gender]] = mapped_column(Enum(Gender), nullable=True)
    activity_level: Mapped[str] = mapped_column(String(30), nullable=False)
    recovery_goals: Mapped[List[str]] = mapped_column(JSON, default=list)
    complicating_factors: Mapped[List[str]] = mapped_column(JSON, default=list)
    lifestyle_context: Mapped[List[str]] = mapped_column(JSON, default=list)
    time_since_surgery: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Guide call settings
    is_available_for_calls: Mapped[bool] = mapped_column(Boolean, default=False)
    hourly_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    user: Mapped["User"] = relationship(back_populates="profile")


class AvailabilityWindow(Base):
    """A guide's recurring weekly open slot. Times are local to `timezone`."""
    __tablename__ = "availability_windows"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    guide_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    day_of_week: Mapped[int] = mapped_column(SmallInteger, nullable=False)  # 0 = Sunday
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)      # "09:00"
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)        # "17:00"
    timezone: Mapped[str] = mapped_column(
        String(64), nullable=False, default="America/New_York"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_window_day_of_week"),
        Index("ix_windows_guide_day", "guide_id", "day_of_week"),
    )


class BlockedDate(Base):
    """A one-off calendar date the guide has marked unavailable."""
    __tablename__ = "blocked_dates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    guide_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[CalendarDate] = mapped_column(Date, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("guide_id", "date", name="uq_blocked_date_guide_date"),
    )


class Call(TimestampMixin, Base):
    """
    A paid video call between a seeker and a guide.
    Status transitions: REQUESTED → CONFIRMED → COMPLETED,
    REQUESTED → CANCELLED (declined), CONFIRMED → CANCELLED.
    """
    __tablename__ = "calls"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seeker_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    guide_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)

    # Schedule
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=30)
    questions_in_advance: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Status
    status: Mapped[CallStatus] = mapped_column(
        Enum(CallStatus), nullable=False, default=CallStatus.REQUESTED
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    # Pricing
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    guide_payout: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Timestamps
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    day_reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    hour_reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    seeker: Mapped["User"] = relationship(foreign_keys=[seeker_id])
    guide: Mapped["User"] = relationship(foreign_keys=[guide_id])
    audit_logs: Mapped[List["CallAuditLog"]] = relationship(back_populates="call")

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_call_duration_positive"),
        Index("ix_calls_seeker_id", "seeker_id"),
        Index("ix_calls_guide_status", "guide_id", "status"),
        Index("ix_calls_scheduled_at", "scheduled_at"),
    )


class CallSlotReservation(Base):
    """
    One row per booking quantum (15 minutes) held by an active call.
    The unique (guide_id, slot_start) constraint makes the conflict check
    atomic: a concurrent second writer fails on insert.
    """
    __tablename__ = "call_slot_reservations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    guide_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    call_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("calls.id", ondelete="CASCADE"), nullable=False
    )
    slot_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("guide_id", "slot_start", name="uq_call_slot_guide_start"),
        Index("ix_call_slot_call_id", "call_id"),
    )


class CallAuditLog(Base):
    """Immutable log of all call status transitions."""
    __tablename__ = "call_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    call_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("calls.id"), nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    call: Mapped["Call"] = relationship(back_populates="audit_logs")


class Notification(Base):
    """In-app notification log."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    call_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("calls.id"), nullable=True
    )
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped["User"] = relationship(back_populates="notifications")

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)
