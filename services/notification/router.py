"""
services/notification/router.py
In-app notifications: call lifecycle templates and the REST endpoints
users read them through.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user
from shared.models.models import Notification, NotificationType, User
from shared.schemas.schemas import MessageResponse, NotificationResponse

router = APIRouter(prefix="/notifications", tags=["Notifications"])


# ── Notification Templates ────────────────────────────────────

TEMPLATES = {
    NotificationType.CALL_REQUESTED: {
        "title": "New call request",
        "body": "{name} requested a {duration}-minute call on {when}. Please confirm or decline.",
    },
    NotificationType.CALL_CONFIRMED: {
        "title": "Call confirmed",
        "body": "Your {duration}-minute call with {name} on {when} is confirmed.",
    },
    NotificationType.CALL_DECLINED: {
        "title": "Call declined",
        "body": "{name} declined your call request for {when}.",
    },
    NotificationType.CALL_CANCELLED: {
        "title": "Call cancelled",
        "body": "Your call with {name} on {when} was cancelled.",
    },
    NotificationType.CALL_COMPLETED: {
        "title": "Call completed",
        "body": "Your call with {name} on {when} is marked as completed.",
    },
    NotificationType.CALL_REMINDER: {
        "title": "Upcoming call",
        "body": "Reminder: your call with {name} starts in {lead_time} ({when}).",
    },
}


def format_call_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%b %d, %Y at %H:%M UTC")


def build_notification(
    user_id,
    notification_type: NotificationType,
    call_id=None,
    **template_vars,
) -> Notification:
    """
    Render a template into an unsaved Notification.
    Callers add it to their own session (async routes and sync tasks alike).
    """
    template = TEMPLATES[notification_type]
    return Notification(
        user_id=user_id,
        call_id=call_id,
        type=notification_type,
        title=template["title"].format(**template_vars),
        body=template["body"].format(**template_vars),
    )


# ── REST Endpoints ────────────────────────────────────────────

@router.get("", response_model=list[NotificationResponse])
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get authenticated user's in-app notifications."""
    query = (
        select(Notification)
        .where(Notification.user_id == current_user.id)
        .order_by(Notification.created_at.desc())
    )

    if unread_only:
        query = query.where(Notification.is_read == False)

    query = query.offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return [NotificationResponse.model_validate(n) for n in result.scalars()]


@router.get("/unread-count")
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count: Optional[int] = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == current_user.id,
            Notification.is_read == False,
        )
    )
    return {"unread_count": count or 0}


@router.post("/{notification_id}/read", response_model=MessageResponse)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.user_id == current_user.id)
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return MessageResponse(message="Marked as read")


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.user_id == current_user.id, Notification.is_read == False)
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return MessageResponse(message="All notifications marked as read")
