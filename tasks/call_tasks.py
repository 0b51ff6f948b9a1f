"""
tasks/call_tasks.py
Celery tasks for call reminders.

Reminders are idempotent: each call carries a sent-at flag per reminder,
so overlapping beat runs never notify twice.
"""

import logging
from datetime import datetime, timedelta, timezone

from celery import Task
from sqlalchemy import select
from sqlalchemy.orm import Session

from config.database import get_sync_sessionmaker
from services.notification.router import build_notification, format_call_time
from shared.models.models import Call, CallStatus, NotificationType, User
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

# (flag column, earliest lead, latest lead, wording)
REMINDER_WINDOWS = (
    ("day_reminder_sent_at", timedelta(hours=23), timedelta(hours=25), "24 hours"),
    ("hour_reminder_sent_at", timedelta(minutes=55), timedelta(minutes=65), "1 hour"),
)


class DatabaseTask(Task):
    """Base class that provides a synchronous DB session for tasks."""
    abstract = True

    def get_session(self) -> Session:
        return get_sync_sessionmaker()()


def queue_call_reminders(db: Session, now: datetime) -> int:
    """
    Add in-app reminders for confirmed calls entering a reminder window.
    Both parties are notified. Returns the number of calls reminded.
    """
    reminded = 0
    for flag, earliest, latest, lead_time in REMINDER_WINDOWS:
        flag_column = getattr(Call, flag)
        calls = db.execute(
            select(Call).where(
                Call.status == CallStatus.CONFIRMED,
                Call.scheduled_at >= now + earliest,
                Call.scheduled_at < now + latest,
                flag_column.is_(None),
            )
        ).scalars().all()

        for call in calls:
            seeker = db.get(User, call.seeker_id)
            guide = db.get(User, call.guide_id)
            when = format_call_time(call.scheduled_at)

            db.add(build_notification(
                call.seeker_id, NotificationType.CALL_REMINDER, call.id,
                name=guide.name if guide else "your guide", lead_time=lead_time, when=when,
            ))
            db.add(build_notification(
                call.guide_id, NotificationType.CALL_REMINDER, call.id,
                name=seeker.name if seeker else "your seeker", lead_time=lead_time, when=when,
            ))
            setattr(call, flag, now)
            reminded += 1

    db.commit()
    return reminded


# ── Periodic / Scheduled Tasks ────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask, max_retries=3)
def send_call_reminders(self):
    """Beat task: runs every 15 minutes."""
    db = self.get_session()
    try:
        count = queue_call_reminders(db, datetime.now(timezone.utc))
        logger.info(f"Sent reminders for {count} calls")
        return count
    except Exception as e:
        db.rollback()
        logger.exception(f"send_call_reminders failed: {e}")
        raise self.retry(exc=e, countdown=60)
    finally:
        db.close()
