from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from deptportal.app_logger import get_logger
from deptportal.models import Notification, Student

log = get_logger("notifications")


@dataclass
class NotifyResult:
    success: bool
    error: Optional[str] = None


class Notifier(Protocol):
    def notify(self, student: Student, title: str, body: str, kind: str = "general") -> NotifyResult: ...


class OutboxNotifier:
    """Writes notifications to the outbox table; delivery happens elsewhere."""

    def __init__(self, db: Session):
        self.db = db

    def notify(self, student: Student, title: str, body: str, kind: str = "general") -> NotifyResult:
        try:
            self.db.add(Notification(student_id=student.id, notification_type=kind, title=title, body=body))
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            return NotifyResult(success=False, error=str(exc))
        return NotifyResult(success=True)


def format_day(day: date) -> str:
    return f"{day.strftime('%A')}, {day.strftime('%B')} {day.day}, {day.year}"


def selection_message(student: Student, day: date) -> tuple[str, str]:
    title = "You have been selected to present"
    body = f"Hi {student.name}, you ({student.register_number}, {student.class_year}) are selected to present on {format_day(day)}."
    return title, body


def reschedule_message(student: Student, original: date, new: date, holiday_name: str) -> tuple[str, str]:
    title = f"Presentation Rescheduled - {holiday_name}"
    body = f"Your presentation scheduled for {format_day(original)} has been moved to {format_day(new)} due to {holiday_name}."
    return title, body


def dispatch(notifier: Notifier, student: Student, title: str, body: str, kind: str = "general") -> NotifyResult:
    """Best-effort send. Never raises; failures come back in the result."""
    try:
        result = notifier.notify(student, title, body, kind)
    except Exception as exc:  # collaborator failures must not reach the pipeline
        log.warning("Notification to %s failed: %s", student.register_number, exc)
        return NotifyResult(success=False, error=str(exc))
    if not result.success:
        log.warning("Notification to %s failed: %s", student.register_number, result.error)
    return result


def summarize(results: list[tuple[Student, NotifyResult]]) -> dict:
    return {
        "sent": sum(1 for _, r in results if r.success),
        "failed": sum(1 for _, r in results if not r.success),
        "results": [
            {"student": s.register_number, "success": r.success, "error": r.error} for s, r in results
        ],
    }
