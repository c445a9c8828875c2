from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from deptportal.app_logger import get_logger
from deptportal.fines import FineResult, assess_for_date
from deptportal.holidays import RescheduleCheck, check_and_reschedule
from deptportal.models import Student
from deptportal.notifications import Notifier, NotifyResult, OutboxNotifier, dispatch, selection_message, summarize
from deptportal.scheduling import is_rest_day, is_selection_time, next_presentation_date, now_local
from deptportal.selection import SelectionResult, select_for_date
from deptportal.settings import Settings, settings as default_settings

log = get_logger("pipeline")

MESSAGES = {
    "completed": "{n} student(s) selected",
    "already_complete": "Selections already complete - every class already has a presenter",
    "no_bookings": "No bookings found for selection",
    "no_eligible": "No eligible students available for selection",
    "rescheduled": "Automatically rescheduled due to holiday",
    "not_yet_time": "Selection time has not been reached",
    "rest_day": "No session scheduled on {weekday} - skipped",
}


@dataclass
class PipelineReport:
    status: str
    selection_date: date
    original_date: Optional[date] = None
    reschedule: Optional[RescheduleCheck] = None
    selection: Optional[SelectionResult] = None
    fines: Optional[dict] = None
    notifications: list[tuple[Student, NotifyResult]] = field(default_factory=list)
    success: bool = True

    @property
    def message(self) -> str:
        n = len(self.selection.created) if self.selection else 0
        return MESSAGES[self.status].format(n=n, weekday=self.selection_date.strftime("%A"))

    def as_dict(self) -> dict:
        selections = []
        if self.selection:
            for o in self.selection.created:
                selections.append(
                    {
                        "id": o.selection.id if o.selection else None,
                        "student": {
                            "id": o.student.id,
                            "register_number": o.student.register_number,
                            "name": o.student.name,
                            "email": o.student.email,
                            "class_year": o.student.class_year,
                        },
                        "date": self.selection_date.isoformat(),
                        "selected_at": o.selection.selected_at.isoformat() if o.selection else None,
                    }
                )
        summary = self.selection.summary() if self.selection else {"selection_date": self.selection_date.isoformat()}
        if self.selection:
            summary["classes"] = {o.class_year: o.status for o in self.selection.outcomes}
        return {
            "success": self.success,
            "status": self.status,
            "message": self.message,
            "date": self.selection_date.isoformat(),
            "original_date": self.original_date.isoformat() if self.original_date else None,
            "holiday_name": self.reschedule.holiday_name if self.reschedule else None,
            "reschedule": self.reschedule.as_dict() if self.reschedule and self.reschedule.needs_reschedule else None,
            "selections": selections,
            "fines": self.fines,
            "notifications": summarize(self.notifications),
            "summary": summary,
            "timestamp": datetime.utcnow().isoformat(),
        }


def _assess_fines(db: Session, day: date, cfg: Settings) -> dict:
    try:
        return assess_for_date(db, day, cfg).as_dict()
    except SQLAlchemyError as exc:
        db.rollback()
        log.exception("Fine assessment for %s failed", day)
        return FineResult(reference_date=day, success=False, message="Error creating fines", errors=[str(exc)]).as_dict()


def run_pipeline(
    db: Session,
    cfg: Settings = default_settings,
    today: Optional[date] = None,
    target_date: Optional[date] = None,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
    rng=None,
) -> PipelineReport:
    """One scheduled or manual run of the daily selection.

    ``target_date`` skips the date calculation (manual runs for a given day).
    Storage errors from the selection step propagate; fine assessment and
    notifications never undo a committed selection.
    """
    notifier = notifier or OutboxNotifier(db)
    if target_date is None:
        now = now or now_local(cfg)
        today = today or now.date()
        day = next_presentation_date(today, cfg.rest_weekday)
        if cfg.enforce_selection_time and not is_selection_time(now, cfg):
            log.info("Selection for %s not due until %s", day, cfg.selection_time)
            return PipelineReport(status="not_yet_time", selection_date=day)
    else:
        day = target_date
    log.info("Processing selection for %s (%s)", day, day.strftime("%A"))

    reschedule = check_and_reschedule(db, day, cfg, notifier)
    original = None
    if reschedule.needs_reschedule:
        original, day = day, reschedule.new_date
        if reschedule.migrated is not None:
            return PipelineReport(
                status="rescheduled",
                selection_date=day,
                original_date=original,
                reschedule=reschedule,
                notifications=reschedule.notifications,
            )

    if is_rest_day(day, cfg.rest_weekday):
        log.info("%s is the weekly rest day, skipping selection", day)
        return PipelineReport(
            status="rest_day",
            selection_date=day,
            original_date=original,
            reschedule=reschedule,
            fines=_assess_fines(db, day, cfg),
            notifications=reschedule.notifications,
        )

    selection = select_for_date(db, day, cfg, rng=rng)
    fines = _assess_fines(db, day, cfg)

    sent: list[tuple[Student, NotifyResult]] = []
    for outcome in selection.created:
        title, body = selection_message(outcome.student, day)
        sent.append((outcome.student, dispatch(notifier, outcome.student, title, body, "presentation_selection")))

    log.info("Selection run for %s finished: %s", day, selection.status)
    return PipelineReport(
        status=selection.status,
        selection_date=day,
        original_date=original,
        reschedule=reschedule,
        selection=selection,
        fines=fines,
        notifications=sent,
    )
