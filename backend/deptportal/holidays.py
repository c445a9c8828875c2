from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from deptportal.app_logger import get_logger
from deptportal.errors import HolidayLookaheadExceeded
from deptportal.models import Holiday, RescheduleRecord, Selection, Student, serialize
from deptportal.notifications import Notifier, NotifyResult, dispatch, reschedule_message
from deptportal.scheduling import is_rest_day, parse_iso_date
from deptportal.settings import Settings, settings as default_settings

log = get_logger("holidays")

TRUE_VALUES = {"1", "true", "yes", "y"}


@dataclass
class HolidayCheck:
    is_holiday: bool
    holiday: Optional[Holiday] = None


@dataclass
class RescheduleCheck:
    needs_reschedule: bool
    original_date: date
    new_date: Optional[date] = None
    holiday_name: Optional[str] = None
    migrated: Optional[RescheduleRecord] = None
    conflicts: list[Selection] = field(default_factory=list)
    error: Optional[str] = None
    notifications: list[tuple[Student, NotifyResult]] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "needs_reschedule": self.needs_reschedule,
            "original_date": self.original_date.isoformat(),
            "new_date": self.new_date.isoformat() if self.new_date else None,
            "holiday_name": self.holiday_name,
            "migrated": serialize(self.migrated) if self.migrated else None,
            "conflicts": [{"student_id": s.student_id, "class_year": s.class_year} for s in self.conflicts],
            "error": self.error,
        }


def is_holiday(db: Session, day: date) -> HolidayCheck:
    holiday = db.scalar(
        select(Holiday).where(Holiday.holiday_date == day, Holiday.affects_presentations.is_(True))
    )
    return HolidayCheck(is_holiday=holiday is not None, holiday=holiday)


def is_working_day(db: Session, day: date, rest_weekday: int = 6) -> bool:
    if is_rest_day(day, rest_weekday):
        return False
    return not is_holiday(db, day).is_holiday


def next_working_day(db: Session, day: date, rest_weekday: int = 6, max_days: int = 60) -> date:
    current = day
    for _ in range(max_days):
        current += timedelta(days=1)
        if is_rest_day(current, rest_weekday):
            continue
        if is_holiday(db, current).is_holiday:
            log.info("Skipping holiday %s", current)
            continue
        return current
    raise HolidayLookaheadExceeded(day, max_days)


def check_and_reschedule(
    db: Session,
    day: date,
    cfg: Settings = default_settings,
    notifier: Optional[Notifier] = None,
) -> RescheduleCheck:
    """Move the session off a declared holiday.

    Selections already made for ``day`` are migrated to the next working day
    and one RescheduleRecord is written for the rows that moved. A selection
    whose class already has a presenter on ``new_date`` stays where it is and
    is reported in ``conflicts``. A storage error during the migration is
    rolled back and reported in ``error``; the caller still gets ``new_date``.
    Callers must use ``new_date`` for everything that follows in the same run.
    """
    check = is_holiday(db, day)
    if not check.is_holiday:
        return RescheduleCheck(needs_reschedule=False, original_date=day)

    holiday_name = check.holiday.holiday_name
    new_date = next_working_day(db, day, cfg.rest_weekday, cfg.holiday_lookahead_days)
    log.info("Holiday %s on %s, session moves to %s", holiday_name, day, new_date)

    result = RescheduleCheck(needs_reschedule=True, original_date=day, new_date=new_date, holiday_name=holiday_name)
    existing = db.scalars(select(Selection).where(Selection.selection_date == day)).all()
    if not existing:
        return result

    taken = set(db.scalars(select(Selection.class_year).where(Selection.selection_date == new_date)).all())
    moving = [s for s in existing if s.class_year not in taken]
    result.conflicts = [s for s in existing if s.class_year in taken]
    for sel in result.conflicts:
        log.warning("%s already has a presenter on %s; selection %s stays on %s", sel.class_year, new_date, sel.id, day)
    if not moving:
        return result

    try:
        for sel in moving:
            sel.selection_date = new_date
        record = RescheduleRecord(
            original_date=day,
            new_date=new_date,
            reason=f"Holiday: {holiday_name}",
            affected_count=len(moving),
            reschedule_type="automatic",
            rescheduled_by="system",
        )
        db.add(record)
        db.commit()
        db.refresh(record)
    except SQLAlchemyError as exc:
        db.rollback()
        log.exception("Migrating selections from %s to %s failed", day, new_date)
        result.error = str(exc)
        return result
    log.info("Migrated %d selection(s) from %s to %s", len(moving), day, new_date)

    result.migrated = record
    if notifier is not None:
        for sel in moving:
            student = db.get(Student, sel.student_id)
            if student is None:
                continue
            title, body = reschedule_message(student, day, new_date, holiday_name)
            result.notifications.append((student, dispatch(notifier, student, title, body, "presentation_reschedule")))
    return result


def reschedule_history(db: Session, limit: int = 100) -> list[dict]:
    rows = db.scalars(select(RescheduleRecord).order_by(RescheduleRecord.created_at.desc()).limit(limit)).all()
    return [serialize(r) for r in rows]


def import_holidays_csv(db: Session, data: str) -> dict:
    """Upsert holidays keyed on ``holiday_date`` from CSV text.

    Columns: holiday_date, holiday_name, holiday_type, affects_presentations, description.
    Rows without a date or name are skipped; malformed dates are reported by line.
    """
    created = 0
    updated = 0
    skipped = 0
    errors = []
    for i, row in enumerate(csv.DictReader(io.StringIO(data)), start=2):
        raw_date = str(row.get("holiday_date") or "").strip()
        name = str(row.get("holiday_name") or "").strip()
        if not raw_date or not name:
            skipped += 1
            continue
        try:
            day = parse_iso_date(raw_date)
        except ValueError as exc:
            errors.append({"line": i, "error": str(exc)})
            continue
        affects = str(row.get("affects_presentations") or "true").strip().lower() in TRUE_VALUES
        holiday = db.scalar(select(Holiday).where(Holiday.holiday_date == day))
        if holiday is None:
            db.add(
                Holiday(
                    holiday_date=day,
                    holiday_name=name,
                    holiday_type=str(row.get("holiday_type") or "institutional").strip(),
                    description=(row.get("description") or None),
                    affects_presentations=affects,
                )
            )
            created += 1
        else:
            holiday.holiday_name = name
            holiday.holiday_type = str(row.get("holiday_type") or holiday.holiday_type).strip()
            holiday.affects_presentations = affects
            if row.get("description"):
                holiday.description = row["description"]
            updated += 1
    db.commit()
    log.info("Holiday import: %d created, %d updated, %d skipped, %d errors", created, updated, skipped, len(errors))
    return {"created": created, "updated": updated, "skipped": skipped, "errors": errors}
