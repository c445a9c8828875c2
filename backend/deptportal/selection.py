from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from deptportal.app_logger import get_logger
from deptportal.database import insert_ignore
from deptportal.models import Booking, Selection, Student, new_id
from deptportal.settings import Settings, settings as default_settings

log = get_logger("selection")

CREATED = "created"
EXISTING = "existing"
NO_ELIGIBLE = "no_eligible"
LOST_RACE = "lost_race"
GUARD_FAILED = "guard_failed"


@dataclass
class ClassOutcome:
    class_year: str
    status: str
    selection: Optional[Selection] = None
    student: Optional[Student] = None
    pool_size: int = 0


@dataclass
class SelectionResult:
    selection_date: date
    status: str
    outcomes: list[ClassOutcome] = field(default_factory=list)
    total_bookings: int = 0
    eligible_bookings: int = 0
    already_presented: int = 0

    @property
    def created(self) -> list[ClassOutcome]:
        return [o for o in self.outcomes if o.status == CREATED]

    def summary(self) -> dict:
        out = {
            "selection_date": self.selection_date.isoformat(),
            "total_bookings": self.total_bookings,
            "eligible_bookings": self.eligible_bookings,
            "already_presented_count": self.already_presented,
            "selected_count": len(self.created),
        }
        for o in self.outcomes:
            out[f"{o.class_year}_eligible"] = o.pool_size
        return out


def selections_for_date(db: Session, day: date) -> list[Selection]:
    return list(db.scalars(select(Selection).where(Selection.selection_date == day).order_by(Selection.class_year)).all())


def all_selected_student_ids(db: Session) -> set[str]:
    return set(db.scalars(select(Selection.student_id)).all())


def bookings_for_date(db: Session, day: date) -> list[tuple[Booking, Student]]:
    rows = db.execute(
        select(Booking, Student).join(Student, Student.id == Booking.student_id).where(Booking.booking_date == day).order_by(Booking.created_at, Booking.id)
    ).all()
    return [(b, s) for b, s in rows]


def pick(pool: list, rng) -> object:
    return pool[int(rng.random() * len(pool))]


def _slot_still_open(db: Session, day: date, class_year: str, cap: int) -> bool:
    current = db.scalars(select(Selection.class_year).where(Selection.selection_date == day)).all()
    return len(current) < cap and class_year not in current


def select_for_date(db: Session, day: date, cfg: Settings = default_settings, rng=None) -> SelectionResult:
    """Draw at most one presenter per tracked class for ``day``.

    Safe to call repeatedly and concurrently for the same date: filled slots
    are left alone, and a conflicting insert from a parallel run is treated
    as that run having won the slot.
    """
    rng = rng or random.Random()
    classes = list(cfg.tracked_classes)

    existing = selections_for_date(db, day)
    filled = {s.class_year: s for s in existing}
    if all(c in filled for c in classes):
        log.info("Selections for %s already complete", day)
        return SelectionResult(
            selection_date=day,
            status="already_complete",
            outcomes=[ClassOutcome(c, EXISTING, selection=filled[c]) for c in classes],
        )

    bookings = bookings_for_date(db, day)
    presented = all_selected_student_ids(db)
    eligible = [(b, s) for b, s in bookings if s.id not in presented]
    result = SelectionResult(
        selection_date=day,
        status="completed",
        total_bookings=len(bookings),
        eligible_bookings=len(eligible),
        already_presented=len(presented),
    )
    log.info("%s: %d booking(s), %d eligible, %d already presented", day, len(bookings), len(eligible), len(presented))

    buckets: dict[str, list[Student]] = {c: [] for c in classes}
    for _, student in eligible:
        if student.class_year in buckets:
            buckets[student.class_year].append(student)

    candidates: list[tuple[str, Student]] = []
    for class_year in classes:
        pool = buckets[class_year]
        if class_year in filled:
            result.outcomes.append(ClassOutcome(class_year, EXISTING, selection=filled[class_year], pool_size=len(pool)))
            continue
        if not pool:
            log.info("No eligible students in %s for %s", class_year, day)
            result.outcomes.append(ClassOutcome(class_year, NO_ELIGIBLE))
            continue
        candidates.append((class_year, pick(pool, rng)))

    pool_sizes = {c: len(p) for c, p in buckets.items()}
    for class_year, student in candidates:
        try:
            still_open = _slot_still_open(db, day, class_year, len(classes))
        except SQLAlchemyError:
            log.exception("Final check failed for %s on %s; skipping class", class_year, day)
            db.rollback()
            result.outcomes.append(ClassOutcome(class_year, GUARD_FAILED, student=student, pool_size=pool_sizes[class_year]))
            continue
        if not still_open:
            log.info("Skip insert: %s already has a selection for %s", class_year, day)
            result.outcomes.append(ClassOutcome(class_year, LOST_RACE, student=student, pool_size=pool_sizes[class_year]))
            continue

        selection_id = insert_ignore(
            db,
            Selection,
            {
                "id": new_id(),
                "student_id": student.id,
                "selection_date": day,
                "class_year": class_year,
                "selected_at": datetime.utcnow(),
            },
        )
        db.commit()
        if selection_id is None:
            log.warning("Unique constraint prevented duplicate selection for %s on %s", class_year, day)
            result.outcomes.append(ClassOutcome(class_year, LOST_RACE, student=student, pool_size=pool_sizes[class_year]))
            continue
        log.info("Selected %s (%s) for %s", student.register_number, class_year, day)
        result.outcomes.append(
            ClassOutcome(class_year, CREATED, selection=db.get(Selection, selection_id), student=student, pool_size=pool_sizes[class_year])
        )

    if not bookings:
        result.status = "no_bookings"
    elif not candidates:
        result.status = "no_eligible"
    return result
