from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from deptportal.app_logger import get_logger
from deptportal.database import insert_ignore
from deptportal.errors import DuplicateFine, FineNotFound, StudentNotFound
from deptportal.holidays import is_holiday
from deptportal.models import Booking, Fine, Student, new_id, serialize
from deptportal.scheduling import is_rest_day
from deptportal.selection import all_selected_student_ids
from deptportal.settings import Settings, settings as default_settings

log = get_logger("fines")

PENDING = "pending"
FINE_STATUSES = ("pending", "paid", "waived")


@dataclass
class FineResult:
    reference_date: date
    success: bool = True
    message: str = ""
    created: int = 0
    skipped: int = 0
    exempted: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "reference_date": self.reference_date.isoformat(),
            "fines_created": self.created,
            "skipped": self.skipped,
            "exempted": self.exempted,
            "errors": list(self.errors),
        }


@dataclass
class FineCandidates:
    to_fine: list[Student]
    exempted: list[Student]
    already_fined: list[Student]
    not_working_reason: Optional[str] = None


def adjust_fine_total(db: Session, student_id: str, delta: float) -> None:
    """Shift a student's cached pending-fine total by ``delta``.

    Every path that creates, deletes or re-statuses a fine goes through here.
    The update is a single SQL increment so concurrent callers do not lose writes.
    Does not commit.
    """
    if not delta:
        return
    db.execute(
        update(Student)
        .where(Student.id == student_id)
        .values(total_fine_amount=func.coalesce(Student.total_fine_amount, 0.0) + delta)
        .execution_options(synchronize_session=False)
    )


def _is_exempt(student: Student, exempt: set[str]) -> bool:
    return student.id in exempt or student.register_number in exempt


def fine_candidates(db: Session, day: date, cfg: Settings = default_settings) -> FineCandidates:
    if is_rest_day(day, cfg.rest_weekday):
        return FineCandidates([], [], [], not_working_reason=f"{day.isoformat()} is the weekly rest day")
    holiday = is_holiday(db, day)
    if holiday.is_holiday:
        return FineCandidates([], [], [], not_working_reason=f"{day.isoformat()} is a holiday ({holiday.holiday.holiday_name})")

    students = db.scalars(
        select(Student).where(Student.class_year.in_(cfg.tracked_classes)).order_by(Student.register_number)
    ).all()
    booked = set(db.scalars(select(Booking.student_id).where(Booking.booking_date == day)).all())
    presented = all_selected_student_ids(db)
    eligible = [s for s in students if s.id not in booked and s.id not in presented]

    exempt_ids = set(cfg.fine_exempt_students)
    exempted = [s for s in eligible if _is_exempt(s, exempt_ids)]
    eligible = [s for s in eligible if not _is_exempt(s, exempt_ids)]

    fined = set(
        db.scalars(select(Fine.student_id).where(Fine.reference_date == day, Fine.fine_type == cfg.fine_type)).all()
    )
    log.debug(
        "%s: %d students, %d booked, %d presented, %d exempt, %d already fined",
        day, len(students), len(booked), len(presented), len(exempted), len(fined),
    )
    return FineCandidates(
        to_fine=[s for s in eligible if s.id not in fined],
        exempted=exempted,
        already_fined=[s for s in eligible if s.id in fined],
    )


def assess_for_date(db: Session, day: date, cfg: Settings = default_settings) -> FineResult:
    """Issue the flat no-booking fine for ``day``.

    Students who booked, who have ever been selected, or who are on the
    exemption list are left out. Re-running is safe: existing fines are
    skipped and a concurrent duplicate insert is ignored. A failure for one
    student is recorded and the batch continues.
    """
    result = FineResult(reference_date=day)
    candidates = fine_candidates(db, day, cfg)
    if candidates.not_working_reason:
        result.message = f"No fines created - {candidates.not_working_reason}"
        log.info(result.message)
        return result

    result.exempted = len(candidates.exempted)
    result.skipped = len(candidates.already_fined)
    if not candidates.to_fine:
        result.message = "No students eligible for fines"
        return result

    for student in candidates.to_fine:
        try:
            fine_id = insert_ignore(
                db,
                Fine,
                {
                    "id": new_id(),
                    "student_id": student.id,
                    "fine_type": cfg.fine_type,
                    "reference_date": day,
                    "amount": cfg.fine_amount,
                    "payment_status": PENDING,
                },
            )
            if fine_id is None:
                db.rollback()
                log.warning("Duplicate fine for %s on %s, skipping", student.register_number, day)
                result.skipped += 1
                continue
            adjust_fine_total(db, student.id, cfg.fine_amount)
            db.commit()
            result.created += 1
        except SQLAlchemyError as exc:
            db.rollback()
            log.error("Failed to create fine for %s: %s", student.register_number, exc)
            result.errors.append(f"Student {student.register_number}: {exc}")

    result.message = f"Created {cfg.fine_amount:g} fine for {result.created} student(s) on {day.isoformat()}"
    log.info(result.message)
    return result


def preview_fines_for_date(db: Session, day: date, cfg: Settings = default_settings) -> dict:
    candidates = fine_candidates(db, day, cfg)
    return {
        "date": day.isoformat(),
        "working_day": candidates.not_working_reason is None,
        "reason": candidates.not_working_reason,
        "amount": cfg.fine_amount,
        "students": [serialize(s) for s in candidates.to_fine],
        "exempted": [s.register_number for s in candidates.exempted],
        "already_fined": [s.register_number for s in candidates.already_fined],
    }


def create_manual_fine(
    db: Session,
    student_id: str,
    fine_type: str,
    reference_date: date,
    amount: float,
    payment_status: str = PENDING,
    description: Optional[str] = None,
) -> Fine:
    if payment_status not in FINE_STATUSES:
        raise ValueError(f"payment_status must be one of {', '.join(FINE_STATUSES)}")
    if not db.get(Student, student_id):
        raise StudentNotFound(f"Student {student_id} not found")
    existing = db.scalar(
        select(Fine.id).where(Fine.student_id == student_id, Fine.fine_type == fine_type, Fine.reference_date == reference_date)
    )
    if existing:
        raise DuplicateFine("Fine already exists for this student, type and date")
    fine = Fine(
        student_id=student_id,
        fine_type=fine_type,
        reference_date=reference_date,
        amount=amount,
        payment_status=payment_status,
        description=description,
    )
    db.add(fine)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateFine("Fine already exists for this student, type and date") from exc
    if payment_status == PENDING:
        adjust_fine_total(db, student_id, amount)
    db.commit()
    db.refresh(fine)
    return fine


def update_fine_status(db: Session, fine_id: str, status: str, notes: Optional[str] = None) -> Fine:
    if status not in FINE_STATUSES:
        raise ValueError(f"status must be one of {', '.join(FINE_STATUSES)}")
    fine = db.get(Fine, fine_id)
    if not fine:
        raise FineNotFound(f"Fine {fine_id} not found")
    if fine.payment_status == PENDING and status != PENDING:
        adjust_fine_total(db, fine.student_id, -fine.amount)
    elif fine.payment_status != PENDING and status == PENDING:
        adjust_fine_total(db, fine.student_id, fine.amount)
    fine.payment_status = status
    if notes:
        fine.description = notes
    db.commit()
    db.refresh(fine)
    return fine


def delete_fine(db: Session, fine_id: str) -> None:
    fine = db.get(Fine, fine_id)
    if not fine:
        raise FineNotFound(f"Fine {fine_id} not found")
    if fine.payment_status == PENDING:
        adjust_fine_total(db, fine.student_id, -fine.amount)
    db.delete(fine)
    db.commit()


def bulk_delete_fines(db: Session, fine_ids: Iterable[str]) -> int:
    fines = db.scalars(select(Fine).where(Fine.id.in_(list(fine_ids)))).all()
    for fine in fines:
        if fine.payment_status == PENDING:
            adjust_fine_total(db, fine.student_id, -fine.amount)
    if fines:
        db.execute(delete(Fine).where(Fine.id.in_([f.id for f in fines])))
    db.commit()
    return len(fines)


def recalculate_fine_total(db: Session, student_id: str) -> float:
    student = db.get(Student, student_id)
    if not student:
        raise StudentNotFound(f"Student {student_id} not found")
    total = db.scalar(
        select(func.coalesce(func.sum(Fine.amount), 0.0)).where(Fine.student_id == student_id, Fine.payment_status == PENDING)
    )
    student.total_fine_amount = float(total or 0.0)
    db.commit()
    return student.total_fine_amount


def list_fines(
    db: Session,
    class_year: Optional[str] = None,
    status: Optional[str] = None,
    fine_type: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> list[dict]:
    stmt = select(Fine, Student).join(Student, Student.id == Fine.student_id)
    if class_year:
        stmt = stmt.where(Student.class_year == class_year)
    if status:
        stmt = stmt.where(Fine.payment_status == status)
    if fine_type:
        stmt = stmt.where(Fine.fine_type == fine_type)
    if date_from:
        stmt = stmt.where(Fine.reference_date >= date_from)
    if date_to:
        stmt = stmt.where(Fine.reference_date <= date_to)
    rows = db.execute(stmt.order_by(Fine.reference_date.desc(), Student.register_number)).all()
    out = []
    for fine, student in rows:
        item = serialize(fine)
        item.update({"student_name": student.name, "register_number": student.register_number, "class_year": student.class_year})
        out.append(item)
    return out
