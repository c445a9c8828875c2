from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from deptportal import fines as fines_mod
from deptportal.errors import DuplicateFine, FineNotFound, StudentNotFound
from deptportal.fines import (
    FineCandidates,
    adjust_fine_total,
    assess_for_date,
    bulk_delete_fines,
    create_manual_fine,
    delete_fine,
    list_fines,
    preview_fines_for_date,
    recalculate_fine_total,
    update_fine_status,
)
from deptportal.models import Fine, Student

DAY = date(2024, 6, 10)


def _total(db, student):
    db.expire_all()
    return db.get(Student, student.id).total_fine_amount


def _fine_count(db, **filters):
    stmt = select(func.count()).select_from(Fine)
    for key, value in filters.items():
        stmt = stmt.where(getattr(Fine, key) == value)
    return db.scalar(stmt)


def test_every_unbooked_student_gets_one_flat_fine(db, make, cfg):
    students = [make.student("III-IT") for _ in range(5)]

    result = assess_for_date(db, DAY, cfg)

    assert result.created == 5
    assert result.errors == []
    assert _fine_count(db, reference_date=DAY, fine_type="no_booking") == 5
    for s in students:
        assert _total(db, s) == 10.0
    assert {f.amount for f in db.scalars(select(Fine)).all()} == {10.0}


def test_booked_and_previously_selected_students_are_not_fined(db, make, cfg):
    booked = make.student("II-IT")
    presented = make.student("II-IT")
    absent = make.student("II-IT")
    make.booking(booked, DAY)
    make.selection(presented, date(2024, 5, 1))

    result = assess_for_date(db, DAY, cfg)

    assert result.created == 1
    assert db.scalars(select(Fine.student_id)).all() == [absent.id]


def test_untracked_classes_are_not_fined(db, make, cfg):
    make.student("I-IT")
    assert assess_for_date(db, DAY, cfg).created == 0


def test_exemption_list_by_register_number_or_id(db, make, cfg):
    by_reg = make.student("II-IT", register_number="620123205015")
    by_id = make.student("II-IT")
    fined = make.student("II-IT")
    cfg.fine_exempt_students = ["620123205015", by_id.id]

    result = assess_for_date(db, DAY, cfg)

    assert result.created == 1
    assert result.exempted == 2
    assert db.scalars(select(Fine.student_id)).all() == [fined.id]
    assert _total(db, by_reg) == 0.0


def test_rerun_does_not_double_fine_or_double_count(db, make, cfg):
    e = make.student("II-IT")
    assess_for_date(db, DAY, cfg)

    again = assess_for_date(db, DAY, cfg)

    assert again.created == 0
    assert again.skipped == 1
    assert _fine_count(db, student_id=e.id) == 1
    assert _total(db, e) == 10.0


@pytest.mark.parametrize("day", [date(2024, 6, 9), DAY])
def test_no_fines_on_rest_day_or_holiday(db, make, cfg, day):
    make.student("II-IT")
    make.holiday(DAY, "Bakrid")

    result = assess_for_date(db, day, cfg)

    assert result.created == 0
    assert result.message.startswith("No fines created")
    assert _fine_count(db) == 0


def test_concurrent_duplicate_insert_is_swallowed(db, make, cfg, monkeypatch):
    e = make.student("II-IT")
    create_manual_fine(db, e.id, "no_booking", DAY, 10.0)
    monkeypatch.setattr(fines_mod, "fine_candidates", lambda db, day, cfg: FineCandidates([e], [], []))

    result = assess_for_date(db, DAY, cfg)

    assert result.created == 0
    assert result.skipped == 1
    assert result.errors == []
    assert _total(db, e) == 10.0


def test_one_student_failure_does_not_stop_batch(db, make, cfg, monkeypatch):
    bad = make.student("II-IT")
    good = make.student("II-IT")
    real_insert = fines_mod.insert_ignore
    bad_id = bad.id

    def flaky(db, model, values):
        if values["student_id"] == bad_id:
            raise SQLAlchemyError("disk I/O error")
        return real_insert(db, model, values)

    monkeypatch.setattr(fines_mod, "insert_ignore", flaky)

    result = assess_for_date(db, DAY, cfg)

    assert result.created == 1
    assert len(result.errors) == 1
    assert "disk I/O error" in result.errors[0]
    assert _total(db, good) == 10.0
    assert _total(db, bad) == 0.0


def test_adjust_fine_total_is_relative(db, make):
    s = make.student("II-IT")
    adjust_fine_total(db, s.id, 10.0)
    adjust_fine_total(db, s.id, 5.0)
    adjust_fine_total(db, s.id, -10.0)
    db.commit()
    assert _total(db, s) == 5.0


def test_running_total_follows_fine_lifecycle(db, make):
    s = make.student("II-IT")
    fine = create_manual_fine(db, s.id, "other", DAY, 25.0)
    assert _total(db, s) == 25.0

    update_fine_status(db, fine.id, "paid")
    assert _total(db, s) == 0.0

    update_fine_status(db, fine.id, "pending", notes="reopened")
    assert _total(db, s) == 25.0

    delete_fine(db, fine.id)
    assert _total(db, s) == 0.0


def test_deleting_paid_fine_leaves_total(db, make):
    s = make.student("II-IT")
    fine = create_manual_fine(db, s.id, "other", DAY, 25.0, payment_status="paid")
    assert _total(db, s) == 0.0
    delete_fine(db, fine.id)
    assert _total(db, s) == 0.0


def test_bulk_delete_decrements_pending_only(db, make):
    s = make.student("II-IT")
    f1 = create_manual_fine(db, s.id, "other", date(2024, 6, 10), 10.0)
    f2 = create_manual_fine(db, s.id, "other", date(2024, 6, 11), 10.0)
    f3 = create_manual_fine(db, s.id, "other", date(2024, 6, 12), 10.0)
    update_fine_status(db, f3.id, "waived")

    assert bulk_delete_fines(db, [f1.id, f3.id, "missing"]) == 2
    assert _total(db, s) == 10.0
    assert [f.id for f in db.scalars(select(Fine)).all()] == [f2.id]


def test_manual_fine_rejects_duplicates_and_bad_input(db, make):
    s = make.student("II-IT")
    create_manual_fine(db, s.id, "no_booking", DAY, 10.0)
    with pytest.raises(DuplicateFine):
        create_manual_fine(db, s.id, "no_booking", DAY, 10.0)
    with pytest.raises(ValueError):
        create_manual_fine(db, s.id, "other", DAY, 10.0, payment_status="refunded")
    with pytest.raises(StudentNotFound):
        create_manual_fine(db, "nobody", "other", DAY, 10.0)
    with pytest.raises(FineNotFound):
        update_fine_status(db, "nope", "paid")
    assert _total(db, s) == 10.0


def test_recalculate_repairs_drifted_total(db, make):
    s = make.student("II-IT")
    create_manual_fine(db, s.id, "other", DAY, 10.0)
    adjust_fine_total(db, s.id, 990.0)
    db.commit()
    assert recalculate_fine_total(db, s.id) == 10.0
    assert _total(db, s) == 10.0


def test_list_fines_filters(db, make):
    a = make.student("II-IT")
    b = make.student("III-IT")
    create_manual_fine(db, a.id, "other", date(2024, 6, 10), 10.0)
    create_manual_fine(db, b.id, "other", date(2024, 6, 11), 10.0, payment_status="paid")

    assert [f["register_number"] for f in list_fines(db, class_year="III-IT")] == [b.register_number]
    assert [f["student_id"] for f in list_fines(db, status="pending")] == [a.id]
    assert len(list_fines(db, date_from=date(2024, 6, 11))) == 1
    assert len(list_fines(db, date_to=date(2024, 6, 10))) == 1


def test_preview_makes_no_writes(db, make, cfg):
    a = make.student("II-IT")
    make.student("II-IT", register_number="620123205027")
    cfg.fine_exempt_students = ["620123205027"]

    preview = preview_fines_for_date(db, DAY, cfg)

    assert preview["working_day"]
    assert [s["id"] for s in preview["students"]] == [a.id]
    assert preview["exempted"] == ["620123205027"]
    assert _fine_count(db) == 0
