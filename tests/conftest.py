# tests/conftest.py
from __future__ import annotations

import logging
import os
import sys
from datetime import date, datetime
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from fastapi.testclient import TestClient  # noqa: E402

from deptportal.database import get_db, make_engine, make_sessionmaker  # noqa: E402
from deptportal.main import app, get_settings  # noqa: E402
from deptportal.models import Base, Booking, Holiday, Selection, Student  # noqa: E402
from deptportal.settings import Settings  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _tests_log_to_stdout():
    root = logging.getLogger()
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stdout for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)
    root.setLevel(os.getenv("TEST_LOG_LEVEL", "INFO").upper())


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'portal.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_sessionmaker(engine)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def cfg():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        session_secret="test-secret",
        cron_secret=None,
        timezone="Asia/Kolkata",
        rest_weekday=6,
        tracked_classes=["II-IT", "III-IT"],
        fine_amount=10.0,
        fine_type="no_booking",
        fine_exempt_students=[],
        enforce_selection_time=False,
    )


class Factory:
    def __init__(self, db):
        self.db = db
        self._n = 0

    def student(self, class_year: str = "II-IT", register_number: str | None = None, name: str | None = None) -> Student:
        self._n += 1
        s = Student(
            register_number=register_number or f"6201232050{self._n:02d}",
            name=name or f"Student {self._n}",
            email=f"student{self._n}@college.test",
            class_year=class_year,
            total_fine_amount=0.0,
        )
        self.db.add(s)
        self.db.commit()
        return s

    def booking(self, student: Student, day: date) -> Booking:
        b = Booking(student_id=student.id, booking_date=day)
        self.db.add(b)
        self.db.commit()
        return b

    def holiday(self, day: date, name: str = "Founders Day", affects: bool = True) -> Holiday:
        h = Holiday(holiday_date=day, holiday_name=name, affects_presentations=affects)
        self.db.add(h)
        self.db.commit()
        return h

    def selection(self, student: Student, day: date) -> Selection:
        sel = Selection(student_id=student.id, selection_date=day, class_year=student.class_year, selected_at=datetime(2024, 1, 1))
        self.db.add(sel)
        self.db.commit()
        return sel


@pytest.fixture
def make(db):
    return Factory(db)


class FixedRandom:
    def __init__(self, value: float):
        self.value = value

    def random(self) -> float:
        return self.value


@pytest.fixture
def fixed_random():
    return FixedRandom


@pytest.fixture
def client(session_factory, cfg):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_settings] = lambda: cfg
    yield TestClient(app)
    app.dependency_overrides.clear()
