from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.inspection import inspect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    username: Mapped[str] = mapped_column(String, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default="STAFF")


class Student(Base):
    __tablename__ = "students"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    register_number: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    class_year: Mapped[str] = mapped_column(String, index=True)
    total_fine_amount: Mapped[float] = mapped_column(Float, default=0.0)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (UniqueConstraint("student_id", "booking_date", name="uq_booking_student_date"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(String, ForeignKey("students.id"), index=True)
    booking_date: Mapped[date] = mapped_column(Date, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Selection(Base):
    __tablename__ = "selections"
    __table_args__ = (
        UniqueConstraint("student_id", name="uq_selection_student"),
        UniqueConstraint("selection_date", "class_year", name="uq_selection_date_class"),
    )
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(String, ForeignKey("students.id"))
    selection_date: Mapped[date] = mapped_column(Date, index=True)
    class_year: Mapped[str] = mapped_column(String)
    selected_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Fine(Base):
    __tablename__ = "fines"
    __table_args__ = (UniqueConstraint("student_id", "fine_type", "reference_date", name="uq_fine_student_type_date"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(String, ForeignKey("students.id"), index=True)
    fine_type: Mapped[str] = mapped_column(String)
    reference_date: Mapped[date] = mapped_column(Date, index=True)
    amount: Mapped[float] = mapped_column(Float)
    payment_status: Mapped[str] = mapped_column(String, default="pending")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Holiday(Base):
    __tablename__ = "holidays"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    holiday_name: Mapped[str] = mapped_column(String)
    holiday_date: Mapped[date] = mapped_column(Date, unique=True, index=True)
    holiday_type: Mapped[str] = mapped_column(String, default="institutional")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    affects_presentations: Mapped[bool] = mapped_column(Boolean, default=True)


class RescheduleRecord(Base):
    __tablename__ = "reschedule_records"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    original_date: Mapped[date] = mapped_column(Date)
    new_date: Mapped[date] = mapped_column(Date)
    reason: Mapped[str] = mapped_column(String)
    affected_count: Mapped[int] = mapped_column(Integer, default=0)
    reschedule_type: Mapped[str] = mapped_column(String, default="automatic")
    rescheduled_by: Mapped[str] = mapped_column(String, default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Notification(Base):
    __tablename__ = "notifications"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(String, ForeignKey("students.id"), index=True)
    notification_type: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


def serialize(instance) -> dict:
    out = {}
    for c in inspect(instance).mapper.column_attrs:
        value = getattr(instance, c.key)
        out[c.key] = value.isoformat() if isinstance(value, (date, datetime)) else value
    return out
