from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from deptportal.settings import Settings, settings as default_settings

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_iso_date(raw: str) -> date:
    if not raw or not ISO_DATE_RE.match(raw.strip()):
        raise ValueError("Invalid date format. Use YYYY-MM-DD")
    return date.fromisoformat(raw.strip())


def now_local(cfg: Settings = default_settings) -> datetime:
    return datetime.now(ZoneInfo(cfg.timezone))


def today_local(cfg: Settings = default_settings) -> date:
    return now_local(cfg).date()


def is_rest_day(day: date, rest_weekday: int = 6) -> bool:
    return day.weekday() == rest_weekday


def next_presentation_date(today: date, rest_weekday: int = 6) -> date:
    """Session date that bookings made on ``today`` are for.

    The day after the rest day is the earliest target from both the rest day
    itself and the day before it, so with Sunday as rest day Saturday and
    Sunday bookings both land on Monday.
    """
    nxt = today + timedelta(days=1)
    if is_rest_day(nxt, rest_weekday):
        nxt += timedelta(days=1)
    return nxt


def schedule_description(today: date, rest_weekday: int = 6) -> str:
    target = next_presentation_date(today, rest_weekday)
    if today.weekday() in ((rest_weekday - 1) % 7, rest_weekday):
        before = (target - timedelta(days=2)).strftime("%A")
        rest = (target - timedelta(days=1)).strftime("%A")
        return f"{before} and {rest} bookings are both for {target.strftime('%A')}'s session"
    return f"{today.strftime('%A')} bookings are for the next working day's session"


@dataclass
class BookingWindow:
    is_open: bool
    opens_at: Optional[datetime]
    closes_at: Optional[datetime]
    selection_at: Optional[datetime]
    next_open_at: datetime

    def as_dict(self) -> dict:
        return {
            "is_open": self.is_open,
            "opens_at": self.opens_at.isoformat() if self.opens_at else None,
            "closes_at": self.closes_at.isoformat() if self.closes_at else None,
            "selection_at": self.selection_at.isoformat() if self.selection_at else None,
            "next_open_at": self.next_open_at.isoformat(),
        }


def booking_window(now: datetime, cfg: Settings = default_settings) -> BookingWindow:
    """Today's booking window relative to ``now``. Closed all day on the rest day."""
    if is_rest_day(now.date(), cfg.rest_weekday):
        next_day = now.date() + timedelta(days=1)
        return BookingWindow(
            is_open=False,
            opens_at=None,
            closes_at=None,
            selection_at=None,
            next_open_at=datetime.combine(next_day, cfg.booking_window_start, tzinfo=now.tzinfo),
        )
    start = datetime.combine(now.date(), cfg.booking_window_start, tzinfo=now.tzinfo)
    end = datetime.combine(now.date(), cfg.booking_window_end, tzinfo=now.tzinfo)
    selection_at = datetime.combine(now.date(), cfg.selection_time, tzinfo=now.tzinfo)
    if now < start:
        next_open = start
    else:
        next_day = now.date() + timedelta(days=1)
        if is_rest_day(next_day, cfg.rest_weekday):
            next_day += timedelta(days=1)
        next_open = datetime.combine(next_day, cfg.booking_window_start, tzinfo=now.tzinfo)
    return BookingWindow(
        is_open=start <= now <= end,
        opens_at=start,
        closes_at=end,
        selection_at=selection_at,
        next_open_at=next_open,
    )


def is_selection_time(now: datetime, cfg: Settings = default_settings) -> bool:
    return now >= datetime.combine(now.date(), cfg.selection_time, tzinfo=now.tzinfo)


def schedule_info(now: datetime, cfg: Settings = default_settings) -> dict:
    today = now.date()
    return {
        "today": today.isoformat(),
        "next_presentation_date": next_presentation_date(today, cfg.rest_weekday).isoformat(),
        "description": schedule_description(today, cfg.rest_weekday),
        "booking_window": booking_window(now, cfg).as_dict(),
    }
