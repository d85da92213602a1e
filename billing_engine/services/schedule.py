"""Calendar arithmetic for monthly due dates."""
from __future__ import annotations

from calendar import monthrange
from datetime import date


def clamp_day(year: int, month: int, day: int) -> date:
    """Return ``day`` of the month, or the month's last day when it is shorter."""
    last = monthrange(year, month)[1]
    return date(year, month, max(1, min(day, last)))


def shift_month(year: int, month: int, offset: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + offset
    return index // 12, index % 12 + 1


def add_months(start: date, offset: int, anchor_day: int | None = None) -> date:
    """Move ``offset`` calendar months from ``start``, landing on ``anchor_day``.

    The anchor defaults to ``start.day``; it is clamped per month so that a
    31st anchor yields Feb 28/29 and comes back to the 31st in March.
    """
    year, month = shift_month(start.year, start.month, offset)
    return clamp_day(year, month, anchor_day if anchor_day is not None else start.day)


def first_due_date(start_date: date, due_day: int) -> date:
    """First date on or after ``start_date`` that lands on ``due_day``."""
    candidate = clamp_day(start_date.year, start_date.month, due_day)
    if candidate >= start_date:
        return candidate
    return add_months(candidate, 1, due_day)


def next_due_date(last_due: date, due_day: int) -> date:
    """Due date one calendar month after ``last_due``."""
    return add_months(last_due, 1, due_day)


def move_to_day(current: date, new_day: int) -> date:
    """Same month as ``current``, on ``new_day`` (clamped)."""
    return clamp_day(current.year, current.month, new_day)
