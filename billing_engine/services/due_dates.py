"""Move future, still-open installments onto a new day of the month."""
from __future__ import annotations

from datetime import date
from typing import Iterable, List

from ..errors import ValidationError
from ..models import Installment, InstallmentStatus
from .schedule import move_to_day

MOVABLE_STATUSES = frozenset(
    {
        InstallmentStatus.PENDING,
        InstallmentStatus.OVERDUE,
        InstallmentStatus.BILLED,
        InstallmentStatus.AWAITING_INVOICE,
        InstallmentStatus.PARTIALLY_PAID,
    }
)


def validate_due_day(due_day) -> int:
    if isinstance(due_day, bool) or not isinstance(due_day, int) or not 1 <= due_day <= 31:
        raise ValidationError("due_day must be an integer between 1 and 31", field="due_day")
    return due_day


def is_movable(installment: Installment, today: date) -> bool:
    return (
        installment.due_date is not None
        and installment.due_date >= today
        and installment.status in MOVABLE_STATUSES
    )


def planned_due_date(installment: Installment, new_due_day: int, today: date) -> date | None:
    """New due date for ``installment``, or None when it stays where it is."""
    if not is_movable(installment, today):
        return None
    moved = move_to_day(installment.due_date, new_due_day)
    return moved if moved != installment.due_date else None


def recalculate_due_dates(
    new_due_day: int,
    installments: Iterable[Installment],
    today: date | None = None,
) -> List[Installment]:
    """Re-anchor eligible installments on ``new_due_day`` and return the ones that changed.

    Paid/cancelled rows, delivery-based rows without a date and rows due
    before ``today`` are left alone. A day past the end of the month lands on
    the month's last day.
    """
    validate_due_day(new_due_day)
    today = today or date.today()
    changed: List[Installment] = []
    for installment in installments or []:
        moved = planned_due_date(installment, new_due_day, today)
        if moved is not None:
            installment.due_date = moved
            changed.append(installment)
    return changed
