"""Turn a billing definition into a dated sequence of installments."""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from ..errors import ValidationError
from ..models import BillingDefinition, Installment, InstallmentStatus
from .groups import render_description
from .schedule import first_due_date, next_due_date


def _last_due_date(previous: Iterable[Installment]) -> Optional[date]:
    dated = [row.due_date for row in previous if row.due_date is not None]
    return max(dated) if dated else None


def generate_installments(
    billing: BillingDefinition,
    count: int,
    from_number: int = 1,
    per_installment_amount: Decimal | None = None,
    previous: Iterable[Installment] | None = None,
) -> List[Installment]:
    """Build ``count`` unsaved installments numbered ``from_number`` onwards.

    Every new row carries ``total_installments = from_number + count - 1``. The
    first row falls one month after the latest dated row in ``previous``, or on
    the first ``due_day`` on/after ``start_date`` when ``previous`` is empty.
    Continuing after rows that all lack a due date is refused.
    """
    if count is None or count < 1:
        raise ValidationError("count must be at least 1", field="count")
    if from_number is None or from_number < 1:
        raise ValidationError("installment numbering starts at 1", field="from_number")
    if per_installment_amount is not None and Decimal(per_installment_amount) < 0:
        raise ValidationError("amount cannot be negative", field="per_installment_amount")

    previous = list(previous or [])
    last_due = _last_due_date(previous)
    if previous and last_due is None:
        raise ValidationError("cannot continue a schedule whose installments have no due dates", field="previous")
    if last_due is not None:
        due = next_due_date(last_due, billing.due_day)
    else:
        due = first_due_date(billing.start_date, billing.due_day)

    amount = Decimal(per_installment_amount) if per_installment_amount is not None else Decimal(billing.amount)
    total = from_number + count - 1
    rows: List[Installment] = []
    for number in range(from_number, total + 1):
        rows.append(
            Installment(
                client_id=billing.client_id,
                billing_definition=billing,
                description=render_description(billing.description, number, total),
                amount=amount,
                due_date=due,
                payment_method=billing.payment_method,
                status=InstallmentStatus.PENDING,
                installment_number=number,
                total_installments=total,
                delivery_based=False,
            )
        )
        due = next_due_date(due, billing.due_day)
    return rows
