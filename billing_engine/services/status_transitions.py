"""Payment status state machine and its data preconditions."""
from __future__ import annotations

from datetime import date
from typing import Dict, FrozenSet

from ..errors import ValidationError
from ..models import BillingStatus, Installment, InstallmentStatus

S = InstallmentStatus

ALLOWED_TRANSITIONS: Dict[InstallmentStatus, FrozenSet[InstallmentStatus]] = {
    S.PENDING: frozenset({S.BILLED, S.AWAITING_INVOICE, S.OVERDUE, S.CANCELLED, S.PAID}),
    S.BILLED: frozenset({S.PAID, S.OVERDUE, S.CANCELLED}),
    S.AWAITING_INVOICE: frozenset({S.PAID, S.OVERDUE, S.CANCELLED}),
    S.OVERDUE: frozenset({S.PAID, S.CANCELLED}),
    S.PARTIALLY_PAID: frozenset({S.PAID, S.CANCELLED}),
    S.PAID: frozenset(),
    S.CANCELLED: frozenset(),
}

CONFIRMATION_REQUIRED = frozenset({S.CANCELLED, S.OVERDUE})

_MISSING = object()


def coerce_status(value) -> InstallmentStatus:
    if isinstance(value, InstallmentStatus):
        return value
    try:
        return InstallmentStatus(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"unknown installment status: {value!r}", field="status") from exc


def is_terminal(status: InstallmentStatus) -> bool:
    return not ALLOWED_TRANSITIONS[status]


def can_transition(old: InstallmentStatus, new: InstallmentStatus) -> bool:
    return old == new or new in ALLOWED_TRANSITIONS[old]


def requires_confirmation(new_status) -> bool:
    """Whether a UI should ask before applying ``new_status``; never enforced here."""
    return coerce_status(new_status) in CONFIRMATION_REQUIRED


def check_paid_precondition(payment_date: date | None, delivery_based: bool) -> None:
    if payment_date is None and not delivery_based:
        raise ValidationError("payment date required", field="payment_date")


def validate_initial_status(status, payment_date: date | None = None, delivery_based: bool = False) -> InstallmentStatus:
    """Check a status given at creation time (any status may be the starting point)."""
    status = coerce_status(status)
    if status == S.PAID:
        check_paid_precondition(payment_date, delivery_based)
    return status


def validate_transition(
    installment: Installment,
    new_status,
    *,
    payment_date=_MISSING,
    delivery_based=_MISSING,
) -> InstallmentStatus:
    """Return the coerced target status or raise ``ValidationError``.

    ``payment_date``/``delivery_based`` override the installment's own values
    when supplied, so callers can validate an edit before applying it.
    """
    new_status = coerce_status(new_status)
    old_status = coerce_status(installment.status or S.PENDING)
    if not can_transition(old_status, new_status):
        raise ValidationError(
            f"cannot move installment from {old_status.value} to {new_status.value}",
            field="status",
        )
    if new_status == S.PAID:
        effective_date = installment.payment_date if payment_date is _MISSING else payment_date
        effective_delivery = installment.delivery_based if delivery_based is _MISSING else delivery_based
        check_paid_precondition(effective_date, bool(effective_delivery))
    return new_status


def billing_effective_status(status) -> str:
    """Collapse a stored billing status into "active" / "inactive"."""
    return "inactive" if BillingStatus(status) == BillingStatus.CANCELLED else "active"


def billing_status_from_effective(value: str) -> BillingStatus:
    value = (value or "").strip().lower()
    if value in {"active", BillingStatus.PENDING.value}:
        return BillingStatus.PENDING
    if value in {"inactive", BillingStatus.CANCELLED.value}:
        return BillingStatus.CANCELLED
    raise ValidationError(f"unknown billing status: {value!r}", field="status")
