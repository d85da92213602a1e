"""Billing orchestration: definitions, installment groups, status changes and views."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    BillingEngineError,
    DeletionRefusedError,
    PartialBatchResult,
    SyncWarning,
    ValidationError,
)
from ..models import (
    BillingDefinition,
    BillingStatus,
    Installment,
    InstallmentStatus,
    PaymentMethod,
)
from ..utils import parse_iso_date
from .billing_views import ViewFilters, VirtualBillingView, project_views
from .cash_flow_sync import SyncPayload, get_cash_flow_adapter
from .due_dates import planned_due_date, validate_due_day
from .groups import check_contiguous, renumber_group, sort_group, strip_installment_suffix
from .installment_generator import generate_installments
from .status_transitions import (
    billing_status_from_effective,
    coerce_status,
    validate_initial_status,
    validate_transition,
)
from .storage import billing_store

STATUS_EXTRA_FIELDS = frozenset({"payment_date", "delivery_based", "paid_amount"})
OVERDUE_SOURCES = (
    InstallmentStatus.PENDING,
    InstallmentStatus.BILLED,
    InstallmentStatus.AWAITING_INVOICE,
)


@dataclass(frozen=True)
class StatusChangeResult:
    installment: Installment
    old_status: Optional[InstallmentStatus]
    new_status: InstallmentStatus
    changed: bool
    sync_warning: Optional[SyncWarning] = None


def _today() -> date:
    """Current date, unless ``BILLING_TODAY_OVERRIDE`` pins one."""
    override = current_app.config.get("BILLING_TODAY_OVERRIDE")
    if override:
        return parse_iso_date(override)
    return date.today()


def _as_date(value, field: str) -> Optional[date]:
    try:
        return parse_iso_date(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} is not a valid date", field=field) from exc


def _as_amount(value, field: str = "amount") -> Decimal:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required", field=field)
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} must be a number", field=field) from exc
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{field} cannot be negative", field=field)
    return amount.quantize(Decimal("0.01"))


def _as_count(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{field} must be a positive integer", field=field)
    return value


def _payment_method(value) -> PaymentMethod:
    value = value or current_app.config.get("BILLING_DEFAULT_PAYMENT_METHOD", PaymentMethod.PIX.value)
    try:
        return PaymentMethod(value)
    except ValueError as exc:
        raise ValidationError(f"unknown payment method: {value!r}", field="payment_method") from exc


def _description(value) -> str:
    description = strip_installment_suffix(value)
    if not description:
        raise ValidationError("description is required", field="description")
    return description


def create_billing_definition(
    *,
    client_id: int,
    description: str,
    amount,
    due_day: int,
    start_date,
    installments: int = 1,
    payment_method=None,
    end_date=None,
    email_template: Optional[str] = None,
    service: Optional[str] = None,
    disable_notifications: bool = False,
) -> Tuple[BillingDefinition, List[Installment]]:
    """Insert a billing definition together with its installments 1..N."""
    billing_store.load_client(client_id)
    start = _as_date(start_date, "start_date")
    if start is None:
        raise ValidationError("start_date is required", field="start_date")
    end = _as_date(end_date, "end_date")
    if end is not None and end < start:
        raise ValidationError("end_date cannot be before start_date", field="end_date")

    billing = BillingDefinition(
        client_id=client_id,
        description=_description(description),
        amount=_as_amount(amount),
        due_day=validate_due_day(due_day),
        payment_method=_payment_method(payment_method),
        start_date=start,
        end_date=end,
        installments=_as_count(installments, "installments"),
        current_installment=0,
        status=BillingStatus.PENDING,
        email_template=email_template,
        service=service,
        disable_notifications=bool(disable_notifications),
    )
    rows = generate_installments(billing, billing.installments)

    with billing_store.atomic("billing creation"):
        billing_store.insert_billing_definition(billing)
        billing_store.insert_installments(rows)

    current_app.logger.info(
        "Created billing %s for client %s with %s installments", billing.id, client_id, len(rows)
    )
    return billing, rows


def create_one_time_payment(
    *,
    client_id: int,
    description: str,
    amount,
    due_date=None,
    payment_method=None,
    status=InstallmentStatus.PENDING,
    payment_date=None,
    delivery_based: bool = False,
    paid_amount=None,
) -> Tuple[Installment, Optional[SyncWarning]]:
    """Record a closed-scope payment that belongs to no billing definition."""
    billing_store.load_client(client_id)
    delivery_based = bool(delivery_based)
    due = None if delivery_based else _as_date(due_date, "due_date")
    if due is None and not delivery_based:
        raise ValidationError("due_date is required unless the payment is delivery-based", field="due_date")
    paid_on = _as_date(payment_date, "payment_date")
    initial = validate_initial_status(status, paid_on, delivery_based)

    installment = Installment(
        client_id=client_id,
        description=_description(description),
        amount=_as_amount(amount),
        due_date=due,
        payment_date=paid_on,
        payment_method=_payment_method(payment_method),
        status=initial,
        delivery_based=delivery_based,
        paid_amount=_as_amount(paid_amount, "paid_amount") if paid_amount is not None else None,
    )
    with billing_store.atomic("one-time payment creation"):
        billing_store.insert_installments([installment])

    current_app.logger.info("Created one-time payment %s for client %s", installment.id, client_id)
    warning = _sync_payment(installment, None, initial)
    return installment, warning


def append_installments(billing_id: int, count: int, per_installment_amount=None) -> List[Installment]:
    """Extend a billing's schedule by ``count`` rows and renumber the whole group."""
    count = _as_count(count, "count")
    billing = billing_store.load_billing_definition(billing_id)
    amount = _as_amount(per_installment_amount, "per_installment_amount") if per_installment_amount is not None else None

    existing = billing_store.load_installments(billing_definition_id=billing.id)
    current_total = check_contiguous(existing, billing_definition_id=billing.id)
    new_total = current_total + count
    rows = generate_installments(
        billing,
        count,
        from_number=current_total + 1,
        per_installment_amount=amount,
        previous=existing,
    )

    with billing_store.atomic(f"installment append for billing {billing.id}"):
        billing_store.insert_installments(rows)
        billing_store.update_installments(renumber_group(existing, new_total))
        billing_store.update_billing_definition(billing.id, {"installments": new_total})

    current_app.logger.info(
        "Appended %s installments to billing %s (now %s)", count, billing.id, new_total
    )
    return rows


def repair_group(billing_id: int) -> List[Installment]:
    """Renumber a billing's rows 1..M after a broken append or a deletion."""
    billing = billing_store.load_billing_definition(billing_id)
    rows = sort_group(billing_store.load_installments(billing_definition_id=billing.id))
    for number, row in enumerate(rows, start=1):
        row.installment_number = number
    renumber_group(rows, len(rows))

    with billing_store.atomic(f"group repair for billing {billing.id}"):
        billing_store.update_installments(rows)
        if rows:
            paid = sum(1 for row in rows if row.status == InstallmentStatus.PAID)
            billing_store.update_billing_definition(
                billing.id, {"installments": len(rows), "current_installment": paid}
            )

    current_app.logger.warning("Repaired installment group of billing %s (%s rows)", billing.id, len(rows))
    return rows


def change_due_day(billing_id: int, new_due_day: int, today: Optional[date] = None) -> PartialBatchResult:
    """Store a new due day and move the billing's future open installments onto it.

    Each moved row is committed on its own; rows that fail are reported in
    ``failed`` while the others stay updated.
    """
    validate_due_day(new_due_day)
    billing = billing_store.load_billing_definition(billing_id)
    result = PartialBatchResult()
    if billing.due_day == new_due_day:
        return result

    reference = today or _today()
    rows = billing_store.load_installments(billing_definition_id=billing.id)
    with billing_store.atomic(f"due day change for billing {billing.id}"):
        billing_store.update_billing_definition(billing.id, {"due_day": new_due_day})

    for row in rows:
        row_id = row.id
        moved = planned_due_date(row, new_due_day, reference)
        if moved is None:
            continue
        try:
            row.due_date = moved
            billing_store.save_installment(row)
        except SQLAlchemyError as exc:
            billing_store.rollback()
            result.failed.append((row_id, str(exc)))
            continue
        result.updated.append(row_id)

    if result.failed:
        current_app.logger.warning(
            "Due day change for billing %s left %s rows unchanged: %s",
            billing.id,
            result.failed_count,
            result.failed,
        )
    current_app.logger.info(
        "Billing %s due day set to %s; %s installments moved", billing.id, new_due_day, result.updated_count
    )
    return result


def _status_overrides(extra: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(extra) - STATUS_EXTRA_FIELDS
    if unknown:
        raise ValidationError(f"unsupported fields: {sorted(unknown)}", field=sorted(unknown)[0])
    overrides: Dict[str, Any] = {}
    if "payment_date" in extra:
        overrides["payment_date"] = _as_date(extra["payment_date"], "payment_date")
    if "delivery_based" in extra:
        overrides["delivery_based"] = bool(extra["delivery_based"])
    if "paid_amount" in extra:
        value = extra["paid_amount"]
        overrides["paid_amount"] = _as_amount(value, "paid_amount") if value is not None else None
    return overrides


def _sync_payment(
    installment: Installment,
    old_status: Optional[InstallmentStatus],
    new_status: InstallmentStatus,
) -> Optional[SyncWarning]:
    if new_status != InstallmentStatus.PAID or old_status == InstallmentStatus.PAID:
        return None
    payload = SyncPayload(
        description=installment.description,
        amount=Decimal(installment.amount),
        payment_date=None if installment.delivery_based else installment.payment_date,
        client_id=installment.client_id,
    )
    adapter = get_cash_flow_adapter()
    try:
        result = adapter.sync(
            installment.id,
            old_status.value if old_status else None,
            new_status.value,
            payload,
        )
    except Exception as exc:
        current_app.logger.exception("Cash-flow sync raised for installment %s", installment.id)
        warning = SyncWarning(installment.id, str(exc))
    else:
        if result.success:
            return None
        warning = SyncWarning(installment.id, result.error or "sync rejected")
        current_app.logger.warning(str(warning))
    return warning


def set_installment_status(installment_id: int, new_status, extra: Optional[Dict[str, Any]] = None) -> StatusChangeResult:
    """Validate and commit a status change, then notify the cash-flow adapter.

    ``extra`` may carry ``payment_date``, ``delivery_based`` and ``paid_amount``.
    A failed sync never undoes the committed status; it comes back as
    ``sync_warning``.
    """
    installment = billing_store.load_installment(installment_id)
    overrides = _status_overrides(dict(extra or {}))
    old_status = coerce_status(installment.status or InstallmentStatus.PENDING)
    if installment.is_settled:
        # only the received amount of a paid row may still be corrected
        allowed = {"paid_amount"} if old_status == InstallmentStatus.PAID else set()
        frozen = sorted(set(overrides) - allowed)
        if frozen:
            raise ValidationError(
                f"{old_status.value} installment cannot change {frozen}", field=frozen[0]
            )
    target = validate_transition(
        installment,
        new_status,
        **{k: v for k, v in overrides.items() if k in {"payment_date", "delivery_based"}},
    )
    if target == old_status and not overrides:
        return StatusChangeResult(installment, old_status, target, changed=False)

    for key, value in overrides.items():
        setattr(installment, key, value)
    installment.status = target

    billing = installment.billing_definition
    entering_paid = target == InstallmentStatus.PAID and old_status != InstallmentStatus.PAID
    with billing_store.atomic(f"status change for installment {installment.id}"):
        billing_store.update_installments([installment])
        if entering_paid and billing is not None:
            progress = min(billing.installments, (billing.current_installment or 0) + 1)
            billing_store.update_billing_definition(billing.id, {"current_installment": progress})

    current_app.logger.info(
        "Installment %s status %s -> %s", installment.id, old_status.value, target.value
    )
    warning = _sync_payment(installment, old_status, target)
    return StatusChangeResult(installment, old_status, target, changed=target != old_status, sync_warning=warning)


def mark_overdue_installments(today: Optional[date] = None) -> PartialBatchResult:
    """Move past-due pending/billed/awaiting-invoice rows to overdue."""
    reference = today or _today()
    result = PartialBatchResult()
    for row in billing_store.load_installments(statuses=OVERDUE_SOURCES):
        row_id = row.id
        if row.due_date is None or row.due_date >= reference:
            continue
        try:
            row.status = validate_transition(row, InstallmentStatus.OVERDUE)
            billing_store.save_installment(row)
        except (SQLAlchemyError, BillingEngineError) as exc:
            billing_store.rollback()
            result.failed.append((row_id, str(exc)))
            continue
        result.updated.append(row_id)

    if result.failed:
        current_app.logger.warning("Overdue sweep skipped %s installments", result.failed_count)
    current_app.logger.info("Marked %s installments overdue as of %s", result.updated_count, reference)
    return result


def set_billing_active(billing_id: int, active) -> Tuple[BillingDefinition, List[Installment]]:
    """Toggle a billing between active and inactive.

    ``active`` is a bool or one of "active", "inactive", "pending", "cancelled".

    Deactivating cancels its pending and overdue installments as well; the
    returned list holds the rows that were cancelled. Reactivating leaves
    cancelled rows as they are.
    """
    if isinstance(active, str):
        status = billing_status_from_effective(active)
    else:
        status = BillingStatus.PENDING if active else BillingStatus.CANCELLED
    billing = billing_store.load_billing_definition(billing_id)
    cancelled: List[Installment] = []
    with billing_store.atomic(f"status toggle for billing {billing.id}"):
        billing_store.update_billing_definition(billing.id, {"status": status})
        if status == BillingStatus.CANCELLED:
            rows = billing_store.load_installments(
                billing_definition_id=billing.id,
                statuses=(InstallmentStatus.PENDING, InstallmentStatus.OVERDUE),
            )
            for row in rows:
                row.status = validate_transition(row, InstallmentStatus.CANCELLED)
            cancelled = billing_store.update_installments(rows)

    current_app.logger.info(
        "Billing %s set %s; %s installments cancelled",
        billing.id,
        billing.effective_status,
        len(cancelled),
    )
    return billing, cancelled


def delete_billing_definition(billing_id: int) -> None:
    """Remove a billing and its installments unless any of them is paid or cancelled."""
    billing = billing_store.load_billing_definition(billing_id)
    rows = billing_store.load_installments(billing_definition_id=billing.id)
    blocking = [row.id for row in rows if row.is_settled]
    if blocking:
        current_app.logger.warning(
            "Refused to delete billing %s: settled installments %s", billing.id, blocking
        )
        raise DeletionRefusedError(
            "billing has paid or cancelled installments",
            blocking_installment_ids=blocking,
        )

    with billing_store.atomic(f"deletion of billing {billing.id}"):
        billing_store.delete_billing_definition(billing)
    current_app.logger.info("Deleted billing %s with %s installments", billing_id, len(rows))


def delete_installment(installment_id: int) -> None:
    installment = billing_store.load_installment(installment_id)
    with billing_store.atomic(f"deletion of installment {installment_id}"):
        billing_store.delete_installment(installment)
    current_app.logger.info("Deleted installment %s", installment_id)


def project_billing_views(scope, mode, filters: Optional[ViewFilters] = None) -> List[VirtualBillingView]:
    return project_views(
        billing_store.load_installments(),
        billing_store.load_billing_definitions(),
        scope,
        mode,
        filters,
        clients=billing_store.load_clients(),
    )
