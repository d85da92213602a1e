"""Installment group bookkeeping: numbering, totals and description suffixes."""
from __future__ import annotations

from typing import Iterable, List, Sequence, Tuple

from ..errors import InconsistentGroupError
from ..models import Installment
from ..models.billing import INSTALLMENT_SUFFIX_RE


def strip_installment_suffix(description: str | None) -> str:
    """Remove a trailing "(k/N)" suffix.

    Rows written before installments carried an explicit billing reference are
    matched to their group through this stripped description.
    """
    return INSTALLMENT_SUFFIX_RE.sub("", description or "").strip()


def render_description(base: str, number: int | None, total: int | None) -> str:
    base = strip_installment_suffix(base)
    if number is None or not total or total <= 1:
        return base
    return f"{base} ({number}/{total})"


def group_key(installment: Installment) -> Tuple[int, str]:
    return installment.client_id, strip_installment_suffix(installment.description)


def sort_group(installments: Iterable[Installment]) -> List[Installment]:
    return sorted(
        installments,
        key=lambda row: (
            row.installment_number is None,
            row.installment_number or 0,
            row.due_date is None,
            row.due_date or 0,
            row.id or 0,
        ),
    )


def check_contiguous(installments: Sequence[Installment], *, billing_definition_id: int | None = None) -> int:
    """Verify numbers are exactly 1..M with one shared total; return M."""
    numbers = [row.installment_number for row in installments]
    if not numbers:
        return 0
    if any(number is None for number in numbers):
        raise InconsistentGroupError(
            "installment group has unnumbered rows",
            billing_definition_id=billing_definition_id,
            numbers=numbers,
        )
    expected = list(range(1, len(numbers) + 1))
    if sorted(numbers) != expected:
        raise InconsistentGroupError(
            f"installment numbers {sorted(numbers)} are not a contiguous 1..{len(numbers)} sequence",
            billing_definition_id=billing_definition_id,
            numbers=numbers,
        )
    totals = {row.total_installments for row in installments}
    if totals != {len(numbers)}:
        raise InconsistentGroupError(
            f"installment totals {sorted(t for t in totals if t is not None)} disagree with group size {len(numbers)}",
            billing_definition_id=billing_definition_id,
            numbers=numbers,
        )
    return len(numbers)


def renumber_group(existing: Iterable[Installment], new_total: int) -> List[Installment]:
    """Rewrite totals and suffixes in place; dates and amounts are left alone."""
    touched = []
    for row in existing:
        row.total_installments = new_total
        row.description = render_description(row.description, row.installment_number, new_total)
        touched.append(row)
    return touched
