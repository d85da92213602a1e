"""Read-side projection of raw installments into "virtual billing" rows.

Nothing here is persisted: every call regroups the flat installment table for
one of three scopes (open/recurring, closed/one-time, all) in one of two
granularities (grouped by service or expanded per installment), then applies
the status, free-text and delivery filters.
"""
from __future__ import annotations

import enum
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..errors import ValidationError
from ..models import BillingDefinition, BillingStatus, Client, Installment, InstallmentStatus
from .groups import group_key, sort_group, strip_installment_suffix

PENDING = InstallmentStatus.PENDING.value
CANCELLED = InstallmentStatus.CANCELLED.value
PAID = InstallmentStatus.PAID.value
_SETTLED = {PAID, CANCELLED}


class Scope(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    ALL = "all"


class ViewMode(str, enum.Enum):
    GROUPED = "grouped"
    EXPANDED = "expanded"


GROUPED_STATUS_ALIASES = {
    "active": PENDING,
    "inactive": CANCELLED,
    PENDING: PENDING,
    CANCELLED: CANCELLED,
}


def status_vocabulary(mode) -> Tuple[str, ...]:
    """Status filter options offered for a display mode."""
    if _coerce(ViewMode, mode, "mode") == ViewMode.GROUPED:
        return ("all", "active", "inactive")
    return ("all",) + tuple(status.value for status in InstallmentStatus)


@dataclass(frozen=True)
class ViewFilters:
    statuses: frozenset = field(default_factory=frozenset)
    search: str = ""
    delivery_only: bool = False

    @classmethod
    def build(cls, statuses: Optional[Iterable[str]] = None, search: Optional[str] = None, delivery_only: bool = False):
        values = frozenset(str(s).strip().lower() for s in (statuses or ()) if s is not None and str(s).strip())
        return cls(statuses=values, search=(search or "").strip(), delivery_only=bool(delivery_only))

    def statuses_for(self, mode: ViewMode) -> frozenset:
        """Selected statuses in the mode's vocabulary; empty means no status filter."""
        if not self.statuses or "all" in self.statuses:
            return frozenset()
        if mode == ViewMode.GROUPED:
            return frozenset(GROUPED_STATUS_ALIASES.get(s, s) for s in self.statuses)
        return self.statuses


@dataclass(frozen=True)
class VirtualBillingView:
    key: str
    scope: Scope
    mode: ViewMode
    client_id: Optional[int]
    client_name: Optional[str]
    description: str
    amount: Decimal
    current_installment: int
    installments: int
    status: str
    member_statuses: Tuple[str, ...] = ()
    installment_ids: Tuple[Optional[int], ...] = ()
    billing_definition_id: Optional[int] = None
    due_date: Optional[date] = None
    payment_date: Optional[date] = None
    installment_number: Optional[int] = None
    total_installments: Optional[int] = None
    delivery_based: bool = False
    sort_date: Optional[date] = None

    @property
    def effective_status(self) -> str:
        return "inactive" if self.status == CANCELLED else "active"


def _coerce(enum_cls, value, name):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"unknown {name}: {value!r}", field=name) from exc


def _status(row: Installment) -> str:
    status = row.status
    if status is None:
        return PENDING
    return status.value if isinstance(status, enum.Enum) else str(status)


def _money(value) -> Decimal:
    return Decimal(value) if value is not None else Decimal("0")


def _client_names(clients) -> Dict[int, str]:
    if not clients:
        return {}
    if isinstance(clients, Mapping):
        return {cid: (c.name if isinstance(c, Client) else str(c)) for cid, c in clients.items()}
    return {c.id: c.name for c in clients if c is not None}


def _client_name(row: Installment, names: Dict[int, str]) -> Optional[str]:
    if row.client_id in names:
        return names[row.client_id]
    client = getattr(row, "client", None)
    return client.name if client is not None else None


def _sort_date(members: Sequence[Installment]) -> Optional[date]:
    """Earliest unsettled due date, else earliest due date, else creation date."""
    open_dates = [m.due_date for m in members if m.due_date is not None and _status(m) not in _SETTLED]
    if open_dates:
        return min(open_dates)
    dates = [m.due_date for m in members if m.due_date is not None]
    if dates:
        return min(dates)
    created = [m.created_at.date() for m in members if getattr(m, "created_at", None) is not None]
    return min(created) if created else None


def _latest(values) -> Optional[date]:
    values = [v for v in values if v is not None]
    return max(values) if values else None


def _expanded_view(row: Installment, scope: Scope, names: Dict[int, str]) -> VirtualBillingView:
    status = _status(row)
    return VirtualBillingView(
        key=f"installment:{row.id}",
        scope=scope,
        mode=ViewMode.EXPANDED,
        client_id=row.client_id,
        client_name=_client_name(row, names),
        description=row.description,
        amount=_money(row.amount),
        current_installment=row.installment_number or 1,
        installments=row.total_installments or 1,
        status=status,
        member_statuses=(status,),
        installment_ids=(row.id,),
        billing_definition_id=row.billing_definition_id,
        due_date=row.due_date,
        payment_date=row.payment_date,
        installment_number=row.installment_number,
        total_installments=row.total_installments,
        delivery_based=bool(row.delivery_based),
        sort_date=_sort_date([row]),
    )


def _definition_id(row: Installment) -> Optional[int]:
    if row.billing_definition_id is not None:
        return row.billing_definition_id
    billing = getattr(row, "billing_definition", None)
    return billing.id if billing is not None else None


def _open_group_key(row: Installment) -> Tuple:
    """One group per billing definition; rows without one fall back to their label."""
    definition_id = _definition_id(row)
    if definition_id is not None:
        return ("billing", definition_id)
    return ("label",) + group_key(row)


def _open_groups(rows: Iterable[Installment]) -> "OrderedDict[Tuple, List[Installment]]":
    groups: "OrderedDict[Tuple, List[Installment]]" = OrderedDict()
    for row in rows:
        groups.setdefault(_open_group_key(row), []).append(row)
    return groups


def _open_group_view(key: Tuple, members: List[Installment], names: Dict[int, str]) -> VirtualBillingView:
    members = sort_group(members)
    statuses = tuple(_status(m) for m in members)
    first = members[0]
    definition_id = key[1] if key[0] == "billing" else None
    view_key = f"open:billing:{definition_id}" if definition_id is not None else f"open:{key[1]}:{key[2]}"
    return VirtualBillingView(
        key=view_key,
        scope=Scope.OPEN,
        mode=ViewMode.GROUPED,
        client_id=first.client_id,
        client_name=_client_name(first, names),
        description=strip_installment_suffix(first.description),
        amount=_money(first.amount),
        current_installment=max((m.installment_number or 0) for m in members),
        installments=max((m.total_installments or 0) for m in members) or len(members),
        # any cancelled member makes the whole recurring group inactive
        status=CANCELLED if CANCELLED in statuses else PENDING,
        member_statuses=statuses,
        installment_ids=tuple(m.id for m in members),
        billing_definition_id=definition_id,
        due_date=_sort_date(members),
        payment_date=_latest(m.payment_date for m in members),
        delivery_based=any(m.delivery_based for m in members),
        sort_date=_sort_date(members),
    )


def _header_view(billing: BillingDefinition, names: Dict[int, str]) -> VirtualBillingView:
    client = getattr(billing, "client", None)
    status = CANCELLED if billing.status == BillingStatus.CANCELLED else PENDING
    return VirtualBillingView(
        key=f"open:billing:{billing.id}",
        scope=Scope.OPEN,
        mode=ViewMode.GROUPED,
        client_id=billing.client_id,
        client_name=names.get(billing.client_id) or (client.name if client is not None else None),
        description=strip_installment_suffix(billing.description),
        amount=_money(billing.amount),
        current_installment=billing.current_installment or 0,
        installments=billing.installments or 0,
        status=status,
        billing_definition_id=billing.id,
        sort_date=billing.start_date,
    )


def _closed_group_view(client_id, members: List[Installment], names: Dict[int, str]) -> VirtualBillingView:
    members = sorted(members, key=lambda m: (m.due_date is None, m.due_date or date.max, m.id or 0))
    statuses = tuple(_status(m) for m in members)
    descriptions = list(OrderedDict.fromkeys(strip_installment_suffix(m.description) for m in members))
    return VirtualBillingView(
        key=f"closed:{client_id}",
        scope=Scope.CLOSED,
        mode=ViewMode.GROUPED,
        client_id=client_id,
        client_name=_client_name(members[0], names),
        description=", ".join(descriptions),
        amount=sum((_money(m.amount) for m in members), Decimal("0")),
        current_installment=sum(1 for s in statuses if s == PAID),
        installments=len(members),
        # one-time payments only go inactive once every one of them is cancelled
        status=CANCELLED if all(s == CANCELLED for s in statuses) else PENDING,
        member_statuses=statuses,
        installment_ids=tuple(m.id for m in members),
        due_date=_sort_date(members),
        payment_date=_latest(m.payment_date for m in members),
        delivery_based=any(m.delivery_based for m in members),
        sort_date=_sort_date(members),
    )


def _open_grouped(recurring, billings, names) -> List[VirtualBillingView]:
    groups = _open_groups(recurring)
    views = [_open_group_view(key, members, names) for key, members in groups.items()]
    covered_ids = {v.billing_definition_id for v in views if v.billing_definition_id is not None}
    for billing in billings:
        if billing.id not in covered_ids:
            views.append(_header_view(billing, names))
    return views


def _matches(view: VirtualBillingView, filters: ViewFilters, mode: ViewMode) -> bool:
    wanted = filters.statuses_for(mode)
    if wanted:
        if mode == ViewMode.GROUPED:
            if view.status not in wanted:
                return False
        elif not any(status in wanted for status in view.member_statuses):
            return False
    if filters.search:
        haystack = f"{view.client_name or ''} {view.description or ''}".lower()
        if filters.search.lower() not in haystack:
            return False
    if filters.delivery_only and not view.delivery_based:
        return False
    return True


def _sort_key(view: VirtualBillingView):
    return (view.sort_date is None, view.sort_date or date.max, (view.client_name or "").lower(), view.key)


def project_views(
    installments: Optional[Iterable[Installment]],
    billing_definitions: Optional[Iterable[BillingDefinition]],
    scope,
    mode,
    filters: Optional[ViewFilters] = None,
    clients=None,
) -> List[VirtualBillingView]:
    """Build the virtual billing rows for ``scope`` in ``mode``.

    Open scope covers rows produced by a billing definition; closed scope covers
    one-time rows of clients that have no active recurring group. ``clients``
    may be a list of ``Client`` or an ``{id: name}`` mapping.
    """
    scope = _coerce(Scope, scope, "scope")
    mode = _coerce(ViewMode, mode, "mode")
    filters = filters or ViewFilters()
    rows = [row for row in (installments or []) if row is not None]
    billings = [b for b in (billing_definitions or []) if b is not None]
    names = _client_names(clients)

    recurring = [row for row in rows if row.is_recurring]
    one_time = [row for row in rows if not row.is_recurring]

    open_grouped = _open_grouped(recurring, billings, names)
    active_open_clients = {v.client_id for v in open_grouped if v.status != CANCELLED}
    closed_rows = [row for row in one_time if row.client_id not in active_open_clients]

    views: List[VirtualBillingView] = []
    if scope in (Scope.OPEN, Scope.ALL):
        if mode == ViewMode.GROUPED:
            views.extend(open_grouped)
        else:
            views.extend(_expanded_view(row, Scope.OPEN, names) for row in recurring)
    if scope in (Scope.CLOSED, Scope.ALL):
        if mode == ViewMode.GROUPED:
            by_client: "OrderedDict[int, List[Installment]]" = OrderedDict()
            for row in closed_rows:
                by_client.setdefault(row.client_id, []).append(row)
            views.extend(_closed_group_view(cid, members, names) for cid, members in by_client.items())
        else:
            views.extend(_expanded_view(row, Scope.CLOSED, names) for row in closed_rows)

    views = [view for view in views if _matches(view, filters, mode)]
    views.sort(key=_sort_key)
    return views
