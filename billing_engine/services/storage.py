"""Storage collaborator: loads and writes billing rows through the SQLAlchemy session."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from flask import current_app

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import BillingDefinition, Client, Installment, InstallmentStatus

_BILLING_PATCHABLE = frozenset(
    {
        "description",
        "amount",
        "due_day",
        "payment_method",
        "start_date",
        "end_date",
        "installments",
        "current_installment",
        "status",
        "email_template",
        "service",
        "disable_notifications",
    }
)


class BillingStore:
    """Thin repository over ``db.session``.

    Writes only flush; ``atomic`` decides when they become durable.
    """

    def load_client(self, client_id: int) -> Client:
        client = db.session.get(Client, client_id)
        if client is None:
            raise NotFoundError("client", client_id)
        return client

    def load_clients(self) -> List[Client]:
        return Client.query.order_by(Client.name.asc()).all()

    def load_billing_definition(self, billing_id: int) -> BillingDefinition:
        billing = db.session.get(BillingDefinition, billing_id)
        if billing is None:
            raise NotFoundError("billing definition", billing_id)
        return billing

    def load_billing_definitions(self, client_id: Optional[int] = None) -> List[BillingDefinition]:
        query = BillingDefinition.query if client_id is None else BillingDefinition.scoped_to_client(client_id)
        return query.order_by(BillingDefinition.id.asc()).all()

    def load_installment(self, installment_id: int) -> Installment:
        installment = db.session.get(Installment, installment_id)
        if installment is None:
            raise NotFoundError("installment", installment_id)
        return installment

    def load_installments(
        self,
        *,
        billing_definition_id: Optional[int] = None,
        client_id: Optional[int] = None,
        statuses: Optional[Iterable[InstallmentStatus]] = None,
        recurring: Optional[bool] = None,
    ) -> List[Installment]:
        query = Installment.query if client_id is None else Installment.scoped_to_client(client_id)
        if billing_definition_id is not None:
            query = query.filter(Installment.billing_definition_id == billing_definition_id)
        if statuses is not None:
            query = query.filter(Installment.status.in_(list(statuses)))
        if recurring is True:
            query = query.filter(Installment.billing_definition_id.is_not(None))
        elif recurring is False:
            query = query.filter(Installment.billing_definition_id.is_(None))
        return query.order_by(
            Installment.installment_number.asc(),
            Installment.due_date.asc(),
            Installment.id.asc(),
        ).all()

    def insert_billing_definition(self, billing: BillingDefinition) -> BillingDefinition:
        db.session.add(billing)
        db.session.flush()
        return billing

    def insert_installments(self, rows: Iterable[Installment]) -> List[Installment]:
        rows = list(rows)
        db.session.add_all(rows)
        db.session.flush()
        return rows

    def update_installments(self, rows: Iterable[Installment]) -> List[Installment]:
        rows = list(rows)
        db.session.add_all(rows)
        db.session.flush()
        return rows

    def save_installment(self, row: Installment) -> Installment:
        """Persist a single row on its own commit (best-effort batches)."""
        db.session.add(row)
        db.session.commit()
        return row

    def update_billing_definition(self, billing_id: int, patch: Dict[str, Any]) -> BillingDefinition:
        billing = self.load_billing_definition(billing_id)
        unknown = set(patch) - _BILLING_PATCHABLE
        if unknown:
            fields = sorted(unknown)
            raise ValidationError(f"unsupported billing fields: {fields}", field=fields[0])
        for key, value in patch.items():
            setattr(billing, key, value)
        db.session.flush()
        return billing

    def delete_billing_definition(self, billing: BillingDefinition) -> None:
        for row in self.load_installments(billing_definition_id=billing.id):
            db.session.delete(row)
        db.session.delete(billing)
        db.session.flush()

    def delete_installment(self, installment: Installment) -> None:
        db.session.delete(installment)
        db.session.flush()

    def rollback(self) -> None:
        db.session.rollback()

    @contextmanager
    def atomic(self, operation: str) -> Iterator[None]:
        """Commit everything written inside the block, or nothing."""
        try:
            yield
            db.session.commit()
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Rolled back %s", operation)
            raise


billing_store = BillingStore()
