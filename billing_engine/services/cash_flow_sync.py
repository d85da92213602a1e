"""Cash-flow sync adapters notified when an installment becomes paid."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import CashFlowEntry, CashFlowStatus, CashFlowType, InstallmentStatus


@dataclass(frozen=True)
class SyncPayload:
    description: str
    amount: Decimal
    payment_date: Optional[date]  # None for delivery-based settlements
    client_id: int


@dataclass(frozen=True)
class SyncResult:
    success: bool
    error: Optional[str] = None


class CashFlowSyncAdapter(Protocol):
    def sync(
        self,
        installment_id: int,
        old_status: Optional[str],
        new_status: str,
        payload: SyncPayload,
    ) -> SyncResult:
        ...


def _is_new_payment(old_status: Optional[str], new_status: str) -> bool:
    return new_status == InstallmentStatus.PAID.value and old_status != InstallmentStatus.PAID.value


class LedgerCashFlowSync:
    """Writes one income entry per paid installment into ``cash_flow_entries``."""

    category = "payment"

    def sync(
        self,
        installment_id: int,
        old_status: Optional[str],
        new_status: str,
        payload: SyncPayload,
    ) -> SyncResult:
        if not _is_new_payment(old_status, new_status):
            return SyncResult(success=True)

        existing = CashFlowEntry.query.filter_by(installment_id=installment_id).first()
        if existing:
            current_app.logger.info("Cash-flow entry already exists for installment %s", installment_id)
            return SyncResult(success=True)

        entry = CashFlowEntry(
            installment_id=installment_id,
            client_id=payload.client_id,
            entry_type=CashFlowType.INCOME,
            description=payload.description,
            amount=payload.amount,
            entry_date=payload.payment_date,
            category=self.category,
            status=CashFlowStatus.PENDING,
        )
        try:
            db.session.add(entry)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.error("Error creating cash-flow entry for installment %s: %s", installment_id, exc)
            return SyncResult(success=False, error=str(exc))

        current_app.logger.info("Created cash-flow entry %s for installment %s", entry.id, installment_id)
        return SyncResult(success=True)


class NullCashFlowSync:
    """Accepts every notification without recording anything."""

    def sync(self, installment_id, old_status, new_status, payload) -> SyncResult:
        return SyncResult(success=True)


def get_cash_flow_adapter() -> CashFlowSyncAdapter:
    """Adapter selected by ``CASH_FLOW_SYNC_ENABLED``; an app may pin one in ``extensions``."""
    pinned = current_app.extensions.get("cash_flow_sync")
    if pinned is not None:
        return pinned
    if current_app.config.get("CASH_FLOW_SYNC_ENABLED", True):
        return LedgerCashFlowSync()
    return NullCashFlowSync()
