"""Cash-flow ledger entries created when an installment is settled."""
from __future__ import annotations

import enum
from datetime import date
from decimal import Decimal

from sqlalchemy import Index, Numeric, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from ..extensions import db
from .base import TimestampMixin, enum_column


class CashFlowType(str, enum.Enum):
    INCOME = "income"
    EXPENSE = "expense"


class CashFlowStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class CashFlowEntry(TimestampMixin, db.Model):
    """Income line mirrored from a paid installment."""

    __tablename__ = "cash_flow_entries"
    __table_args__ = (
        UniqueConstraint("installment_id", name="uq_cash_flow_installment"),
        Index("ix_cash_flow_date", "entry_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    installment_id: Mapped[int | None] = mapped_column(
        db.Integer,
        db.ForeignKey("installments.id", ondelete="SET NULL"),
        nullable=True,
    )
    client_id: Mapped[int | None] = mapped_column(
        db.Integer,
        db.ForeignKey("clients.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    entry_type: Mapped[CashFlowType] = mapped_column(
        enum_column(CashFlowType, "cash_flow_type"),
        nullable=False,
        default=CashFlowType.INCOME,
        server_default=text("'income'"),
    )
    description: Mapped[str] = mapped_column(db.String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    # None when the installment was settled on delivery
    entry_date: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    category: Mapped[str] = mapped_column(db.String(64), nullable=False, server_default=text("'payment'"))
    status: Mapped[CashFlowStatus] = mapped_column(
        enum_column(CashFlowStatus, "cash_flow_status"),
        nullable=False,
        default=CashFlowStatus.PENDING,
        server_default=text("'pending'"),
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<CashFlowEntry {self.id} installment={self.installment_id} {self.amount}>"
