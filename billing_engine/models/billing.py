"""Recurring billing agreements and the installments they produce."""
from __future__ import annotations

import enum
import re
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, Index, Numeric, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..extensions import db
from .base import ClientOwnedMixin, TimestampMixin, enum_column

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .client import Client


INSTALLMENT_SUFFIX_RE = re.compile(r"\s*\(\d+/\d+\)\s*$")


class PaymentMethod(str, enum.Enum):
    """How the client settles a charge."""

    PIX = "pix"
    BOLETO = "boleto"
    CREDIT_CARD = "credit_card"


class BillingStatus(str, enum.Enum):
    """Stored status of a billing definition.

    Only PENDING ("active") and CANCELLED ("inactive") carry meaning for display.
    """

    PENDING = "pending"
    BILLED = "billed"
    AWAITING_INVOICE = "awaiting_invoice"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class InstallmentStatus(str, enum.Enum):
    """Lifecycle states for an individual installment."""

    PENDING = "pending"
    BILLED = "billed"
    AWAITING_INVOICE = "awaiting_invoice"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    PARTIALLY_PAID = "partially_paid"


SETTLED_STATUSES = frozenset({InstallmentStatus.PAID, InstallmentStatus.CANCELLED})


class BillingDefinition(ClientOwnedMixin, TimestampMixin, db.Model):
    """A charging agreement: amount, due day and installment count."""

    __tablename__ = "billing_definitions"
    __table_args__ = (
        CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_billing_due_day"),
        CheckConstraint("installments >= 1", name="ck_billing_installments_min"),
        CheckConstraint(
            "installments >= current_installment AND current_installment >= 0",
            name="ck_billing_installment_progress",
        ),
        Index("ix_billing_definitions_status", "client_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    description: Mapped[str] = mapped_column(db.String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, server_default=text("0"))
    due_day: Mapped[int] = mapped_column(db.Integer, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        enum_column(PaymentMethod, "billing_payment_method"),
        nullable=False,
        default=PaymentMethod.PIX,
        server_default=text("'pix'"),
    )
    start_date: Mapped[date] = mapped_column(db.Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    installments: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1, server_default=text("1"))
    current_installment: Mapped[int] = mapped_column(
        db.Integer, nullable=False, default=0, server_default=text("0")
    )
    status: Mapped[BillingStatus] = mapped_column(
        enum_column(BillingStatus, "billing_status"),
        nullable=False,
        default=BillingStatus.PENDING,
        server_default=text("'pending'"),
    )
    email_template: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    service: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    disable_notifications: Mapped[bool] = mapped_column(
        db.Boolean, nullable=False, default=False, server_default=text("0")
    )

    client: Mapped["Client"] = relationship("Client", back_populates="billing_definitions")
    schedule: Mapped[list["Installment"]] = relationship(
        "Installment",
        back_populates="billing_definition",
        order_by="Installment.installment_number",
        passive_deletes=True,
    )

    @property
    def is_active(self) -> bool:
        return self.status != BillingStatus.CANCELLED

    @property
    def effective_status(self) -> str:
        """Two-value display status: "active" or "inactive"."""
        return "active" if self.is_active else "inactive"

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<BillingDefinition {self.id} {self.description} x{self.installments}>"


class Installment(ClientOwnedMixin, TimestampMixin, db.Model):
    """One concrete, dated, trackable charge."""

    __tablename__ = "installments"
    __table_args__ = (
        CheckConstraint(
            "status <> 'paid' OR payment_date IS NOT NULL OR delivery_based",
            name="ck_installment_paid_has_date",
        ),
        Index("ix_installments_status", "client_id", "status"),
        Index("ix_installments_due", "due_date"),
        Index("ix_installments_group", "billing_definition_id", "installment_number"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    billing_definition_id: Mapped[int | None] = mapped_column(
        db.Integer,
        db.ForeignKey("billing_definitions.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    description: Mapped[str] = mapped_column(db.String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, server_default=text("0"))
    due_date: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    payment_date: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        enum_column(PaymentMethod, "installment_payment_method"),
        nullable=False,
        default=PaymentMethod.PIX,
        server_default=text("'pix'"),
    )
    status: Mapped[InstallmentStatus] = mapped_column(
        enum_column(InstallmentStatus, "installment_status"),
        nullable=False,
        default=InstallmentStatus.PENDING,
        server_default=text("'pending'"),
    )
    installment_number: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    total_installments: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    delivery_based: Mapped[bool] = mapped_column(
        db.Boolean, nullable=False, default=False, server_default=text("0")
    )
    paid_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    billing_definition: Mapped[BillingDefinition | None] = relationship(
        "BillingDefinition", back_populates="schedule"
    )
    client: Mapped["Client"] = relationship("Client")

    @property
    def is_settled(self) -> bool:
        """Paid and cancelled rows are immutable."""
        return self.status in SETTLED_STATUSES

    @property
    def is_recurring(self) -> bool:
        return self.billing_definition_id is not None or self.billing_definition is not None

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Installment {self.id} {self.description} {self.status.value if self.status else None}>"
