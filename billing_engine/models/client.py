"""Client model: the party being charged by billings and payments."""
from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..extensions import db
from .base import TimestampMixin

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .billing import BillingDefinition


class Client(TimestampMixin, db.Model):
    """A customer of the back office."""

    __tablename__ = "clients"
    __table_args__ = (Index("ix_clients_name", "name"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    responsible_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)

    billing_definitions: Mapped[list["BillingDefinition"]] = relationship(
        "BillingDefinition",
        back_populates="client",
        cascade="save-update, merge",
        passive_deletes=True,
    )

    def __repr__(self) -> str:  # pragma: no cover - repr helper
        return f"<Client {self.id} {self.name}>"
