"""Shared model mixins for client ownership and auditing."""
import enum
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from ..extensions import db


def enum_column(enum_cls: type[enum.Enum], name: str):
    """Store enum values (not member names) as validated strings."""
    return db.Enum(
        enum_cls,
        native_enum=False,
        validate_strings=True,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


class TimestampMixin:
    """Adds immutable creation and managed update timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        db.DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        db.DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )


class ClientOwnedMixin:
    """Attaches every billing record to the client being charged."""

    @declared_attr.directive
    def client_id(cls) -> Mapped[int]:  # noqa: D401 - SQLAlchemy pattern
        return mapped_column(
            db.Integer,
            db.ForeignKey("clients.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        )

    @classmethod
    def scoped_to_client(cls, client_id: int):
        """Restrict queries to a single client's records."""
        return cls.query.filter_by(client_id=client_id)
