"""Error taxonomy for the billing engine.

Validation and group errors abort an operation before anything is written.
``SyncWarning`` and ``PartialBatchResult`` are returned to the caller rather than
raised, because the write they describe has already been committed.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Sequence, Tuple


class BillingEngineError(Exception):
    """Base class for engine failures surfaced to callers."""


class ValidationError(BillingEngineError):
    """Bad input shape or range."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class InconsistentGroupError(BillingEngineError):
    """Sibling installments do not form a contiguous 1..N sequence."""

    def __init__(
        self,
        message: str,
        *,
        billing_definition_id: int | None = None,
        numbers: Sequence[Any] = (),
    ) -> None:
        super().__init__(message)
        self.billing_definition_id = billing_definition_id
        self.numbers = list(numbers)


class NotFoundError(BillingEngineError):
    """Referenced client, billing definition or installment does not exist."""

    def __init__(self, kind: str, identifier: Any) -> None:
        super().__init__(f"{kind} {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class DeletionRefusedError(BillingEngineError):
    """A billing definition cannot be deleted while settled installments depend on it."""

    def __init__(self, reason: str, *, blocking_installment_ids: Sequence[int] = ()) -> None:
        super().__init__(reason)
        self.reason = reason
        self.blocking_installment_ids = list(blocking_installment_ids)


class SyncWarning(UserWarning):
    """Cash-flow sync failed after the status change was committed."""

    def __init__(self, installment_id: int, message: str) -> None:
        super().__init__(f"Cash-flow sync failed for installment {installment_id}: {message}")
        self.installment_id = installment_id
        self.message = message


@dataclass
class PartialBatchResult:
    """Outcome of a best-effort batch update."""

    updated: List[Any] = field(default_factory=list)
    failed: List[Tuple[Any, str]] = field(default_factory=list)

    @property
    def updated_count(self) -> int:
        return len(self.updated)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def is_partial(self) -> bool:
        """True when some rows succeeded and some failed."""
        return bool(self.updated) and bool(self.failed)

    @property
    def ok(self) -> bool:
        return not self.failed
