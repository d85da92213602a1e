"""Database models package for billings, installments and cash flow."""
from .billing import (
    BillingDefinition,
    BillingStatus,
    Installment,
    InstallmentStatus,
    PaymentMethod,
    SETTLED_STATUSES,
)
from .cash_flow import CashFlowEntry, CashFlowStatus, CashFlowType
from .client import Client

__all__ = [
    "Client",
    "BillingDefinition",
    "BillingStatus",
    "Installment",
    "InstallmentStatus",
    "PaymentMethod",
    "SETTLED_STATUSES",
    "CashFlowEntry",
    "CashFlowStatus",
    "CashFlowType",
]
