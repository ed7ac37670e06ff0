"""SQLAlchemy models package."""

from finance_recon.models.account import Account
from finance_recon.models.duplicate import DuplicateExclusion, canonical_transaction_key
from finance_recon.models.reconciliation import (
    BALANCE_TOLERANCE,
    AuditAction,
    MatchMethod,
    Reconciliation,
    ReconciliationAuditLog,
    ReconciliationItem,
    ReconciliationItemType,
    ReconciliationSessionStatus,
)
from finance_recon.models.transaction import Transaction, TransactionStatus

__all__ = [
    "BALANCE_TOLERANCE",
    "Account",
    "AuditAction",
    "DuplicateExclusion",
    "MatchMethod",
    "Reconciliation",
    "ReconciliationAuditLog",
    "ReconciliationItem",
    "ReconciliationItemType",
    "ReconciliationSessionStatus",
    "Transaction",
    "TransactionStatus",
    "canonical_transaction_key",
]
