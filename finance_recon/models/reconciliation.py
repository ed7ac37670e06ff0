"""Reconciliation session, item and audit log models."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from finance_recon.database import Base
from finance_recon.models.base import TimestampMixin, UserOwnedMixin, UUIDMixin
from finance_recon.utils.serialization import deserialize_audit_payload, serialize_audit_payload

if TYPE_CHECKING:
    from finance_recon.models.transaction import Transaction

# Statement and ledger balances agree when they differ by at most one cent
BALANCE_TOLERANCE = Decimal("0.01")


class ReconciliationSessionStatus(str, Enum):
    """Lifecycle state of a reconciliation session."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReconciliationItemType(str, Enum):
    """Role of an item within a session."""

    MATCHED = "matched"
    UNMATCHED_BANK = "unmatched_bank"
    UNMATCHED_APP = "unmatched_app"
    ADJUSTMENT = "adjustment"


class MatchMethod(str, Enum):
    """How a matched pair was produced."""

    EXACT = "exact"
    FUZZY = "fuzzy"
    MANUAL = "manual"


class AuditAction(str, Enum):
    """State-changing actions recorded in the audit log."""

    RECONCILIATION_STARTED = "reconciliation_started"
    TRANSACTION_MATCHED = "transaction_matched"
    TRANSACTION_UNMATCHED = "transaction_unmatched"
    ADJUSTMENT_ADDED = "adjustment_added"
    BANK_STATEMENT_IMPORTED = "bank_statement_imported"
    RECONCILIATION_COMPLETED = "reconciliation_completed"
    RECONCILIATION_CANCELLED = "reconciliation_cancelled"
    MANUAL_TRANSACTION_ADDED = "manual_transaction_added"
    TRANSACTION_DELETED = "transaction_deleted"
    MATCHES_APPROVED = "matches_approved"
    RECONCILIATION_UPDATED = "reconciliation_updated"


class Reconciliation(Base, UUIDMixin, UserOwnedMixin, TimestampMixin):
    """A reconciliation session for one account and one statement period."""

    __tablename__ = "reconciliations"

    account_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    statement_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    statement_end_balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    calculated_balance: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    status: Mapped[ReconciliationSessionStatus] = mapped_column(
        SQLEnum(
            ReconciliationSessionStatus,
            name="reconciliation_session_status_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=ReconciliationSessionStatus.IN_PROGRESS,
    )
    match_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Optimistic lock: concurrent writers on the same row fail with StaleDataError
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def balance_difference(self) -> Decimal:
        # No calculated balance yet reads as zero
        return self.statement_end_balance - (self.calculated_balance or Decimal("0"))

    @property
    def is_balanced(self) -> bool:
        return abs(self.balance_difference) <= BALANCE_TOLERANCE

    @property
    def is_terminal(self) -> bool:
        return self.status != ReconciliationSessionStatus.IN_PROGRESS


class ReconciliationItem(Base, UUIDMixin, TimestampMixin):
    """One line of a session: a bank line, an internal transaction, or a matched pair."""

    __tablename__ = "reconciliation_items"

    reconciliation_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("reconciliations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    transaction_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("transactions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    item_type: Mapped[ReconciliationItemType] = mapped_column(
        SQLEnum(
            ReconciliationItemType,
            name="reconciliation_item_type_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=ReconciliationItemType.MATCHED,
    )
    match_method: Mapped[MatchMethod | None] = mapped_column(
        SQLEnum(
            MatchMethod,
            name="match_method_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=True,
    )
    match_confidence: Mapped[Decimal | None] = mapped_column(Numeric(5, 4), nullable=True)
    bank_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Serialized BankTransactionLine; immutable once imported
    bank_reference_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    adjustment_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    adjustment_description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Retired by a re-import or by merging two unmatched halves; rows are never removed
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    transaction: Mapped[Transaction | None] = relationship("Transaction")

    def get_bank_data(self) -> dict[str, Any] | None:
        return deserialize_audit_payload(self.bank_reference_data)

    def set_bank_data(self, data: dict[str, Any] | None) -> None:
        self.bank_reference_data = serialize_audit_payload(data)

    def __repr__(self) -> str:
        return f"<ReconciliationItem {self.item_type.value} {self.bank_reference}>"


class ReconciliationAuditLog(Base, UUIDMixin):
    """Append-only audit record for a reconciliation session."""

    __tablename__ = "reconciliation_audit_logs"

    reconciliation_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("reconciliations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action: Mapped[AuditAction] = mapped_column(
        SQLEnum(
            AuditAction,
            name="audit_action_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    # Strictly increasing, so entries staged in one flush keep their order
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    old_values: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_values: Mapped[str | None] = mapped_column(Text, nullable=True)

    def set_details(self, data: dict[str, Any] | None) -> None:
        self.details = serialize_audit_payload(data)

    def get_details(self) -> dict[str, Any] | None:
        return deserialize_audit_payload(self.details)

    def set_old_values(self, data: dict[str, Any] | None) -> None:
        self.old_values = serialize_audit_payload(data)

    def get_old_values(self) -> dict[str, Any] | None:
        return deserialize_audit_payload(self.old_values)

    def set_new_values(self, data: dict[str, Any] | None) -> None:
        self.new_values = serialize_audit_payload(data)

    def get_new_values(self) -> dict[str, Any] | None:
        return deserialize_audit_payload(self.new_values)
