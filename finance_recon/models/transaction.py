"""Internal transaction model."""

from __future__ import annotations

import enum
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, Date, Enum, ForeignKey, Index, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from finance_recon.database import Base
from finance_recon.models.base import TimestampMixin, UserOwnedMixin, UUIDMixin

if TYPE_CHECKING:
    from finance_recon.models.account import Account


class TransactionStatus(str, enum.Enum):
    """Clearing status of an internally recorded transaction."""

    UNRECONCILED = "unreconciled"
    CLEARED = "cleared"
    RECONCILED = "reconciled"


class Transaction(Base, UUIDMixin, UserOwnedMixin, TimestampMixin):
    """A transaction already recorded by the system before reconciliation."""

    __tablename__ = "transactions"
    __table_args__ = (Index("ix_transactions_account_date", "account_id", "txn_date"),)

    account_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    txn_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(
            TransactionStatus,
            name="transaction_status_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=TransactionStatus.UNRECONCILED,
    )
    # Provider-assigned id when the transaction came from a bank feed
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    account: Mapped[Account] = relationship("Account", back_populates="transactions")

    def __repr__(self) -> str:
        return f"<Transaction {self.txn_date} {self.amount} {self.status.value}>"
