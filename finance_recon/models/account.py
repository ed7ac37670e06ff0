"""Account model holding reconciliation metadata."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Date, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from finance_recon.database import Base
from finance_recon.models.base import TimestampMixin, UserOwnedMixin, UUIDMixin

if TYPE_CHECKING:
    from finance_recon.models.transaction import Transaction


class Account(Base, UUIDMixin, UserOwnedMixin, TimestampMixin):
    """
    Account whose recorded transactions are reconciled against bank statements.

    Only the fields the reconciliation engine reads or writes live here; balances
    and CRUD are owned by the surrounding ledger.
    """

    __tablename__ = "accounts"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="SGD")
    last_reconciled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_reconciled_balance: Mapped[Decimal | None] = mapped_column(
        Numeric(18, 2), nullable=True
    )

    transactions: Mapped[list[Transaction]] = relationship(
        "Transaction", back_populates="account"
    )

    def __repr__(self) -> str:
        return f"<Account {self.name}>"
