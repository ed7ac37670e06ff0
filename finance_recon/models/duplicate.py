"""Duplicate-detection exclusion model."""

from collections.abc import Iterable
from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import DateTime, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from finance_recon.database import Base
from finance_recon.models.base import UserOwnedMixin, UUIDMixin


def canonical_transaction_key(transaction_ids: Iterable[UUID | str]) -> str:
    """Order-independent key for a set of transaction ids."""
    return ",".join(sorted({str(txn_id) for txn_id in transaction_ids}))


class DuplicateExclusion(Base, UUIDMixin, UserOwnedMixin):
    """A group of transactions the user dismissed as not being duplicates."""

    __tablename__ = "duplicate_exclusions"
    __table_args__ = (
        UniqueConstraint("user_id", "transaction_ids", name="uq_duplicate_exclusions_user_ids"),
    )

    transaction_ids: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    original_confidence: Mapped[Decimal | None] = mapped_column(Numeric(5, 4), nullable=True)
    excluded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
