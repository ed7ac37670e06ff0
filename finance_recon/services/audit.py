"""Append-only audit trail for reconciliation sessions."""

import threading
import time
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from finance_recon.logger import get_logger
from finance_recon.models import AuditAction, ReconciliationAuditLog

logger = get_logger(__name__)

_sequence_lock = threading.Lock()
_last_sequence = 0


def next_audit_sequence() -> int:
    """Nanosecond clock reading, bumped past the previous value when the clock repeats."""
    global _last_sequence
    with _sequence_lock:
        _last_sequence = max(time.time_ns(), _last_sequence + 1)
        return _last_sequence


def append_audit_entry(
    db: AsyncSession,
    *,
    reconciliation_id: UUID,
    user_id: UUID,
    action: AuditAction,
    details: dict[str, Any] | None = None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
) -> ReconciliationAuditLog:
    """Stage an audit entry in the caller's unit of work.

    The timestamp and sequence are taken now, not at flush, so entries staged
    together list back in the order they were staged.
    """
    entry = ReconciliationAuditLog(
        reconciliation_id=reconciliation_id,
        user_id=user_id,
        action=action,
        timestamp=datetime.now(UTC),
        sequence=next_audit_sequence(),
    )
    entry.set_details(details)
    entry.set_old_values(old_values)
    entry.set_new_values(new_values)
    db.add(entry)

    logger.debug(
        "Audit entry staged",
        reconciliation_id=str(reconciliation_id),
        action=action.value,
        sequence=entry.sequence,
    )
    return entry


async def list_audit_entries(
    db: AsyncSession, reconciliation_id: UUID
) -> list[ReconciliationAuditLog]:
    """Return entries for a session, oldest first."""
    result = await db.execute(
        select(ReconciliationAuditLog)
        .where(ReconciliationAuditLog.reconciliation_id == reconciliation_id)
        .order_by(ReconciliationAuditLog.sequence, ReconciliationAuditLog.id)
    )
    return list(result.scalars().all())
