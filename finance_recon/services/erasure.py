"""User data erasure for reconciliation tables.

Bulk deletes keyed by user id, run by the account-deletion batch job. This is the
only code path allowed to delete audit log rows.
"""

from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from finance_recon.logger import get_logger
from finance_recon.models import (
    DuplicateExclusion,
    Reconciliation,
    ReconciliationAuditLog,
    ReconciliationItem,
)

logger = get_logger(__name__)


async def erase_user_reconciliation_data(db: AsyncSession, user_id: UUID) -> dict[str, int]:
    """Delete a user's sessions, items, audit entries and exclusions.

    Children are removed before parents so the deletes also work where the
    database does not enforce ON DELETE CASCADE.
    """
    session_ids = select(Reconciliation.id).where(Reconciliation.user_id == user_id)
    # Identity-map sync is skipped; callers must not reuse erased objects
    options = {"synchronize_session": False}

    audit_result = await db.execute(
        delete(ReconciliationAuditLog).where(ReconciliationAuditLog.reconciliation_id.in_(session_ids)),
        execution_options=options,
    )
    item_result = await db.execute(
        delete(ReconciliationItem).where(ReconciliationItem.reconciliation_id.in_(session_ids)),
        execution_options=options,
    )
    session_result = await db.execute(
        delete(Reconciliation).where(Reconciliation.user_id == user_id),
        execution_options=options,
    )
    exclusion_result = await db.execute(
        delete(DuplicateExclusion).where(DuplicateExclusion.user_id == user_id),
        execution_options=options,
    )

    counts = {
        "audit_logs": audit_result.rowcount or 0,
        "items": item_result.rowcount or 0,
        "reconciliations": session_result.rowcount or 0,
        "duplicate_exclusions": exclusion_result.rowcount or 0,
    }
    logger.info("Reconciliation data erased", user_id=str(user_id), **counts)
    return counts
