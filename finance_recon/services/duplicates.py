"""Near-duplicate transaction detection.

Scans a user's transactions for clusters that likely record the same real-world
event, using the same hard filters and confidence scoring as reconciliation
matching. Detection is read-only; only user decisions (exclusions, resolutions)
are persisted.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import UUID, uuid5

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from finance_recon.config import settings
from finance_recon.logger import get_logger, log_timing
from finance_recon.models import DuplicateExclusion, Transaction, canonical_transaction_key
from finance_recon.services.confidence import ConfidenceParams, score_pair
from finance_recon.services.errors import (
    DuplicateScanCancelledError,
    NotFoundError,
    ValidationError,
)
from finance_recon.services.matching import MatchingConfig, load_matching_config

logger = get_logger(__name__)

# Group ids are derived from member ids so repeated scans agree on them
DUPLICATE_GROUP_NAMESPACE = UUID("6f1c1a52-3f2e-4d5b-9a51-2f7d0c4b8e13")

RESOLUTION_NOTE_PREFIX = "Duplicate resolution"


@dataclass(frozen=True)
class DuplicateDetectionParams:
    amount_tolerance: Decimal = Decimal("0.01")
    date_tolerance_days: int = 1
    same_account_only: bool = False
    min_confidence: Decimal = Decimal("0.50")
    include_reviewed: bool = False

    def __post_init__(self) -> None:
        if not Decimal("0") <= self.min_confidence <= Decimal("1"):
            raise ValidationError("Minimum confidence must be between 0 and 1")
        self.confidence_params()

    @classmethod
    def from_config(cls, config: MatchingConfig | None = None, **overrides: object) -> DuplicateDetectionParams:
        config = config or load_matching_config()
        values: dict[str, object] = {
            "amount_tolerance": config.duplicate_amount_tolerance,
            "date_tolerance_days": config.duplicate_date_tolerance_days,
            "same_account_only": config.duplicate_same_account_only,
            "min_confidence": config.duplicate_min_confidence,
            "include_reviewed": config.duplicate_include_reviewed,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)  # type: ignore[arg-type]

    def confidence_params(self) -> ConfidenceParams:
        return ConfidenceParams(
            amount_tolerance=self.amount_tolerance,
            date_tolerance_days=self.date_tolerance_days,
        )


@dataclass
class DuplicateMember:
    transaction: Transaction
    # Confidence relative to the group's source transaction; None for the source
    confidence: Decimal | None


@dataclass
class DuplicateGroup:
    group_id: UUID
    members: list[DuplicateMember]
    highest_confidence: Decimal
    description: str
    amount: Decimal
    start_date: date
    end_date: date

    @property
    def transaction_ids(self) -> list[UUID]:
        return [member.transaction.id for member in self.members]

    @property
    def total_amount(self) -> Decimal:
        return sum((abs(member.transaction.amount) for member in self.members), Decimal("0"))


@dataclass
class DuplicateGroupsResult:
    groups: list[DuplicateGroup] = field(default_factory=list)
    scanned_transactions: int = 0
    excluded_groups: int = 0
    processed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def total_groups(self) -> int:
        return len(self.groups)

    @property
    def total_transactions(self) -> int:
        return sum(len(group.members) for group in self.groups)


class DuplicateGroupDetector:
    """Single-pass clustering over a user's transactions."""

    def find_duplicates(
        self,
        transactions: Sequence[Transaction],
        params: DuplicateDetectionParams | None = None,
        exclusions: Iterable[DuplicateExclusion] = (),
        should_cancel: Callable[[], bool] | None = None,
    ) -> DuplicateGroupsResult:
        """Group near-duplicates; no transaction appears in more than one group.

        A candidate group whose id set exactly equals a stored exclusion is skipped,
        and its members are not offered to later groups in the same run.
        """
        params = params or DuplicateDetectionParams()
        confidence_params = params.confidence_params()
        excluded_keys = {exclusion.transaction_ids for exclusion in exclusions}

        pool = sorted(
            (txn for txn in transactions if params.include_reviewed or not txn.is_reviewed),
            key=lambda txn: (txn.txn_date, str(txn.id)),
        )
        result = DuplicateGroupsResult(scanned_transactions=len(pool))
        processed: set[UUID] = set()

        for source in pool:
            if should_cancel is not None and should_cancel():
                raise DuplicateScanCancelledError("Duplicate scan was cancelled")
            if source.id in processed:
                continue

            candidates: list[DuplicateMember] = []
            for other in pool:
                if other.id == source.id or other.id in processed:
                    continue
                if params.same_account_only and other.account_id != source.account_id:
                    continue
                score = score_pair(source, other, confidence_params)
                if score is None or score < params.min_confidence:
                    continue
                candidates.append(DuplicateMember(transaction=other, confidence=score))

            if not candidates:
                continue

            members = [DuplicateMember(transaction=source, confidence=None), *candidates]
            member_ids = [member.transaction.id for member in members]
            processed.update(member_ids)

            key = canonical_transaction_key(member_ids)
            if key in excluded_keys:
                result.excluded_groups += 1
                continue

            dates = [member.transaction.txn_date for member in members]
            result.groups.append(
                DuplicateGroup(
                    group_id=uuid5(DUPLICATE_GROUP_NAMESPACE, key),
                    members=members,
                    highest_confidence=max(member.confidence for member in candidates),
                    description=source.description,
                    amount=abs(source.amount),
                    start_date=min(dates),
                    end_date=max(dates),
                )
            )

        result.groups.sort(
            key=lambda group: (-group.highest_confidence, -group.total_amount, str(group.group_id))
        )
        return result


@dataclass
class DuplicateResolution:
    """User decision for one detected group."""

    transaction_ids_to_keep: list[UUID] = field(default_factory=list)
    transaction_ids_to_delete: list[UUID] = field(default_factory=list)
    mark_as_not_duplicate: bool = False
    notes: str | None = None
    original_confidence: Decimal | None = None


@dataclass
class ResolveDuplicatesResult:
    groups_resolved: int = 0
    transactions_deleted: int = 0
    exclusions_created: int = 0
    errors: list[str] = field(default_factory=list)


class DuplicateService:
    """Runs duplicate scans and persists the user's decisions."""

    def __init__(
        self,
        detector: DuplicateGroupDetector | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.detector = detector or DuplicateGroupDetector()
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.duplicate_scan_timeout_seconds
        )

    async def _load_owned_transactions(
        self, db: AsyncSession, user_id: UUID, transaction_ids: Iterable[UUID]
    ) -> dict[UUID, Transaction]:
        ids = set(transaction_ids)
        if not ids:
            return {}
        result = await db.execute(
            select(Transaction).where(
                Transaction.id.in_(ids),
                Transaction.user_id == user_id,
                Transaction.is_deleted.is_(False),
            )
        )
        found = {txn.id: txn for txn in result.scalars().all()}
        missing = ids - found.keys()
        if missing:
            raise NotFoundError("Transaction", ", ".join(sorted(str(txn_id) for txn_id in missing)))
        return found

    async def detect(
        self,
        db: AsyncSession,
        *,
        user_id: UUID,
        params: DuplicateDetectionParams | None = None,
    ) -> DuplicateGroupsResult:
        params = params or DuplicateDetectionParams.from_config()

        stmt = select(Transaction).where(
            Transaction.user_id == user_id,
            Transaction.is_deleted.is_(False),
        )
        if not params.include_reviewed:
            stmt = stmt.where(Transaction.is_reviewed.is_(False))
        transactions = list((await db.execute(stmt)).scalars().all())
        exclusions = await self.list_exclusions(db, user_id=user_id)

        deadline = time.monotonic() + self.timeout_seconds

        def should_cancel() -> bool:
            return time.monotonic() > deadline

        with log_timing(
            "duplicate_scan",
            logger=logger,
            user_id=str(user_id),
            transactions=len(transactions),
        ) as timing:
            # CPU-bound O(n^2) scan; keep it off the event loop
            result = await asyncio.to_thread(
                self.detector.find_duplicates,
                transactions,
                params,
                exclusions,
                should_cancel,
            )
            timing["groups"] = result.total_groups
            timing["excluded_groups"] = result.excluded_groups
        return result

    async def list_exclusions(self, db: AsyncSession, *, user_id: UUID) -> list[DuplicateExclusion]:
        result = await db.execute(
            select(DuplicateExclusion)
            .where(DuplicateExclusion.user_id == user_id)
            .order_by(DuplicateExclusion.excluded_at.desc())
        )
        return list(result.scalars().all())

    async def exclude_group(
        self,
        db: AsyncSession,
        *,
        user_id: UUID,
        transaction_ids: Sequence[UUID],
        notes: str | None = None,
        original_confidence: Decimal | None = None,
    ) -> DuplicateExclusion:
        """Remember that a group is not a duplicate. Saving the same set twice is a no-op."""
        distinct = set(transaction_ids)
        if len(distinct) < 2:
            raise ValidationError("An exclusion needs at least two distinct transactions")
        await self._load_owned_transactions(db, user_id, distinct)

        key = canonical_transaction_key(distinct)
        existing = await db.execute(
            select(DuplicateExclusion).where(
                DuplicateExclusion.user_id == user_id,
                DuplicateExclusion.transaction_ids == key,
            )
        )
        exclusion = existing.scalar_one_or_none()
        if exclusion is not None:
            return exclusion

        exclusion = DuplicateExclusion(
            user_id=user_id,
            transaction_ids=key,
            notes=notes,
            original_confidence=original_confidence,
        )
        db.add(exclusion)
        await db.flush()

        logger.info(
            "Duplicate exclusion saved",
            user_id=str(user_id),
            transactions=len(distinct),
        )
        return exclusion

    async def delete_exclusion(self, db: AsyncSession, exclusion_id: UUID, *, user_id: UUID) -> None:
        result = await db.execute(
            select(DuplicateExclusion).where(
                DuplicateExclusion.id == exclusion_id,
                DuplicateExclusion.user_id == user_id,
            )
        )
        exclusion = result.scalar_one_or_none()
        if exclusion is None:
            raise NotFoundError("Duplicate exclusion", exclusion_id)
        await db.delete(exclusion)
        await db.flush()

    async def resolve(
        self,
        db: AsyncSession,
        *,
        user_id: UUID,
        resolutions: Sequence[DuplicateResolution],
    ) -> ResolveDuplicatesResult:
        """Apply each resolution independently and report per-group failures."""
        outcome = ResolveDuplicatesResult()

        for index, resolution in enumerate(resolutions, start=1):
            try:
                if resolution.mark_as_not_duplicate:
                    await self.exclude_group(
                        db,
                        user_id=user_id,
                        transaction_ids=[
                            *resolution.transaction_ids_to_keep,
                            *resolution.transaction_ids_to_delete,
                        ],
                        notes=resolution.notes,
                        original_confidence=resolution.original_confidence,
                    )
                    outcome.exclusions_created += 1
                else:
                    outcome.transactions_deleted += await self._apply_resolution(
                        db, user_id, resolution
                    )
                outcome.groups_resolved += 1
            except (NotFoundError, ValidationError) as exc:
                logger.warning(
                    "Duplicate resolution rejected",
                    user_id=str(user_id),
                    group_index=index,
                    error=str(exc),
                )
                outcome.errors.append(f"Group {index}: {exc}")

        await db.flush()
        return outcome

    async def _apply_resolution(
        self, db: AsyncSession, user_id: UUID, resolution: DuplicateResolution
    ) -> int:
        to_delete = set(resolution.transaction_ids_to_delete)
        to_keep = set(resolution.transaction_ids_to_keep)
        if not to_delete:
            raise ValidationError("Nothing to delete")
        if to_delete & to_keep:
            raise ValidationError("A transaction cannot be both kept and deleted")

        found = await self._load_owned_transactions(db, user_id, to_delete | to_keep)
        for txn_id in to_delete:
            found[txn_id].is_deleted = True
        if resolution.notes:
            note = f"{RESOLUTION_NOTE_PREFIX}: {resolution.notes}"
            for txn_id in to_keep:
                txn = found[txn_id]
                txn.notes = f"{txn.notes}\n{note}" if txn.notes else note
        return len(to_delete)
