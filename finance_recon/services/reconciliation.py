"""Reconciliation session lifecycle.

A session moves from ``in_progress`` to either ``completed`` (via finalize) or
``cancelled``; both are terminal. Every state-changing call stages an audit entry
in the same unit of work as its other side effects, so the caller's commit either
persists all of them or none.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from finance_recon.logger import async_log_timing, get_logger
from finance_recon.models import (
    Account,
    AuditAction,
    MatchMethod,
    Reconciliation,
    ReconciliationAuditLog,
    ReconciliationItem,
    ReconciliationItemType,
    ReconciliationSessionStatus,
    Transaction,
    TransactionStatus,
)
from finance_recon.services.audit import append_audit_entry, list_audit_entries
from finance_recon.services.errors import (
    AuthorizationError,
    BusinessRuleViolationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from finance_recon.services.matching import (
    EXACT_CONFIDENCE,
    PERCENT,
    BankTransactionLine,
    MatchingConfig,
    MatchingParams,
    MatchingResult,
    ReconciliationMatcher,
    load_matching_config,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReconciliationStatistics:
    """Counts and balance derived from a session's active items."""

    total_items: int
    matched_items: int
    unmatched_bank_items: int
    unmatched_app_items: int
    adjustment_items: int
    calculated_balance: Decimal

    @property
    def unmatched_items(self) -> int:
        return self.unmatched_bank_items + self.unmatched_app_items

    @property
    def unmatched_rate(self) -> Decimal:
        if self.total_items == 0:
            return Decimal("0")
        return Decimal(self.unmatched_items) / Decimal(self.total_items)

    @property
    def match_percentage(self) -> Decimal:
        if self.total_items == 0:
            return Decimal("100.00")
        return (Decimal(self.matched_items) / Decimal(self.total_items) * 100).quantize(PERCENT)


@dataclass
class ReconciliationDetails:
    reconciliation: Reconciliation
    items: list[ReconciliationItem]
    statistics: ReconciliationStatistics


@dataclass
class StatementImportResult:
    matching: MatchingResult
    items: list[ReconciliationItem]
    superseded_items: int


@dataclass
class ApprovalResult:
    approved: list[ReconciliationItem]
    enriched_transactions: int
    skipped_item_ids: list[UUID]


@dataclass
class FinalizeResult:
    reconciliation: Reconciliation
    statistics: ReconciliationStatistics
    transactions_marked_reconciled: int


def calculate_statistics(items: Sequence[ReconciliationItem]) -> ReconciliationStatistics:
    """Derive counts and the calculated balance from active items."""
    active = [item for item in items if not item.is_deleted]
    by_type = {item_type: 0 for item_type in ReconciliationItemType}
    balance = Decimal("0")

    for item in active:
        by_type[item.item_type] += 1
        if item.item_type == ReconciliationItemType.MATCHED and item.transaction is not None:
            balance += item.transaction.amount
        elif item.item_type == ReconciliationItemType.ADJUSTMENT and item.adjustment_amount is not None:
            balance += item.adjustment_amount

    return ReconciliationStatistics(
        total_items=len(active),
        matched_items=by_type[ReconciliationItemType.MATCHED],
        unmatched_bank_items=by_type[ReconciliationItemType.UNMATCHED_BANK],
        unmatched_app_items=by_type[ReconciliationItemType.UNMATCHED_APP],
        adjustment_items=by_type[ReconciliationItemType.ADJUSTMENT],
        calculated_balance=balance,
    )


def _session_snapshot(reconciliation: Reconciliation) -> dict[str, Any]:
    return {
        "status": reconciliation.status,
        "statement_end_date": reconciliation.statement_end_date,
        "statement_end_balance": reconciliation.statement_end_balance,
        "calculated_balance": reconciliation.calculated_balance,
        "match_percentage": reconciliation.match_percentage,
    }


def _assign_references(
    bank_lines: Sequence[BankTransactionLine], account_id: UUID
) -> list[BankTransactionLine]:
    """Fill missing references with the row number and tag lines with the account."""
    prepared: list[BankTransactionLine] = []
    seen: set[str] = set()
    for index, line in enumerate(bank_lines, start=1):
        reference = line.reference or f"row-{index}"
        if reference in seen:
            raise ValidationError(f"Duplicate bank line reference: {reference}")
        seen.add(reference)
        prepared.append(replace(line, reference=reference, account_id=account_id))
    return prepared


class ReconciliationService:
    """Drives reconciliation sessions through their lifecycle."""

    def __init__(
        self,
        matcher: ReconciliationMatcher | None = None,
        config: MatchingConfig | None = None,
    ) -> None:
        self.config = config or load_matching_config()
        self.matcher = matcher or ReconciliationMatcher(MatchingParams.from_config(self.config))

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def _get_account(self, db: AsyncSession, account_id: UUID, user_id: UUID) -> Account:
        result = await db.execute(
            select(Account).where(Account.id == account_id, Account.user_id == user_id)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise NotFoundError("Account", account_id)
        return account

    async def get_reconciliation(
        self,
        db: AsyncSession,
        reconciliation_id: UUID,
        *,
        user_id: UUID,
        for_update: bool = False,
    ) -> Reconciliation:
        """Fetch a session owned by the user; other users' sessions read as missing."""
        stmt = select(Reconciliation).where(
            Reconciliation.id == reconciliation_id,
            Reconciliation.user_id == user_id,
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(stmt)
        reconciliation = result.scalar_one_or_none()
        if reconciliation is None:
            raise NotFoundError("Reconciliation", reconciliation_id)
        return reconciliation

    async def _get_in_progress(
        self, db: AsyncSession, reconciliation_id: UUID, user_id: UUID
    ) -> Reconciliation:
        reconciliation = await self.get_reconciliation(
            db, reconciliation_id, user_id=user_id, for_update=True
        )
        if reconciliation.status == ReconciliationSessionStatus.COMPLETED:
            raise InvalidStateError("Reconciliation is already completed")
        if reconciliation.status == ReconciliationSessionStatus.CANCELLED:
            raise InvalidStateError("Reconciliation has been cancelled")
        return reconciliation

    async def _load_items(
        self, db: AsyncSession, reconciliation_id: UUID
    ) -> list[ReconciliationItem]:
        result = await db.execute(
            select(ReconciliationItem)
            .options(selectinload(ReconciliationItem.transaction))
            .where(
                ReconciliationItem.reconciliation_id == reconciliation_id,
                ReconciliationItem.is_deleted.is_(False),
            )
            .order_by(ReconciliationItem.created_at, ReconciliationItem.id)
        )
        return list(result.scalars().all())

    def _find_item(self, items: Sequence[ReconciliationItem], item_id: UUID) -> ReconciliationItem:
        for item in items:
            if item.id == item_id:
                return item
        raise NotFoundError("Reconciliation item", item_id)

    def _refresh_statistics(
        self, reconciliation: Reconciliation, items: Sequence[ReconciliationItem]
    ) -> ReconciliationStatistics:
        statistics = calculate_statistics(items)
        reconciliation.calculated_balance = statistics.calculated_balance
        reconciliation.match_percentage = statistics.match_percentage
        return statistics

    async def _flush(self, db: AsyncSession, reconciliation: Reconciliation) -> None:
        # A failed flush leaves the session needing a rollback, so attributes
        # must not be read from the instance afterwards
        reconciliation_id = reconciliation.id
        try:
            await db.flush()
        except StaleDataError as exc:
            logger.warning(
                "Concurrent reconciliation update rejected",
                reconciliation_id=str(reconciliation_id),
            )
            raise InvalidStateError("Reconciliation was modified by another request") from exc

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_reconciliation(
        self,
        db: AsyncSession,
        *,
        user_id: UUID,
        account_id: UUID,
        statement_end_date: date,
        statement_end_balance: Decimal,
        notes: str | None = None,
    ) -> Reconciliation:
        """Open a new in-progress session for an account."""
        await self._get_account(db, account_id, user_id)

        existing = await db.execute(
            select(Reconciliation.id).where(
                Reconciliation.account_id == account_id,
                Reconciliation.status == ReconciliationSessionStatus.IN_PROGRESS,
            )
        )
        if existing.first() is not None:
            raise BusinessRuleViolationError(
                "An in-progress reconciliation already exists for this account"
            )

        reconciliation = Reconciliation(
            user_id=user_id,
            account_id=account_id,
            statement_end_date=statement_end_date,
            statement_end_balance=statement_end_balance,
            status=ReconciliationSessionStatus.IN_PROGRESS,
            notes=notes,
        )
        db.add(reconciliation)
        await db.flush()

        append_audit_entry(
            db,
            reconciliation_id=reconciliation.id,
            user_id=user_id,
            action=AuditAction.RECONCILIATION_STARTED,
            new_values=_session_snapshot(reconciliation) | {"account_id": account_id},
        )
        await db.flush()

        logger.info(
            "Reconciliation started",
            reconciliation_id=str(reconciliation.id),
            account_id=str(account_id),
            user_id=str(user_id),
        )
        return reconciliation

    async def update_reconciliation(
        self,
        db: AsyncSession,
        reconciliation_id: UUID,
        *,
        user_id: UUID,
        statement_end_date: date | None = None,
        statement_end_balance: Decimal | None = None,
        notes: str | None = None,
    ) -> Reconciliation:
        """Correct the statement date, balance or notes of an open session.

        Arguments left as ``None`` are unchanged; an empty ``notes`` string clears
        the notes. Status changes go through finalize and cancel only.
        """
        if statement_end_date is None and statement_end_balance is None and notes is None:
            raise ValidationError("Nothing to update")

        reconciliation = await self._get_in_progress(db, reconciliation_id, user_id)
        old_values = _session_snapshot(reconciliation) | {"notes": reconciliation.notes}

        if statement_end_date is not None:
            reconciliation.statement_end_date = statement_end_date
        if statement_end_balance is not None:
            reconciliation.statement_end_balance = statement_end_balance
        if notes is not None:
            reconciliation.notes = notes.strip() or None

        append_audit_entry(
            db,
            reconciliation_id=reconciliation.id,
            user_id=user_id,
            action=AuditAction.RECONCILIATION_UPDATED,
            old_values=old_values,
            new_values=_session_snapshot(reconciliation) | {"notes": reconciliation.notes},
        )
        await self._flush(db, reconciliation)

        logger.info(
            "Reconciliation updated",
            reconciliation_id=str(reconciliation.id),
            user_id=str(user_id),
        )
        return reconciliation

    async def import_statement(
        self,
        db: AsyncSession,
        reconciliation_id: UUID,
        *,
        user_id: UUID,
        bank_lines: Sequence[BankTransactionLine],
        params: MatchingParams | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> StatementImportResult:
        """Attach statement lines and match them against the account's transactions.

        A re-import supersedes earlier matched/unmatched items; adjustments stay.
        """
        reconciliation = await self._get_in_progress(db, reconciliation_id, user_id)
        lines = _assign_references(bank_lines, reconciliation.account_id)

        window_end = end_date or reconciliation.statement_end_date
        window_start = start_date or window_end - timedelta(days=self.config.statement_window_days)
        if window_start > window_end:
            raise ValidationError("Start date must not be after end date")

        async with async_log_timing(
            "load_statement_candidates",
            logger=logger,
            level="debug",
            reconciliation_id=str(reconciliation.id),
            window_start=window_start.isoformat(),
            window_end=window_end.isoformat(),
        ) as timing:
            result = await db.execute(
                select(Transaction)
                .where(
                    Transaction.user_id == user_id,
                    Transaction.account_id == reconciliation.account_id,
                    Transaction.txn_date >= window_start,
                    Transaction.txn_date <= window_end,
                    Transaction.status != TransactionStatus.RECONCILED,
                    Transaction.is_deleted.is_(False),
                )
                .order_by(Transaction.txn_date, Transaction.id)
            )
            transactions = list(result.scalars().all())
            timing["candidates"] = len(transactions)

        existing = await self._load_items(db, reconciliation.id)
        superseded = 0
        kept: list[ReconciliationItem] = []
        for item in existing:
            if item.item_type == ReconciliationItemType.ADJUSTMENT:
                kept.append(item)
            else:
                item.is_deleted = True
                superseded += 1

        matching = self.matcher.match(lines, transactions, params)

        created: list[ReconciliationItem] = []
        for pair in matching.matched_pairs:
            item = ReconciliationItem(
                reconciliation_id=reconciliation.id,
                transaction=pair.transaction,
                transaction_id=pair.transaction.id,
                item_type=ReconciliationItemType.MATCHED,
                match_method=pair.method,
                match_confidence=pair.confidence,
                bank_reference=pair.bank_line.reference,
            )
            item.set_bank_data(pair.bank_line.to_dict())
            created.append(item)
        for line in matching.unmatched_bank:
            item = ReconciliationItem(
                reconciliation_id=reconciliation.id,
                item_type=ReconciliationItemType.UNMATCHED_BANK,
                bank_reference=line.reference,
            )
            item.set_bank_data(line.to_dict())
            created.append(item)
        for txn in matching.unmatched_app:
            created.append(
                ReconciliationItem(
                    reconciliation_id=reconciliation.id,
                    transaction=txn,
                    transaction_id=txn.id,
                    item_type=ReconciliationItemType.UNMATCHED_APP,
                )
            )
        db.add_all(created)

        self._refresh_statistics(reconciliation, kept + created)

        append_audit_entry(
            db,
            reconciliation_id=reconciliation.id,
            user_id=user_id,
            action=AuditAction.BANK_STATEMENT_IMPORTED,
            details=matching.summary()
            | {
                "superseded_items": superseded,
                "window_start": window_start,
                "window_end": window_end,
                "unmatched_bank_references": [line.reference for line in matching.unmatched_bank],
            },
        )
        for pair in matching.matched_pairs:
            append_audit_entry(
                db,
                reconciliation_id=reconciliation.id,
                user_id=user_id,
                action=AuditAction.TRANSACTION_MATCHED,
                details={
                    "bank_reference": pair.bank_line.reference,
                    "transaction_id": pair.transaction.id,
                    "match_method": pair.method,
                    "confidence": pair.confidence,
                    "breakdown": pair.breakdown,
                },
            )

        await self._flush(db, reconciliation)

        logger.info(
            "Bank statement imported",
            reconciliation_id=str(reconciliation.id),
            user_id=str(user_id),
            superseded_items=superseded,
            **{key: str(value) for key, value in matching.summary().items()},
        )
        return StatementImportResult(matching=matching, items=created, superseded_items=superseded)

    async def manual_match(
        self,
        db: AsyncSession,
        reconciliation_id: UUID,
        *,
        user_id: UUID,
        bank_reference: str,
        transaction_id: UUID,
        bank_line: BankTransactionLine | None = None,
    ) -> ReconciliationItem:
        """Force a Manual match, first releasing any automatic match on either side."""
        reconciliation = await self._get_in_progress(db, reconciliation_id, user_id)

        transaction = await db.get(Transaction, transaction_id)
        if transaction is None or transaction.is_deleted:
            raise NotFoundError("Transaction", transaction_id)
        if transaction.user_id != user_id:
            raise AuthorizationError("Transaction is not accessible to this user")
        if transaction.account_id != reconciliation.account_id:
            raise BusinessRuleViolationError("Transaction belongs to a different account")

        items = await self._load_items(db, reconciliation.id)
        bank_item = next(
            (
                item
                for item in items
                if item.bank_reference == bank_reference
                and item.item_type
                in (ReconciliationItemType.MATCHED, ReconciliationItemType.UNMATCHED_BANK)
            ),
            None,
        )
        if bank_item is None:
            if bank_line is None:
                raise NotFoundError("Bank line", bank_reference)
            line = replace(bank_line, reference=bank_reference, account_id=reconciliation.account_id)
            bank_item = ReconciliationItem(
                reconciliation_id=reconciliation.id,
                item_type=ReconciliationItemType.UNMATCHED_BANK,
                bank_reference=bank_reference,
            )
            bank_item.set_bank_data(line.to_dict())
            db.add(bank_item)
            items.append(bank_item)

        if (
            bank_item.item_type == ReconciliationItemType.MATCHED
            and bank_item.transaction_id == transaction.id
        ):
            return bank_item

        # Release the bank line from its current partner
        if bank_item.item_type == ReconciliationItemType.MATCHED:
            released = self._release(db, reconciliation, bank_item, user_id)
            items.append(released)

        # Release the transaction from any other bank line; its half is merged below
        for item in items:
            if (
                item is not bank_item
                and item.item_type == ReconciliationItemType.MATCHED
                and item.transaction_id == transaction.id
            ):
                self._release(db, reconciliation, item, user_id, keep_app_half=False)

        app_items = [
            item
            for item in items
            if item.item_type == ReconciliationItemType.UNMATCHED_APP
            and item.transaction_id == transaction.id
            and not item.is_deleted
        ]
        confidence = self.matcher.manual_match(bank_item, transaction, app_items)

        append_audit_entry(
            db,
            reconciliation_id=reconciliation.id,
            user_id=user_id,
            action=AuditAction.TRANSACTION_MATCHED,
            details={
                "bank_reference": bank_reference,
                "transaction_id": transaction.id,
                "match_method": MatchMethod.MANUAL,
                "confidence": confidence,
            },
        )
        self._refresh_statistics(reconciliation, items)
        await self._flush(db, reconciliation)

        logger.info(
            "Manual match recorded",
            reconciliation_id=str(reconciliation.id),
            transaction_id=str(transaction.id),
            bank_reference=bank_reference,
            confidence=str(confidence),
        )
        return bank_item

    def _release(
        self,
        db: AsyncSession,
        reconciliation: Reconciliation,
        item: ReconciliationItem,
        user_id: UUID,
        *,
        keep_app_half: bool = True,
    ) -> ReconciliationItem:
        old_values = {
            "transaction_id": item.transaction_id,
            "match_method": item.match_method,
            "match_confidence": item.match_confidence,
        }
        app_item = self.matcher.unmatch(item)
        if keep_app_half:
            db.add(app_item)
        append_audit_entry(
            db,
            reconciliation_id=reconciliation.id,
            user_id=user_id,
            action=AuditAction.TRANSACTION_UNMATCHED,
            details={"bank_reference": item.bank_reference},
            old_values=old_values,
        )
        return app_item

    async def unmatch(
        self,
        db: AsyncSession,
        reconciliation_id: UUID,
        item_id: UUID,
        *,
        user_id: UUID,
    ) -> tuple[ReconciliationItem, ReconciliationItem]:
        """Split a matched item back into UnmatchedBank and UnmatchedApp halves."""
        reconciliation = await self._get_in_progress(db, reconciliation_id, user_id)
        items = await self._load_items(db, reconciliation.id)
        item = self._find_item(items, item_id)
        if item.item_type != ReconciliationItemType.MATCHED:
            raise BusinessRuleViolationError("Only matched items can be unmatched")

        app_item = self._release(db, reconciliation, item, user_id)
        items.append(app_item)
        self._refresh_statistics(reconciliation, items)
        await self._flush(db, reconciliation)

        logger.info(
            "Reconciliation item unmatched",
            reconciliation_id=str(reconciliation.id),
            item_id=str(item_id),
        )
        return item, app_item

    async def add_adjustment(
        self,
        db: AsyncSession,
        reconciliation_id: UUID,
        *,
        user_id: UUID,
        amount: Decimal,
        description: str,
    ) -> ReconciliationItem:
        """Record a balancing adjustment that counts toward the calculated balance."""
        if amount == 0:
            raise ValidationError("Adjustment amount must not be zero")
        if not description or not description.strip():
            raise ValidationError("Adjustment description is required")

        reconciliation = await self._get_in_progress(db, reconciliation_id, user_id)
        items = await self._load_items(db, reconciliation.id)

        item = ReconciliationItem(
            reconciliation_id=reconciliation.id,
            item_type=ReconciliationItemType.ADJUSTMENT,
            adjustment_amount=amount,
            adjustment_description=description.strip(),
        )
        db.add(item)
        items.append(item)

        append_audit_entry(
            db,
            reconciliation_id=reconciliation.id,
            user_id=user_id,
            action=AuditAction.ADJUSTMENT_ADDED,
            new_values={"amount": amount, "description": item.adjustment_description},
        )
        self._refresh_statistics(reconciliation, items)
        await self._flush(db, reconciliation)
        return item

    async def create_transaction_from_bank_line(
        self,
        db: AsyncSession,
        reconciliation_id: UUID,
        item_id: UUID,
        *,
        user_id: UUID,
    ) -> tuple[ReconciliationItem, Transaction]:
        """Record an unmatched statement line as a new internal transaction and pair them."""
        reconciliation = await self._get_in_progress(db, reconciliation_id, user_id)
        items = await self._load_items(db, reconciliation.id)
        item = self._find_item(items, item_id)
        if item.item_type != ReconciliationItemType.UNMATCHED_BANK:
            raise BusinessRuleViolationError("Only unmatched bank lines can create transactions")

        bank_data = item.get_bank_data()
        if bank_data is None:
            raise BusinessRuleViolationError("Bank line data is missing for this item")
        line = BankTransactionLine.from_dict(bank_data)

        transaction = Transaction(
            user_id=user_id,
            account_id=reconciliation.account_id,
            amount=line.amount,
            txn_date=line.txn_date,
            description=line.description,
            status=TransactionStatus.CLEARED,
            external_id=line.external_id,
        )
        db.add(transaction)
        await db.flush()

        item.item_type = ReconciliationItemType.MATCHED
        item.transaction = transaction
        item.transaction_id = transaction.id
        item.match_method = MatchMethod.MANUAL
        item.match_confidence = EXACT_CONFIDENCE

        append_audit_entry(
            db,
            reconciliation_id=reconciliation.id,
            user_id=user_id,
            action=AuditAction.MANUAL_TRANSACTION_ADDED,
            details={"bank_reference": item.bank_reference},
            new_values={
                "transaction_id": transaction.id,
                "amount": transaction.amount,
                "txn_date": transaction.txn_date,
                "description": transaction.description,
            },
        )
        self._refresh_statistics(reconciliation, items)
        await self._flush(db, reconciliation)
        return item, transaction

    async def delete_unmatched_transaction(
        self,
        db: AsyncSession,
        reconciliation_id: UUID,
        item_id: UUID,
        *,
        user_id: UUID,
    ) -> Transaction:
        """Soft-delete the internal transaction behind an UnmatchedApp item."""
        reconciliation = await self._get_in_progress(db, reconciliation_id, user_id)
        items = await self._load_items(db, reconciliation.id)
        item = self._find_item(items, item_id)
        if item.item_type != ReconciliationItemType.UNMATCHED_APP or item.transaction is None:
            raise BusinessRuleViolationError("Only unmatched internal transactions can be deleted")

        transaction = item.transaction
        if transaction.status == TransactionStatus.RECONCILED:
            raise BusinessRuleViolationError("Reconciled transactions cannot be deleted")

        transaction.is_deleted = True
        item.is_deleted = True

        append_audit_entry(
            db,
            reconciliation_id=reconciliation.id,
            user_id=user_id,
            action=AuditAction.TRANSACTION_DELETED,
            old_values={
                "transaction_id": transaction.id,
                "amount": transaction.amount,
                "txn_date": transaction.txn_date,
                "description": transaction.description,
                "status": transaction.status,
            },
        )
        self._refresh_statistics(reconciliation, items)
        await self._flush(db, reconciliation)
        return transaction

    async def approve_matches(
        self,
        db: AsyncSession,
        reconciliation_id: UUID,
        *,
        user_id: UUID,
        item_ids: Sequence[UUID] | None = None,
        min_confidence: Decimal | None = None,
    ) -> ApprovalResult:
        """Approve matched pairs in bulk.

        With ``item_ids`` only those items are considered, whatever their
        confidence. Otherwise every matched item at or above ``min_confidence``
        (configured ``approval_min_confidence`` by default) is approved. Already
        approved and non-matched items are skipped. Approval copies the bank
        line's external id onto a transaction that has none; the transaction
        status is left for finalize.
        """
        threshold = self.config.approval_min_confidence if min_confidence is None else min_confidence
        if not Decimal("0") <= threshold <= Decimal("1"):
            raise ValidationError("Minimum confidence must be between 0 and 1")

        reconciliation = await self._get_in_progress(db, reconciliation_id, user_id)
        items = await self._load_items(db, reconciliation.id)

        def eligible(item: ReconciliationItem) -> bool:
            return (
                item.item_type == ReconciliationItemType.MATCHED
                and item.transaction is not None
                and not item.is_approved
            )

        if item_ids:
            requested = set(item_ids)
            to_approve = [item for item in items if item.id in requested and eligible(item)]
            approved_ids = {item.id for item in to_approve}
            skipped = [item_id for item_id in dict.fromkeys(item_ids) if item_id not in approved_ids]
        else:
            to_approve = [
                item
                for item in items
                if eligible(item) and (item.match_confidence or Decimal("0")) >= threshold
            ]
            skipped = []

        if not to_approve:
            logger.info(
                "No matches eligible for approval",
                reconciliation_id=str(reconciliation.id),
                skipped=len(skipped),
            )
            return ApprovalResult(approved=[], enriched_transactions=0, skipped_item_ids=skipped)

        approved_at = datetime.now(UTC)
        enriched = 0
        for item in to_approve:
            bank_data = item.get_bank_data() or {}
            external_id = bank_data.get("external_id")
            if external_id and not item.transaction.external_id:
                item.transaction.external_id = external_id
                enriched += 1
            item.is_approved = True
            item.approved_at = approved_at

        append_audit_entry(
            db,
            reconciliation_id=reconciliation.id,
            user_id=user_id,
            action=AuditAction.MATCHES_APPROVED,
            details={
                "item_ids": [item.id for item in to_approve],
                "min_confidence": None if item_ids else threshold,
                "enriched_transactions": enriched,
                "skipped_item_ids": skipped,
            },
        )
        await self._flush(db, reconciliation)

        logger.info(
            "Matches approved",
            reconciliation_id=str(reconciliation.id),
            user_id=str(user_id),
            approved=len(to_approve),
            enriched_transactions=enriched,
            skipped=len(skipped),
        )
        return ApprovalResult(
            approved=to_approve, enriched_transactions=enriched, skipped_item_ids=skipped
        )

    async def finalize(
        self,
        db: AsyncSession,
        reconciliation_id: UUID,
        *,
        user_id: UUID,
        force_finalize: bool = False,
        notes: str | None = None,
    ) -> FinalizeResult:
        """Complete a session and propagate its results.

        Blocked when more than the configured share of items is unmatched, unless
        ``force_finalize`` is set. Matched transactions not yet reconciled are
        marked reconciled; already reconciled ones are left untouched.
        """
        reconciliation = await self._get_in_progress(db, reconciliation_id, user_id)
        items = await self._load_items(db, reconciliation.id)
        statistics = calculate_statistics(items)

        if not force_finalize and statistics.unmatched_rate > self.config.max_unmatched_rate:
            rate = (statistics.unmatched_rate * 100).quantize(PERCENT)
            raise BusinessRuleViolationError(
                f"Too many unmatched items ({rate}%). Use force finalize to override."
            )

        old_values = _session_snapshot(reconciliation)
        reconciliation.status = ReconciliationSessionStatus.COMPLETED
        reconciliation.completed_at = datetime.now(UTC)
        reconciliation.calculated_balance = statistics.calculated_balance
        reconciliation.match_percentage = statistics.match_percentage
        if notes:
            reconciliation.notes = notes

        account_result = await db.execute(
            select(Account).where(Account.id == reconciliation.account_id).with_for_update()
        )
        account = account_result.scalar_one()
        account.last_reconciled_date = reconciliation.statement_end_date
        account.last_reconciled_balance = reconciliation.statement_end_balance

        marked = 0
        seen: set[UUID] = set()
        for item in items:
            transaction = item.transaction
            if item.item_type != ReconciliationItemType.MATCHED or transaction is None:
                continue
            if transaction.id in seen:
                continue
            seen.add(transaction.id)
            if transaction.status != TransactionStatus.RECONCILED:
                transaction.status = TransactionStatus.RECONCILED
                marked += 1

        append_audit_entry(
            db,
            reconciliation_id=reconciliation.id,
            user_id=user_id,
            action=AuditAction.RECONCILIATION_COMPLETED,
            details={
                "total_items": statistics.total_items,
                "matched_items": statistics.matched_items,
                "unmatched_bank_items": statistics.unmatched_bank_items,
                "unmatched_app_items": statistics.unmatched_app_items,
                "match_percentage": statistics.match_percentage,
                "transactions_marked_reconciled": marked,
                "notes": notes,
                "force_finalized": force_finalize,
            },
            old_values=old_values,
            new_values=_session_snapshot(reconciliation),
        )
        await self._flush(db, reconciliation)

        logger.info(
            "Reconciliation finalized",
            reconciliation_id=str(reconciliation.id),
            user_id=str(user_id),
            matched_items=statistics.matched_items,
            unmatched_items=statistics.unmatched_items,
            transactions_marked_reconciled=marked,
            force_finalized=force_finalize,
        )
        return FinalizeResult(
            reconciliation=reconciliation,
            statistics=statistics,
            transactions_marked_reconciled=marked,
        )

    async def cancel(
        self,
        db: AsyncSession,
        reconciliation_id: UUID,
        *,
        user_id: UUID,
        reason: str | None = None,
    ) -> Reconciliation:
        """Abandon an in-progress session without touching accounts or transactions."""
        reconciliation = await self._get_in_progress(db, reconciliation_id, user_id)
        old_values = _session_snapshot(reconciliation)
        reconciliation.status = ReconciliationSessionStatus.CANCELLED

        append_audit_entry(
            db,
            reconciliation_id=reconciliation.id,
            user_id=user_id,
            action=AuditAction.RECONCILIATION_CANCELLED,
            details={"reason": reason},
            old_values=old_values,
            new_values={"status": reconciliation.status},
        )
        await self._flush(db, reconciliation)

        logger.info(
            "Reconciliation cancelled",
            reconciliation_id=str(reconciliation.id),
            user_id=str(user_id),
        )
        return reconciliation

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_details(
        self, db: AsyncSession, reconciliation_id: UUID, *, user_id: UUID
    ) -> ReconciliationDetails:
        reconciliation = await self.get_reconciliation(db, reconciliation_id, user_id=user_id)
        items = await self._load_items(db, reconciliation.id)
        return ReconciliationDetails(
            reconciliation=reconciliation,
            items=items,
            statistics=calculate_statistics(items),
        )

    async def list_reconciliations(
        self,
        db: AsyncSession,
        *,
        user_id: UUID,
        account_id: UUID | None = None,
        status: ReconciliationSessionStatus | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Reconciliation], int]:
        """Filtered, paginated sessions ordered by statement end date (newest first)."""
        if limit < 1 or offset < 0:
            raise ValidationError("Limit must be positive and offset must not be negative")

        filters = [Reconciliation.user_id == user_id]
        if account_id is not None:
            filters.append(Reconciliation.account_id == account_id)
        if status is not None:
            filters.append(Reconciliation.status == status)
        if start_date is not None:
            filters.append(Reconciliation.statement_end_date >= start_date)
        if end_date is not None:
            filters.append(Reconciliation.statement_end_date <= end_date)

        total = await db.scalar(select(func.count()).select_from(Reconciliation).where(*filters))
        result = await db.execute(
            select(Reconciliation)
            .where(*filters)
            .order_by(Reconciliation.statement_end_date.desc(), Reconciliation.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), int(total or 0)

    async def get_audit_log(
        self, db: AsyncSession, reconciliation_id: UUID, *, user_id: UUID
    ) -> list[ReconciliationAuditLog]:
        await self.get_reconciliation(db, reconciliation_id, user_id=user_id)
        return await list_audit_entries(db, reconciliation_id)
