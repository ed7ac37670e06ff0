"""Tests for the reconciliation session lifecycle.

GIVEN: an account with recorded transactions and an imported bank statement
WHEN: the session is matched, adjusted, finalized or cancelled
THEN: items, statistics, account metadata and the audit log stay consistent
"""

from collections import Counter
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from finance_recon.database import Base
from finance_recon.models import (
    AuditAction,
    MatchMethod,
    Reconciliation,
    ReconciliationAuditLog,
    ReconciliationItemType,
    ReconciliationSessionStatus,
    Transaction,
    TransactionStatus,
)
from finance_recon.services.errors import (
    AuthorizationError,
    BusinessRuleViolationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from finance_recon.services.matching import DEFAULT_CONFIG
from finance_recon.services.reconciliation import ReconciliationService, calculate_statistics
from tests.factories import AccountFactory, BankLineFactory, TransactionFactory

END_DATE = date(2024, 6, 30)


@pytest.fixture
def service() -> ReconciliationService:
    return ReconciliationService(config=DEFAULT_CONFIG)


async def _start(db, service, user_id, account, balance: str = "250.00") -> Reconciliation:
    return await service.start_reconciliation(
        db,
        user_id=user_id,
        account_id=account.id,
        statement_end_date=END_DATE,
        statement_end_balance=Decimal(balance),
    )


async def _txn(db, user_id, account, amount: str, txn_date: date, description: str, **kwargs):
    return await TransactionFactory.create_async(
        db,
        user_id=user_id,
        account=account,
        amount=Decimal(amount),
        txn_date=txn_date,
        description=description,
        **kwargs,
    )


def _line(reference: str, amount: str, txn_date: date, description: str):
    return BankLineFactory.build(
        reference=reference,
        amount=Decimal(amount),
        txn_date=txn_date,
        description=description,
    )


async def _audit_actions(db, service, reconciliation_id, user_id) -> Counter:
    entries = await service.get_audit_log(db, reconciliation_id, user_id=user_id)
    return Counter(entry.action for entry in entries)


@pytest.fixture
async def imported(db, service, user_id):
    """Session with two matches, one unmatched bank line and one unmatched transaction."""
    account = await AccountFactory.create_async(db, user_id=user_id)
    salary = await _txn(db, user_id, account, "100.00", date(2024, 6, 10), "Salary")
    grocer = await _txn(db, user_id, account, "50.00", date(2024, 6, 15), "Grocer")
    cinema = await _txn(db, user_id, account, "30.00", date(2024, 6, 20), "Cinema")
    # Outside the 30 day statement window
    await _txn(db, user_id, account, "100.00", date(2024, 4, 1), "Salary")
    # Already reconciled in an earlier session
    await _txn(
        db, user_id, account, "50.00", date(2024, 6, 15), "Grocer", status=TransactionStatus.RECONCILED
    )

    reconciliation = await _start(db, service, user_id, account)
    result = await service.import_statement(
        db,
        reconciliation.id,
        user_id=user_id,
        bank_lines=[
            _line("L1", "100.00", date(2024, 6, 10), "Salary"),
            _line("L2", "50.00", date(2024, 6, 16), "Grocer"),
            _line("L3", "999.00", date(2024, 6, 25), "Unknown"),
        ],
    )
    return {
        "account": account,
        "reconciliation": reconciliation,
        "result": result,
        "salary": salary,
        "grocer": grocer,
        "cinema": cinema,
    }


class TestStartReconciliation:
    async def test_start_opens_session_and_audits(self, db, service, user_id):
        account = await AccountFactory.create_async(db, user_id=user_id)
        reconciliation = await _start(db, service, user_id, account)

        assert reconciliation.status == ReconciliationSessionStatus.IN_PROGRESS
        assert reconciliation.calculated_balance is None
        assert reconciliation.is_balanced is False

        entries = await service.get_audit_log(db, reconciliation.id, user_id=user_id)
        assert [entry.action for entry in entries] == [AuditAction.RECONCILIATION_STARTED]
        assert entries[0].get_new_values()["account_id"] == str(account.id)
        assert entries[0].get_new_values()["statement_end_balance"] == "250.00"

    async def test_zero_balance_statement_starts_balanced(self, db, service, user_id):
        account = await AccountFactory.create_async(db, user_id=user_id)
        reconciliation = await _start(db, service, user_id, account, balance="0.00")

        details = await service.get_details(db, reconciliation.id, user_id=user_id)

        assert details.statistics.total_items == 0
        assert reconciliation.balance_difference == Decimal("0.00")
        assert reconciliation.is_balanced is True

    async def test_second_in_progress_session_is_rejected(self, db, service, user_id):
        account = await AccountFactory.create_async(db, user_id=user_id)
        await _start(db, service, user_id, account)

        with pytest.raises(BusinessRuleViolationError):
            await _start(db, service, user_id, account)

    async def test_new_session_allowed_after_cancel(self, db, service, user_id):
        account = await AccountFactory.create_async(db, user_id=user_id)
        first = await _start(db, service, user_id, account)
        await service.cancel(db, first.id, user_id=user_id)

        second = await _start(db, service, user_id, account)
        assert second.id != first.id

    async def test_other_users_account_reads_as_missing(self, db, service, user_id):
        account = await AccountFactory.create_async(db, user_id=uuid4())

        with pytest.raises(NotFoundError):
            await _start(db, service, user_id, account)


class TestImportStatement:
    async def test_import_matches_and_records_items(self, db, service, user_id, imported):
        result = imported["result"]
        matching = result.matching

        assert matching.exact_matches == 1
        assert matching.fuzzy_matches == 1
        assert [line.reference for line in matching.unmatched_bank] == ["L3"]
        assert matching.unmatched_app == [imported["cinema"]]
        assert matching.overall_match_percentage == Decimal("66.67")

        reconciliation = imported["reconciliation"]
        assert reconciliation.calculated_balance == Decimal("150.00")
        assert reconciliation.match_percentage == Decimal("50.00")
        assert reconciliation.balance_difference == Decimal("100.00")

    async def test_window_and_status_filters_exclude_transactions(self, db, service, user_id, imported):
        details = await service.get_details(db, imported["reconciliation"].id, user_id=user_id)
        transaction_ids = {item.transaction_id for item in details.items if item.transaction_id}

        assert transaction_ids == {
            imported["salary"].id,
            imported["grocer"].id,
            imported["cinema"].id,
        }

    async def test_fuzzy_item_keeps_bank_line_and_confidence(self, db, service, user_id, imported):
        details = await service.get_details(db, imported["reconciliation"].id, user_id=user_id)
        fuzzy = next(item for item in details.items if item.match_method == MatchMethod.FUZZY)

        assert fuzzy.bank_reference == "L2"
        assert fuzzy.transaction_id == imported["grocer"].id
        assert fuzzy.match_confidence == Decimal("0.90")
        assert fuzzy.get_bank_data()["amount"] == "50.00"
        assert fuzzy.get_bank_data()["account_id"] == str(imported["account"].id)

    async def test_import_audits_statement_and_each_match(self, db, service, user_id, imported):
        actions = await _audit_actions(db, service, imported["reconciliation"].id, user_id)

        assert actions[AuditAction.BANK_STATEMENT_IMPORTED] == 1
        assert actions[AuditAction.TRANSACTION_MATCHED] == 2

    async def test_reimport_supersedes_items_but_keeps_adjustments(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]
        await service.add_adjustment(
            db, reconciliation.id, user_id=user_id, amount=Decimal("-5.00"), description="Bank fee"
        )

        result = await service.import_statement(
            db,
            reconciliation.id,
            user_id=user_id,
            bank_lines=[_line("L1", "100.00", date(2024, 6, 10), "Salary")],
        )

        assert result.superseded_items == 4
        details = await service.get_details(db, reconciliation.id, user_id=user_id)
        assert details.statistics.adjustment_items == 1
        assert details.statistics.matched_items == 1
        assert details.statistics.unmatched_app_items == 2
        assert details.statistics.calculated_balance == Decimal("95.00")

    async def test_missing_references_get_row_numbers(self, db, service, user_id):
        account = await AccountFactory.create_async(db, user_id=user_id)
        reconciliation = await _start(db, service, user_id, account)

        result = await service.import_statement(
            db,
            reconciliation.id,
            user_id=user_id,
            bank_lines=[
                _line("", "10.00", date(2024, 6, 1), "A"),
                _line("", "20.00", date(2024, 6, 2), "B"),
            ],
        )

        assert sorted(line.reference for line in result.matching.unmatched_bank) == ["row-1", "row-2"]

    async def test_duplicate_references_are_rejected(self, db, service, user_id):
        account = await AccountFactory.create_async(db, user_id=user_id)
        reconciliation = await _start(db, service, user_id, account)

        with pytest.raises(ValidationError):
            await service.import_statement(
                db,
                reconciliation.id,
                user_id=user_id,
                bank_lines=[
                    _line("SAME", "10.00", date(2024, 6, 1), "A"),
                    _line("SAME", "20.00", date(2024, 6, 2), "B"),
                ],
            )

    async def test_empty_statement_with_no_transactions_is_fully_matched(self, db, service, user_id):
        account = await AccountFactory.create_async(db, user_id=user_id)
        reconciliation = await _start(db, service, user_id, account)

        result = await service.import_statement(db, reconciliation.id, user_id=user_id, bank_lines=[])

        assert result.matching.overall_match_percentage == Decimal("100.00")
        assert reconciliation.match_percentage == Decimal("100.00")


class TestManualAdjustments:
    async def test_unmatch_splits_item_and_audits(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]
        details = await service.get_details(db, reconciliation.id, user_id=user_id)
        matched = next(item for item in details.items if item.bank_reference == "L1")

        bank_item, app_item = await service.unmatch(db, reconciliation.id, matched.id, user_id=user_id)

        assert bank_item.item_type == ReconciliationItemType.UNMATCHED_BANK
        assert app_item.item_type == ReconciliationItemType.UNMATCHED_APP
        assert app_item.transaction_id == imported["salary"].id
        assert reconciliation.calculated_balance == Decimal("50.00")

        entries = await service.get_audit_log(db, reconciliation.id, user_id=user_id)
        unmatched = [entry for entry in entries if entry.action == AuditAction.TRANSACTION_UNMATCHED]
        assert len(unmatched) == 1
        assert unmatched[0].get_old_values()["match_method"] == "exact"

    async def test_unmatch_rejects_unmatched_items(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]
        details = await service.get_details(db, reconciliation.id, user_id=user_id)
        unmatched = next(item for item in details.items if item.bank_reference == "L3")

        with pytest.raises(BusinessRuleViolationError):
            await service.unmatch(db, reconciliation.id, unmatched.id, user_id=user_id)

    async def test_manual_match_pairs_unmatched_halves(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]

        item = await service.manual_match(
            db,
            reconciliation.id,
            user_id=user_id,
            bank_reference="L3",
            transaction_id=imported["cinema"].id,
        )

        assert item.item_type == ReconciliationItemType.MATCHED
        assert item.match_method == MatchMethod.MANUAL
        details = await service.get_details(db, reconciliation.id, user_id=user_id)
        assert details.statistics.unmatched_app_items == 0
        assert details.statistics.unmatched_bank_items == 0
        assert details.statistics.matched_items == 3
        assert details.statistics.calculated_balance == Decimal("180.00")

    async def test_manual_match_moves_transaction_from_other_line(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]

        await service.manual_match(
            db,
            reconciliation.id,
            user_id=user_id,
            bank_reference="L3",
            transaction_id=imported["salary"].id,
        )

        details = await service.get_details(db, reconciliation.id, user_id=user_id)
        by_reference = {item.bank_reference: item for item in details.items if item.bank_reference}
        assert by_reference["L3"].transaction_id == imported["salary"].id
        assert by_reference["L1"].item_type == ReconciliationItemType.UNMATCHED_BANK
        salary_items = [item for item in details.items if item.transaction_id == imported["salary"].id]
        assert len(salary_items) == 1

    async def test_manual_match_with_new_bank_line(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]

        item = await service.manual_match(
            db,
            reconciliation.id,
            user_id=user_id,
            bank_reference="EXTRA-1",
            transaction_id=imported["cinema"].id,
            bank_line=_line("ignored", "30.00", date(2024, 6, 20), "Cinema"),
        )

        assert item.bank_reference == "EXTRA-1"
        assert item.get_bank_data()["reference"] == "EXTRA-1"
        assert item.match_confidence == Decimal("1.00")

    async def test_manual_match_unknown_bank_reference(self, db, service, user_id, imported):
        with pytest.raises(NotFoundError):
            await service.manual_match(
                db,
                imported["reconciliation"].id,
                user_id=user_id,
                bank_reference="NOPE",
                transaction_id=imported["cinema"].id,
            )

    async def test_manual_match_other_users_transaction_is_forbidden(self, db, service, user_id, imported):
        stranger = uuid4()
        other_account = await AccountFactory.create_async(db, user_id=stranger)
        foreign = await _txn(db, stranger, other_account, "999.00", date(2024, 6, 25), "Unknown")

        with pytest.raises(AuthorizationError):
            await service.manual_match(
                db,
                imported["reconciliation"].id,
                user_id=user_id,
                bank_reference="L3",
                transaction_id=foreign.id,
            )

    async def test_manual_match_other_account_is_rejected(self, db, service, user_id, imported):
        other_account = await AccountFactory.create_async(db, user_id=user_id)
        txn = await _txn(db, user_id, other_account, "999.00", date(2024, 6, 25), "Unknown")

        with pytest.raises(BusinessRuleViolationError):
            await service.manual_match(
                db,
                imported["reconciliation"].id,
                user_id=user_id,
                bank_reference="L3",
                transaction_id=txn.id,
            )

    async def test_adjustment_counts_toward_balance(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]

        item = await service.add_adjustment(
            db, reconciliation.id, user_id=user_id, amount=Decimal("100.00"), description=" Interest "
        )

        assert item.adjustment_description == "Interest"
        assert reconciliation.calculated_balance == Decimal("250.00")
        assert reconciliation.is_balanced is True

    @pytest.mark.parametrize(("amount", "description"), [("0", "Fee"), ("1.00", "   ")])
    async def test_invalid_adjustments_are_rejected(self, db, service, user_id, imported, amount, description):
        with pytest.raises(ValidationError):
            await service.add_adjustment(
                db,
                imported["reconciliation"].id,
                user_id=user_id,
                amount=Decimal(amount),
                description=description,
            )

    async def test_create_transaction_from_bank_line(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]
        details = await service.get_details(db, reconciliation.id, user_id=user_id)
        bank_only = next(item for item in details.items if item.bank_reference == "L3")

        item, transaction = await service.create_transaction_from_bank_line(
            db, reconciliation.id, bank_only.id, user_id=user_id
        )

        assert transaction.amount == Decimal("999.00")
        assert transaction.status == TransactionStatus.CLEARED
        assert transaction.account_id == imported["account"].id
        assert item.item_type == ReconciliationItemType.MATCHED
        assert item.transaction_id == transaction.id
        actions = await _audit_actions(db, service, reconciliation.id, user_id)
        assert actions[AuditAction.MANUAL_TRANSACTION_ADDED] == 1

    async def test_delete_unmatched_transaction(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]
        details = await service.get_details(db, reconciliation.id, user_id=user_id)
        app_only = next(
            item for item in details.items if item.item_type == ReconciliationItemType.UNMATCHED_APP
        )

        transaction = await service.delete_unmatched_transaction(
            db, reconciliation.id, app_only.id, user_id=user_id
        )

        assert transaction.is_deleted is True
        details = await service.get_details(db, reconciliation.id, user_id=user_id)
        assert details.statistics.unmatched_app_items == 0
        actions = await _audit_actions(db, service, reconciliation.id, user_id)
        assert actions[AuditAction.TRANSACTION_DELETED] == 1

    async def test_delete_rejects_matched_items(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]
        details = await service.get_details(db, reconciliation.id, user_id=user_id)
        matched = next(item for item in details.items if item.bank_reference == "L1")

        with pytest.raises(BusinessRuleViolationError):
            await service.delete_unmatched_transaction(db, reconciliation.id, matched.id, user_id=user_id)


class TestApproveMatches:
    async def test_threshold_approval_takes_confident_matches_only(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]

        result = await service.approve_matches(db, reconciliation.id, user_id=user_id)

        assert [item.bank_reference for item in result.approved] == ["L1"]
        assert result.approved[0].is_approved is True
        assert result.approved[0].approved_at is not None
        assert result.skipped_item_ids == []

        # L1 is already approved; the 0.90 fuzzy match now qualifies
        lowered = await service.approve_matches(
            db, reconciliation.id, user_id=user_id, min_confidence=Decimal("0.90")
        )
        assert [item.bank_reference for item in lowered.approved] == ["L2"]

        entries = await service.get_audit_log(db, reconciliation.id, user_id=user_id)
        approvals = [entry for entry in entries if entry.action == AuditAction.MATCHES_APPROVED]
        assert [entry.get_details()["min_confidence"] for entry in approvals] == ["0.95", "0.90"]

    async def test_explicit_ids_ignore_threshold_and_report_skips(self, db, service, user_id, imported):
        details = await service.get_details(db, imported["reconciliation"].id, user_id=user_id)
        fuzzy = next(item for item in details.items if item.match_method == MatchMethod.FUZZY)
        unmatched = next(item for item in details.items if item.bank_reference == "L3")
        unknown = uuid4()

        result = await service.approve_matches(
            db,
            imported["reconciliation"].id,
            user_id=user_id,
            item_ids=[fuzzy.id, unmatched.id, unknown],
        )

        assert result.approved == [fuzzy]
        assert result.skipped_item_ids == [unmatched.id, unknown]
        assert unmatched.is_approved is False

    async def test_approval_copies_bank_external_id(self, db, service, user_id):
        account = await AccountFactory.create_async(db, user_id=user_id)
        txn = await _txn(db, user_id, account, "75.00", date(2024, 6, 12), "Insurance")
        reconciliation = await _start(db, service, user_id, account)
        line = BankLineFactory.build(
            reference="B1",
            amount=Decimal("75.00"),
            txn_date=date(2024, 6, 12),
            description="Insurance",
            external_id="BANK-778",
        )
        await service.import_statement(db, reconciliation.id, user_id=user_id, bank_lines=[line])

        result = await service.approve_matches(db, reconciliation.id, user_id=user_id)

        assert result.enriched_transactions == 1
        assert txn.external_id == "BANK-778"
        assert txn.status != TransactionStatus.RECONCILED

    async def test_unmatch_clears_approval(self, db, service, user_id, imported):
        result = await service.approve_matches(db, imported["reconciliation"].id, user_id=user_id)
        item = result.approved[0]

        await service.unmatch(db, imported["reconciliation"].id, item.id, user_id=user_id)

        assert item.is_approved is False
        assert item.approved_at is None

    async def test_nothing_eligible_stages_no_audit_entry(self, db, service, user_id, imported):
        result = await service.approve_matches(
            db, imported["reconciliation"].id, user_id=user_id, item_ids=[uuid4()]
        )

        assert result.approved == []
        actions = await _audit_actions(db, service, imported["reconciliation"].id, user_id)
        assert actions[AuditAction.MATCHES_APPROVED] == 0

    async def test_invalid_threshold_is_rejected(self, db, service, user_id, imported):
        with pytest.raises(ValidationError):
            await service.approve_matches(
                db, imported["reconciliation"].id, user_id=user_id, min_confidence=Decimal("1.5")
            )

    async def test_cancelled_session_cannot_approve(self, db, service, user_id, imported):
        await service.cancel(db, imported["reconciliation"].id, user_id=user_id)

        with pytest.raises(InvalidStateError):
            await service.approve_matches(db, imported["reconciliation"].id, user_id=user_id)


class TestUpdateReconciliation:
    async def test_update_corrects_statement_and_audits(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]

        updated = await service.update_reconciliation(
            db,
            reconciliation.id,
            user_id=user_id,
            statement_end_balance=Decimal("150.00"),
            notes="  Corrected balance  ",
        )

        assert updated.statement_end_balance == Decimal("150.00")
        assert updated.statement_end_date == END_DATE
        assert updated.notes == "Corrected balance"
        assert updated.is_balanced is True

        entries = await service.get_audit_log(db, reconciliation.id, user_id=user_id)
        entry = entries[-1]
        assert entry.action == AuditAction.RECONCILIATION_UPDATED
        assert entry.get_old_values()["statement_end_balance"] == "250.00"
        assert entry.get_old_values()["notes"] is None
        assert entry.get_new_values()["statement_end_balance"] == "150.00"
        assert entry.get_new_values()["notes"] == "Corrected balance"

    async def test_empty_notes_clear_existing_notes(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]
        await service.update_reconciliation(db, reconciliation.id, user_id=user_id, notes="Draft")

        updated = await service.update_reconciliation(db, reconciliation.id, user_id=user_id, notes="")

        assert updated.notes is None

    async def test_update_without_changes_is_rejected(self, db, service, user_id, imported):
        with pytest.raises(ValidationError, match="Nothing to update"):
            await service.update_reconciliation(db, imported["reconciliation"].id, user_id=user_id)

    async def test_completed_session_is_not_updated(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]
        await service.finalize(db, reconciliation.id, user_id=user_id, force_finalize=True)

        with pytest.raises(InvalidStateError, match="already completed"):
            await service.update_reconciliation(
                db, reconciliation.id, user_id=user_id, statement_end_date=date(2024, 7, 31)
            )

        actions = await _audit_actions(db, service, reconciliation.id, user_id)
        assert actions[AuditAction.RECONCILIATION_UPDATED] == 0


class TestFinalize:
    async def _session_with(self, db, service, user_id, matched: int, unmatched: int):
        account = await AccountFactory.create_async(db, user_id=user_id)
        lines = []
        for index in range(matched):
            amount = f"{index + 1}.00"
            txn_date = date(2024, 6, 1 + index)
            await _txn(db, user_id, account, amount, txn_date, f"Payment {index}")
            lines.append(_line(f"M{index}", amount, txn_date, f"Payment {index}"))
        for index in range(unmatched):
            lines.append(_line(f"U{index}", f"{5000 + index}.00", date(2024, 6, 28), "Unknown"))

        reconciliation = await _start(db, service, user_id, account)
        await service.import_statement(db, reconciliation.id, user_id=user_id, bank_lines=lines)
        return account, reconciliation

    async def test_unmatched_rate_at_limit_finalizes(self, db, service, user_id):
        account, reconciliation = await self._session_with(db, service, user_id, matched=19, unmatched=1)

        result = await service.finalize(db, reconciliation.id, user_id=user_id, notes="June")

        assert result.reconciliation.status == ReconciliationSessionStatus.COMPLETED
        assert result.reconciliation.completed_at is not None
        assert result.reconciliation.notes == "June"
        assert result.transactions_marked_reconciled == 19
        assert result.statistics.match_percentage == Decimal("95.00")
        assert account.last_reconciled_date == END_DATE
        assert account.last_reconciled_balance == Decimal("250.00")

        reconciled = await db.scalar(
            select(func.count())
            .select_from(Transaction)
            .where(Transaction.status == TransactionStatus.RECONCILED)
        )
        assert reconciled == 19

    async def test_too_many_unmatched_items_blocks_finalize(self, db, service, user_id):
        _, reconciliation = await self._session_with(db, service, user_id, matched=2, unmatched=2)

        with pytest.raises(BusinessRuleViolationError) as exc_info:
            await service.finalize(db, reconciliation.id, user_id=user_id)

        assert "Too many unmatched items (50.00%)" in exc_info.value.message
        assert reconciliation.status == ReconciliationSessionStatus.IN_PROGRESS

    async def test_one_unmatched_in_nineteen_is_over_the_limit(self, db, service, user_id):
        # 1/19 = 5.26% is just above the 5% threshold
        _, reconciliation = await self._session_with(db, service, user_id, matched=18, unmatched=1)

        with pytest.raises(BusinessRuleViolationError) as exc_info:
            await service.finalize(db, reconciliation.id, user_id=user_id)

        assert "Too many unmatched items (5.26%)" in exc_info.value.message
        actions = await _audit_actions(db, service, reconciliation.id, user_id)
        assert actions[AuditAction.RECONCILIATION_COMPLETED] == 0

        result = await service.finalize(db, reconciliation.id, user_id=user_id, force_finalize=True)

        assert result.reconciliation.status == ReconciliationSessionStatus.COMPLETED
        assert result.transactions_marked_reconciled == 18
        assert result.statistics.match_percentage == Decimal("94.74")

    async def test_force_finalize_overrides_unmatched_limit(self, db, service, user_id):
        _, reconciliation = await self._session_with(db, service, user_id, matched=2, unmatched=2)

        result = await service.finalize(db, reconciliation.id, user_id=user_id, force_finalize=True)

        assert result.reconciliation.status == ReconciliationSessionStatus.COMPLETED
        entries = await service.get_audit_log(db, reconciliation.id, user_id=user_id)
        completed = [entry for entry in entries if entry.action == AuditAction.RECONCILIATION_COMPLETED]
        details = completed[0].get_details()
        assert details["force_finalized"] is True
        assert details["unmatched_bank_items"] == 2
        assert details["transactions_marked_reconciled"] == 2
        assert completed[0].get_old_values()["status"] == "in_progress"
        assert completed[0].get_new_values()["status"] == "completed"

    async def test_finalize_twice_is_rejected_without_second_audit(self, db, service, user_id):
        _, reconciliation = await self._session_with(db, service, user_id, matched=3, unmatched=0)
        await service.finalize(db, reconciliation.id, user_id=user_id)

        with pytest.raises(InvalidStateError, match="already completed"):
            await service.finalize(db, reconciliation.id, user_id=user_id)

        actions = await _audit_actions(db, service, reconciliation.id, user_id)
        assert actions[AuditAction.RECONCILIATION_COMPLETED] == 1

    async def test_already_reconciled_transactions_are_not_rewritten(self, db, service, user_id):
        account = await AccountFactory.create_async(db, user_id=user_id)
        settled = await _txn(
            db,
            user_id,
            account,
            "40.00",
            date(2024, 6, 5),
            "Rent",
            status=TransactionStatus.RECONCILED,
        )
        fresh = await _txn(db, user_id, account, "60.00", date(2024, 6, 6), "Power")
        reconciliation = await _start(db, service, user_id, account)
        await service.import_statement(
            db,
            reconciliation.id,
            user_id=user_id,
            bank_lines=[
                _line("R", "40.00", date(2024, 6, 5), "Rent"),
                _line("P", "60.00", date(2024, 6, 6), "Power"),
            ],
        )
        # Reconciled transactions are not candidates; pair it by hand
        await service.manual_match(
            db, reconciliation.id, user_id=user_id, bank_reference="R", transaction_id=settled.id
        )

        updated: list = []

        def record_update(mapper, connection, target):
            updated.append(target.id)

        event.listen(Transaction, "before_update", record_update)
        try:
            result = await service.finalize(db, reconciliation.id, user_id=user_id)
        finally:
            event.remove(Transaction, "before_update", record_update)

        assert result.transactions_marked_reconciled == 1
        assert updated == [fresh.id]

    async def test_cancel_is_terminal_and_leaves_account_untouched(self, db, service, user_id, imported):
        reconciliation = imported["reconciliation"]

        cancelled = await service.cancel(db, reconciliation.id, user_id=user_id, reason="Wrong statement")

        assert cancelled.status == ReconciliationSessionStatus.CANCELLED
        assert imported["account"].last_reconciled_date is None
        with pytest.raises(InvalidStateError, match="cancelled"):
            await service.finalize(db, reconciliation.id, user_id=user_id, force_finalize=True)
        with pytest.raises(InvalidStateError):
            await service.cancel(db, reconciliation.id, user_id=user_id)
        with pytest.raises(InvalidStateError):
            await service.add_adjustment(
                db, reconciliation.id, user_id=user_id, amount=Decimal("1.00"), description="x"
            )

        entries = await service.get_audit_log(db, reconciliation.id, user_id=user_id)
        cancel_entry = next(entry for entry in entries if entry.action == AuditAction.RECONCILIATION_CANCELLED)
        assert cancel_entry.get_details() == {"reason": "Wrong statement"}


class TestQueries:
    async def test_other_users_session_reads_as_missing(self, db, service, user_id, imported):
        with pytest.raises(NotFoundError):
            await service.get_details(db, imported["reconciliation"].id, user_id=uuid4())
        with pytest.raises(NotFoundError):
            await service.get_audit_log(db, imported["reconciliation"].id, user_id=uuid4())

    async def test_list_orders_by_statement_date_and_filters(self, db, service, user_id):
        first_account = await AccountFactory.create_async(db, user_id=user_id)
        second_account = await AccountFactory.create_async(db, user_id=user_id)
        older = await service.start_reconciliation(
            db,
            user_id=user_id,
            account_id=first_account.id,
            statement_end_date=date(2024, 5, 31),
            statement_end_balance=Decimal("10.00"),
        )
        await service.cancel(db, older.id, user_id=user_id)
        newer = await _start(db, service, user_id, second_account)

        sessions, total = await service.list_reconciliations(db, user_id=user_id)
        assert total == 2
        assert [session.id for session in sessions] == [newer.id, older.id]

        cancelled, total = await service.list_reconciliations(
            db, user_id=user_id, status=ReconciliationSessionStatus.CANCELLED
        )
        assert total == 1
        assert cancelled[0].id == older.id

        page, total = await service.list_reconciliations(db, user_id=user_id, limit=1, offset=1)
        assert total == 2
        assert [session.id for session in page] == [older.id]

        ranged, _ = await service.list_reconciliations(db, user_id=user_id, start_date=date(2024, 6, 1))
        assert [session.id for session in ranged] == [newer.id]

    async def test_list_rejects_bad_pagination(self, db, service, user_id):
        with pytest.raises(ValidationError):
            await service.list_reconciliations(db, user_id=user_id, limit=0)

    async def test_statistics_skip_retired_items(self, db, service, user_id, imported):
        details = await service.get_details(db, imported["reconciliation"].id, user_id=user_id)
        for item in details.items:
            item.is_deleted = True

        statistics = calculate_statistics(details.items)
        assert statistics.total_items == 0
        assert statistics.unmatched_rate == Decimal("0")
        assert statistics.match_percentage == Decimal("100.00")

    async def test_rollback_discards_session_and_audit_together(self, db, service, user_id):
        account = await AccountFactory.create_async(db, user_id=user_id)
        await db.commit()
        await _start(db, service, user_id, account)
        await db.rollback()

        sessions = await db.scalar(select(func.count()).select_from(Reconciliation))
        entries = await db.scalar(select(func.count()).select_from(ReconciliationAuditLog))
        assert sessions == 0
        assert entries == 0


async def test_concurrent_finalize_allows_only_one_completion(tmp_path):
    """Two requests racing to finalize the same session: the loser gets InvalidStateError."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    service = ReconciliationService(config=DEFAULT_CONFIG)
    owner = uuid4()

    try:
        async with maker() as setup:
            account = await AccountFactory.create_async(setup, user_id=owner)
            reconciliation = await _start(setup, service, owner, account)
            await setup.commit()

        async with maker() as first, maker() as second:
            await service.get_reconciliation(first, reconciliation.id, user_id=owner)
            stale = await service.get_reconciliation(second, reconciliation.id, user_id=owner)

            await service.finalize(first, reconciliation.id, user_id=owner, force_finalize=True)
            await first.commit()

            # The stale copy still carries the old version number
            stale.notes = "late edit"
            with pytest.raises(InvalidStateError, match="modified by another request"):
                await service._flush(second, stale)
            await second.rollback()

            with pytest.raises(InvalidStateError, match="already completed"):
                await service.finalize(second, reconciliation.id, user_id=owner, force_finalize=True)

        async with maker() as check:
            completed = await check.scalar(
                select(func.count())
                .select_from(ReconciliationAuditLog)
                .where(ReconciliationAuditLog.action == AuditAction.RECONCILIATION_COMPLETED)
            )
            assert completed == 1
    finally:
        await engine.dispose()
