"""Pydantic schemas for reconciliation API."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from finance_recon.models import (
    AuditAction,
    MatchMethod,
    ReconciliationItemType,
    ReconciliationSessionStatus,
)
from finance_recon.schemas.base import BaseResponse, ListResponse, PageResponse
from finance_recon.services.matching import BankTransactionLine


class ReconciliationStartRequest(BaseModel):
    """Request body to open a reconciliation session."""

    account_id: UUID
    statement_end_date: date
    statement_end_balance: Decimal
    notes: str | None = Field(default=None, max_length=2000)


class BankLineRequest(BaseModel):
    """One statement line as supplied by the client."""

    reference: str | None = Field(default=None, max_length=255)
    amount: Decimal
    txn_date: date
    description: str = Field(default="", max_length=500)
    running_balance: Decimal | None = None
    external_id: str | None = Field(default=None, max_length=255)

    def to_line(self) -> BankTransactionLine:
        return BankTransactionLine(
            reference=self.reference or "",
            amount=self.amount,
            txn_date=self.txn_date,
            description=self.description,
            running_balance=self.running_balance,
            external_id=self.external_id,
        )


class StatementImportRequest(BaseModel):
    """Statement lines plus optional matching overrides."""

    lines: list[BankLineRequest]
    amount_tolerance: Decimal | None = None
    date_range_tolerance_days: int | None = None
    use_description_matching: bool | None = None
    use_date_range_matching: bool | None = None
    min_confidence: Decimal | None = None
    start_date: date | None = None
    end_date: date | None = None


class ManualMatchRequest(BaseModel):
    bank_reference: str = Field(min_length=1, max_length=255)
    transaction_id: UUID
    # Needed only when the bank line was not part of an imported statement
    bank_line: BankLineRequest | None = None


class AdjustmentRequest(BaseModel):
    amount: Decimal
    description: str = Field(max_length=500)


class FinalizeRequest(BaseModel):
    force_finalize: bool = False
    notes: str | None = Field(default=None, max_length=2000)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class ReconciliationUpdateRequest(BaseModel):
    """Corrections to an open session; omitted fields are unchanged."""

    statement_end_date: date | None = None
    statement_end_balance: Decimal | None = None
    notes: str | None = Field(default=None, max_length=2000)


class ApproveMatchesRequest(BaseModel):
    # Explicit ids take precedence over the confidence threshold
    item_ids: list[UUID] | None = None
    min_confidence: Decimal | None = None


class ReconciliationResponse(BaseResponse):
    """Reconciliation session summary."""

    id: UUID
    account_id: UUID
    statement_end_date: date
    statement_end_balance: Decimal
    calculated_balance: Decimal | None
    balance_difference: Decimal
    is_balanced: bool
    status: ReconciliationSessionStatus
    match_percentage: Decimal | None
    notes: str | None
    created_at: datetime
    completed_at: datetime | None
    version: int


ReconciliationListResponse = PageResponse[ReconciliationResponse]


class ReconciliationItemResponse(BaseModel):
    id: UUID
    item_type: ReconciliationItemType
    match_method: MatchMethod | None
    match_confidence: Decimal | None
    transaction_id: UUID | None
    bank_reference: str | None
    bank_line: dict[str, Any] | None
    adjustment_amount: Decimal | None
    adjustment_description: str | None
    is_approved: bool
    approved_at: datetime | None


class ReconciliationStatisticsResponse(BaseModel):
    total_items: int
    matched_items: int
    unmatched_bank_items: int
    unmatched_app_items: int
    adjustment_items: int
    calculated_balance: Decimal
    match_percentage: Decimal


class ReconciliationDetailResponse(BaseModel):
    reconciliation: ReconciliationResponse
    items: list[ReconciliationItemResponse]
    statistics: ReconciliationStatisticsResponse


class StatementImportResponse(BaseModel):
    reconciliation_id: UUID
    bank_lines: int
    transactions: int
    exact_matches: int
    fuzzy_matches: int
    unmatched_bank: int
    unmatched_app: int
    overall_match_percentage: Decimal
    superseded_items: int


class UnmatchResponse(BaseModel):
    bank_item: ReconciliationItemResponse
    app_item: ReconciliationItemResponse


class CreatedTransactionResponse(BaseModel):
    item: ReconciliationItemResponse
    transaction_id: UUID


class ApproveMatchesResponse(BaseModel):
    approved: list[ReconciliationItemResponse]
    approved_count: int
    enriched_transactions: int
    skipped_item_ids: list[UUID]


class FinalizeResponse(BaseModel):
    reconciliation: ReconciliationResponse
    statistics: ReconciliationStatisticsResponse
    transactions_marked_reconciled: int


class AuditLogEntryResponse(BaseModel):
    id: UUID
    action: AuditAction
    user_id: UUID
    timestamp: datetime
    details: dict[str, Any] | None
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None


AuditLogListResponse = ListResponse[AuditLogEntryResponse]
