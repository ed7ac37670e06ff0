"""Pydantic schemas for duplicate detection API."""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from finance_recon.schemas.base import BaseResponse, ListResponse


class DuplicateMemberResponse(BaseModel):
    transaction_id: UUID
    account_id: UUID
    amount: Decimal
    txn_date: date
    description: str
    confidence: Decimal | None


class DuplicateGroupResponse(BaseModel):
    group_id: UUID
    transaction_ids: list[UUID]
    members: list[DuplicateMemberResponse]
    highest_confidence: Decimal
    description: str
    amount: Decimal
    total_amount: Decimal
    start_date: date
    end_date: date


class DuplicateGroupsResponse(BaseModel):
    groups: list[DuplicateGroupResponse]
    total_groups: int
    total_transactions: int
    scanned_transactions: int
    excluded_groups: int
    processed_at: datetime


class ExclusionRequest(BaseModel):
    transaction_ids: list[UUID] = Field(min_length=2)
    notes: str | None = Field(default=None, max_length=500)
    original_confidence: Decimal | None = None


class ExclusionResponse(BaseResponse):
    id: UUID
    transaction_ids: str
    notes: str | None
    original_confidence: Decimal | None
    excluded_at: datetime


ExclusionListResponse = ListResponse[ExclusionResponse]


class DuplicateResolutionRequest(BaseModel):
    transaction_ids_to_keep: list[UUID] = Field(default_factory=list)
    transaction_ids_to_delete: list[UUID] = Field(default_factory=list)
    mark_as_not_duplicate: bool = False
    notes: str | None = Field(default=None, max_length=500)
    original_confidence: Decimal | None = None


class ResolveDuplicatesRequest(BaseModel):
    resolutions: list[DuplicateResolutionRequest] = Field(min_length=1)


class ResolveDuplicatesResponse(BaseModel):
    groups_resolved: int
    transactions_deleted: int
    exclusions_created: int
    errors: list[str]
