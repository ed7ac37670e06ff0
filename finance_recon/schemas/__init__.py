"""Pydantic schemas package."""

from finance_recon.schemas.base import BaseResponse, ListResponse, PageResponse
from finance_recon.schemas.duplicates import (
    DuplicateGroupResponse,
    DuplicateGroupsResponse,
    ExclusionListResponse,
    ExclusionRequest,
    ExclusionResponse,
    ResolveDuplicatesRequest,
    ResolveDuplicatesResponse,
)
from finance_recon.schemas.reconciliation import (
    AdjustmentRequest,
    ApproveMatchesRequest,
    ApproveMatchesResponse,
    AuditLogEntryResponse,
    AuditLogListResponse,
    BankLineRequest,
    CancelRequest,
    CreatedTransactionResponse,
    FinalizeRequest,
    FinalizeResponse,
    ManualMatchRequest,
    ReconciliationDetailResponse,
    ReconciliationItemResponse,
    ReconciliationListResponse,
    ReconciliationResponse,
    ReconciliationStartRequest,
    ReconciliationStatisticsResponse,
    ReconciliationUpdateRequest,
    StatementImportRequest,
    StatementImportResponse,
    UnmatchResponse,
)

__all__ = [
    "AdjustmentRequest",
    "ApproveMatchesRequest",
    "ApproveMatchesResponse",
    "AuditLogEntryResponse",
    "AuditLogListResponse",
    "BankLineRequest",
    "BaseResponse",
    "CancelRequest",
    "CreatedTransactionResponse",
    "DuplicateGroupResponse",
    "DuplicateGroupsResponse",
    "ExclusionListResponse",
    "ExclusionRequest",
    "ExclusionResponse",
    "FinalizeRequest",
    "FinalizeResponse",
    "ListResponse",
    "PageResponse",
    "ManualMatchRequest",
    "ReconciliationDetailResponse",
    "ReconciliationItemResponse",
    "ReconciliationListResponse",
    "ReconciliationResponse",
    "ReconciliationStartRequest",
    "ReconciliationStatisticsResponse",
    "ReconciliationUpdateRequest",
    "ResolveDuplicatesRequest",
    "ResolveDuplicatesResponse",
    "StatementImportRequest",
    "StatementImportResponse",
    "UnmatchResponse",
]
