"""Reconciliation session API router."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query, status

from finance_recon.deps import CurrentUserId, DbSession
from finance_recon.logger import get_logger
from finance_recon.models import (
    ReconciliationAuditLog,
    ReconciliationItem,
    ReconciliationSessionStatus,
)
from finance_recon.schemas import (
    AdjustmentRequest,
    ApproveMatchesRequest,
    ApproveMatchesResponse,
    AuditLogEntryResponse,
    AuditLogListResponse,
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
from finance_recon.services import (
    MatchingParams,
    ReconciliationError,
    ReconciliationService,
    ReconciliationStatistics,
)
from finance_recon.utils.exceptions import raise_for_domain_error

router = APIRouter(prefix="/reconciliations", tags=["reconciliations"])
logger = get_logger(__name__)


def _build_item_response(item: ReconciliationItem) -> ReconciliationItemResponse:
    return ReconciliationItemResponse(
        id=item.id,
        item_type=item.item_type,
        match_method=item.match_method,
        match_confidence=item.match_confidence,
        transaction_id=item.transaction_id,
        bank_reference=item.bank_reference,
        bank_line=item.get_bank_data(),
        adjustment_amount=item.adjustment_amount,
        adjustment_description=item.adjustment_description,
        is_approved=item.is_approved,
        approved_at=item.approved_at,
    )


def _build_statistics_response(statistics: ReconciliationStatistics) -> ReconciliationStatisticsResponse:
    return ReconciliationStatisticsResponse(
        total_items=statistics.total_items,
        matched_items=statistics.matched_items,
        unmatched_bank_items=statistics.unmatched_bank_items,
        unmatched_app_items=statistics.unmatched_app_items,
        adjustment_items=statistics.adjustment_items,
        calculated_balance=statistics.calculated_balance,
        match_percentage=statistics.match_percentage,
    )


def _build_audit_response(entry: ReconciliationAuditLog) -> AuditLogEntryResponse:
    return AuditLogEntryResponse(
        id=entry.id,
        action=entry.action,
        user_id=entry.user_id,
        timestamp=entry.timestamp,
        details=entry.get_details(),
        old_values=entry.get_old_values(),
        new_values=entry.get_new_values(),
    )


@router.post("", response_model=ReconciliationResponse, status_code=status.HTTP_201_CREATED)
async def start_reconciliation(
    payload: ReconciliationStartRequest,
    db: DbSession,
    user_id: CurrentUserId,
) -> ReconciliationResponse:
    """Open a reconciliation session for an account."""
    service = ReconciliationService()
    try:
        reconciliation = await service.start_reconciliation(
            db,
            user_id=user_id,
            account_id=payload.account_id,
            statement_end_date=payload.statement_end_date,
            statement_end_balance=payload.statement_end_balance,
            notes=payload.notes,
        )
    except ReconciliationError as exc:
        logger.debug("Reconciliation start rejected", error=str(exc), account_id=str(payload.account_id))
        raise_for_domain_error(exc)
    await db.commit()
    return ReconciliationResponse.model_validate(reconciliation)


@router.get("", response_model=ReconciliationListResponse)
async def list_reconciliations(
    db: DbSession,
    user_id: CurrentUserId,
    account_id: UUID | None = None,
    status_filter: ReconciliationSessionStatus | None = Query(None, alias="status"),
    start_date: date | None = None,
    end_date: date | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> ReconciliationListResponse:
    """List reconciliation sessions with optional filters."""
    service = ReconciliationService()
    try:
        items, total = await service.list_reconciliations(
            db,
            user_id=user_id,
            account_id=account_id,
            status=status_filter,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=offset,
        )
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    return ReconciliationListResponse(
        items=[ReconciliationResponse.model_validate(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{reconciliation_id}", response_model=ReconciliationDetailResponse)
async def get_reconciliation(
    reconciliation_id: UUID,
    db: DbSession,
    user_id: CurrentUserId,
) -> ReconciliationDetailResponse:
    """Session with its active items and statistics."""
    service = ReconciliationService()
    try:
        details = await service.get_details(db, reconciliation_id, user_id=user_id)
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    return ReconciliationDetailResponse(
        reconciliation=ReconciliationResponse.model_validate(details.reconciliation),
        items=[_build_item_response(item) for item in details.items],
        statistics=_build_statistics_response(details.statistics),
    )


@router.patch("/{reconciliation_id}", response_model=ReconciliationResponse)
async def update_reconciliation(
    reconciliation_id: UUID,
    payload: ReconciliationUpdateRequest,
    db: DbSession,
    user_id: CurrentUserId,
) -> ReconciliationResponse:
    """Correct the statement details of an open session."""
    service = ReconciliationService()
    try:
        reconciliation = await service.update_reconciliation(
            db,
            reconciliation_id,
            user_id=user_id,
            statement_end_date=payload.statement_end_date,
            statement_end_balance=payload.statement_end_balance,
            notes=payload.notes,
        )
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    await db.commit()
    return ReconciliationResponse.model_validate(reconciliation)


@router.post("/{reconciliation_id}/statement", response_model=StatementImportResponse)
async def import_statement(
    reconciliation_id: UUID,
    payload: StatementImportRequest,
    db: DbSession,
    user_id: CurrentUserId,
) -> StatementImportResponse:
    """Import statement lines and run matching."""
    service = ReconciliationService()
    try:
        params = MatchingParams.from_config(
            service.config,
            amount_tolerance=payload.amount_tolerance,
            date_range_tolerance_days=payload.date_range_tolerance_days,
            use_description_matching=payload.use_description_matching,
            use_date_range_matching=payload.use_date_range_matching,
            min_confidence=payload.min_confidence,
        )
        result = await service.import_statement(
            db,
            reconciliation_id,
            user_id=user_id,
            bank_lines=[line.to_line() for line in payload.lines],
            params=params,
            start_date=payload.start_date,
            end_date=payload.end_date,
        )
    except ReconciliationError as exc:
        logger.debug("Statement import rejected", error=str(exc), reconciliation_id=str(reconciliation_id))
        raise_for_domain_error(exc)
    await db.commit()

    matching = result.matching
    return StatementImportResponse(
        reconciliation_id=reconciliation_id,
        bank_lines=matching.total_bank_lines,
        transactions=matching.total_transactions,
        exact_matches=matching.exact_matches,
        fuzzy_matches=matching.fuzzy_matches,
        unmatched_bank=len(matching.unmatched_bank),
        unmatched_app=len(matching.unmatched_app),
        overall_match_percentage=matching.overall_match_percentage,
        superseded_items=result.superseded_items,
    )


@router.post("/{reconciliation_id}/match", response_model=ReconciliationItemResponse)
async def manual_match(
    reconciliation_id: UUID,
    payload: ManualMatchRequest,
    db: DbSession,
    user_id: CurrentUserId,
) -> ReconciliationItemResponse:
    """Force-match a bank line to an internal transaction."""
    service = ReconciliationService()
    try:
        item = await service.manual_match(
            db,
            reconciliation_id,
            user_id=user_id,
            bank_reference=payload.bank_reference,
            transaction_id=payload.transaction_id,
            bank_line=payload.bank_line.to_line() if payload.bank_line else None,
        )
    except ReconciliationError as exc:
        logger.debug("Manual match rejected", error=str(exc), reconciliation_id=str(reconciliation_id))
        raise_for_domain_error(exc)
    await db.commit()
    return _build_item_response(item)


@router.post("/{reconciliation_id}/items/{item_id}/unmatch", response_model=UnmatchResponse)
async def unmatch_item(
    reconciliation_id: UUID,
    item_id: UUID,
    db: DbSession,
    user_id: CurrentUserId,
) -> UnmatchResponse:
    """Split a matched item into its unmatched halves."""
    service = ReconciliationService()
    try:
        bank_item, app_item = await service.unmatch(db, reconciliation_id, item_id, user_id=user_id)
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    await db.commit()
    return UnmatchResponse(
        bank_item=_build_item_response(bank_item),
        app_item=_build_item_response(app_item),
    )


@router.post(
    "/{reconciliation_id}/adjustments",
    response_model=ReconciliationItemResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_adjustment(
    reconciliation_id: UUID,
    payload: AdjustmentRequest,
    db: DbSession,
    user_id: CurrentUserId,
) -> ReconciliationItemResponse:
    service = ReconciliationService()
    try:
        item = await service.add_adjustment(
            db,
            reconciliation_id,
            user_id=user_id,
            amount=payload.amount,
            description=payload.description,
        )
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    await db.commit()
    return _build_item_response(item)


@router.post(
    "/{reconciliation_id}/items/{item_id}/transaction",
    response_model=CreatedTransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_transaction_from_bank_line(
    reconciliation_id: UUID,
    item_id: UUID,
    db: DbSession,
    user_id: CurrentUserId,
) -> CreatedTransactionResponse:
    """Record an unmatched bank line as a new transaction."""
    service = ReconciliationService()
    try:
        item, transaction = await service.create_transaction_from_bank_line(
            db, reconciliation_id, item_id, user_id=user_id
        )
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    await db.commit()
    return CreatedTransactionResponse(item=_build_item_response(item), transaction_id=transaction.id)


@router.delete(
    "/{reconciliation_id}/items/{item_id}/transaction",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_unmatched_transaction(
    reconciliation_id: UUID,
    item_id: UUID,
    db: DbSession,
    user_id: CurrentUserId,
) -> None:
    """Delete the internal transaction behind an unmatched item."""
    service = ReconciliationService()
    try:
        await service.delete_unmatched_transaction(db, reconciliation_id, item_id, user_id=user_id)
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    await db.commit()


@router.post("/{reconciliation_id}/approve", response_model=ApproveMatchesResponse)
async def approve_matches(
    reconciliation_id: UUID,
    payload: ApproveMatchesRequest,
    db: DbSession,
    user_id: CurrentUserId,
) -> ApproveMatchesResponse:
    """Approve matched pairs by id or by confidence threshold."""
    service = ReconciliationService()
    try:
        result = await service.approve_matches(
            db,
            reconciliation_id,
            user_id=user_id,
            item_ids=payload.item_ids,
            min_confidence=payload.min_confidence,
        )
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    await db.commit()
    return ApproveMatchesResponse(
        approved=[_build_item_response(item) for item in result.approved],
        approved_count=len(result.approved),
        enriched_transactions=result.enriched_transactions,
        skipped_item_ids=result.skipped_item_ids,
    )


@router.post("/{reconciliation_id}/finalize", response_model=FinalizeResponse)
async def finalize_reconciliation(
    reconciliation_id: UUID,
    payload: FinalizeRequest,
    db: DbSession,
    user_id: CurrentUserId,
) -> FinalizeResponse:
    """Complete the session and mark matched transactions reconciled."""
    service = ReconciliationService()
    try:
        result = await service.finalize(
            db,
            reconciliation_id,
            user_id=user_id,
            force_finalize=payload.force_finalize,
            notes=payload.notes,
        )
    except ReconciliationError as exc:
        logger.info("Finalize rejected", error=str(exc), code=exc.code, reconciliation_id=str(reconciliation_id))
        raise_for_domain_error(exc)
    await db.commit()
    return FinalizeResponse(
        reconciliation=ReconciliationResponse.model_validate(result.reconciliation),
        statistics=_build_statistics_response(result.statistics),
        transactions_marked_reconciled=result.transactions_marked_reconciled,
    )


@router.post("/{reconciliation_id}/cancel", response_model=ReconciliationResponse)
async def cancel_reconciliation(
    reconciliation_id: UUID,
    payload: CancelRequest,
    db: DbSession,
    user_id: CurrentUserId,
) -> ReconciliationResponse:
    service = ReconciliationService()
    try:
        reconciliation = await service.cancel(
            db, reconciliation_id, user_id=user_id, reason=payload.reason
        )
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    await db.commit()
    return ReconciliationResponse.model_validate(reconciliation)


@router.get("/{reconciliation_id}/audit-log", response_model=AuditLogListResponse)
async def get_audit_log(
    reconciliation_id: UUID,
    db: DbSession,
    user_id: CurrentUserId,
) -> AuditLogListResponse:
    """Audit trail for a session, oldest first."""
    service = ReconciliationService()
    try:
        entries = await service.get_audit_log(db, reconciliation_id, user_id=user_id)
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    return AuditLogListResponse(
        items=[_build_audit_response(entry) for entry in entries],
        total=len(entries),
    )
