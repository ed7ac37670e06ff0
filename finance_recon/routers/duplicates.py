"""Duplicate transaction detection API router."""

from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Query, status

from finance_recon.deps import CurrentUserId, DbSession
from finance_recon.logger import get_logger
from finance_recon.schemas import (
    DuplicateGroupResponse,
    DuplicateGroupsResponse,
    ExclusionListResponse,
    ExclusionRequest,
    ExclusionResponse,
    ResolveDuplicatesRequest,
    ResolveDuplicatesResponse,
)
from finance_recon.schemas.duplicates import DuplicateMemberResponse
from finance_recon.services import (
    DuplicateDetectionParams,
    DuplicateGroup,
    DuplicateResolution,
    DuplicateService,
    ReconciliationError,
)
from finance_recon.utils.exceptions import raise_for_domain_error

router = APIRouter(prefix="/duplicates", tags=["duplicates"])
logger = get_logger(__name__)


def _build_group_response(group: DuplicateGroup) -> DuplicateGroupResponse:
    return DuplicateGroupResponse(
        group_id=group.group_id,
        transaction_ids=group.transaction_ids,
        members=[
            DuplicateMemberResponse(
                transaction_id=member.transaction.id,
                account_id=member.transaction.account_id,
                amount=member.transaction.amount,
                txn_date=member.transaction.txn_date,
                description=member.transaction.description,
                confidence=member.confidence,
            )
            for member in group.members
        ],
        highest_confidence=group.highest_confidence,
        description=group.description,
        amount=group.amount,
        total_amount=group.total_amount,
        start_date=group.start_date,
        end_date=group.end_date,
    )


@router.get("", response_model=DuplicateGroupsResponse)
async def find_duplicates(
    db: DbSession,
    user_id: CurrentUserId,
    amount_tolerance: Decimal | None = Query(None),
    date_tolerance_days: int | None = Query(None),
    same_account_only: bool | None = Query(None),
    min_confidence: Decimal | None = Query(None),
    include_reviewed: bool | None = Query(None),
) -> DuplicateGroupsResponse:
    """Scan the user's transactions for likely duplicates."""
    service = DuplicateService()
    try:
        params = DuplicateDetectionParams.from_config(
            amount_tolerance=amount_tolerance,
            date_tolerance_days=date_tolerance_days,
            same_account_only=same_account_only,
            min_confidence=min_confidence,
            include_reviewed=include_reviewed,
        )
        result = await service.detect(db, user_id=user_id, params=params)
    except ReconciliationError as exc:
        logger.info("Duplicate scan rejected", error=str(exc), code=exc.code, user_id=str(user_id))
        raise_for_domain_error(exc)

    return DuplicateGroupsResponse(
        groups=[_build_group_response(group) for group in result.groups],
        total_groups=result.total_groups,
        total_transactions=result.total_transactions,
        scanned_transactions=result.scanned_transactions,
        excluded_groups=result.excluded_groups,
        processed_at=result.processed_at,
    )


@router.post("/exclusions", response_model=ExclusionResponse, status_code=status.HTTP_201_CREATED)
async def create_exclusion(
    payload: ExclusionRequest,
    db: DbSession,
    user_id: CurrentUserId,
) -> ExclusionResponse:
    """Dismiss a group so future scans stop reporting it."""
    service = DuplicateService()
    try:
        exclusion = await service.exclude_group(
            db,
            user_id=user_id,
            transaction_ids=payload.transaction_ids,
            notes=payload.notes,
            original_confidence=payload.original_confidence,
        )
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    await db.commit()
    return ExclusionResponse.model_validate(exclusion)


@router.get("/exclusions", response_model=ExclusionListResponse)
async def list_exclusions(db: DbSession, user_id: CurrentUserId) -> ExclusionListResponse:
    service = DuplicateService()
    exclusions = await service.list_exclusions(db, user_id=user_id)
    return ExclusionListResponse(
        items=[ExclusionResponse.model_validate(exclusion) for exclusion in exclusions],
        total=len(exclusions),
    )


@router.delete("/exclusions/{exclusion_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_exclusion(exclusion_id: UUID, db: DbSession, user_id: CurrentUserId) -> None:
    service = DuplicateService()
    try:
        await service.delete_exclusion(db, exclusion_id, user_id=user_id)
    except ReconciliationError as exc:
        raise_for_domain_error(exc)
    await db.commit()


@router.post("/resolve", response_model=ResolveDuplicatesResponse)
async def resolve_duplicates(
    payload: ResolveDuplicatesRequest,
    db: DbSession,
    user_id: CurrentUserId,
) -> ResolveDuplicatesResponse:
    """Apply keep/delete or not-a-duplicate decisions group by group."""
    service = DuplicateService()
    result = await service.resolve(
        db,
        user_id=user_id,
        resolutions=[
            DuplicateResolution(
                transaction_ids_to_keep=resolution.transaction_ids_to_keep,
                transaction_ids_to_delete=resolution.transaction_ids_to_delete,
                mark_as_not_duplicate=resolution.mark_as_not_duplicate,
                notes=resolution.notes,
                original_confidence=resolution.original_confidence,
            )
            for resolution in payload.resolutions
        ],
    )
    await db.commit()
    return ResolveDuplicatesResponse(
        groups_resolved=result.groups_resolved,
        transactions_deleted=result.transactions_deleted,
        exclusions_created=result.exclusions_created,
        errors=result.errors,
    )
