"""Services package."""

from finance_recon.services.confidence import (
    ConfidenceParams,
    calculate_confidence,
    passes_hard_filters,
    score_pair,
)
from finance_recon.services.duplicates import (
    DuplicateDetectionParams,
    DuplicateGroup,
    DuplicateGroupDetector,
    DuplicateGroupsResult,
    DuplicateResolution,
    DuplicateService,
)
from finance_recon.services.erasure import erase_user_reconciliation_data
from finance_recon.services.errors import (
    AuthorizationError,
    BusinessRuleViolationError,
    DuplicateScanCancelledError,
    InvalidStateError,
    NotFoundError,
    ReconciliationError,
    ValidationError,
)
from finance_recon.services.matching import (
    BankTransactionLine,
    MatchingParams,
    MatchingResult,
    ReconciliationMatcher,
    load_matching_config,
)
from finance_recon.services.reconciliation import (
    ReconciliationService,
    ReconciliationStatistics,
    calculate_statistics,
)
from finance_recon.services.similarity import similarity

__all__ = [
    "AuthorizationError",
    "BankTransactionLine",
    "BusinessRuleViolationError",
    "ConfidenceParams",
    "DuplicateDetectionParams",
    "DuplicateGroup",
    "DuplicateGroupDetector",
    "DuplicateGroupsResult",
    "DuplicateResolution",
    "DuplicateScanCancelledError",
    "DuplicateService",
    "InvalidStateError",
    "MatchingParams",
    "MatchingResult",
    "NotFoundError",
    "ReconciliationError",
    "ReconciliationMatcher",
    "ReconciliationService",
    "ReconciliationStatistics",
    "ValidationError",
    "calculate_confidence",
    "calculate_statistics",
    "erase_user_reconciliation_data",
    "load_matching_config",
    "passes_hard_filters",
    "score_pair",
    "similarity",
]
