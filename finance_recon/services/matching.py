"""Reconciliation matching engine.

Matches imported bank statement lines against internally recorded transactions
in two passes:

1. Exact pass: identical amount and date (within ``exact_date_tolerance_days``)
   with exactly one unclaimed candidate.
2. Fuzzy pass: highest confidence candidate at or above ``min_confidence``;
   ties go to the earliest transaction date, then the lowest transaction id.

Claims are tracked in sets local to one ``match`` call.
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any
from uuid import UUID

import yaml

from finance_recon.config import settings
from finance_recon.logger import get_logger, log_timing
from finance_recon.models import (
    MatchMethod,
    ReconciliationItem,
    ReconciliationItemType,
    Transaction,
)
from finance_recon.services.confidence import (
    ConfidenceParams,
    calculate_confidence,
    explain_confidence,
    passes_hard_filters,
)
from finance_recon.services.errors import ValidationError

logger = get_logger(__name__)

EXACT_CONFIDENCE = Decimal("1.0000")
PERCENT = Decimal("0.01")


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class MatchingConfig:
    """Tolerances and thresholds loaded from config/reconciliation.yaml."""

    amount_tolerance: Decimal
    date_range_tolerance_days: int
    exact_date_tolerance_days: int
    min_confidence: Decimal
    use_description_matching: bool
    use_date_range_matching: bool
    statement_window_days: int
    max_unmatched_rate: Decimal
    approval_min_confidence: Decimal
    duplicate_amount_tolerance: Decimal
    duplicate_date_tolerance_days: int
    duplicate_min_confidence: Decimal
    duplicate_same_account_only: bool
    duplicate_include_reviewed: bool


DEFAULT_CONFIG = MatchingConfig(
    amount_tolerance=Decimal("0.01"),
    date_range_tolerance_days=2,
    exact_date_tolerance_days=0,
    min_confidence=Decimal("0.50"),
    use_description_matching=True,
    use_date_range_matching=True,
    statement_window_days=30,
    max_unmatched_rate=Decimal("0.05"),
    approval_min_confidence=Decimal("0.95"),
    duplicate_amount_tolerance=Decimal("0.01"),
    duplicate_date_tolerance_days=1,
    duplicate_min_confidence=Decimal("0.50"),
    duplicate_same_account_only=False,
    duplicate_include_reviewed=False,
)

_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "RECON_AMOUNT_TOLERANCE": ("amount_tolerance", Decimal),
    "RECON_DATE_TOLERANCE_DAYS": ("date_range_tolerance_days", int),
    "RECON_MIN_CONFIDENCE": ("min_confidence", Decimal),
    "RECON_MAX_UNMATCHED_RATE": ("max_unmatched_rate", Decimal),
}

_config_cache: MatchingConfig | None = None


def _config_path() -> Path:
    if settings.reconciliation_config_path:
        return Path(settings.reconciliation_config_path)
    return Path(__file__).resolve().parents[2] / "config" / "reconciliation.yaml"


def _parse_config(raw: dict[str, Any], base: MatchingConfig) -> MatchingConfig:
    matching = raw.get("matching", {}) or {}
    finalize = raw.get("finalize", {}) or {}
    duplicates = raw.get("duplicates", {}) or {}

    return MatchingConfig(
        amount_tolerance=Decimal(str(matching.get("amount_tolerance", base.amount_tolerance))),
        date_range_tolerance_days=int(
            matching.get("date_range_tolerance_days", base.date_range_tolerance_days)
        ),
        exact_date_tolerance_days=int(
            matching.get("exact_date_tolerance_days", base.exact_date_tolerance_days)
        ),
        min_confidence=Decimal(str(matching.get("min_confidence", base.min_confidence))),
        use_description_matching=bool(
            matching.get("use_description_matching", base.use_description_matching)
        ),
        use_date_range_matching=bool(
            matching.get("use_date_range_matching", base.use_date_range_matching)
        ),
        statement_window_days=int(matching.get("statement_window_days", base.statement_window_days)),
        max_unmatched_rate=Decimal(str(finalize.get("max_unmatched_rate", base.max_unmatched_rate))),
        approval_min_confidence=Decimal(
            str(finalize.get("approval_min_confidence", base.approval_min_confidence))
        ),
        duplicate_amount_tolerance=Decimal(
            str(duplicates.get("amount_tolerance", base.duplicate_amount_tolerance))
        ),
        duplicate_date_tolerance_days=int(
            duplicates.get("date_tolerance_days", base.duplicate_date_tolerance_days)
        ),
        duplicate_min_confidence=Decimal(
            str(duplicates.get("min_confidence", base.duplicate_min_confidence))
        ),
        duplicate_same_account_only=bool(
            duplicates.get("same_account_only", base.duplicate_same_account_only)
        ),
        duplicate_include_reviewed=bool(
            duplicates.get("include_reviewed", base.duplicate_include_reviewed)
        ),
    )


def load_matching_config(force_reload: bool = False) -> MatchingConfig:
    """Load matching configuration from YAML if available.

    Caches the result to avoid repeated disk I/O. ``RECON_*`` environment
    variables override individual values.
    """
    global _config_cache
    if _config_cache is not None and not force_reload:
        return _config_cache

    config = DEFAULT_CONFIG
    config_path = _config_path()

    if config_path.exists():
        try:
            raw = yaml.safe_load(config_path.read_text()) or {}
            config = _parse_config(raw, config)
        except (OSError, yaml.YAMLError, TypeError, ValueError, InvalidOperation) as e:
            logger.warning(
                "Failed to load reconciliation config - using defaults",
                config_path=str(config_path),
                error=str(e),
                error_type=type(e).__name__,
            )

    for env_name, (field_name, cast) in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            config = replace(config, **{field_name: cast(value)})

    _config_cache = config
    return config


# =============================================================================
# Statement lines and parameters
# =============================================================================


@dataclass(frozen=True)
class BankTransactionLine:
    """One row of an imported bank statement."""

    reference: str
    amount: Decimal
    txn_date: date
    description: str = ""
    running_balance: Decimal | None = None
    # Provider-supplied transaction id, when the bank feed carries one
    external_id: str | None = None
    account_id: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference": self.reference,
            "amount": self.amount,
            "txn_date": self.txn_date,
            "description": self.description,
            "running_balance": self.running_balance,
            "external_id": self.external_id,
            "account_id": self.account_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BankTransactionLine:
        running_balance = data.get("running_balance")
        account_id = data.get("account_id")
        return cls(
            reference=str(data["reference"]),
            amount=Decimal(str(data["amount"])),
            txn_date=date.fromisoformat(str(data["txn_date"])),
            description=data.get("description") or "",
            running_balance=Decimal(str(running_balance)) if running_balance is not None else None,
            external_id=data.get("external_id"),
            account_id=UUID(str(account_id)) if account_id else None,
        )


@dataclass(frozen=True)
class MatchingParams:
    """Parameters for one matching run."""

    amount_tolerance: Decimal = Decimal("0.01")
    date_range_tolerance_days: int = 2
    use_description_matching: bool = True
    use_date_range_matching: bool = True
    exact_date_tolerance_days: int = 0
    min_confidence: Decimal = Decimal("0.50")

    def __post_init__(self) -> None:
        if self.exact_date_tolerance_days < 0:
            raise ValidationError("Exact date tolerance must not be negative")
        if not Decimal("0") <= self.min_confidence <= Decimal("1"):
            raise ValidationError("Minimum confidence must be between 0 and 1")
        # Validates the shared tolerances
        self.confidence_params()

    @classmethod
    def from_config(cls, config: MatchingConfig | None = None, **overrides: Any) -> MatchingParams:
        config = config or load_matching_config()
        values: dict[str, Any] = {
            "amount_tolerance": config.amount_tolerance,
            "date_range_tolerance_days": config.date_range_tolerance_days,
            "use_description_matching": config.use_description_matching,
            "use_date_range_matching": config.use_date_range_matching,
            "exact_date_tolerance_days": config.exact_date_tolerance_days,
            "min_confidence": config.min_confidence,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    def confidence_params(self) -> ConfidenceParams:
        return ConfidenceParams(
            amount_tolerance=self.amount_tolerance,
            date_tolerance_days=self.date_range_tolerance_days,
            use_description_matching=self.use_description_matching,
            use_date_matching=self.use_date_range_matching,
        )


# =============================================================================
# Results
# =============================================================================


@dataclass
class MatchedPair:
    """A bank line paired with an internal transaction."""

    bank_line: BankTransactionLine
    transaction: Transaction
    confidence: Decimal
    method: MatchMethod
    breakdown: dict[str, float] | None = None


@dataclass
class MatchingResult:
    """Outcome of one matching run."""

    matched_pairs: list[MatchedPair] = field(default_factory=list)
    unmatched_bank: list[BankTransactionLine] = field(default_factory=list)
    unmatched_app: list[Transaction] = field(default_factory=list)

    @property
    def exact_matches(self) -> int:
        return sum(1 for pair in self.matched_pairs if pair.method == MatchMethod.EXACT)

    @property
    def fuzzy_matches(self) -> int:
        return sum(1 for pair in self.matched_pairs if pair.method == MatchMethod.FUZZY)

    @property
    def total_bank_lines(self) -> int:
        return len(self.matched_pairs) + len(self.unmatched_bank)

    @property
    def total_transactions(self) -> int:
        return len(self.matched_pairs) + len(self.unmatched_app)

    @property
    def overall_match_percentage(self) -> Decimal:
        """Share of candidate records (both sides) consumed by a match.

        With no candidates at all the run is vacuously complete: 100.
        """
        total = self.total_bank_lines + self.total_transactions
        if total == 0:
            return Decimal("100.00")
        matched = len(self.matched_pairs) * 2
        return (Decimal(matched) / Decimal(total) * 100).quantize(PERCENT)

    def summary(self) -> dict[str, Any]:
        return {
            "bank_lines": self.total_bank_lines,
            "transactions": self.total_transactions,
            "exact_matches": self.exact_matches,
            "fuzzy_matches": self.fuzzy_matches,
            "unmatched_bank": len(self.unmatched_bank),
            "unmatched_app": len(self.unmatched_app),
            "overall_match_percentage": self.overall_match_percentage,
        }


# =============================================================================
# Matcher
# =============================================================================


class ReconciliationMatcher:
    """Pairs statement lines with internal transactions."""

    def __init__(self, params: MatchingParams | None = None) -> None:
        self.params = params or MatchingParams()

    def match(
        self,
        bank_lines: Sequence[BankTransactionLine],
        transactions: Sequence[Transaction],
        params: MatchingParams | None = None,
    ) -> MatchingResult:
        """Run the exact pass, then the fuzzy pass, over unclaimed records."""
        params = params or self.params
        result = MatchingResult()
        claimed_lines: set[int] = set()
        claimed_txns: set[int] = set()

        with log_timing(
            "reconciliation_matching",
            logger=logger,
            bank_lines=len(bank_lines),
            transactions=len(transactions),
        ) as timing:
            self._exact_pass(bank_lines, transactions, params, claimed_lines, claimed_txns, result)
            self._fuzzy_pass(bank_lines, transactions, params, claimed_lines, claimed_txns, result)

            result.unmatched_bank = [
                line for index, line in enumerate(bank_lines) if index not in claimed_lines
            ]
            result.unmatched_app = [
                txn for index, txn in enumerate(transactions) if index not in claimed_txns
            ]
            timing["exact_matches"] = result.exact_matches
            timing["fuzzy_matches"] = result.fuzzy_matches

        return result

    def _exact_pass(
        self,
        bank_lines: Sequence[BankTransactionLine],
        transactions: Sequence[Transaction],
        params: MatchingParams,
        claimed_lines: set[int],
        claimed_txns: set[int],
        result: MatchingResult,
    ) -> None:
        for line_index, line in enumerate(bank_lines):
            candidates = [
                txn_index
                for txn_index, txn in enumerate(transactions)
                if txn_index not in claimed_txns
                and txn.amount == line.amount
                and abs((txn.txn_date - line.txn_date).days) <= params.exact_date_tolerance_days
            ]
            if len(candidates) != 1:
                continue

            txn_index = candidates[0]
            claimed_lines.add(line_index)
            claimed_txns.add(txn_index)
            result.matched_pairs.append(
                MatchedPair(
                    bank_line=line,
                    transaction=transactions[txn_index],
                    confidence=EXACT_CONFIDENCE,
                    method=MatchMethod.EXACT,
                )
            )

    def _fuzzy_pass(
        self,
        bank_lines: Sequence[BankTransactionLine],
        transactions: Sequence[Transaction],
        params: MatchingParams,
        claimed_lines: set[int],
        claimed_txns: set[int],
        result: MatchingResult,
    ) -> None:
        confidence_params = params.confidence_params()

        for line_index, line in enumerate(bank_lines):
            if line_index in claimed_lines:
                continue

            best: tuple[tuple[Decimal, date, str], int] | None = None
            for txn_index, txn in enumerate(transactions):
                if txn_index in claimed_txns:
                    continue
                if not passes_hard_filters(line, txn, confidence_params):
                    continue
                score = calculate_confidence(line, txn, confidence_params)
                if score < params.min_confidence:
                    continue
                # Highest score first, then earliest date, then lowest id
                rank = (-score, txn.txn_date, str(txn.id))
                if best is None or rank < best[0]:
                    best = (rank, txn_index)

            if best is None:
                continue

            txn_index = best[1]
            txn = transactions[txn_index]
            breakdown = explain_confidence(line, txn, confidence_params)
            claimed_lines.add(line_index)
            claimed_txns.add(txn_index)
            result.matched_pairs.append(
                MatchedPair(
                    bank_line=line,
                    transaction=txn,
                    confidence=breakdown.total,
                    method=MatchMethod.FUZZY,
                    breakdown=breakdown.as_dict(),
                )
            )

    # -------------------------------------------------------------------------
    # Manual override
    # -------------------------------------------------------------------------

    def manual_confidence(
        self,
        bank_line: BankTransactionLine,
        transaction: Transaction,
        params: MatchingParams | None = None,
    ) -> Decimal:
        """Informational confidence for a user-chosen pair; no filters apply."""
        params = params or self.params
        return calculate_confidence(bank_line, transaction, params.confidence_params())

    def unmatch(self, item: ReconciliationItem) -> ReconciliationItem:
        """Split a matched item into its two unmatched halves.

        The existing item keeps the bank half and becomes UnmatchedBank. The
        returned new item carries the transaction half as UnmatchedApp; the caller
        persists it.
        """
        if item.item_type != ReconciliationItemType.MATCHED:
            raise ValueError("Only matched items can be unmatched")

        app_item = ReconciliationItem(
            reconciliation_id=item.reconciliation_id,
            transaction=item.transaction,
            transaction_id=item.transaction_id,
            item_type=ReconciliationItemType.UNMATCHED_APP,
        )
        item.item_type = ReconciliationItemType.UNMATCHED_BANK
        item.transaction = None
        item.transaction_id = None
        item.match_method = None
        item.match_confidence = None
        item.is_approved = False
        item.approved_at = None
        return app_item

    def manual_match(
        self,
        bank_item: ReconciliationItem,
        transaction: Transaction,
        app_items: Iterable[ReconciliationItem] = (),
        params: MatchingParams | None = None,
    ) -> Decimal:
        """Pair an UnmatchedBank item with a transaction as a Manual match.

        Unmatched halves for the transaction are retired. Both sides must already
        be released from any automatic match. Returns the informational confidence.
        """
        if bank_item.item_type != ReconciliationItemType.UNMATCHED_BANK:
            raise ValueError("Bank item must be unmatched before a manual match")

        bank_data = bank_item.get_bank_data()
        confidence = EXACT_CONFIDENCE
        if bank_data:
            confidence = self.manual_confidence(BankTransactionLine.from_dict(bank_data), transaction, params)

        for app_item in app_items:
            app_item.is_deleted = True

        bank_item.item_type = ReconciliationItemType.MATCHED
        bank_item.transaction = transaction
        bank_item.transaction_id = transaction.id
        bank_item.match_method = MatchMethod.MANUAL
        bank_item.match_confidence = confidence
        return confidence
