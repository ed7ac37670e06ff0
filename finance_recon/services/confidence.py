"""Match confidence scoring shared by reconciliation and duplicate detection.

Confidence is an additive score of fixed weights:

- amount: 0.40 within the absolute tolerance, 0.20 within 5% of the source amount
- date: 0.30 on the same day, 0.20 within the day tolerance
- description: 0.20 / 0.15 / 0.10 for similarity above 0.9 / 0.7 / 0.5
- same account: +0.10
- differing external ids: -0.30

The total is clamped to [0, 1]. Pairs outside the amount or date tolerance are
rejected by ``passes_hard_filters`` before they are scored.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Protocol
from uuid import UUID

from finance_recon.services.errors import ValidationError
from finance_recon.services.similarity import similarity

AMOUNT_WEIGHT = Decimal("0.40")
AMOUNT_PARTIAL_WEIGHT = Decimal("0.20")
RELATIVE_AMOUNT_BAND = Decimal("0.05")

DATE_WEIGHT = Decimal("0.30")
DATE_PARTIAL_WEIGHT = Decimal("0.20")

# (similarity strictly above, points)
DESCRIPTION_TIERS: tuple[tuple[Decimal, Decimal], ...] = (
    (Decimal("0.9"), Decimal("0.20")),
    (Decimal("0.7"), Decimal("0.15")),
    (Decimal("0.5"), Decimal("0.10")),
)

SAME_ACCOUNT_BONUS = Decimal("0.10")
EXTERNAL_ID_PENALTY = Decimal("0.30")

ZERO = Decimal("0")
ONE = Decimal("1")


class MatchableRecord(Protocol):
    """Anything with the fields the scorer compares."""

    amount: Decimal
    txn_date: date
    description: str | None
    account_id: UUID | None
    external_id: str | None


@dataclass(frozen=True)
class ConfidenceParams:
    """Per-call tolerances and toggles. Weights are fixed module constants."""

    amount_tolerance: Decimal = Decimal("0.01")
    date_tolerance_days: int = 2
    use_description_matching: bool = True
    use_date_matching: bool = True

    def __post_init__(self) -> None:
        if self.amount_tolerance < 0:
            raise ValidationError("Amount tolerance must not be negative")
        if self.date_tolerance_days < 0:
            raise ValidationError("Date tolerance must not be negative")


@dataclass(frozen=True)
class ConfidenceBreakdown:
    """Per-signal contributions to a confidence score."""

    amount: Decimal
    date: Decimal
    description: Decimal
    account: Decimal
    penalty: Decimal

    @property
    def raw_total(self) -> Decimal:
        return self.amount + self.date + self.description + self.account - self.penalty

    @property
    def total(self) -> Decimal:
        return min(ONE, max(ZERO, self.raw_total))

    def as_dict(self) -> dict[str, float]:
        # Score components are not money; floats are fine for display
        return {
            "amount": float(self.amount),
            "date": float(self.date),
            "description": float(self.description),
            "account": float(self.account),
            "penalty": float(self.penalty),
            "total": float(self.total),
        }


def _day_gap(source: MatchableRecord, candidate: MatchableRecord) -> int:
    return abs((source.txn_date - candidate.txn_date).days)


def _within_relative_band(diff: Decimal, source_amount: Decimal) -> bool:
    return diff <= RELATIVE_AMOUNT_BAND * abs(source_amount)


def passes_hard_filters(
    source: MatchableRecord, candidate: MatchableRecord, params: ConfidenceParams
) -> bool:
    """Return True if the pair is close enough in date and amount to be scored."""
    if params.use_date_matching and _day_gap(source, candidate) > params.date_tolerance_days:
        return False
    diff = abs(source.amount - candidate.amount)
    return diff <= params.amount_tolerance or _within_relative_band(diff, source.amount)


def score_amount(source_amount: Decimal, candidate_amount: Decimal, params: ConfidenceParams) -> Decimal:
    diff = abs(source_amount - candidate_amount)
    if diff <= params.amount_tolerance:
        return AMOUNT_WEIGHT
    if _within_relative_band(diff, source_amount):
        return AMOUNT_PARTIAL_WEIGHT
    return ZERO


def score_date(day_gap: int, params: ConfidenceParams) -> Decimal:
    if day_gap == 0:
        return DATE_WEIGHT
    if params.use_date_matching and day_gap <= params.date_tolerance_days:
        return DATE_PARTIAL_WEIGHT
    return ZERO


def score_description(a: str | None, b: str | None) -> Decimal:
    ratio = similarity((a or "").strip(), (b or "").strip())
    for threshold, points in DESCRIPTION_TIERS:
        if ratio > threshold:
            return points
    return ZERO


def explain_confidence(
    source: MatchableRecord, candidate: MatchableRecord, params: ConfidenceParams
) -> ConfidenceBreakdown:
    """Score a pair without applying hard filters."""
    description = ZERO
    if params.use_description_matching:
        description = score_description(source.description, candidate.description)

    same_account = (
        source.account_id is not None and source.account_id == candidate.account_id
    )
    penalty = ZERO
    if source.external_id and candidate.external_id and source.external_id != candidate.external_id:
        penalty = EXTERNAL_ID_PENALTY

    return ConfidenceBreakdown(
        amount=score_amount(source.amount, candidate.amount, params),
        date=score_date(_day_gap(source, candidate), params),
        description=description,
        account=SAME_ACCOUNT_BONUS if same_account else ZERO,
        penalty=penalty,
    )


def calculate_confidence(
    source: MatchableRecord, candidate: MatchableRecord, params: ConfidenceParams
) -> Decimal:
    """Confidence in [0, 1] that two records describe the same event."""
    return explain_confidence(source, candidate, params).total


def score_pair(
    source: MatchableRecord, candidate: MatchableRecord, params: ConfidenceParams
) -> Decimal | None:
    """Apply hard filters, then score. Returns None for filtered-out pairs."""
    if not passes_hard_filters(source, candidate, params):
        return None
    return calculate_confidence(source, candidate, params)
