"""Edit-distance similarity for transaction descriptions."""

import re
from decimal import Decimal

_WHITESPACE = re.compile(r"\s+")


def normalize_text(value: str | None) -> str:
    """Lowercase, collapse whitespace runs and trim."""
    if not value:
        return ""
    return _WHITESPACE.sub(" ", value.lower()).strip()


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance using a single rolling row."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(
                min(
                    previous[j] + 1,  # deletion
                    current[j - 1] + 1,  # insertion
                    previous[j - 1] + cost,  # substitution
                )
            )
        previous = current
    return previous[-1]


def similarity(a: str | None, b: str | None) -> Decimal:
    """Return normalized similarity in [0, 1].

    Two empty strings are identical (1.0); exactly one empty string scores 0.0.
    Otherwise ``1 - distance / max(len(a), len(b))`` on the normalized strings.
    """
    norm_a = normalize_text(a)
    norm_b = normalize_text(b)
    if not norm_a and not norm_b:
        return Decimal("1")
    if not norm_a or not norm_b:
        return Decimal("0")

    distance = levenshtein_distance(norm_a, norm_b)
    longest = max(len(norm_a), len(norm_b))
    return Decimal(1) - Decimal(distance) / Decimal(longest)
