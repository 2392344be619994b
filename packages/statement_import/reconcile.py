"""Merge heuristic and generative extraction results.

Both functions are pure. Two transactions are considered the same booking
when their similarity exceeds the merge threshold:

    0.4 * (same date) + 0.4 * (|amount difference| < 0.01) + 0.2 * Jaccard(description tokens)
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from decimal import Decimal

from .models import Transaction

_TOKEN_RE = re.compile(r"\w+")
_AMOUNT_TOLERANCE = Decimal("0.01")


def _tokens(text: str) -> set[str]:
    return set(_TOKEN_RE.findall(text.lower()))


def transaction_similarity(a: Transaction, b: Transaction) -> float:
    score = 0.0
    if a.date == b.date:
        score += 0.4
    if abs(a.amount - b.amount) < _AMOUNT_TOLERANCE:
        score += 0.4
    ta, tb = _tokens(a.description), _tokens(b.description)
    if ta or tb:
        score += 0.2 * len(ta & tb) / len(ta | tb)
    return round(score, 4)


def merge_transactions(
    heuristic: Sequence[Transaction],
    generative: Sequence[Transaction],
    *,
    threshold: float = 0.7,
) -> list[Transaction]:
    """Combine both result lists without double-counting bookings.

    Each heuristic transaction is paired with its most similar, still unused
    generative transaction. A pair above ``threshold`` collapses into the
    higher-confidence side carrying the higher of the two confidences. The
    remaining generative transactions are appended in their original order.
    """

    used: set[int] = set()
    merged: list[Transaction] = []
    for h in heuristic:
        best_idx, best_score = -1, threshold
        for idx, g in enumerate(generative):
            if idx in used:
                continue
            score = transaction_similarity(h, g)
            if score > best_score:
                best_idx, best_score = idx, score
        if best_idx < 0:
            merged.append(h)
            continue
        used.add(best_idx)
        g = generative[best_idx]
        keep = h if h.confidence >= g.confidence else g
        merged.append(keep.model_copy(update={"confidence": max(h.confidence, g.confidence)}))
    merged.extend(g for idx, g in enumerate(generative) if idx not in used)
    return merged


__all__ = ["merge_transactions", "transaction_similarity"]
