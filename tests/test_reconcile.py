from __future__ import annotations

import datetime as dt
from decimal import Decimal

from statement_import.models import Transaction
from statement_import.reconcile import merge_transactions, transaction_similarity


def _tx(
    description: str,
    amount: str,
    *,
    day: int = 15,
    confidence: float = 0.5,
    origin: str = "heuristic",
) -> Transaction:
    return Transaction(
        date=dt.date(2024, 8, day),
        description=description,
        recipient=description.split()[0],
        amount=Decimal(amount),
        confidence=confidence,
        source_account="ING",
        origin=origin,
    )


def test_similarity_weights() -> None:
    a = _tx("REWE Markt Berlin", "-45.67")
    assert transaction_similarity(a, a) == 1.0
    # Same date and amount, disjoint descriptions.
    assert transaction_similarity(a, _tx("Kartenzahlung", "-45.67")) == 0.8
    # Same amount only, two of three tokens shared.
    assert transaction_similarity(a, _tx("REWE Markt", "-45.67", day=16)) == round(
        0.4 + 0.2 * 2 / 3, 4
    )
    assert transaction_similarity(a, _tx("Amazon", "-10.00", day=1)) == 0.0


def test_merge_collapses_matches_and_keeps_higher_confidence() -> None:
    h = [_tx("REWE Markt Berlin", "-45.67", confidence=0.9)]
    g = [
        _tx("REWE Markt", "-45.67", confidence=0.7, origin="generative"),
        _tx("Netflix Abo", "-12.99", day=20, confidence=0.7, origin="generative"),
    ]

    merged = merge_transactions(h, g)

    assert [t.description for t in merged] == ["REWE Markt Berlin", "Netflix Abo"]
    assert merged[0].origin == "heuristic"
    assert merged[0].confidence == 0.9


def test_merge_prefers_generative_when_more_confident() -> None:
    h = [_tx("REWE", "-45.67", confidence=0.3)]
    g = [_tx("REWE Markt", "-45.67", confidence=0.8, origin="generative")]

    (merged,) = merge_transactions(h, g)

    assert merged.origin == "generative"
    assert merged.confidence == 0.8


def test_merge_uses_each_generative_match_once() -> None:
    h = [_tx("REWE", "-5.00"), _tx("REWE", "-5.00")]
    g = [_tx("REWE", "-5.00", origin="generative")]

    merged = merge_transactions(h, g)

    assert len(merged) == 2
    assert [t.origin for t in merged] == ["heuristic", "heuristic"]


def test_merge_below_threshold_keeps_both() -> None:
    h = [_tx("REWE", "-5.00")]
    g = [_tx("Lidl", "-5.00", day=16, origin="generative")]

    assert len(merge_transactions(h, g)) == 2
