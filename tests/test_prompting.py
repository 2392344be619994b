from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from statement_import.prompting import (
    BEGIN,
    END,
    build_extraction_prompt,
    extract_json_array,
    parse_generated_transactions,
    truncate_text,
)

from tests.helpers.generator_stub import extract_statement_text, json_transactions

CATEGORIES = ["Groceries", "Shopping", "Other"]


def test_prompt_embeds_statement_between_markers_and_lists_categories() -> None:
    prompt = build_extraction_prompt("15.08.2024 REWE -45,67", allowed_categories=CATEGORIES)

    assert BEGIN in prompt and END in prompt
    assert extract_statement_text(prompt) == "15.08.2024 REWE -45,67"
    assert "Groceries, Shopping, Other" in prompt
    assert "JSON array" in prompt


def test_prompt_truncates_long_statements() -> None:
    text = "\n".join(f"{i:02d}.01.2024  Kartenzahlung Laden {i} -1,00" for i in range(1, 29)) * 20

    prompt = build_extraction_prompt(text, allowed_categories=None, max_chars=500)

    embedded = extract_statement_text(prompt)
    assert len(embedded) <= 500
    assert embedded.endswith("[...]")


def test_truncate_text_short_input_unchanged() -> None:
    assert truncate_text("abc", 10) == "abc"
    with pytest.raises(ValueError):
        truncate_text("abc", 0)


def test_extract_json_array_skips_prose_and_broken_brackets() -> None:
    text = 'Sure [see below]\n```json\n[{"a": 1}, {"a": 2}]\n```'

    assert extract_json_array(text) == [{"a": 1}, {"a": 2}]


def test_extract_json_array_raises_without_array() -> None:
    with pytest.raises(ValueError):
        extract_json_array('{"transactions": "none"}')


def test_parse_generated_transactions_validates_each_element() -> None:
    text = json_transactions(
        [
            {
                "date": "2024-08-15",
                "description": "Lastschrift REWE",
                "recipient": "REWE",
                "amount": -45.67,
                "category": "Groceries",
            },
            {
                "date": "2024-08-16",
                "recipient": "Zalando",
                "amount": "-1.234,50",
                "category": "Fun",
            },
            {"date": "", "recipient": "Nobody", "amount": -1},
            {"date": "2024-08-17", "recipient": "X", "amount": -5},
            {"date": "2024-08-18", "recipient": "Zero GmbH", "amount": 0},
            {"date": "2024-13-45", "recipient": "Bad Date", "amount": -2},
            {"date": "2024-08-19", "recipient": "Flag AG", "amount": True},
            "not an object",
        ]
    )

    txs = parse_generated_transactions(
        text, allowed_categories=CATEGORIES, source_account="Vivid Money"
    )

    assert len(txs) == 2
    rewe, zalando = txs
    assert rewe.date == date(2024, 8, 15)
    assert rewe.amount == Decimal("-45.67")
    assert rewe.category == "Groceries"
    assert rewe.confidence == 0.7
    assert rewe.origin == "generative"
    assert rewe.source_account == "Vivid Money"
    assert zalando.amount == Decimal("-1234.50")
    assert zalando.category is None  # outside the allow-list
    assert zalando.description == "Zalando"


def test_parse_generated_transactions_clamps_reported_confidence() -> None:
    text = json_transactions(
        [{"date": "2024-08-15", "recipient": "REWE", "amount": -1.5, "confidence": 3}],
        prose=False,
    )

    (tx,) = parse_generated_transactions(text, allowed_categories=None, source_account="ING")

    assert tx.confidence == 1.0
