"""Prompt construction and response parsing for the generative fallback.

The statement text is embedded between ``BEGIN_STATEMENT_TEXT`` and
``END_STATEMENT_TEXT`` markers and truncated to a character budget so a very
long statement cannot blow the request size. Model output is never trusted to
be clean JSON: the first well-formed array is located and each element is
validated on its own.
"""

from __future__ import annotations

import json
from collections.abc import Collection, Sequence
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .amounts import normalize_amount, normalize_date
from .logging_setup import get_logger
from .models import Transaction, try_build_transaction

_logger = get_logger("statement_import.prompting")

BEGIN = "BEGIN_STATEMENT_TEXT\n"
END = "\nEND_STATEMENT_TEXT"

_TRUNCATION_MARKER = "\n[...]"
_DEFAULT_CONFIDENCE = 0.7


def truncate_text(text: str, max_chars: int) -> str:
    """Cut ``text`` to at most ``max_chars`` characters, preferring a line break."""

    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    if len(text) <= max_chars:
        return text
    head = text[: max_chars - len(_TRUNCATION_MARKER)]
    cut = head.rfind("\n")
    if cut > max_chars // 2:
        head = head[:cut]
    return head + _TRUNCATION_MARKER


def build_system_instructions() -> str:
    return (
        "You extract bank transactions from German bank statement text. Return only a JSON "
        "array. Never invent transactions that are not in the text."
    )


def build_extraction_prompt(
    cleaned_text: str,
    *,
    allowed_categories: Sequence[str] | None = None,
    max_chars: int = 6000,
) -> str:
    """Return the full prompt asking for a JSON array of transactions.

    Each element must carry ``date`` (YYYY-MM-DD), ``description``,
    ``recipient`` (the real merchant, not a payment intermediary such as
    PayPal), ``amount`` (signed number, negative for expenses) and
    ``category`` (one of ``allowed_categories`` or null).
    """

    categories = ", ".join(allowed_categories) if allowed_categories else "null only"
    lines = [
        build_system_instructions(),
        "",
        "Each array element is an object with exactly these fields:",
        '- "date": booking date as YYYY-MM-DD',
        '- "description": the booking text',
        '- "recipient": the real counterparty (for PayPal/Klarna payments, the shop paid)',
        '- "amount": signed number, negative for expenses, positive for income',
        f'- "category": one of [{categories}] or null',
        "",
        "German amounts use '.' for thousands and ',' for decimals.",
        "If the text contains no transactions, return [].",
        "",
        "Statement text:",
        BEGIN + truncate_text(cleaned_text, max_chars) + END,
    ]
    return "\n".join(lines)


# ---- Response parsing ---------------------------------------------------------


def extract_json_array(text: str) -> list[Any]:
    """Return the first well-formed JSON array embedded in ``text``.

    Model output often wraps the array in prose or code fences; every ``[`` is
    tried as a starting point. Raises ``ValueError`` when none decodes.
    """

    decoder = json.JSONDecoder()
    idx = text.find("[")
    while idx != -1:
        try:
            value, _end = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, list):
            return value
        idx = text.find("[", idx + 1)
    raise ValueError("no JSON array found in model output")


class _GeneratedItem(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    date: str
    amount: Decimal
    recipient: str
    description: str | None = None
    category: str | None = None
    confidence: float | None = None

    @field_validator("date", "recipient")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("must be non-empty")
        return v

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, v: Any) -> Any:
        if isinstance(v, bool) or v is None:
            raise ValueError("amount must be a number")
        if isinstance(v, str):
            if not v.strip():
                raise ValueError("must be non-empty")
            return normalize_amount(v)
        if isinstance(v, float):
            return Decimal(repr(v))
        return v


def parse_generated_transactions(
    text: str,
    *,
    allowed_categories: Collection[str] | None = None,
    source_account: str,
) -> list[Transaction]:
    """Turn model output into validated transactions.

    Elements missing ``date``/``amount``/``recipient``, with an unparseable
    date, or violating ``Transaction`` invariants are skipped. Categories
    outside ``allowed_categories`` become ``None``. Raises ``ValueError`` when
    the output holds no JSON array at all.
    """

    items = extract_json_array(text)
    out: list[Transaction] = []
    skipped = 0
    for raw in items:
        if not isinstance(raw, dict):
            skipped += 1
            continue
        try:
            item = _GeneratedItem.model_validate(raw)
        except ValidationError:
            skipped += 1
            continue
        parsed = normalize_date(item.date)
        if parsed.is_fallback:
            skipped += 1
            continue
        category = item.category or None
        if category is not None and allowed_categories and category not in allowed_categories:
            category = None
        confidence = item.confidence if item.confidence is not None else _DEFAULT_CONFIDENCE
        tx = try_build_transaction(
            date=parsed.value,
            description=item.description or item.recipient,
            recipient=item.recipient,
            amount=item.amount,
            category=category,
            confidence=min(1.0, max(0.0, confidence)),
            source_account=source_account,
            origin="generative",
        )
        if tx is None:
            skipped += 1
            continue
        out.append(tx)
    _logger.debug("prompting:parsed items=%d kept=%d skipped=%d", len(items), len(out), skipped)
    return out


__all__ = [
    "BEGIN",
    "END",
    "build_extraction_prompt",
    "build_system_instructions",
    "extract_json_array",
    "parse_generated_transactions",
    "truncate_text",
]
