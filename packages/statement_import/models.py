"""Record types passed between the import stages.

``Transaction`` is the validated output unit and the only shape that leaves
the pipeline. The intermediate records (``TransactionBlock``,
``MerchantResolution``, ``AmountMatch``, ``ParsedDate``, ``Prediction``) are
plain immutable containers produced and consumed inside a single document
run.
"""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal, NamedTuple

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .logging_setup import get_logger

_logger = get_logger("statement_import.models")

_CENT = Decimal("0.01")


class Transaction(BaseModel):
    """One extracted bank transaction.

    Invariants enforced on construction: ``amount`` is finite and non-zero,
    ``recipient`` has at least two characters, confidences lie in ``[0, 1]``.
    Instances are frozen; use ``model_copy(update=...)`` to derive a variant.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    date: dt.date
    description: str
    recipient: str
    amount: Decimal
    category: str | None = None
    confidence: float = 0.0
    source_account: str
    payment_processor: str | None = None
    category_confidence: float = 0.0
    date_is_fallback: bool = False
    origin: Literal["heuristic", "generative"] = "heuristic"

    @field_validator("amount")
    @classmethod
    def _amount_non_zero(cls, v: Decimal) -> Decimal:
        if not v.is_finite():
            raise ValueError("amount must be finite")
        q = v.quantize(_CENT, rounding=ROUND_HALF_UP)
        if q == 0:
            raise ValueError("amount must be non-zero")
        return q

    @field_validator("recipient")
    @classmethod
    def _recipient_len(cls, v: str) -> str:
        if len(v) < 2:
            raise ValueError("recipient must have at least 2 characters")
        return v

    @field_validator("confidence", "category_confidence")
    @classmethod
    def _unit_interval(cls, v: float) -> float:
        if math.isnan(v) or v < 0.0 or v > 1.0:
            raise ValueError("confidence must be within [0, 1]")
        return v

    @field_validator("category")
    @classmethod
    def _blank_category_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


def try_build_transaction(**fields: Any) -> Transaction | None:
    """Construct a ``Transaction`` or return ``None`` when it violates invariants."""

    try:
        return Transaction(**fields)
    except ValidationError as e:
        _logger.debug(
            "models:invalid_transaction errors=%d first=%s",
            e.error_count(),
            e.errors()[0].get("msg") if e.error_count() else "",
        )
        return None


@dataclass(frozen=True, slots=True)
class TransactionBlock:
    """A span of cleaned statement text believed to hold one transaction.

    ``header_line`` is the full line that opened the block and ``date_text``
    the leading date token on it. The date token counts as the block's first
    line; ``content_lines`` holds everything after it (the remainder of the
    header line, then the non-empty body lines).
    """

    header_line: str
    date_text: str
    body_lines: tuple[str, ...]
    start: int
    end: int
    repaired: bool = False

    @property
    def header_rest(self) -> str:
        return self.header_line[len(self.date_text) :].strip()

    @property
    def content_lines(self) -> list[str]:
        lines = [self.header_rest] if self.header_rest else []
        lines.extend(ln.strip() for ln in self.body_lines if ln.strip())
        return lines

    @property
    def text(self) -> str:
        return "\n".join([self.header_line, *self.body_lines])


@dataclass(frozen=True, slots=True)
class MerchantResolution:
    recipient: str
    payment_processor: str | None
    confidence: float
    method: str


class AmountMatch(NamedTuple):
    match_text: str
    line_index: int


class ParsedDate(NamedTuple):
    """Parsed calendar date; ``is_fallback`` marks the processing-date substitute."""

    value: dt.date
    is_fallback: bool


@dataclass(frozen=True, slots=True)
class Prediction:
    category: str | None
    confidence: float
    alternatives: tuple[tuple[str, float], ...] = ()


__all__ = [
    "AmountMatch",
    "MerchantResolution",
    "ParsedDate",
    "Prediction",
    "Transaction",
    "TransactionBlock",
    "try_build_transaction",
]
