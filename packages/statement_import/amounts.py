"""Amount and booking-date extraction for transaction blocks.

Public API:
    - :func:`extract_amount`
    - :func:`normalize_amount`
    - :func:`normalize_date`

Amounts follow German formatting (``.`` groups thousands, ``,`` separates
cents) with an optional sign and an optional ``EUR``/``€`` marker. Statement
lines frequently carry reference numbers next to the amount, so a line with
more than one decimal-looking token is never trusted as the amount source.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .logging_setup import get_logger
from .models import AmountMatch, ParsedDate

_logger = get_logger("statement_import.amounts")

_CENT = Decimal("0.01")
_MAX_INTEGER_DIGITS = 6

_CURRENCY_EDGE_RE = re.compile(r"^(?:EUR|€)|(?:EUR|€)$", re.IGNORECASE)
_DECIMAL_LIKE_RE = re.compile(r"\d[.,]\d{2}-?$")
_LETTER_RE = re.compile(r"[^\W\d_]")
_LONG_DIGIT_RUN_RE = re.compile(r"\d{10,}")
# Thousands groups are exactly three digits; a lone dot before one or two
# digits is a decimal point.
_GROUPED_RE = re.compile(r"\d{1,3}(?:\.\d{3})+")
_DOT_DECIMAL_RE = re.compile(r"\d+\.\d{1,2}")
_CENTS_RE = re.compile(r"\d{1,2}")

# Accepted shapes, in priority order.
_AMOUNT_SHAPES: tuple[re.Pattern[str], ...] = (
    re.compile(r"[+-]?\d{1,3}(?:\.\d{3})+,\d{2}-?"),  # 1.234,56
    re.compile(r"[+-]?\d{1,6},\d{2}-?"),  # 1234,56
    re.compile(r"[+-]?\d{1,6}\.\d{2}-?"),  # 45.67
)

# Whole-euro amount with an explicit currency marker at the end of a line.
_WHOLE_EURO_RE = re.compile(
    r"(?<![\w.,])([+-]?\d{1,3}(?:\.\d{3})+|[+-]?\d{1,6})\s*(?:EUR|€)\s*$", re.IGNORECASE
)

_DMY_RE = re.compile(r"(?<!\d)(\d{1,2})[./](\d{1,2})[./](\d{4}|\d{2})(?!\d)")
_ISO_DATE_RE = re.compile(r"(?<!\d)(\d{4})-(\d{2})-(\d{2})(?!\d)")


def _strip_token(raw: str) -> str:
    tok = raw.strip(",;:()").replace("−", "-")
    while True:
        stripped = _CURRENCY_EDGE_RE.sub("", tok)
        if stripped == tok:
            return tok
        tok = stripped


def _decimal_like_tokens(line: str) -> list[str]:
    tokens = [_strip_token(raw) for raw in line.split()]
    return list(dict.fromkeys(t for t in tokens if t and _DECIMAL_LIKE_RE.search(t)))


def _integer_digits(token: str) -> int:
    head = re.split(r"[.,]\d{2}-?$", token, maxsplit=1)[0]
    return sum(ch.isdigit() for ch in head)


def _is_valid_amount_token(token: str) -> bool:
    if _LETTER_RE.search(token) or _LONG_DIGIT_RUN_RE.search(token):
        return False
    if _integer_digits(token) > _MAX_INTEGER_DIGITS:
        return False
    return any(shape.fullmatch(token) for shape in _AMOUNT_SHAPES)


def extract_amount(block_lines: Sequence[str]) -> AmountMatch | None:
    """Locate the single amount token in a block.

    Lines are scanned top to bottom. A line holding two or more distinct
    decimal-looking tokens is skipped as ambiguous. When no line yields an
    amount, the last non-empty line is tried for a whole-euro amount with an
    explicit currency marker, unless that line was itself ambiguous.
    """

    lines = list(block_lines)
    ambiguous: set[int] = set()
    for idx, line in enumerate(lines):
        tokens = _decimal_like_tokens(line)
        if len(tokens) > 1:
            ambiguous.add(idx)
            _logger.debug("amounts:ambiguous_line line_index=%d tokens=%d", idx, len(tokens))
            continue
        if tokens and _is_valid_amount_token(tokens[0]):
            return AmountMatch(match_text=tokens[0], line_index=idx)

    last = next((i for i in range(len(lines) - 1, -1, -1) if lines[i].strip()), None)
    if last is not None and last not in ambiguous:
        m = _WHOLE_EURO_RE.search(lines[last])
        if m:
            return AmountMatch(match_text=m.group(1), line_index=last)
    return None


def normalize_amount(text: str) -> Decimal:
    """Convert German-formatted amount text to a signed ``Decimal``.

    Returns ``Decimal("0")`` when the text is not a number; callers treat that
    as an extraction failure rather than a zero-amount booking.
    """

    if not text:
        return Decimal("0")
    s = _strip_token(text.strip()).replace(" ", "")
    negative = False
    if s.endswith("-"):
        negative = True
        s = s[:-1]
    if s[:1] in {"+", "-"}:
        negative = negative or s[0] == "-"
        s = s[1:]

    whole, comma, cents = s.partition(",")
    if _GROUPED_RE.fullmatch(whole):
        whole = whole.replace(".", "")
    elif not comma and _DOT_DECIMAL_RE.fullmatch(whole):
        whole, _, cents = whole.partition(".")
    if not whole.isdigit() or (comma and not _CENTS_RE.fullmatch(cents)):
        return Decimal("0")
    s = f"{whole}.{cents}" if cents else whole
    try:
        value = Decimal(s).quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return Decimal("0")
    return -value if negative else value


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def normalize_date(text: str, *, today: date | None = None) -> ParsedDate:
    """Parse a ``DD.MM.YYYY`` (or ISO) booking date.

    Unparseable or impossible dates fall back to ``today`` (the processing
    date by default) with ``is_fallback=True`` so callers can tell the
    substitute apart from a real booking on that day.
    """

    parsed: date | None = None
    if text:
        m = _DMY_RE.search(text)
        if m:
            day, month, year_text = int(m.group(1)), int(m.group(2)), m.group(3)
            year = int(year_text) + 2000 if len(year_text) == 2 else int(year_text)
            parsed = _safe_date(year, month, day)
        else:
            iso = _ISO_DATE_RE.search(text)
            if iso:
                parsed = _safe_date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))

    if parsed is not None:
        return ParsedDate(value=parsed, is_fallback=False)
    _logger.debug("amounts:date_fallback text=%r", (text or "")[:20])
    return ParsedDate(value=today or date.today(), is_fallback=True)


__all__ = ["extract_amount", "normalize_amount", "normalize_date"]
