"""Bank detection and date-anchored block segmentation.

Public API:
    - :func:`detect_bank`
    - :func:`segment`
    - :data:`BANK_DISPLAY_NAMES`

A block starts at a line beginning with a ``DD.MM.YYYY`` booking date and runs
until the next such line. Known banks lay their statements out with at least
two spaces after the booking date; when that layout yields nothing (or the
bank is unknown) a looser date-anchored splitter is used instead.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import replace

from .logging_setup import get_logger
from .models import TransactionBlock
from .noise import is_noise_line

# ---- Tunables (private) ------------------------------------------------------

# Window (characters of cleaned text on either side of a block) searched when
# reattaching a merchant line to an intermediary block.
_PROXIMITY_CHARS: int = 240

_logger = get_logger("statement_import.segmentation")

UNKNOWN_BANK = "unknown"

# Ordered; first match wins. Matched against raw text (before BIC removal).
_BANK_SIGNATURES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("ing", re.compile(r"ING[-\s]?DiBa|INGDDEFFXXX|ING Bank")),
    ("vivid", re.compile(r"Vivid Money S\.A\.|SXPYDEHHXXX")),
    ("sparkasse", re.compile(r"Sparkasse", re.IGNORECASE)),
    ("deutsche_bank", re.compile(r"Deutsche Bank|DB Privat")),
    ("commerzbank", re.compile(r"Commerzbank|comdirect", re.IGNORECASE)),
    ("dkb", re.compile(r"\bDKB\b|Deutsche Kreditbank")),
)

BANK_DISPLAY_NAMES: dict[str, str] = {
    "ing": "ING",
    "vivid": "Vivid Money",
    "sparkasse": "Sparkasse",
    "deutsche_bank": "Deutsche Bank",
    "commerzbank": "Commerzbank",
    "dkb": "DKB",
    UNKNOWN_BANK: "Unknown",
}

_STRICT_HEADER_RE = re.compile(r"^(\d{2}\.\d{2}\.\d{4})[ \t]{2,}\S")
_GENERIC_HEADER_RE = re.compile(r"^(\d{1,2}\.\d{1,2}\.\d{4})[ \t]+\S")
_LEADING_DATE_RE = re.compile(r"^\s*\d{1,2}\.\d{1,2}\.\d{4}\s*")

_PROCESSOR_LEGAL_NAME_RE = re.compile(
    r"PayPal\s*\(?Europe\)?\s*S\.\s?[àa]\.?\s?r\.\s?l\.?\s*et\s+Cie,?\s*S\.C\.A\.?"
    r"|Stichting\s+Pay\.nl"
    r"|Klarna\s+Bank\s+AB"
    r"|Mollie\s+Payments\s+B\.V\.",
    re.IGNORECASE,
)
_MERCHANT_HINT_RE = re.compile(
    r"\d{6,}\s*/\.\s*[^\W\d_]"
    r"|PP\.\d+\.PP\s*/\s*\S"
    r"|Ihr\s+Einkauf\s+bei\s+\S"
    r"|Verwendungszweck:\s*[^\W\d_]",
    re.IGNORECASE,
)


def detect_bank(text: str) -> str:
    """Return the bank id whose signature appears first in priority order."""

    for bank_id, signature in _BANK_SIGNATURES:
        if signature.search(text):
            return bank_id
    return UNKNOWN_BANK


def _line_spans(text: str) -> list[tuple[int, int, str]]:
    spans: list[tuple[int, int, str]] = []
    pos = 0
    for line in text.split("\n"):
        spans.append((pos, pos + len(line), line))
        pos += len(line) + 1
    return spans


def _split(
    spans: Sequence[tuple[int, int, str]], header_re: re.Pattern[str]
) -> list[TransactionBlock]:
    blocks: list[TransactionBlock] = []
    header: tuple[int, str, str] | None = None  # (start, header_line, date_text)
    body: list[str] = []
    end = 0

    def _flush() -> None:
        if header is not None:
            start, line, date_text = header
            blocks.append(
                TransactionBlock(
                    header_line=line,
                    date_text=date_text,
                    body_lines=tuple(body),
                    start=start,
                    end=end,
                )
            )

    for start, stop, line in spans:
        m = header_re.match(line)
        if m:
            _flush()
            header = (start, line, m.group(1))
            body = []
            end = stop
        elif header is not None:
            body.append(line)
            end = stop
    _flush()
    return blocks


def _owner_of(offset: int, blocks: Sequence[TransactionBlock]) -> TransactionBlock | None:
    for block in blocks:
        if block.start <= offset <= block.end:
            return block
    return None


def _without_lines(block: TransactionBlock, offsets: set[int]) -> TransactionBlock:
    """Drop the body lines starting at ``offsets`` from ``block``."""

    pos = block.start + len(block.header_line) + 1
    body: list[str] = []
    for line in block.body_lines:
        if pos not in offsets:
            body.append(line)
        pos += len(line) + 1
    if len(body) == len(block.body_lines):
        return block
    return replace(block, body_lines=tuple(body))


def _repair_intermediary_blocks(
    spans: Sequence[tuple[int, int, str]], blocks: list[TransactionBlock]
) -> list[TransactionBlock]:
    """Move a nearby merchant line into blocks that only name an intermediary.

    A line taken from a later block is removed from that block, so one
    merchant line never describes two bookings.
    """

    moved: set[int] = set()
    repaired: list[TransactionBlock] = []
    for idx, block in enumerate(blocks):
        block = _without_lines(block, moved)
        text = block.text
        if not _PROCESSOR_LEGAL_NAME_RE.search(text) or _MERCHANT_HINT_RE.search(text):
            repaired.append(block)
            continue

        lo = block.start - _PROXIMITY_CHARS
        hi = block.end + _PROXIMITY_CHARS
        candidates: list[tuple[int, int, str]] = []
        for start, stop, line in spans:
            if stop < lo or start > hi or block.start <= start <= block.end or start in moved:
                continue
            if not _MERCHANT_HINT_RE.search(line):
                continue
            # Lines owned by another block may only come from the body of a
            # later block that does not itself name an intermediary.
            owner = _owner_of(start, blocks)
            if owner is not None and (
                owner.start >= start
                or owner.start < block.start
                or _PROCESSOR_LEGAL_NAME_RE.search(owner.text)
            ):
                continue
            distance = block.start - stop if stop <= block.start else start - block.end
            candidates.append((distance, start, line))

        if not candidates:
            repaired.append(block)
            continue

        distance, start, line = min(candidates)
        moved.add(start)
        extra = _LEADING_DATE_RE.sub("", line).strip()
        _logger.debug("segment:proximity_repair block_index=%d distance=%d", idx, distance)
        repaired.append(replace(block, body_lines=(*block.body_lines, extra), repaired=True))
    return repaired


def segment(cleaned_text: str, bank_id: str) -> list[TransactionBlock]:
    """Split cleaned statement text into per-transaction blocks.

    Blocks with nothing beyond the booking date (or only balance and page
    lines after it) are dropped. Text before the first booking date
    (statement header, address block) is ignored.
    """

    spans = _line_spans(cleaned_text)
    blocks: list[TransactionBlock] = []
    if bank_id != UNKNOWN_BANK:
        blocks = _split(spans, _STRICT_HEADER_RE)
    if not blocks:
        if bank_id != UNKNOWN_BANK:
            _logger.debug("segment:generic_fallback bank=%s", bank_id)
        blocks = _split(spans, _GENERIC_HEADER_RE)

    kept = [b for b in blocks if any(not is_noise_line(ln) for ln in b.content_lines)]
    if len(kept) != len(blocks):
        _logger.debug(
            "segment:discarded_short_blocks bank=%s count=%d", bank_id, len(blocks) - len(kept)
        )
    return _repair_intermediary_blocks(spans, kept)


__all__ = ["BANK_DISPLAY_NAMES", "UNKNOWN_BANK", "detect_bank", "segment"]
