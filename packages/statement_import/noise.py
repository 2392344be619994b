"""Noise removal for raw statement text.

``clean`` strips account identifiers, legal boilerplate, page furniture and
mandate/reference labels from text produced by the PDF extractor, then
normalizes blank lines. It is the fixed point of a single pass, so applying it
twice never changes the result.
"""

from __future__ import annotations

import re

# Ordered removals. Token-level patterns are replaced by a single space so
# neighbours never fuse into a new token; line-level patterns empty the line.
_IBAN_GROUPED_RE = re.compile(r"\b[A-Z]{2}\d{2}(?: ?\d{4}){4,7}(?: ?\d{1,3})?\b")
_IBAN_COMPACT_RE = re.compile(r"\b[A-Z]{2}\d{2}[A-Z0-9]{11,30}\b")
_BIC_LABELLED_RE = re.compile(r"\bBIC:?\s*[A-Z]{6}[A-Z0-9]{2}(?:[A-Z0-9]{3})?\b")
_BIC_BARE_RE = re.compile(r"\b[A-Z]{4}(?:DE|AT|CH|NL|LU|BE|FR|IE|GB|ES|IT)[A-Z0-9]{2}XXX\b")
_LEGAL_LINE_RE = re.compile(
    r"^.*(?:Geschäftsbedingungen|Einlagensicherung|Sitz der (?:Bank|Gesellschaft)"
    r"|Handelsregister|Amtsgericht|Aufsichtsrat|Vorstand:|USt-IdNr|Rechnungsabschluss"
    r"|Bitte erheben Sie Einwendungen|Bitte prüfen Sie).*$",
    re.MULTILINE | re.IGNORECASE,
)
_PAGE_FOOTER_RE = re.compile(
    r"\bSeite\s+\d+\s+von\s+\d+\b|\bPEBG\s*\d+\b|\bwww\.[\w-]+(?:\.[\w-]+)*\.[a-z]{2,}\b",
    re.IGNORECASE,
)
_LABEL_RE = re.compile(
    r"\b(?:Mandat(?:sreferenz)?|Gläubiger-ID|Referenz):[ \t]*\S+"
    r"|\bFolgenr\.[ \t]*\d+"
    r"|\bVerfalld\.[ \t]*\d{4}-\d{2}"
)
_ISO_TIMESTAMP_RE = re.compile(
    r"\b\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?"
)

_ACCOUNT_ID_REMOVALS: tuple[re.Pattern[str], ...] = (
    _IBAN_GROUPED_RE,
    _IBAN_COMPACT_RE,
    _BIC_LABELLED_RE,
    _BIC_BARE_RE,
)
_TOKEN_REMOVALS: tuple[re.Pattern[str], ...] = (
    _PAGE_FOOTER_RE,
    _LABEL_RE,
    _ISO_TIMESTAMP_RE,
)

_TRAILING_WS_RE = re.compile(r"[ \t]+$", re.MULTILINE)
_BLANK_RUN_RE = re.compile(r"\n{3,}")

# Structural lines that survive cleaning but never describe a transaction.
_NOISE_LINE_RE = re.compile(
    r"^(?:Kontoauszug\b.*|(?:Alter|Neuer)\s+Saldo\b.*|Saldo\b.*|Übertrag\b.*"
    r"|Buchung\s+.*Betrag.*|Datum\s+.*Betrag.*|Valuta\b.*|\d{2}\.\d{2}\.\d{4}"
    r"|ING[- ]DiBa AG|Vivid Money S\.A\.)$",
    re.IGNORECASE,
)


def _clean_once(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    for pattern in _ACCOUNT_ID_REMOVALS:
        text = pattern.sub(" ", text)
    text = _LEGAL_LINE_RE.sub("", text)
    for pattern in _TOKEN_REMOVALS:
        text = pattern.sub(" ", text)
    text = _TRAILING_WS_RE.sub("", text)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip("\n")


def clean(raw_text: str) -> str:
    """Return ``raw_text`` with statement noise removed.

    A pass only removes characters or rewrites carriage returns, so iterating
    to the fixed point terminates and makes ``clean(clean(x)) == clean(x)`` hold.
    """

    current = raw_text
    while True:
        nxt = _clean_once(current)
        if nxt == current:
            return nxt
        current = nxt


def is_noise_line(line: str) -> bool:
    """True for header/balance/page lines that carry no transaction detail."""

    stripped = line.strip()
    return not stripped or bool(_NOISE_LINE_RE.match(stripped))


__all__ = ["clean", "is_noise_line"]
