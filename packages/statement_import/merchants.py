"""Merchant identity resolution.

Public API:
    - :func:`resolve`
    - :func:`detect_processor`
    - :func:`resolution_stats`

Statement text for intermediated payments names the intermediary (PayPal,
Klarna, Stichting Pay.nl, ...) far more prominently than the shop that was
actually paid. Resolution first detects the intermediary, then runs that
intermediary's extraction strategies in order; the first strategy producing a
plausible name wins. Direct transactions go through a shorter strategy list
tuned to bank booking texts ("Von X", "An Y", "bei Z").

Every strategy is a pure ``(name, pattern, confidence)`` record so each can be
exercised on its own.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass

from .logging_setup import get_logger
from .models import MerchantResolution

_logger = get_logger("statement_import.merchants")

UNKNOWN_RECIPIENT = "Unbekannt"

_MAX_CONFIDENCE = 0.98
_MIN_NAME_LEN = 2
_MAX_NAME_LEN = 50


@dataclass(frozen=True, slots=True)
class PaymentProcessor:
    key: str
    display_name: str
    signature: re.Pattern[str]


def _p(key: str, display_name: str, pattern: str) -> PaymentProcessor:
    return PaymentProcessor(key, display_name, re.compile(pattern, re.IGNORECASE))


# Ordered; first match wins.
PAYMENT_PROCESSORS: tuple[PaymentProcessor, ...] = (
    _p(
        "paypal",
        "PayPal",
        r"\bPayPal(?:\s*\(?Europe\)?\s*S\.\s?[àa]\.?\s?r\.\s?l\.?\s*et\s+Cie,?\s*S\.C\.A\.?)?",
    ),
    _p("klarna", "Klarna", r"\bKlarna(?:\s+Bank\s+AB)?\b"),
    _p("stripe", "Stripe", r"\bStripe\b"),
    _p("adyen", "Adyen", r"\bAdyen\b"),
    _p("mollie", "Mollie Payments", r"\bMollie\s+Payments(?:\s+B\.V\.)?"),
    _p("stichting_pay", "Stichting Pay.nl", r"\bStichting\s+Pay\.nl\b"),
    _p("payone", "PAYONE", r"\bPAYONE\b"),
    _p("worldpay", "Worldpay", r"\bWorldpay\b"),
    _p("square", "Square", r"\bSquare\b"),
    _p("sumup", "SumUp", r"\bSumUp\b"),
)

_NOISE_TOKENS: frozenset[str] = frozenset(
    {
        "paypal", "europe", "s.a.r.l", "s.à", "r.l", "et", "cie", "s.c.a", "sca",
        "lastschrift", "gutschrift", "ueberweisung", "überweisung", "entgelt",
        "eur", "euro", "mandat", "referenz", "kennzeichen", "verwendungszweck", "ref",
        "und", "der", "die", "das", "bei", "von", "an", "ihr", "ihre", "einkauf",
        "bestellung", "für", "fuer", "mit", "vom", "zahlung",
        "stichting", "pay.nl", "klarna", "stripe", "adyen", "mollie", "payments",
        "payone", "worldpay", "square", "sumup",
    }
)  # fmt: skip

_WELL_KNOWN_MERCHANTS: dict[str, str] = {
    "amazon": "Amazon",
    "ebay": "eBay",
    "uber": "Uber",
    "lieferando": "Lieferando",
    "bol.com": "Bol.com",
    "zalando": "Zalando",
    "spotify": "Spotify",
    "netflix": "Netflix",
}
_WELL_KNOWN_RE = re.compile(
    r"\b(Amazon|eBay|Uber|Lieferando|Bol\.com|Zalando|Spotify|Netflix)\b", re.IGNORECASE
)

_TYPE_KEYWORDS = (
    r"(?:SEPA[- ])?(?:Lastschrift|Ueberweisung|Überweisung|Echtzeitüberweisung|Gutschrift"
    r"|Entgelt|GIROCARD|Dauerauftrag|Kartenzahlung|Kartentransaktion|Einkauf|Zahlung)"
)
_TYPE_PREFIX_RE = re.compile(rf"^(?:{_TYPE_KEYWORDS}\b[\s,:]*)+", re.IGNORECASE)
_TYPE_ANYWHERE_RE = re.compile(rf"\b{_TYPE_KEYWORDS}\b", re.IGNORECASE)
_STAMP_PREFIX_RE = re.compile(
    r"^(?:vom\s+)?(?:\d{1,2}\.\d{1,2}\.(?:\d{2,4})?\s*)?"
    r"(?:\d{1,2}:\d{2}(?::\d{2})?\s*)?(?:Uhr\s*)?",
    re.IGNORECASE,
)
_LABELLED_CODE_RE = re.compile(
    r"\b(?:Mandat|Referenz|Kennzeichen|REF)\b:?\s*\S+|\bPP\.\d+\.PP\b|\b[A-Z]{2,5}-\d+\b|\d{5,}",
    re.IGNORECASE,
)
_CURRENCY_RE = re.compile(r"\bEUR\b|€|[+-]?\d+[.,]\d{2}", re.IGNORECASE)
_WORD_SPLIT_RE = re.compile(r"[^\w.&'-]+")


@dataclass(frozen=True, slots=True)
class MerchantStrategy:
    """A single extraction strategy: first capture group is the merchant name."""

    name: str
    pattern: re.Pattern[str]
    confidence: float

    def extract(self, text: str) -> str | None:
        m = self.pattern.search(text)
        if not m:
            return None
        candidate = _tidy(m.group(1))
        return candidate if is_valid_merchant_name(candidate) else None


def _s(name: str, pattern: str, confidence: float) -> MerchantStrategy:
    return MerchantStrategy(name, re.compile(pattern, re.IGNORECASE), confidence)


_END = r"(?=\s*,|\s*//|\s*$)"

_PAYPAL_STRATEGIES: tuple[MerchantStrategy, ...] = (
    _s("pp_reference_slash", r"PP\.\d+\.PP\s*/\s*([^,]+?)(?=\s*,|\s*Ihr\s+Einkauf|\s*$)", 0.95),
    _s(
        "number_slash_dot",
        r"\b\d{10,}\s*/\.\s*([^,\-]+?)(?=\s*,|\s*Ihr\s+Einkauf|\s*-|\s*$)",
        0.90,
    ),
    _s("ihr_einkauf_bei", r"Ihr\s+Einkauf\s+bei\s+([^,]+?)" + _END, 0.90),
    _s("verwendungszweck", r"Verwendungszweck:\s*([^,\-\d]+?)(?=\s*,|\s*-|\s*$)", 0.85),
    _s(
        "known_merchant",
        r"\b(Uber|Amazon|eBay|Spotify|Netflix|Zalando|Otto|Media\s?Markt|Saturn|Lieferando"
        r"|Deliveroo|McDonald'?s|KFC|Burger King|Starbucks|Apple|Google|Microsoft|Adobe"
        r"|Airbnb|Booking\.com)\b",
        0.95,
    ),
    _s("after_referenz", r"Referenz:\s*\S+\s+([^\W\d_][^\W\d_\s]*(?:\s+[^\W\d_]+)*?)" + _END, 0.80),
)

_STICHTING_STRATEGIES: tuple[MerchantStrategy, ...] = (
    _s(
        "verwendungszweck_bestellung",
        r"Verwendungszweck:\s*(?:Ihre\s+Bestellung\s+bei\s+)?([^,]+?)" + _END,
        0.90,
    ),
    _s(
        "kennzeichen_verwendungszweck",
        r"Kennzeichen:.*?Verwendungszweck:\s*(?:Ihre\s+Bestellung\s+bei\s+)?([^,]+?)" + _END,
        0.85,
    ),
)

_GENERIC_PROCESSOR_STRATEGIES: tuple[MerchantStrategy, ...] = (
    _s("bei_merchant", r"\bbei\s+([^,]+?)" + _END, 0.85),
    _s("verwendungszweck", r"Verwendungszweck:\s*([^,]+?)" + _END, 0.85),
)

_PROCESSOR_STRATEGIES: dict[str, tuple[MerchantStrategy, ...]] = {
    "paypal": _PAYPAL_STRATEGIES,
    "stichting_pay": _STICHTING_STRATEGIES,
}

_COUNTERPARTY_END = r"(?=\s*,|\s*//|\s+\d{5,}|\s*$)"

# Applied after leading type keywords and date/time stamps are stripped.
_DIRECT_STRATEGIES: tuple[MerchantStrategy, ...] = (
    _s("an_counterparty", r"\bAn\s+(.+?)" + _COUNTERPARTY_END, 0.95),
    _s("von_counterparty", r"^Von\s+(.+?)" + _COUNTERPARTY_END, 0.90),
    _s("bei_merchant", r"\bbei\s+(.+?)" + _END, 0.95),
    _s("leading_segment", r"^(.+?)" + _END, 0.95),
)


# ---- Name hygiene ------------------------------------------------------------


def _tidy(name: str) -> str:
    name = " ".join(name.split())
    name = name.strip(" ,;:-/")
    return name.rstrip(".") if name.endswith(".") and name.count(".") == 1 else name


def _shorten(name: str) -> str:
    if len(name) <= _MAX_NAME_LEN:
        return name
    cut = name[:_MAX_NAME_LEN].rsplit(" ", 1)[0]
    return cut.strip(" ,;:-/")


def _is_noise_token(word: str) -> bool:
    return word.lower().strip(".,") in _NOISE_TOKENS


def is_valid_merchant_name(name: str) -> bool:
    """Length 2 to 50, starts with a letter, and is not made only of noise tokens."""

    if not (_MIN_NAME_LEN <= len(name) <= _MAX_NAME_LEN) or not name[0].isalpha():
        return False
    words = [w for w in name.split() if w]
    return not all(_is_noise_token(w) for w in words)


def _capitalize_proper(name: str) -> str:
    return " ".join(w[:1].upper() + w[1:] if w.islower() else w for w in name.split())


def _normalize_input(text: str) -> str:
    text = re.sub(r"\s*\n\s*", ", ", text.strip())
    return " ".join(text.split())


# ---- Strategy runners --------------------------------------------------------


def detect_processor(text: str) -> PaymentProcessor | None:
    for processor in PAYMENT_PROCESSORS:
        if processor.signature.search(text):
            return processor
    return None


def _run(strategies: Iterable[MerchantStrategy], text: str) -> tuple[str, float, str] | None:
    for strategy in strategies:
        name = strategy.extract(text)
        if name is not None:
            return name, strategy.confidence, strategy.name
    return None


def _processor_fallback(text: str, processor: PaymentProcessor) -> tuple[str, float, str]:
    stripped = processor.signature.sub(" ", text)
    stripped = _TYPE_ANYWHERE_RE.sub(" ", stripped)
    stripped = _LABELLED_CODE_RE.sub(" ", stripped)
    stripped = _CURRENCY_RE.sub(" ", stripped)
    words = [
        w.strip(".-'")
        for w in _WORD_SPLIT_RE.split(stripped)
        if len(w.strip(".-'")) >= 3 and w.strip(".-'")[:1].isalpha()
    ]
    meaningful = [w for w in words if not _is_noise_token(w)]
    if meaningful:
        name = " ".join(meaningful[:2])
        if is_valid_merchant_name(name):
            return name, 0.7, "processor_cleanup"
    return processor.display_name, 0.6, "processor_only"


def _resolve_direct(text: str) -> tuple[str, float, str]:
    body = _TYPE_PREFIX_RE.sub("", text)
    body = _STAMP_PREFIX_RE.sub("", body).strip(" ,")
    for strategy in _DIRECT_STRATEGIES:
        m = strategy.pattern.search(body)
        if not m:
            continue
        candidate = _shorten(_tidy(m.group(1)))
        if is_valid_merchant_name(candidate):
            return candidate, strategy.confidence, strategy.name
    return UNKNOWN_RECIPIENT, 0.5, "unresolved"


def _apply_business_rules(
    text: str, recipient: str, confidence: float, processor: PaymentProcessor | None
) -> tuple[str, float]:
    is_processor_name = processor is not None and recipient == processor.display_name
    if processor is not None and not is_processor_name:
        confidence = min(confidence + 0.1, _MAX_CONFIDENCE)

    known = _WELL_KNOWN_RE.search(text)
    if known:
        recipient = _WELL_KNOWN_MERCHANTS[known.group(1).lower()]
        confidence = 0.95
        is_processor_name = False

    if processor is not None and is_processor_name and confidence < 0.7:
        confidence = 0.6
    if processor is None:
        confidence = min(confidence + 0.05, _MAX_CONFIDENCE)
    return recipient, round(confidence, 2)


def resolve(block_text: str) -> MerchantResolution:
    """Return the true counterparty behind ``block_text``.

    Never raises: when nothing plausible can be extracted the intermediary's
    display name (or ``"Unbekannt"``) is returned with low confidence.
    """

    text = _normalize_input(block_text or "")
    if not text:
        return MerchantResolution(UNKNOWN_RECIPIENT, None, 0.1, "empty_input")

    processor = detect_processor(text)
    if processor is None:
        recipient, confidence, method = _resolve_direct(text)
    else:
        strategies = _PROCESSOR_STRATEGIES.get(processor.key, _GENERIC_PROCESSOR_STRATEGIES)
        hit = _run(strategies, text)
        if hit is not None:
            name, confidence, method = hit
            recipient = _capitalize_proper(name)
        else:
            recipient, confidence, method = _processor_fallback(text, processor)

    recipient, confidence = _apply_business_rules(text, recipient, confidence, processor)
    _logger.debug(
        "merchants:resolved processor=%s method=%s confidence=%.2f",
        processor.key if processor else "-",
        method,
        confidence,
    )
    return MerchantResolution(
        recipient=recipient,
        payment_processor=processor.display_name if processor else None,
        confidence=confidence,
        method=method,
    )


def resolution_stats(resolutions: Iterable[MerchantResolution]) -> dict[str, object]:
    """Summarize a batch of resolutions (count, mean confidence, intermediaries)."""

    items = list(resolutions)
    processors = Counter(r.payment_processor for r in items if r.payment_processor)
    avg = sum(r.confidence for r in items) / len(items) if items else 0.0
    return {
        "total": len(items),
        "average_confidence": round(avg, 2),
        "processors": dict(processors),
    }


__all__ = [
    "PAYMENT_PROCESSORS",
    "UNKNOWN_RECIPIENT",
    "MerchantStrategy",
    "PaymentProcessor",
    "detect_processor",
    "is_valid_merchant_name",
    "resolution_stats",
    "resolve",
]
