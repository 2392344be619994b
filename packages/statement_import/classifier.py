"""Online category classifier learning from user corrections.

Public API:
    - :class:`AdaptiveCategorizer`
    - :class:`ClassifierState` (the persisted pattern memory)
    - :func:`bootstrap_state`
    - :func:`extract_keywords`, :func:`normalize_recipient`,
      :func:`amount_bucket`, :func:`time_bucket`

The model is a weighted memory of associations between transaction features
(description keywords, normalized recipient, amount bucket, weekday/time slot)
and categories. ``predict`` sums per-feature evidence; ``learn`` reinforces
agreeing associations, decays disagreeing ones and overwrites them once they
fall below a reset threshold.

One ``AdaptiveCategorizer`` is shared by every document of a batch. All access
goes through its lock: ``learn`` is a read-modify-write over several tables and
``predict`` must never observe a half-applied update.
"""

from __future__ import annotations

import heapq
import json
import re
import threading
import unicodedata
from collections import defaultdict
from collections.abc import Callable, Collection, Mapping
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .logging_setup import get_logger
from .models import Prediction, Transaction

SCHEMA_VERSION: int = 1

# ---- Tunables (private) ------------------------------------------------------

_CONFIDENCE_THRESHOLD = 0.3
_MAX_DESCRIPTION_PATTERNS = 10_000
_MAX_RECIPIENT_PATTERNS = 5_000
_MAX_NEGATIVE_PATTERNS = 2_000
_MAX_HISTORY = 1_000
_MAX_CORRECTIONS = 500
_SNAPSHOT_EVENTS = 100
_PRUNE_EVERY = 50
_RETENTION = timedelta(days=90)
_CONFIDENCE_FLOOR = 0.1
_MAX_PENALTY = 0.8
_MAX_TIME_CONFIDENCE = 0.5
_BUCKET_FLOOR = 0.01

_W_PARTIAL = 0.5
_W_RECIPIENT = 1.2
_W_AMOUNT = 0.3
_W_TIME = 0.2
_INCOME_BOOST = 0.8
_INCOME_CATEGORY = "Income"

_SEED_PATH = Path(__file__).parent / "seeds" / "classifier_seed.v1.json"

_logger = get_logger("statement_import.classifier")

_STOPWORDS: frozenset[str] = frozenset(
    {
        # German
        "der", "die", "das", "und", "oder", "aber", "mit", "von", "bei", "fuer", "auf",
        "aus", "nach", "zum", "zur", "den", "dem", "des", "ein", "eine", "einer", "eines",
        "ihr", "ihre", "ihrem", "ihren", "sie", "wir", "ist", "sind", "vom", "ueber",
        "unter", "nicht", "auch", "als", "wie", "noch", "nur", "sehr", "dank", "danke",
        "sagt", "gmbh", "kg", "ohg", "eur", "euro", "lastschrift", "ueberweisung",
        "gutschrift", "einkauf", "zahlung", "kartenzahlung", "verwendungszweck", "referenz",
        # English
        "the", "and", "for", "with", "from", "this", "that", "your", "you", "are", "was",
        "payment", "purchase", "transfer",
    }
)  # fmt: skip

_UMLAUT_FOLD = str.maketrans({"ä": "ae", "ö": "oe", "ü": "ue", "ß": "ss"})
_NON_WORD_RE = re.compile(r"[\W_]+")


# ---- Feature extraction ------------------------------------------------------


def _fold(text: str) -> str:
    text = text.lower().translate(_UMLAUT_FOLD)
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def extract_keywords(text: str) -> list[str]:
    """Return unigram, bigram and (for 3+ words) trigram keys for ``text``."""

    words = [
        w
        for w in _NON_WORD_RE.sub(" ", _fold(text or "")).split()
        if len(w) > 2 and w not in _STOPWORDS and not w.isdigit()
    ]
    keys = list(words)
    keys.extend(f"{a} {b}" for a, b in zip(words, words[1:], strict=False))
    if len(words) >= 3:
        trigrams = (" ".join(words[i : i + 3]) for i in range(len(words) - 2))
        keys.extend(t for t in trigrams if len(t) <= 30)
    return list(dict.fromkeys(keys))


def normalize_recipient(text: str) -> str:
    words = _NON_WORD_RE.sub(" ", _fold(text or "")).split()
    return " ".join(w for w in words if len(w) > 2)


def amount_bucket(amount: Decimal | float) -> str:
    value = abs(float(amount))
    if value <= 5:
        return "micro"
    if value <= 25:
        return "small"
    if value <= 100:
        return "medium"
    if value <= 500:
        return "large"
    if value <= 2000:
        return "xlarge"
    return "huge"


def time_bucket(when: date | datetime) -> str:
    """Weekday (Monday=0) and one of four six-hour slots, e.g. ``"4-3"``."""

    hour = when.hour if isinstance(when, datetime) else 0
    return f"{when.weekday()}-{hour // 6}"


# ---- Persisted state ---------------------------------------------------------


def _clamp(value: float, upper: float = 1.0) -> float:
    return min(upper, max(0.0, float(value)))


class DescriptionPattern(BaseModel):
    category: str
    confidence: float
    reinforcements: int = 1
    last_seen: datetime | None = None

    @field_validator("confidence")
    @classmethod
    def _bounded(cls, v: float) -> float:
        return _clamp(v)


class RecipientPattern(BaseModel):
    category: str
    confidence: float
    count: int = 1
    last_seen: datetime | None = None

    @field_validator("confidence")
    @classmethod
    def _bounded(cls, v: float) -> float:
        return _clamp(v)


class UsageStat(BaseModel):
    count: int = 0
    frequency: float = 0.0
    last_used: datetime | None = None


class LearningEvent(BaseModel):
    at: datetime
    category: str
    description: str
    recipient: str
    amount: float


class CorrectionEvent(BaseModel):
    at: datetime
    predicted: str
    actual: str
    confidence: float


class ClassifierState(BaseModel):
    """Serializable pattern memory; the blob handed to a ``ModelStore``."""

    model_config = ConfigDict(extra="ignore")

    schema_version: int = SCHEMA_VERSION
    description_patterns: dict[str, DescriptionPattern] = Field(default_factory=dict)
    recipient_patterns: dict[str, RecipientPattern] = Field(default_factory=dict)
    amount_patterns: dict[str, dict[str, float]] = Field(default_factory=dict)
    time_patterns: dict[str, dict[str, float]] = Field(default_factory=dict)
    negative_patterns: dict[str, dict[str, float]] = Field(default_factory=dict)
    category_usage: dict[str, UsageStat] = Field(default_factory=dict)
    learning_history: list[LearningEvent] = Field(default_factory=list)
    corrections: list[CorrectionEvent] = Field(default_factory=list)

    @field_validator("amount_patterns", "time_patterns")
    @classmethod
    def _bounded_buckets(cls, v: dict[str, dict[str, float]]) -> dict[str, dict[str, float]]:
        return {b: {c: _clamp(x) for c, x in cats.items()} for b, cats in v.items()}

    @field_validator("negative_patterns")
    @classmethod
    def _bounded_penalties(cls, v: dict[str, dict[str, float]]) -> dict[str, dict[str, float]]:
        return {k: {c: _clamp(x, _MAX_PENALTY) for c, x in cats.items()} for k, cats in v.items()}


def _load_seed_file(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, Mapping):
        raise ValueError("Classifier seed JSON must be an object")
    return dict(data)


def bootstrap_state(seed_path: Path | None = None) -> ClassifierState:
    """Build a fresh model from the packaged seed patterns.

    Seed entries carry no ``last_seen`` timestamp and are therefore never
    expired by age, only displaced by learning.
    """

    data = _load_seed_file(seed_path or _SEED_PATH)
    conf = data.get("seed_confidence") or {}
    desc_conf = float(conf.get("description", 0.8))
    recip_conf = float(conf.get("recipient", 0.8))

    state = ClassifierState()
    for category, keywords in (data.get("description_patterns") or {}).items():
        for kw in keywords:
            key = " ".join(_NON_WORD_RE.sub(" ", _fold(kw)).split())
            if key:
                state.description_patterns[key] = DescriptionPattern(
                    category=category, confidence=desc_conf
                )
    for category, names in (data.get("recipient_patterns") or {}).items():
        for name in names:
            key = normalize_recipient(name)
            if key:
                state.recipient_patterns[key] = RecipientPattern(
                    category=category, confidence=recip_conf
                )
    for bucket, cats in (data.get("amount_ranges") or {}).items():
        state.amount_patterns[bucket] = {c: _clamp(v) for c, v in cats.items()}
    return state


def seed_categories(seed_path: Path | None = None) -> list[str]:
    """Default category list shipped with the seed patterns."""

    return [str(c) for c in _load_seed_file(seed_path or _SEED_PATH).get("categories") or []]


# ---- Service -----------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _reinforce_bucket(
    table: dict[str, dict[str, float]],
    bucket: str,
    category: str,
    *,
    step: float,
    cap: float,
    decay: float,
) -> None:
    entry = table.setdefault(bucket, {})
    for other in list(entry):
        if other == category:
            continue
        entry[other] = entry[other] - decay
        if entry[other] <= _BUCKET_FLOOR:
            del entry[other]
    entry[category] = min(cap, entry.get(category, 0.0) + step)


def _evict_weakest(table: dict[str, Any], cap: int, weight: Callable[[Any], float]) -> int:
    overflow = len(table) - cap
    if overflow <= 0:
        return 0
    for key, _ in heapq.nsmallest(overflow, table.items(), key=lambda kv: weight(kv[1])):
        del table[key]
    return overflow


class AdaptiveCategorizer:
    """Thread-safe predictor/learner over a :class:`ClassifierState`.

    Pass one instance explicitly to every pipeline call that needs it; the
    instance owns its state and lock.
    """

    def __init__(
        self,
        state: ClassifierState | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._state = state if state is not None else ClassifierState()
        self._clock = clock
        self._lock = threading.Lock()
        self._learn_calls = 0

    @classmethod
    def bootstrap(cls, **kwargs: Any) -> AdaptiveCategorizer:
        return cls(bootstrap_state(), **kwargs)

    @classmethod
    def from_state(cls, state: ClassifierState, **kwargs: Any) -> AdaptiveCategorizer:
        return cls(state.model_copy(deep=True), **kwargs)

    @classmethod
    def from_blob(cls, blob: str, **kwargs: Any) -> AdaptiveCategorizer:
        return cls(ClassifierState.model_validate_json(blob), **kwargs)

    # ---- Scoring -------------------------------------------------------------

    def _scores(self, tx: Transaction) -> dict[str, float]:
        st = self._state
        scores: dict[str, float] = defaultdict(float)
        keywords = extract_keywords(tx.description)

        for kw in keywords:
            exact = st.description_patterns.get(kw)
            if exact is not None:
                scores[exact.category] += exact.confidence
            for key, pattern in st.description_patterns.items():
                if key == kw or (kw not in key and key not in kw):
                    continue
                ratio = min(len(kw), len(key)) / max(len(kw), len(key))
                scores[pattern.category] += pattern.confidence * ratio * _W_PARTIAL

        recipient = st.recipient_patterns.get(normalize_recipient(tx.recipient))
        if recipient is not None:
            scores[recipient.category] += recipient.confidence * _W_RECIPIENT

        if tx.amount > 0:
            scores[_INCOME_CATEGORY] += _INCOME_BOOST
        for category, conf in st.amount_patterns.get(amount_bucket(tx.amount), {}).items():
            scores[category] += conf * _W_AMOUNT

        for category, conf in st.time_patterns.get(time_bucket(tx.date), {}).items():
            scores[category] += conf * _W_TIME

        for kw in keywords:
            for category, penalty in st.negative_patterns.get(kw, {}).items():
                if category in scores:
                    scores[category] = max(0.0, scores[category] - penalty)

        for category in list(scores):
            usage = st.category_usage.get(category)
            if usage is not None:
                scores[category] += min(0.2, usage.frequency * 0.1)
        return scores

    def _ranked(
        self, tx: Transaction, available_categories: Collection[str] | None
    ) -> list[tuple[str, float]]:
        allowed = set(available_categories) if available_categories else None
        ranked = [
            (category, score)
            for category, score in self._scores(tx).items()
            if score > 0 and (allowed is None or category in allowed)
        ]
        ranked.sort(key=lambda cs: (-cs[1], cs[0]))
        return ranked

    def _predict_unlocked(
        self, tx: Transaction, available_categories: Collection[str] | None
    ) -> Prediction:
        ranked = self._ranked(tx, available_categories)
        capped = [(c, round(min(1.0, s), 4)) for c, s in ranked]
        if not capped or ranked[0][1] < _CONFIDENCE_THRESHOLD:
            return Prediction(category=None, confidence=0.0, alternatives=tuple(capped[:3]))
        best, confidence = capped[0]
        return Prediction(category=best, confidence=confidence, alternatives=tuple(capped[1:4]))

    def predict(
        self, tx: Transaction, available_categories: Collection[str] | None = None
    ) -> Prediction:
        """Predict a category for ``tx`` restricted to ``available_categories``.

        Returns ``Prediction(None, 0.0, ...)`` when no allowed category clears
        the confidence threshold.
        """

        with self._lock:
            return self._predict_unlocked(tx, available_categories)

    def suggestions(
        self,
        tx: Transaction,
        available_categories: Collection[str] | None = None,
        *,
        limit: int = 5,
    ) -> list[tuple[str, float]]:
        """Ranked category suggestions, topped up with frequently used categories."""

        with self._lock:
            ranked = [(c, round(min(1.0, s), 4)) for c, s in self._ranked(tx, available_categories)]
            seen = {c for c, _ in ranked}
            by_usage = sorted(
                self._state.category_usage.items(), key=lambda kv: (-kv[1].count, kv[0])
            )
            for category, usage in by_usage:
                if len(ranked) >= limit:
                    break
                if category in seen:
                    continue
                if available_categories and category not in available_categories:
                    continue
                ranked.append((category, round(min(0.2, usage.frequency * 0.1), 4)))
            return ranked[:limit]

    # ---- Learning ------------------------------------------------------------

    def _learn_keyword(self, key: str, category: str, now: datetime) -> None:
        table = self._state.description_patterns
        pattern = table.get(key)
        if pattern is None:
            table[key] = DescriptionPattern(category=category, confidence=0.6, last_seen=now)
        elif pattern.category == category:
            pattern.confidence = min(1.0, pattern.confidence + 0.1)
            pattern.reinforcements += 1
            pattern.last_seen = now
        else:
            pattern.confidence = max(0.1, pattern.confidence - 0.15)
            if pattern.confidence < 0.3:
                table[key] = DescriptionPattern(category=category, confidence=0.6, last_seen=now)

    def _learn_recipient(self, key: str, category: str, now: datetime) -> None:
        table = self._state.recipient_patterns
        pattern = table.get(key)
        if pattern is None:
            table[key] = RecipientPattern(category=category, confidence=0.7, last_seen=now)
        elif pattern.category == category:
            pattern.confidence = min(1.0, pattern.confidence + 0.15)
            pattern.count += 1
            pattern.last_seen = now
        else:
            pattern.confidence = max(0.2, pattern.confidence - 0.2)
            if pattern.confidence < 0.4:
                table[key] = RecipientPattern(category=category, confidence=0.7, last_seen=now)

    def learn(self, tx: Transaction, correct_category: str) -> None:
        """Fold a confirmed or corrected category for ``tx`` into the model."""

        if not correct_category or not correct_category.strip():
            raise ValueError("correct_category must be a non-empty string")

        with self._lock:
            st = self._state
            now = self._clock()
            prior = self._predict_unlocked(tx, None)
            keywords = extract_keywords(tx.description)

            for kw in keywords:
                self._learn_keyword(kw, correct_category, now)
            recipient_key = normalize_recipient(tx.recipient)
            if recipient_key:
                self._learn_recipient(recipient_key, correct_category, now)
            _reinforce_bucket(
                st.amount_patterns,
                amount_bucket(tx.amount),
                correct_category,
                step=0.05,
                cap=1.0,
                decay=0.01,
            )
            _reinforce_bucket(
                st.time_patterns,
                time_bucket(tx.date),
                correct_category,
                step=0.02,
                cap=_MAX_TIME_CONFIDENCE,
                decay=0.005,
            )

            if prior.category is not None and prior.category != correct_category:
                for kw in keywords[:3]:
                    penalties = st.negative_patterns.setdefault(kw, {})
                    penalties[prior.category] = min(
                        _MAX_PENALTY, penalties.get(prior.category, 0.0) + 0.1
                    )
                st.corrections.append(
                    CorrectionEvent(
                        at=now,
                        predicted=prior.category,
                        actual=correct_category,
                        confidence=prior.confidence,
                    )
                )
                del st.corrections[:-_MAX_CORRECTIONS]
                _logger.info(
                    "classifier:correction predicted=%s actual=%s confidence=%.2f",
                    prior.category,
                    correct_category,
                    prior.confidence,
                )

            usage = st.category_usage.setdefault(correct_category, UsageStat())
            usage.count += 1
            usage.frequency = min(1.0, usage.count / 100)
            usage.last_used = now

            st.learning_history.append(
                LearningEvent(
                    at=now,
                    category=correct_category,
                    description=tx.description,
                    recipient=tx.recipient,
                    amount=float(tx.amount),
                )
            )
            del st.learning_history[:-_MAX_HISTORY]

            self._learn_calls += 1
            self._enforce_caps()
            if self._learn_calls % _PRUNE_EVERY == 0:
                self._prune(now)

    # ---- Maintenance ---------------------------------------------------------

    def _enforce_caps(self) -> None:
        st = self._state
        evicted = _evict_weakest(
            st.description_patterns,
            _MAX_DESCRIPTION_PATTERNS,
            lambda p: p.confidence * p.reinforcements,
        )
        evicted += _evict_weakest(
            st.recipient_patterns, _MAX_RECIPIENT_PATTERNS, lambda p: p.confidence * p.count
        )
        evicted += _evict_weakest(
            st.negative_patterns, _MAX_NEGATIVE_PATTERNS, lambda m: max(m.values(), default=0.0)
        )
        if evicted:
            _logger.debug("classifier:evicted count=%d", evicted)

    def _prune(self, now: datetime) -> None:
        st = self._state
        cutoff = now - _RETENTION
        removed = 0
        for key, p in list(st.description_patterns.items()):
            stale = p.last_seen is not None and p.last_seen < cutoff
            if p.confidence < _CONFIDENCE_FLOOR or (
                stale and (p.confidence < 0.3 or p.reinforcements <= 1)
            ):
                del st.description_patterns[key]
                removed += 1
        for key, r in list(st.recipient_patterns.items()):
            stale = r.last_seen is not None and r.last_seen < cutoff
            if r.confidence < _CONFIDENCE_FLOOR or (stale and (r.confidence < 0.3 or r.count <= 1)):
                del st.recipient_patterns[key]
                removed += 1
        for key, penalties in list(st.negative_patterns.items()):
            if not any(v > 0 for v in penalties.values()):
                del st.negative_patterns[key]
                removed += 1
        _logger.debug("classifier:pruned removed=%d", removed)

    def prune(self) -> None:
        with self._lock:
            self._prune(self._clock())

    # ---- Introspection / persistence -----------------------------------------

    def snapshot(self) -> ClassifierState:
        """Deep copy of the state with the event logs trimmed for persistence."""

        with self._lock:
            state = self._state.model_copy(deep=True)
        state.learning_history = state.learning_history[-_SNAPSHOT_EVENTS:]
        state.corrections = state.corrections[-_SNAPSHOT_EVENTS:]
        return state

    def to_blob(self) -> str:
        return self.snapshot().model_dump_json()

    def stats(self) -> dict[str, Any]:
        with self._lock:
            st = self._state
            learned = len(st.learning_history)
            top = sorted(st.category_usage.items(), key=lambda kv: (-kv[1].count, kv[0]))[:5]
            return {
                "description_patterns": len(st.description_patterns),
                "recipient_patterns": len(st.recipient_patterns),
                "amount_buckets": len(st.amount_patterns),
                "time_buckets": len(st.time_patterns),
                "negative_patterns": len(st.negative_patterns),
                "learned_events": learned,
                "corrections": len(st.corrections),
                "accuracy": round(1 - len(st.corrections) / learned, 4) if learned else None,
                "top_categories": [(c, u.count) for c, u in top],
            }


__all__ = [
    "AdaptiveCategorizer",
    "ClassifierState",
    "SCHEMA_VERSION",
    "amount_bucket",
    "bootstrap_state",
    "extract_keywords",
    "normalize_recipient",
    "seed_categories",
    "time_bucket",
]
