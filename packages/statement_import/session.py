"""Per-document diagnostics for one import run.

An :class:`UploadSession` lives for exactly one document. It records the steps
taken, the blocks skipped and why, and the counts at each stage, then
collapses into a :class:`SessionSummary` whose ``message`` is what a user
sees. Every step is mirrored to the package logger.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .logging_setup import get_logger

_logger = get_logger("statement_import.session")

NO_TRANSACTIONS_MESSAGE = "no transactions found"


@dataclass(frozen=True, slots=True)
class SessionStep:
    level: str
    message: str
    at: datetime


@dataclass(frozen=True, slots=True)
class SessionSummary:
    session_id: str
    document: str
    duration_ms: float
    transactions: int
    skipped_blocks: int
    errors: int
    warnings: int
    escalated: bool
    message: str


@dataclass
class SessionStats:
    bank: str | None = None
    text_length: int = 0
    cleaned_length: int = 0
    blocks_found: int = 0
    blocks_skipped: int = 0
    heuristic_count: int = 0
    generative_count: int = 0
    final_count: int = 0
    escalated: bool = False


@dataclass
class UploadSession:
    document: str = "<text>"
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    ended_at: datetime | None = None
    steps: list[SessionStep] = field(default_factory=list)
    errors: int = 0
    warnings: int = 0
    stats: SessionStats = field(default_factory=SessionStats)
    _t0: float = field(default_factory=time.perf_counter, repr=False)

    def _record(self, level: int, message: str, **fields: Any) -> None:
        detail = " ".join(f"{k}={v}" for k, v in fields.items())
        text = f"{message} {detail}".rstrip()
        self.steps.append(SessionStep(logging.getLevelName(level), text, datetime.now(UTC)))
        _logger.log(level, "session:%s id=%s doc=%s", text, self.session_id[:8], self.document)

    def step(self, message: str, **fields: Any) -> None:
        self._record(logging.INFO, message, **fields)

    def debug(self, message: str, **fields: Any) -> None:
        self._record(logging.DEBUG, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self.warnings += 1
        self._record(logging.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self.errors += 1
        self._record(logging.ERROR, message, **fields)

    def skip_block(self, index: int, reason: str) -> None:
        self.stats.blocks_skipped += 1
        self._record(logging.DEBUG, "block_skipped", index=index, reason=reason)

    def finish(self) -> SessionSummary:
        """Close the session and build the user-facing summary."""

        if self.ended_at is None:
            self.ended_at = datetime.now(UTC)
        count = self.stats.final_count
        message = NO_TRANSACTIONS_MESSAGE if count == 0 else f"{count} transactions imported"
        summary = SessionSummary(
            session_id=self.session_id,
            document=self.document,
            duration_ms=round((time.perf_counter() - self._t0) * 1000.0, 2),
            transactions=count,
            skipped_blocks=self.stats.blocks_skipped,
            errors=self.errors,
            warnings=self.warnings,
            escalated=self.stats.escalated,
            message=message,
        )
        self._record(logging.INFO, "finished", transactions=count, ms=summary.duration_ms)
        return summary


__all__ = [
    "NO_TRANSACTIONS_MESSAGE",
    "SessionStats",
    "SessionStep",
    "SessionSummary",
    "UploadSession",
]
