"""Statement import pipeline: heuristics first, generative extraction as fallback.

Public API:
    - :class:`StatementImporter` (``parse_document``, ``import_document``,
      ``import_documents``)
    - :class:`ImportResult`
    - :class:`StatementReadError`
    - :func:`parse_document` (one-shot convenience wrapper)

Per document the heuristic path runs ``detect_bank`` -> ``clean`` ->
``segment`` and then, per block, amount/date extraction and merchant
resolution. When that yields nothing the generative collaborator is asked for
a JSON array instead. Every failure below "the input is not text" is recovered
locally and recorded on the document's :class:`UploadSession`.
"""

from __future__ import annotations

import os
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from .amounts import extract_amount, normalize_amount, normalize_date
from .classifier import AdaptiveCategorizer, seed_categories
from .duplicates import dedupe
from .generative import (
    GenerationCancelled,
    GenerationRequest,
    GenerationResponse,
    GenerationTimeout,
    TextGenerator,
)
from .logging_setup import get_logger
from .merchants import resolve
from .models import AmountMatch, Transaction, TransactionBlock, try_build_transaction
from .noise import clean, is_noise_line
from .pmap import p_map
from .prompting import build_extraction_prompt, parse_generated_transactions
from .reconcile import merge_transactions
from .segmentation import BANK_DISPLAY_NAMES, UNKNOWN_BANK, detect_bank, segment
from .session import SessionSummary, UploadSession

# ---- Tunables (private) ------------------------------------------------------

_MAX_CONCURRENT_GENERATIONS = 2
_DEFAULT_BATCH_CONCURRENCY = 4
_SLOT_POLL_SEC = 0.1
_GENERATION_TIMEOUT_SEC = 30.0
_TEXT_ENCODINGS = ("utf-8", "cp1252")

_logger = get_logger("statement_import.orchestrator")

_CURRENCY = r"(?:EUR|€)"


class StatementReadError(ValueError):
    """The input could not be read as statement text."""


@dataclass(frozen=True, slots=True)
class ImportResult:
    name: str
    transactions: tuple[Transaction, ...]
    summary: SessionSummary
    error: str | None = None

    @property
    def message(self) -> str:
        return self.summary.message


def _coerce_text(raw_text: Any) -> str:
    if isinstance(raw_text, str):
        return raw_text
    if isinstance(raw_text, bytes | bytearray):
        for encoding in _TEXT_ENCODINGS:
            try:
                return bytes(raw_text).decode(encoding)
            except UnicodeDecodeError:
                continue
        raise StatementReadError("statement bytes are not decodable as text")
    raise StatementReadError(f"expected str or bytes, got {type(raw_text).__name__}")


def _strip_amount(line: str, match_text: str) -> str:
    pattern = rf"(?:{_CURRENCY}\s*)?{re.escape(match_text)}(?:\s*{_CURRENCY})?"
    stripped = re.sub(pattern, " ", line.replace("−", "-"), count=1, flags=re.IGNORECASE)
    return " ".join(stripped.split())


def _description_lines(lines: Sequence[str], match: AmountMatch) -> list[str]:
    out: list[str] = []
    for idx, line in enumerate(lines):
        if is_noise_line(line):
            continue
        if idx == match.line_index:
            line = _strip_amount(line, match.match_text)
        if line:
            out.append(line)
    return out


def _resolve_concurrency(explicit: int | None) -> int:
    if explicit is not None:
        return explicit
    env_val = os.getenv("STATEMENT_IMPORT_MAX_WORKERS")
    try:
        value = int(env_val) if env_val else None
    except ValueError:
        value = None
    return value if value is not None and value > 0 else _DEFAULT_BATCH_CONCURRENCY


class StatementImporter:
    """Turns raw statement text into validated, categorized transactions.

    One importer may serve many documents, including concurrently; the only
    state shared between documents is the injected ``categorizer`` (which
    locks internally) and the generation slot semaphore.
    """

    def __init__(
        self,
        *,
        categorizer: AdaptiveCategorizer | None = None,
        generator: TextGenerator | None = None,
        available_categories: Sequence[str] | None = None,
        source_account: str | None = None,
        refine_with_generator: bool = False,
        max_concurrent_generations: int = _MAX_CONCURRENT_GENERATIONS,
        prompt_char_budget: int = 6000,
        generation_timeout: float = _GENERATION_TIMEOUT_SEC,
    ) -> None:
        if max_concurrent_generations < 1:
            raise ValueError("max_concurrent_generations must be >= 1")
        if generation_timeout <= 0:
            raise ValueError("generation_timeout must be > 0")
        self._categorizer = categorizer
        self._generator = generator
        self._available = (
            list(available_categories) if available_categories else seed_categories()
        )
        self._source_account = source_account
        self._refine = refine_with_generator
        self._generation_slots = threading.BoundedSemaphore(max_concurrent_generations)
        self._prompt_char_budget = prompt_char_budget
        self._generation_timeout = generation_timeout

    @property
    def available_categories(self) -> list[str]:
        return list(self._available)

    # ---- Heuristic path ------------------------------------------------------

    def _block_to_transaction(
        self,
        block: TransactionBlock,
        index: int,
        *,
        source_account: str,
        session: UploadSession,
    ) -> Transaction | None:
        lines = block.content_lines
        match = extract_amount(lines)
        if match is None:
            session.skip_block(index, "no_amount")
            return None
        amount = normalize_amount(match.match_text)
        if amount == 0:
            session.skip_block(index, "zero_amount")
            return None
        description_lines = _description_lines(lines, match)
        if not description_lines:
            session.skip_block(index, "empty_description")
            return None

        parsed_date = normalize_date(block.date_text)
        if parsed_date.is_fallback:
            session.warning("date_fallback", index=index)
        resolution = resolve(", ".join(description_lines))
        tx = try_build_transaction(
            date=parsed_date.value,
            date_is_fallback=parsed_date.is_fallback,
            description=" ".join(description_lines),
            recipient=resolution.recipient,
            amount=amount,
            confidence=resolution.confidence,
            source_account=source_account,
            payment_processor=resolution.payment_processor,
        )
        if tx is None:
            session.skip_block(index, "invalid_transaction")
        return tx

    def _heuristic(
        self,
        blocks: Sequence[TransactionBlock],
        *,
        source_account: str,
        cancel: threading.Event | None,
        session: UploadSession,
    ) -> list[Transaction]:
        out: list[Transaction] = []
        for index, block in enumerate(blocks):
            if cancel is not None and cancel.is_set():
                session.warning("cancelled", stage="heuristic", at_block=index)
                break
            try:
                tx = self._block_to_transaction(
                    block, index, source_account=source_account, session=session
                )
            except Exception as e:  # noqa: BLE001 - one bad block must not sink the document
                session.skip_block(index, f"error:{type(e).__name__}")
                continue
            if tx is not None:
                out.append(tx)
        return out

    # ---- Generative path -----------------------------------------------------

    def _acquire_slot(self, cancel: threading.Event | None) -> bool:
        while not self._generation_slots.acquire(timeout=_SLOT_POLL_SEC):
            if cancel is not None and cancel.is_set():
                return False
        return True

    def _generate_with_deadline(
        self,
        generator: TextGenerator,
        request: GenerationRequest,
        cancel: threading.Event | None,
    ) -> GenerationResponse:
        """Run the generator on a worker and give up after ``generation_timeout``.

        The worker gets its own cancel event, set on timeout or outer
        cancellation so a cooperative generator can stop early.
        """

        call_cancel = threading.Event()
        deadline = time.monotonic() + self._generation_timeout
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="statement-generate")
        try:
            fut = pool.submit(generator.generate, request, cancel=call_cancel)
            while True:
                if cancel is not None and cancel.is_set():
                    call_cancel.set()
                    raise GenerationCancelled("generation cancelled")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    call_cancel.set()
                    raise GenerationTimeout(f"generation exceeded {self._generation_timeout:g}s")
                try:
                    return fut.result(timeout=min(_SLOT_POLL_SEC, remaining))
                except TimeoutError:
                    continue
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _generative(
        self,
        cleaned: str,
        *,
        source_account: str,
        cancel: threading.Event | None,
        session: UploadSession,
    ) -> list[Transaction]:
        if self._generator is None:
            session.step("generative_unavailable")
            return []
        if not cleaned.strip():
            session.step("generative_skipped", reason="empty_text")
            return []

        prompt = build_extraction_prompt(
            cleaned, allowed_categories=self._available, max_chars=self._prompt_char_budget
        )
        if not self._acquire_slot(cancel):
            session.warning("generative_cancelled", stage="queued")
            return []
        try:
            response = self._generate_with_deadline(
                self._generator, GenerationRequest(prompt=prompt), cancel
            )
            txs = parse_generated_transactions(
                response.text,
                allowed_categories=self._available,
                source_account=source_account,
            )
        except GenerationCancelled:
            session.warning("generative_cancelled", stage="request")
            return []
        except GenerationTimeout as e:
            session.warning("generative_timeout", error=str(e))
            return []
        except ValueError as e:
            session.warning("generative_invalid_output", error=str(e)[:80])
            return []
        except Exception as e:  # noqa: BLE001 - degrade to the heuristic result
            session.error("generative_failed", error=type(e).__name__)
            return []
        finally:
            self._generation_slots.release()
        session.stats.generative_count = len(txs)
        session.step("generative_done", count=len(txs))
        return txs

    # ---- Categorization ------------------------------------------------------

    def _categorize(self, transactions: Sequence[Transaction]) -> list[Transaction]:
        if self._categorizer is None:
            return list(transactions)
        out: list[Transaction] = []
        for tx in transactions:
            if tx.category is not None:
                out.append(tx)
                continue
            prediction = self._categorizer.predict(tx, self._available)
            if prediction.category is None:
                out.append(tx)
                continue
            out.append(
                tx.model_copy(
                    update={
                        "category": prediction.category,
                        "category_confidence": prediction.confidence,
                    }
                )
            )
        return out

    # ---- Document entrypoints ------------------------------------------------

    def _run(
        self,
        text: str,
        *,
        bank_id: str | None,
        cancel: threading.Event | None,
        session: UploadSession,
    ) -> list[Transaction]:
        bank = bank_id or detect_bank(text)
        source_account = self._source_account or BANK_DISPLAY_NAMES.get(
            bank, BANK_DISPLAY_NAMES[UNKNOWN_BANK]
        )
        cleaned = clean(text)
        blocks = segment(cleaned, bank)
        stats = session.stats
        stats.bank = bank
        stats.text_length = len(text)
        stats.cleaned_length = len(cleaned)
        stats.blocks_found = len(blocks)
        session.step("segmented", bank=bank, blocks=len(blocks))

        heuristic = self._heuristic(
            blocks, source_account=source_account, cancel=cancel, session=session
        )
        stats.heuristic_count = len(heuristic)

        results = heuristic
        cancelled = cancel is not None and cancel.is_set()
        if not heuristic and not cancelled:
            session.warning("no_heuristic_transactions", bank=bank)
            stats.escalated = True
            results = self._generative(
                cleaned, source_account=source_account, cancel=cancel, session=session
            )
        elif heuristic and self._refine and not cancelled:
            generated = self._generative(
                cleaned, source_account=source_account, cancel=cancel, session=session
            )
            results = merge_transactions(heuristic, generated)

        final = dedupe(tx for tx in self._categorize(results) if tx.description.strip())
        stats.final_count = len(final)
        return final

    def parse_document(
        self,
        raw_text: str | bytes,
        *,
        bank_id: str | None = None,
        cancel: threading.Event | None = None,
        session: UploadSession | None = None,
    ) -> list[Transaction]:
        """Extract transactions from one statement.

        Never raises for content problems; the result may be empty. Raises
        :class:`StatementReadError` only when ``raw_text`` is not text.
        """

        text = _coerce_text(raw_text)
        session = session if session is not None else UploadSession()
        try:
            return self._run(text, bank_id=bank_id, cancel=cancel, session=session)
        except Exception as e:  # noqa: BLE001 - document-level recovery boundary
            _logger.exception("orchestrator:document_failed id=%s", session.session_id[:8])
            session.error("document_failed", error=type(e).__name__)
            return []

    def import_document(
        self,
        raw_text: str | bytes,
        *,
        name: str = "<text>",
        bank_id: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ImportResult:
        session = UploadSession(document=name)
        transactions = self.parse_document(
            raw_text, bank_id=bank_id, cancel=cancel, session=session
        )
        return ImportResult(name=name, transactions=tuple(transactions), summary=session.finish())

    def import_documents(
        self,
        documents: Iterable[tuple[str, str | bytes]],
        *,
        concurrency: int | None = None,
        cancel: threading.Event | None = None,
    ) -> list[ImportResult]:
        """Import ``(name, text)`` pairs concurrently, results in input order.

        An unreadable document yields an empty result carrying ``error``
        instead of failing the batch. Documents not started before ``cancel``
        is set are absent from the result.
        """

        def _one(doc: tuple[str, str | bytes]) -> ImportResult:
            name, raw_text = doc
            try:
                return self.import_document(raw_text, name=name, cancel=cancel)
            except StatementReadError as e:
                session = UploadSession(document=name)
                session.error("unreadable", error=str(e))
                return ImportResult(
                    name=name, transactions=(), summary=session.finish(), error=str(e)
                )

        workers = _resolve_concurrency(concurrency)
        results = p_map(documents, _one, concurrency=workers, cancel=cancel)
        _logger.info(
            "orchestrator:batch_done documents=%d transactions=%d",
            len(results),
            sum(len(r.transactions) for r in results),
        )
        return results


def parse_document(
    raw_text: str | bytes,
    *,
    bank_id: str | None = None,
    cancel: threading.Event | None = None,
    **importer_kwargs: Any,
) -> list[Transaction]:
    """One-shot helper: build a :class:`StatementImporter` and parse ``raw_text``."""

    importer = StatementImporter(**importer_kwargs)
    return importer.parse_document(raw_text, bank_id=bank_id, cancel=cancel)


__all__ = ["ImportResult", "StatementImporter", "StatementReadError", "parse_document"]
