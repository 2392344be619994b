"""Public API for the ``statement_import`` package.

This module is the stable import surface for host applications: restore the
classifier, import one statement, feed user corrections back. The pipeline
itself lives in ``statement_import.orchestrator``.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Sequence

from pydantic import ValidationError

from .classifier import AdaptiveCategorizer
from .generative import TextGenerator
from .logging_setup import get_logger
from .models import Transaction
from .orchestrator import ImportResult, StatementImporter
from .persistence import ModelStore

_logger = get_logger("statement_import.api")


def load_categorizer(store: ModelStore | None) -> AdaptiveCategorizer:
    """Restore the persisted classifier, or seed a fresh one.

    Input
    -----
    store:
        Where the model blob lives. ``None`` means "no persistence".

    Output
    ------
    An :class:`AdaptiveCategorizer`. When the store is empty, unreadable, or
    holds a blob that no longer validates, the bootstrap seed model is
    returned instead and the failure is logged.
    """

    if store is None:
        return AdaptiveCategorizer.bootstrap()
    try:
        blob = store.load_model()
    except Exception as e:  # noqa: BLE001 - fall back to the seed model
        _logger.warning("api:model_load_failed error=%s", type(e).__name__)
        return AdaptiveCategorizer.bootstrap()
    if not blob:
        _logger.info("api:model_bootstrap reason=empty_store")
        return AdaptiveCategorizer.bootstrap()
    try:
        return AdaptiveCategorizer.from_blob(blob)
    except (ValidationError, ValueError) as e:
        _logger.warning("api:model_invalid error=%s", type(e).__name__)
        return AdaptiveCategorizer.bootstrap()


def import_statement(
    raw_text: str | bytes,
    *,
    categorizer: AdaptiveCategorizer,
    generator: TextGenerator | None = None,
    name: str = "<text>",
    bank_id: str | None = None,
    available_categories: Sequence[str] | None = None,
    source_account: str | None = None,
    refine_with_generator: bool = False,
    cancel: threading.Event | None = None,
) -> ImportResult:
    """Import one statement's text.

    Output
    ------
    An :class:`~statement_import.orchestrator.ImportResult`. A statement with
    no recognizable bookings yields an empty result whose ``message`` is
    ``"no transactions found"``; only non-text input raises
    (:class:`~statement_import.orchestrator.StatementReadError`).
    """

    importer = StatementImporter(
        categorizer=categorizer,
        generator=generator,
        available_categories=available_categories,
        source_account=source_account,
        refine_with_generator=refine_with_generator,
    )
    return importer.import_document(raw_text, name=name, bank_id=bank_id, cancel=cancel)


def record_corrections(
    corrections: Iterable[tuple[Transaction, str]],
    *,
    categorizer: AdaptiveCategorizer,
    store: ModelStore | None = None,
) -> int:
    """Teach the classifier a batch of confirmed or corrected categories.

    Corrections are applied one at a time in the given order; a correction
    with a blank category is skipped. When anything was applied and a
    ``store`` is given, the model is saved once at the end. Returns the number
    of corrections applied.
    """

    applied = 0
    for tx, category in corrections:
        try:
            categorizer.learn(tx, category)
        except ValueError as e:
            _logger.warning("api:correction_skipped reason=%s", e)
            continue
        applied += 1
    if applied and store is not None:
        store.save_model(categorizer.to_blob())
    _logger.info("api:corrections_applied count=%d saved=%s", applied, bool(applied and store))
    return applied


__all__ = ["ImportResult", "import_statement", "load_categorizer", "record_corrections"]
