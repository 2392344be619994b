from __future__ import annotations

import datetime as dt
import threading
import time
from decimal import Decimal

import pytest

from statement_import.classifier import AdaptiveCategorizer
from statement_import.generative import (
    GenerationRequest,
    GenerationResponse,
    GenerationTimeout,
)
from statement_import.orchestrator import (
    StatementImporter,
    StatementReadError,
    parse_document,
)
from statement_import.session import UploadSession

from tests.helpers.generator_stub import (
    ScriptedGenerator,
    extract_statement_text,
    json_transactions,
)

TRANSFER_LINE = "15.08.2024 Überweisung Von ING-DiBa AG An REWE SAGT DANKE 1234567 -45.67 EUR"

ING_STATEMENT = "\n".join(
    [
        "ING-DiBa AG",
        "Kontoauszug August 2024",
        "Buchung  Valuta  Betrag",
        "01.08.2024  Lastschrift REWE Markt GmbH",
        "-45,67",
        "02.08.2024  Gutschrift Gehalt",
        "ACME GmbH",
        "2.500,00",
        "03.08.2024  Hinweis zur Kontoführung",
        "Seite 1 von 1",
    ]
)

UNSTRUCTURED = "Kontoauszug\nBuchungen siehe Anlage\nREWE am fünfzehnten, fünfundvierzig Euro"


def test_transfer_line_yields_one_transaction() -> None:
    (tx,) = parse_document(TRANSFER_LINE)

    assert tx.date == dt.date(2024, 8, 15)
    assert tx.amount == Decimal("-45.67")
    assert "REWE" in tx.recipient
    assert tx.source_account == "ING"
    assert tx.origin == "heuristic"
    assert tx.date_is_fallback is False
    assert "-45.67" not in tx.description


def test_structured_statement_records_skipped_blocks() -> None:
    result = StatementImporter().import_document(ING_STATEMENT, name="aug.txt")

    assert [(t.date, t.amount) for t in result.transactions] == [
        (dt.date(2024, 8, 1), Decimal("-45.67")),
        (dt.date(2024, 8, 2), Decimal("2500.00")),
    ]
    assert result.summary.skipped_blocks == 1
    assert result.summary.escalated is False
    assert result.message == "2 transactions imported"
    assert result.name == "aug.txt"


def test_bank_override_and_source_account() -> None:
    importer = StatementImporter(source_account="Girokonto")

    (tx,) = importer.parse_document(TRANSFER_LINE, bank_id="unknown")

    assert tx.source_account == "Girokonto"


def test_bytes_input_is_decoded() -> None:
    txs = StatementImporter().parse_document(TRANSFER_LINE.encode("cp1252"))

    assert len(txs) == 1
    assert txs[0].description.startswith("Überweisung")


def test_non_text_input_raises_read_error() -> None:
    with pytest.raises(StatementReadError):
        StatementImporter().parse_document(12345)  # type: ignore[arg-type]


def test_nothing_found_without_generator() -> None:
    result = StatementImporter().import_document(UNSTRUCTURED)

    assert result.transactions == ()
    assert result.message == "no transactions found"
    assert result.summary.escalated is True
    assert result.summary.errors == 0


def test_escalates_to_generator_when_heuristics_find_nothing() -> None:
    gen = ScriptedGenerator(
        [
            json_transactions(
                [
                    {
                        "date": "2024-08-15",
                        "amount": -45.67,
                        "recipient": "REWE",
                        "category": "Groceries",
                    }
                ]
            )
        ]
    )
    importer = StatementImporter(generator=gen)

    result = importer.import_document(UNSTRUCTURED)

    assert gen.calls == 1
    assert "fünfundvierzig" in extract_statement_text(gen.requests[0].prompt)
    (tx,) = result.transactions
    assert tx.origin == "generative"
    assert tx.category == "Groceries"
    assert tx.confidence == 0.7
    assert result.summary.escalated is True
    assert result.message == "1 transactions imported"


@pytest.mark.parametrize(
    "output",
    [
        RuntimeError("service unavailable"),
        GenerationTimeout("generation exceeded 30.0s"),
        "I could not find any transactions.",
    ],
)
def test_generator_failures_never_raise(output: str | Exception) -> None:
    gen = ScriptedGenerator([output])

    result = StatementImporter(generator=gen).import_document(UNSTRUCTURED)

    assert gen.calls == 1
    assert result.transactions == ()
    assert result.message == "no transactions found"
    assert result.summary.errors + result.summary.warnings >= 2



class _StalledGenerator:
    """Blocks until told to stop, then answers with an empty list."""

    def __init__(self) -> None:
        self.cancelled = threading.Event()

    def generate(
        self, request: GenerationRequest, *, cancel: threading.Event | None = None
    ) -> GenerationResponse:
        if cancel is not None and cancel.wait(5.0):
            self.cancelled.set()
        return GenerationResponse(text="[]")


def test_stalled_generator_times_out() -> None:
    gen = _StalledGenerator()
    importer = StatementImporter(generator=gen, generation_timeout=0.2)
    session = UploadSession()

    started = time.monotonic()
    txs = importer.parse_document(UNSTRUCTURED, session=session)
    elapsed = time.monotonic() - started

    assert txs == []
    assert elapsed < 1.5
    assert any(s.message.startswith("generative_timeout") for s in session.steps)
    assert session.warnings >= 2
    assert gen.cancelled.wait(1.0)


def test_rejects_non_positive_generation_timeout() -> None:
    with pytest.raises(ValueError):
        StatementImporter(generation_timeout=0)

def test_generator_not_called_for_empty_text() -> None:
    gen = ScriptedGenerator(["[]"])

    assert StatementImporter(generator=gen).parse_document("   ") == []
    assert gen.calls == 0


def test_refinement_merges_without_double_counting() -> None:
    gen = ScriptedGenerator(
        [
            json_transactions(
                [
                    {
                        "date": "2024-08-01",
                        "amount": "-45,67",
                        "recipient": "REWE Markt GmbH",
                        "description": "Lastschrift REWE Markt GmbH",
                    },
                    {"date": "2024-08-20", "amount": -9.99, "recipient": "Spotify"},
                ]
            )
        ]
    )
    importer = StatementImporter(generator=gen, refine_with_generator=True)

    txs = importer.parse_document(ING_STATEMENT)

    assert [t.amount for t in txs] == [Decimal("-45.67"), Decimal("2500.00"), Decimal("-9.99")]
    assert txs[-1].origin == "generative"


def test_cancel_before_start_returns_nothing() -> None:
    gen = ScriptedGenerator(["[]"])
    cancel = threading.Event()
    cancel.set()

    result = StatementImporter(generator=gen).import_document(ING_STATEMENT, cancel=cancel)

    assert result.transactions == ()
    assert gen.calls == 0


def test_categorizer_fills_missing_categories() -> None:
    importer = StatementImporter(categorizer=AdaptiveCategorizer.bootstrap())

    (tx,) = importer.parse_document(TRANSFER_LINE)

    assert tx.category == "Groceries"
    assert 0.0 < tx.category_confidence <= 1.0


def test_duplicate_bookings_are_collapsed() -> None:
    txs = StatementImporter().parse_document(TRANSFER_LINE + "\n" + TRANSFER_LINE)

    assert len(txs) == 1


def test_import_documents_keeps_order_and_reports_unreadable() -> None:
    importer = StatementImporter()
    docs = [("a.txt", ING_STATEMENT), ("b.bin", 42), ("c.txt", TRANSFER_LINE)]

    results = importer.import_documents(docs, concurrency=2)  # type: ignore[arg-type]

    assert [r.name for r in results] == ["a.txt", "b.bin", "c.txt"]
    assert [len(r.transactions) for r in results] == [2, 0, 1]
    assert results[1].error is not None
    assert results[1].summary.errors == 1
    assert results[0].error is None


def test_rejects_invalid_generation_concurrency() -> None:
    with pytest.raises(ValueError):
        StatementImporter(max_concurrent_generations=0)
