from __future__ import annotations

import datetime as dt
from decimal import Decimal

from statement_import.api import import_statement, load_categorizer, record_corrections
from statement_import.classifier import AdaptiveCategorizer
from statement_import.models import Transaction
from statement_import.persistence import JsonFileModelStore


class _MemoryStore:
    def __init__(self, blob: str | None = None) -> None:
        self.blob = blob
        self.saves = 0

    def load_model(self) -> str | None:
        return self.blob

    def save_model(self, blob: str) -> None:
        self.blob = blob
        self.saves += 1


class _BrokenStore:
    def load_model(self) -> str | None:
        raise OSError("disk on fire")

    def save_model(self, blob: str) -> None:  # pragma: no cover - never reached
        raise AssertionError("unexpected save")


def _tx(description: str = "Lastschrift Stadtwerke Musterstadt Abschlag") -> Transaction:
    return Transaction(
        date=dt.date(2024, 8, 1),
        description=description,
        recipient="Stadtwerke Musterstadt",
        amount=Decimal("-80.00"),
        source_account="ING",
    )


def test_load_categorizer_bootstraps_when_store_is_empty_or_missing() -> None:
    for store in (None, _MemoryStore(), _BrokenStore()):
        categorizer = load_categorizer(store)
        assert categorizer.stats()["description_patterns"] > 0


def test_load_categorizer_falls_back_on_corrupt_blob() -> None:
    categorizer = load_categorizer(_MemoryStore("{not json"))

    assert categorizer.stats()["description_patterns"] > 0


def test_load_categorizer_restores_saved_model() -> None:
    trained = AdaptiveCategorizer()
    trained.learn(_tx(), "Utilities")
    store = _MemoryStore(trained.to_blob())

    restored = load_categorizer(store)

    assert restored.stats()["learned_events"] == 1
    assert restored.predict(_tx()).category == "Utilities"


def test_record_corrections_saves_once_and_skips_blank_categories() -> None:
    store = _MemoryStore()
    categorizer = AdaptiveCategorizer()

    applied = record_corrections(
        [(_tx(), "Utilities"), (_tx(), "  "), (_tx("Abschlag Strom August"), "Utilities")],
        categorizer=categorizer,
        store=store,
    )

    assert applied == 2
    assert store.saves == 1
    assert AdaptiveCategorizer.from_blob(store.blob or "").stats()["learned_events"] == 2


def test_record_corrections_without_anything_applied_does_not_save() -> None:
    store = _MemoryStore()

    assert record_corrections([(_tx(), "")], categorizer=AdaptiveCategorizer(), store=store) == 0
    assert store.saves == 0


def test_import_then_learn_round_trip_through_file_store() -> None:
    store = JsonFileModelStore()
    text = "01.08.2024 Lastschrift Stadtwerke Musterstadt Abschlag -80,00"

    first = import_statement(text, categorizer=load_categorizer(store), name="aug.txt")
    (tx,) = first.transactions
    assert tx.category == "Utilities"
    assert not store.path.exists()

    record_corrections([(tx, "Housing")], categorizer=load_categorizer(store), store=store)

    assert store.path.exists()
    assert load_categorizer(store).stats()["top_categories"] == [("Housing", 1)]
