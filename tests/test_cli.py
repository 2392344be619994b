from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

import statement_import.cli as cli_mod
from statement_import.cli import app, cmd_import_text, cmd_learn, cmd_model_stats

_STATEMENT = Path(__file__).resolve().parent / "data" / "ing_statement_aug_2024.txt"


@pytest.fixture(autouse=True)
def _quiet(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    # Keep handlers off the captured streams and ignore any developer .env.
    monkeypatch.setattr(cli_mod, "configure_logging", lambda: None)
    monkeypatch.chdir(tmp_path)


def test_import_text_prints_tsv(capsys: pytest.CaptureFixture[str]) -> None:
    rc = cmd_import_text(str(_STATEMENT))

    out, err = capsys.readouterr()
    assert rc == 0
    rows = [line.split("\t") for line in out.splitlines()]
    assert [r[:2] for r in rows] == [
        ["2024-08-01", "-45.67"],
        ["2024-08-02", "2500.00"],
        ["2024-08-04", "-12.40"],
    ]
    assert rows[2][2] == "Uber"
    assert [r[3] for r in rows] == ["Groceries", "Income", "Transportation"]
    assert "OPENAI_API_KEY is not set" in err
    assert "3 transactions imported" in err


def test_import_text_missing_file(capsys: pytest.CaptureFixture[str], tmp_path: Path) -> None:
    rc = cmd_import_text(str(tmp_path / "nope.txt"))

    assert rc == 1
    assert "Error: File not found" in capsys.readouterr().err


def test_import_text_without_transactions(
    capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    path = tmp_path / "blank.txt"
    path.write_text("Kontoauszug\nkeine Umsätze im Zeitraum\n", encoding="utf-8")

    rc = cmd_import_text(str(path), use_fallback=False)

    out, err = capsys.readouterr()
    assert rc == 0
    assert out == ""
    assert "no transactions found" in err
    assert "OPENAI_API_KEY" not in err


def test_learn_and_model_stats(capsys: pytest.CaptureFixture[str], tmp_path: Path) -> None:
    model_path = tmp_path / "model.json"
    corrections = tmp_path / "corrections.json"
    corrections.write_text(
        json.dumps(
            [
                {
                    "transaction": {
                        "date": "2024-08-01",
                        "description": "Lastschrift REWE Markt GmbH",
                        "recipient": "REWE Markt GmbH",
                        "amount": "-45.67",
                        "source_account": "ING",
                    },
                    "category": "Food & Drink",
                }
            ]
        ),
        encoding="utf-8",
    )

    assert cmd_learn(str(corrections), model_path=str(model_path)) == 0
    assert capsys.readouterr().out.strip() == "applied 1 corrections"
    assert model_path.exists()

    assert cmd_model_stats(model_path=str(model_path)) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["learned_events"] == 1
    assert stats["corrections"] == 1
    assert stats["top_categories"] == [["Food & Drink", 1]]


def test_learn_rejects_non_array(capsys: pytest.CaptureFixture[str], tmp_path: Path) -> None:
    path = tmp_path / "corrections.json"
    path.write_text('{"category": "Groceries"}', encoding="utf-8")

    assert cmd_learn(str(path)) == 1
    assert "must contain a JSON array" in capsys.readouterr().err


@pytest.mark.parametrize("category", [None, "", "   ", 7])
def test_learn_rejects_entry_without_category(
    category: object, capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    model_path = tmp_path / "model.json"
    path = tmp_path / "corrections.json"
    entry = {
        "transaction": {
            "date": "2024-08-01",
            "description": "Lastschrift REWE Markt GmbH",
            "recipient": "REWE Markt GmbH",
            "amount": "-45.67",
            "source_account": "ING",
        },
        "category": category,
    }
    path.write_text(json.dumps([entry]), encoding="utf-8")

    assert cmd_learn(str(path), model_path=str(model_path)) == 1
    assert "invalid correction entry" in capsys.readouterr().err
    assert not model_path.exists()


def test_typer_app_import_text_exit_codes(tmp_path: Path) -> None:
    runner = CliRunner()

    ok = runner.invoke(app, ["import-text", str(_STATEMENT), "--no-fallback"])
    missing = runner.invoke(app, ["import-text", str(tmp_path / "nope.txt")])

    assert ok.exit_code == 0
    assert "2024-08-04\t-12.40\tUber" in ok.output
    assert missing.exit_code == 1
