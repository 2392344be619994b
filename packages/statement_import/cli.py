# ruff: noqa: I001
"""CLI for the ``statement_import`` package.

This module exposes callable command handlers (``cmd_import_text``,
``cmd_learn``, ``cmd_model_stats``) and a Typer-based console interface.
Environment variables (notably ``OPENAI_API_KEY``) are loaded from a local
``.env`` using ``python-dotenv`` before delegating to command logic. Business
logic lives in ``statement_import.api`` and related modules.
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from pydantic import ValidationError
from typer.models import ArgumentInfo

from .logging_setup import configure_logging


def _model_store(model_path: str | None):
    from .persistence import JsonFileModelStore

    return JsonFileModelStore(model_path)


def cmd_import_text(
    path: str,
    *,
    bank_id: str | None = None,
    use_fallback: bool = True,
    model_path: str | None = None,
    source_account: str | None = None,
    persist: bool = False,
    database_url: str | None = None,
) -> int:
    """Import one statement text file and print transactions as TSV to stdout.

    Columns: date, amount, recipient, category, description. The session
    message ("N transactions imported" / "no transactions found") goes to
    stderr. With ``persist`` the transactions are written to the database.
    """

    from .api import import_statement, load_categorizer
    from .generative import OpenAITextGenerator
    from .orchestrator import StatementReadError

    try:
        raw = Path(path).read_bytes()
    except FileNotFoundError:
        print(f"Error: File not found: {path}", file=sys.stderr)
        return 1
    except PermissionError:
        print(f"Error: Permission denied: {path}", file=sys.stderr)
        return 1

    generator = None
    if use_fallback:
        if os.getenv("OPENAI_API_KEY"):
            generator = OpenAITextGenerator()
        else:
            print("Note: OPENAI_API_KEY is not set; generative fallback disabled.", file=sys.stderr)

    categorizer = load_categorizer(_model_store(model_path))
    try:
        result = import_statement(
            raw,
            categorizer=categorizer,
            generator=generator,
            name=Path(path).name,
            bank_id=bank_id,
            source_account=source_account,
        )
    except StatementReadError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if persist and result.transactions:
        try:
            from db.client import session_scope
            from .persistence import save_transactions

            with session_scope(database_url=database_url) as session:
                inserted = save_transactions(session, result.transactions)
        except Exception as e:  # noqa: BLE001 - reported, exit code 1
            print(f"Error: persistence failed: {e}", file=sys.stderr)
            return 1
        print(f"persisted {inserted} new transactions", file=sys.stderr)

    for tx in result.transactions:
        cols = [
            tx.date.isoformat(),
            str(tx.amount),
            tx.recipient,
            tx.category or "",
            tx.description,
        ]
        print("\t".join(cols))
    print(result.message, file=sys.stderr)
    return 0


def cmd_learn(corrections_path: str, *, model_path: str | None = None) -> int:
    """Apply corrections from a JSON file and save the model.

    The file holds a JSON array of ``{"transaction": {...}, "category": "..."}``
    objects; ``transaction`` uses the ``Transaction`` field names.
    """

    from .api import load_categorizer, record_corrections
    from .models import Transaction

    try:
        data = json.loads(Path(corrections_path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        print(f"Error: File not found: {corrections_path}", file=sys.stderr)
        return 1
    except json.JSONDecodeError as e:
        print(f"Error: Failed to parse JSON: {e}", file=sys.stderr)
        return 1
    if not isinstance(data, list):
        print("Error: corrections file must contain a JSON array", file=sys.stderr)
        return 1

    pairs = []
    for idx, item in enumerate(data):
        try:
            tx = Transaction.model_validate(item["transaction"])
            category = item["category"]
        except (KeyError, TypeError, ValidationError) as e:
            print(f"Error: invalid correction entry {idx}: {e}", file=sys.stderr)
            return 1
        if not isinstance(category, str) or not category.strip():
            print(f"Error: invalid correction entry {idx}: missing category", file=sys.stderr)
            return 1
        pairs.append((tx, category.strip()))

    store = _model_store(model_path)
    categorizer = load_categorizer(store)
    applied = record_corrections(pairs, categorizer=categorizer, store=store)
    print(f"applied {applied} corrections")
    return 0


def cmd_model_stats(*, model_path: str | None = None) -> int:
    """Print classifier statistics as JSON."""

    from .api import load_categorizer

    categorizer = load_categorizer(_model_store(model_path))
    print(json.dumps(categorizer.stats(), indent=2, ensure_ascii=False))
    return 0


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Extract and categorize transactions from German bank statement text. "
        "Loads OPENAI_API_KEY from a local .env before running."
    ),
)

# Module-level argument object to satisfy ruff B008 (no calls in parameter
# defaults).
PATH_ARGUMENT: ArgumentInfo = typer.Argument(
    ...,
    help="Path to a statement text file (UTF-8 or cp1252).",
    dir_okay=False,
    file_okay=True,
    exists=False,  # the handler reports missing files
)


@app.command("import-text")
def import_text_cmd(
    path: Annotated[Path, PATH_ARGUMENT],
    *,
    bank: str | None = typer.Option(None, help="Bank id (ing, vivid, ...); detected when omitted."),
    fallback: bool = typer.Option(True, help="Use the generative fallback when heuristics fail."),
    model_path: str | None = typer.Option(None, help="Classifier model file."),
    source_account: str | None = typer.Option(None, help="Account label for the transactions."),
    persist: bool = typer.Option(False, help="Persist transactions to the database."),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Import a statement text file."""

    raise typer.Exit(
        cmd_import_text(
            str(path),
            bank_id=bank,
            use_fallback=fallback,
            model_path=model_path,
            source_account=source_account,
            persist=persist,
            database_url=database_url,
        )
    )


@app.command("learn")
def learn_cmd(
    corrections: Annotated[Path, typer.Argument(help="JSON file of corrections.")],
    *,
    model_path: str | None = typer.Option(None, help="Classifier model file."),
) -> None:
    """Teach the classifier confirmed categories."""

    raise typer.Exit(cmd_learn(str(corrections), model_path=model_path))


@app.command("model-stats")
def model_stats_cmd(
    *,
    model_path: str | None = typer.Option(None, help="Classifier model file."),
) -> None:
    """Show classifier statistics."""

    raise typer.Exit(cmd_model_stats(model_path=model_path))


@app.callback()
def _root() -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()


if __name__ == "__main__":  # pragma: no cover
    app()
