# ruff: noqa: I001
"""Persistence integration for statement_import.

Two concerns live here:

- Classifier model storage behind the :class:`ModelStore` protocol. The
  pipeline only ever sees an opaque JSON blob; :class:`JsonFileModelStore`
  keeps it in the local cache directory and :class:`SqlModelStore` in the
  shared database (``si_classifier_models``).
- Writing extracted transactions to ``si_transactions`` keyed by a stable
  fingerprint, so re-importing the same statement inserts nothing new.

Atomicity: file writes target ``.tmp`` first and then ``os.replace`` into place.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import os
from collections.abc import Iterable
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from db.client import session_scope
from db.models.statements import SiClassifierModel, SiTransaction
from .logging_setup import get_logger
from .models import Transaction

_logger = get_logger("statement_import.persistence")

_MODEL_FILENAME = "classifier_model.json"
_LOOKUP_CHUNK = 500


def _cache_root() -> Path:
    """Return the root directory for local state.

    Default: ``Path.cwd() / ".cache"``.
    Override: ``STATEMENT_IMPORT_CACHE_DIR`` environment variable.
    """

    root = os.getenv("STATEMENT_IMPORT_CACHE_DIR")
    if root and root.strip():
        return Path(root).expanduser().resolve()
    return (Path.cwd() / ".cache").resolve()


class ModelStore(Protocol):
    def load_model(self) -> str | None: ...

    def save_model(self, blob: str) -> None: ...


class JsonFileModelStore:
    """Model blob kept as a single JSON file."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path is not None else None

    @property
    def path(self) -> Path:
        # Resolved lazily so the cache env var is read at call time.
        return self._path if self._path is not None else _cache_root() / _MODEL_FILENAME

    def load_model(self) -> str | None:
        path = self.path
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def save_model(self, blob: str) -> None:
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            tmp.write_text(blob, encoding="utf-8")
            os.replace(tmp, path)
        except Exception:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()
            raise
        _logger.debug("persistence:model_saved path=%s bytes=%d", path, len(blob))


class SqlModelStore:
    """Model blob kept in ``si_classifier_models`` under ``name``."""

    def __init__(self, name: str = "default", *, database_url: str | None = None) -> None:
        self._name = name
        self._database_url = database_url

    def load_model(self) -> str | None:
        with session_scope(database_url=self._database_url) as session:
            row = session.get(SiClassifierModel, self._name)
            return row.state if row is not None else None

    def save_model(self, blob: str) -> None:
        with session_scope(database_url=self._database_url) as session:
            row = session.get(SiClassifierModel, self._name)
            now = datetime.now(UTC)
            if row is None:
                session.add(SiClassifierModel(name=self._name, state=blob, updated_at=now))
            else:
                row.state = blob
                row.updated_at = now
        _logger.debug("persistence:model_saved name=%s bytes=%d", self._name, len(blob))


def compute_fingerprint(tx: Transaction, *, source_account: str | None = None) -> str:
    """Compute a stable SHA-256 fingerprint over canonical fields.

    Fields used: account (lowercased), date (YYYY-MM-DD), amount (2dp string),
    recipient (trimmed), description (trimmed).
    """

    account = source_account if source_account is not None else tx.source_account
    payload = {
        "account": (account or "").strip().lower(),
        "date": tx.date.isoformat(),
        "amount": f"{tx.amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP):.2f}",
        "recipient": tx.recipient.strip(),
        "description": tx.description.strip(),
    }
    # Ensure deterministic JSON serialization
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _existing_fingerprints(session: Session, fingerprints: list[str]) -> set[str]:
    found: set[str] = set()
    for i in range(0, len(fingerprints), _LOOKUP_CHUNK):
        chunk = fingerprints[i : i + _LOOKUP_CHUNK]
        rows = session.execute(
            select(SiTransaction.fingerprint_sha256).where(
                SiTransaction.fingerprint_sha256.in_(chunk)
            )
        )
        found.update(rows.scalars())
    return found


def _confidence(value: float) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def save_transactions(session: Session, transactions: Iterable[Transaction]) -> int:
    """Insert transactions into ``si_transactions``; return the number inserted.

    Rows whose fingerprint is already stored (or repeated within the input)
    are skipped. The caller owns the transaction boundary.
    """

    pending: dict[str, Transaction] = {}
    for tx in transactions:
        pending.setdefault(compute_fingerprint(tx), tx)
    if not pending:
        return 0

    existing = _existing_fingerprints(session, list(pending))
    inserted = 0
    for fingerprint, tx in pending.items():
        if fingerprint in existing:
            continue
        session.add(
            SiTransaction(
                fingerprint_sha256=fingerprint,
                source_account=tx.source_account,
                date=tx.date,
                date_is_fallback=tx.date_is_fallback,
                description=tx.description,
                recipient=tx.recipient,
                payment_processor=tx.payment_processor,
                amount=tx.amount,
                confidence=_confidence(tx.confidence),
                category=tx.category,
                category_confidence=_confidence(tx.category_confidence) if tx.category else None,
                origin=tx.origin,
                created_at=datetime.now(UTC),
            )
        )
        inserted += 1
    session.flush()
    _logger.info(
        "persistence:transactions_saved inserted=%d skipped=%d", inserted, len(pending) - inserted
    )
    return inserted


__all__ = [
    "JsonFileModelStore",
    "ModelStore",
    "SqlModelStore",
    "compute_fingerprint",
    "save_transactions",
]
