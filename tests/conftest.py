"""Pytest configuration for test isolation.

The model store and any other local state default to a project-relative
cache directory (``./.cache``). Tests sharing a working tree would otherwise
read each other's persisted classifier models, so every test gets its own
cache root via an autouse fixture.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_cache_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Force a per-test cache root so tests don't share on-disk state.

    The package reads ``STATEMENT_IMPORT_CACHE_DIR`` (when set) to override the
    default ``./.cache`` location. We point it at the test's own temporary
    directory and drop any ambient API key so no test reaches the network.
    """

    cache_root = tmp_path / "cache"
    cache_root.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("STATEMENT_IMPORT_CACHE_DIR", os.fspath(cache_root))
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
