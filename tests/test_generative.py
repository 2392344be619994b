from __future__ import annotations

import threading
import time
from typing import Any

import pytest

import statement_import.generative as generative_mod
from statement_import.generative import (
    GenerationCancelled,
    GenerationError,
    GenerationRequest,
    GenerationTimeout,
    OpenAITextGenerator,
)

from tests.helpers.generator_stub import OpenAIStub


def _install(monkeypatch: pytest.MonkeyPatch, respond) -> OpenAIStub:
    stub = OpenAIStub(respond)
    monkeypatch.setattr(generative_mod, "OpenAI", stub)
    return stub


def test_generate_calls_responses_api_once_without_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    stub = _install(monkeypatch, lambda kwargs: "[]")
    monkeypatch.setenv("STATEMENT_IMPORT_OPENAI_MODEL", "test-model")

    out = OpenAITextGenerator(timeout=5).generate(
        GenerationRequest(prompt="hello", temperature=0.2, max_tokens=128)
    )

    assert out.text == "[]"
    assert len(stub.calls) == 1
    call = stub.calls[0]
    assert call["model"] == "test-model"
    assert call["input"] == "hello"
    assert call["temperature"] == 0.2
    assert call["max_output_tokens"] == 128
    (client,) = stub.instances
    assert client.kwargs == {"timeout": 5, "max_retries": 0}
    assert client.closed is True


def test_generate_wraps_sdk_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(kwargs: dict[str, Any]) -> str:
        raise ConnectionError("network down")

    _install(monkeypatch, _boom)

    with pytest.raises(GenerationError, match="network down"):
        OpenAITextGenerator(timeout=5).generate(GenerationRequest(prompt="x"))


def test_generate_rejects_empty_output(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, lambda kwargs: "")

    with pytest.raises(GenerationError):
        OpenAITextGenerator(timeout=5).generate(GenerationRequest(prompt="x"))


def test_generate_times_out_and_closes_client(monkeypatch: pytest.MonkeyPatch) -> None:
    release = threading.Event()

    def _slow(kwargs: dict[str, Any]) -> str:
        release.wait(5)
        return "[]"

    stub = _install(monkeypatch, _slow)
    try:
        t0 = time.monotonic()
        with pytest.raises(GenerationTimeout):
            OpenAITextGenerator(timeout=0.3).generate(GenerationRequest(prompt="x"))
        assert time.monotonic() - t0 < 3
        assert stub.instances[0].closed is True
    finally:
        release.set()


def test_generate_honours_cancel_event(monkeypatch: pytest.MonkeyPatch) -> None:
    release = threading.Event()
    cancel = threading.Event()

    def _slow(kwargs: dict[str, Any]) -> str:
        cancel.set()
        release.wait(5)
        return "[]"

    stub = _install(monkeypatch, _slow)
    try:
        with pytest.raises(GenerationCancelled):
            OpenAITextGenerator(timeout=10).generate(GenerationRequest(prompt="x"), cancel=cancel)
        assert stub.instances[0].closed is True
    finally:
        release.set()


def test_generate_cancelled_before_start_makes_no_call(monkeypatch: pytest.MonkeyPatch) -> None:
    stub = _install(monkeypatch, lambda kwargs: "[]")
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(GenerationCancelled):
        OpenAITextGenerator().generate(GenerationRequest(prompt="x"), cancel=cancel)
    assert stub.calls == []


def test_timeout_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    stub = _install(monkeypatch, lambda kwargs: "[]")
    monkeypatch.setenv("STATEMENT_IMPORT_LLM_TIMEOUT_SEC", "12.5")

    OpenAITextGenerator().generate(GenerationRequest(prompt="x"))

    assert stub.instances[0].kwargs["timeout"] == 12.5


def test_timeout_env_invalid_falls_back_to_default(monkeypatch: pytest.MonkeyPatch) -> None:
    stub = _install(monkeypatch, lambda kwargs: "[]")
    monkeypatch.setenv("STATEMENT_IMPORT_LLM_TIMEOUT_SEC", "soon")

    OpenAITextGenerator().generate(GenerationRequest(prompt="x"))

    assert stub.instances[0].kwargs["timeout"] == generative_mod._TIMEOUT_SEC
