"""Text-generation collaborator used by the extraction fallback.

Public API:
    - :class:`GenerationRequest` / :class:`GenerationResponse`
    - :class:`TextGenerator` (protocol)
    - :class:`OpenAITextGenerator` (OpenAI Responses API adapter)
    - :class:`GenerationError` and its ``GenerationTimeout`` /
      ``GenerationCancelled`` subclasses

A generator turns a prompt into text. The orchestrator never assumes the text
is clean JSON; see ``statement_import.prompting`` for parsing.

Each call is a single attempt: the OpenAI client is built with
``max_retries=0`` and the call is bounded by a wall-clock ceiling. The request
runs on a helper thread so a cancel event can abort it by closing the client.
"""

from __future__ import annotations

import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Protocol

from openai import OpenAI
from pydantic import BaseModel, ConfigDict, Field

from .logging_setup import get_logger

# ---- Tunables (private) ------------------------------------------------------

_TIMEOUT_SEC: float = 30.0
_POLL_SEC: float = 0.1
_MODEL: str = "gpt-4.1-mini"

_logger = get_logger("statement_import.generative")


class GenerationError(RuntimeError):
    """The collaborator failed to produce text."""


class GenerationTimeout(GenerationError):
    pass


class GenerationCancelled(GenerationError):
    pass


class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: str
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, gt=0)


class GenerationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str


class TextGenerator(Protocol):
    def generate(
        self, request: GenerationRequest, *, cancel: threading.Event | None = None
    ) -> GenerationResponse: ...


def _resolve_timeout(explicit: float | None) -> float:
    if explicit is not None:
        return explicit
    env_val = os.getenv("STATEMENT_IMPORT_LLM_TIMEOUT_SEC")
    try:
        value = float(env_val) if env_val else None
    except ValueError:
        value = None
    return value if value is not None and value > 0 else _TIMEOUT_SEC


def _extract_response_text(resp: Any) -> str:
    """Locate the text output of a Responses API result.

    Prefers ``resp.output_text`` and falls back to
    ``resp.output[0].content[0].text``.
    """

    text: str | None = getattr(resp, "output_text", None)
    if not text:
        try:
            first = resp.output[0] if getattr(resp, "output", None) else None
            content = getattr(first, "content", None)
            if content:
                txt_obj = getattr(content[0], "text", None)
                text = txt_obj if isinstance(txt_obj, str) else getattr(txt_obj, "value", None)
        except (AttributeError, IndexError, TypeError):
            text = None
    if not text or not isinstance(text, str):
        raise GenerationError("Unexpected Responses API shape; unable to locate text output")
    return text


class OpenAITextGenerator:
    """``TextGenerator`` backed by the OpenAI Responses API.

    ``OPENAI_API_KEY`` is read by the SDK. The model defaults to
    ``STATEMENT_IMPORT_OPENAI_MODEL`` when set.
    """

    def __init__(self, *, model: str | None = None, timeout: float | None = None) -> None:
        self._model = model or os.getenv("STATEMENT_IMPORT_OPENAI_MODEL") or _MODEL
        self._timeout = _resolve_timeout(timeout)

    def _create_client(self) -> OpenAI:
        return OpenAI(timeout=self._timeout, max_retries=0)

    def _call(self, client: OpenAI, request: GenerationRequest) -> Any:
        return client.responses.create(
            model=self._model,
            input=request.prompt,
            temperature=request.temperature,
            max_output_tokens=request.max_tokens,
        )

    def generate(
        self, request: GenerationRequest, *, cancel: threading.Event | None = None
    ) -> GenerationResponse:
        if cancel is not None and cancel.is_set():
            raise GenerationCancelled("generation cancelled before start")

        client = self._create_client()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="statement-import-llm")
        t0 = time.perf_counter()
        fut = pool.submit(self._call, client, request)
        deadline = time.monotonic() + self._timeout
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    raise GenerationCancelled("generation cancelled by caller")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise GenerationTimeout(f"generation exceeded {self._timeout:.1f}s")
                try:
                    resp = fut.result(timeout=min(_POLL_SEC, remaining))
                except TimeoutError:
                    continue
                except Exception as e:  # noqa: BLE001 - SDK/network errors
                    raise GenerationError(f"generation request failed: {e}") from e
                text = _extract_response_text(resp)
                _logger.info(
                    "generative:done model=%s latency_ms=%.2f chars=%d",
                    self._model,
                    (time.perf_counter() - t0) * 1000.0,
                    len(text),
                )
                return GenerationResponse(text=text)
        finally:
            # Closing the client aborts a request still in flight.
            client.close()
            pool.shutdown(wait=False, cancel_futures=True)


__all__ = [
    "GenerationCancelled",
    "GenerationError",
    "GenerationRequest",
    "GenerationResponse",
    "GenerationTimeout",
    "OpenAITextGenerator",
    "TextGenerator",
]
