"""Test helpers standing in for the text-generation collaborator.

``ScriptedGenerator`` satisfies the ``TextGenerator`` protocol and replays
canned outputs (or raises canned errors) so orchestrator tests never touch the
network. ``OpenAIStub`` mimics the slice of ``openai.OpenAI`` that
``statement_import.generative`` uses and is monkeypatched over it.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Sequence
from typing import Any

from statement_import.generative import GenerationRequest, GenerationResponse
from statement_import.prompting import BEGIN, END


def extract_statement_text(prompt: str) -> str:
    b = prompt.find(BEGIN)
    e = prompt.rfind(END)
    if b == -1 or e == -1 or e <= b:
        raise AssertionError("prompt is missing the embedded statement text block")
    return prompt[b + len(BEGIN) : e]


class ScriptedGenerator:
    """Replay ``outputs`` in order; an ``Exception`` entry is raised instead.

    The last entry repeats once the script is exhausted. Every request is
    recorded in ``requests``.
    """

    def __init__(self, outputs: Sequence[str | Exception]) -> None:
        if not outputs:
            raise ValueError("outputs must not be empty")
        self._outputs = list(outputs)
        self._lock = threading.Lock()
        self.requests: list[GenerationRequest] = []

    def generate(
        self, request: GenerationRequest, *, cancel: threading.Event | None = None
    ) -> GenerationResponse:
        with self._lock:
            self.requests.append(request)
            idx = min(len(self.requests) - 1, len(self._outputs) - 1)
            out = self._outputs[idx]
        if isinstance(out, Exception):
            raise out
        return GenerationResponse(text=out)

    @property
    def calls(self) -> int:
        return len(self.requests)


def json_transactions(items: Sequence[dict[str, Any]], *, prose: bool = True) -> str:
    """Render items as model output, optionally wrapped in chatter and a code fence."""

    body = json.dumps(list(items), ensure_ascii=False)
    if not prose:
        return body
    return f"Here are the transactions I found:\n```json\n{body}\n```\nAnything else?"


class OpenAIStub:
    """Minimal stub matching ``openai.OpenAI`` shape for ``generative.py``.

    Parameters
    ----------
    respond:
        Callable receiving the ``responses.create`` kwargs and returning the
        response text (or raising).
    calls_out:
        Appended with each call's kwargs.
    instances_out:
        Appended with each constructed client so tests can check ``closed`` and
        the constructor kwargs.
    """

    def __init__(
        self,
        respond: Callable[[dict[str, Any]], str],
        calls_out: list[dict[str, Any]] | None = None,
        instances_out: list[Any] | None = None,
    ) -> None:
        self._respond = respond
        self._calls = calls_out if calls_out is not None else []
        self._instances = instances_out if instances_out is not None else []

    def __call__(self, **client_kwargs: Any) -> Any:
        outer = self

        class _Responses:
            def create(self, **kwargs: Any) -> Any:
                outer._calls.append(kwargs)
                text = outer._respond(kwargs)

                class _Resp:
                    output_text: str

                resp = _Resp()
                resp.output_text = text
                return resp

        class _Client:
            def __init__(self) -> None:
                self.kwargs = client_kwargs
                self.responses = _Responses()
                self.closed = False

            def close(self) -> None:
                self.closed = True

        client = _Client()
        self._instances.append(client)
        return client

    @property
    def calls(self) -> list[dict[str, Any]]:
        return self._calls

    @property
    def instances(self) -> list[Any]:
        return self._instances
