"""Bounded, order-preserving concurrent map over a thread pool.

``p_map`` runs ``mapper`` over an iterable with at most ``concurrency`` calls
in flight and returns results in input order. Mappers may return
``p_map_skip`` to drop an element. An optional ``cancel`` event stops the
submission of further work; calls already running finish normally and their
results are kept.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TypeVar

InT = TypeVar("InT")
OutT = TypeVar("OutT")


class _Skip:
    __slots__ = ()

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return "p_map_skip"


p_map_skip: object = _Skip()


def p_map(
    iterable: Iterable[InT],
    mapper: Callable[[InT], OutT | object],
    *,
    concurrency: int,
    stop_on_error: bool = True,
    cancel: threading.Event | None = None,
) -> list[OutT]:
    """Map ``iterable`` through ``mapper`` with bounded concurrency.

    With ``stop_on_error`` the first mapper exception propagates and queued
    work is cancelled. Otherwise every call runs and failures are raised
    together as an ``ExceptionGroup``. Items never submitted because
    ``cancel`` was set are absent from the result.
    """

    if not isinstance(concurrency, int) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")

    source = enumerate(iterable)
    results: dict[int, object] = {}
    errors: list[Exception] = []
    index_of: dict[Future, int] = {}

    def _submit(pool: ThreadPoolExecutor) -> Future | None:
        if cancel is not None and cancel.is_set():
            return None
        try:
            idx, item = next(source)
        except StopIteration:
            return None
        fut = pool.submit(mapper, item)
        index_of[fut] = idx
        return fut

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        active: set[Future] = set()
        for _ in range(concurrency):
            fut = _submit(pool)
            if fut is None:
                break
            active.add(fut)

        while active:
            done, active = wait(active, return_when=FIRST_COMPLETED)
            for fut in done:
                idx = index_of.pop(fut)
                try:
                    results[idx] = fut.result()
                except Exception as e:  # noqa: BLE001
                    if stop_on_error:
                        pool.shutdown(wait=False, cancel_futures=True)
                        raise
                    errors.append(e)
            for _ in range(len(done)):
                fut = _submit(pool)
                if fut is None:
                    break
                active.add(fut)

    if errors:
        raise ExceptionGroup("p_map: one or more mapper calls failed", errors)

    out: list[OutT] = []
    for idx in sorted(results):
        val = results[idx]
        if val is not p_map_skip:
            out.append(val)  # type: ignore[arg-type]
    return out


__all__ = ["p_map", "p_map_skip"]
