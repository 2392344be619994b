"""Drop repeated bookings from an extraction result."""

from __future__ import annotations

from collections.abc import Iterable

from .models import Transaction


def dedupe_key(tx: Transaction) -> str:
    """Identity key: date, amount (2dp), recipient and the description head."""

    return f"{tx.date.isoformat()}|{tx.amount:.2f}|{tx.recipient}|{tx.description[:10]}"


def dedupe(transactions: Iterable[Transaction]) -> list[Transaction]:
    """Keep the first occurrence of each key, preserving order."""

    seen: set[str] = set()
    out: list[Transaction] = []
    for tx in transactions:
        key = dedupe_key(tx)
        if key in seen:
            continue
        seen.add(key)
        out.append(tx)
    return out


__all__ = ["dedupe", "dedupe_key"]
