"""Priority-order helpers for sessions.

A session's priority order is an ordered subset of PRIORITY_KEYS. Unknown
keys are dropped silently rather than rejected, and repeats keep their
first position.
"""

from __future__ import annotations

from collections.abc import Iterable

PRIORITY_KEYS: tuple[str, ...] = ("price", "quality", "location")


def normalize_priority_order(priorities: Iterable[object] | None) -> list[str] | None:
    """
    Keep valid keys in submitted order, once each.

    Returns None when nothing valid remains, which callers treat as
    "no update".

        >>> normalize_priority_order(["location", "bogus", "price", "location"])
        ['location', 'price']
    """
    if not priorities:
        return None
    seen: list[str] = []
    for key in priorities:
        if isinstance(key, str) and key in PRIORITY_KEYS and key not in seen:
            seen.append(key)
    return seen or None


def effective_priority_order(
    requested: Iterable[object] | None,
    stored: object,
) -> tuple[list[str] | None, bool]:
    """
    Resolve the priority order to use for a request.

    Returns (effective_order, needs_write). A valid requested order wins
    over the stored one; it only needs writing when it differs.
    """
    normalized = normalize_priority_order(requested)
    current = list(stored) if isinstance(stored, list) else None
    if normalized is None:
        return current, False
    return normalized, normalized != current
