"""
Ordering engine: position keys for Kanban columns.

Positions are opaque floats compared within one (team_id, status) column.
New tasks are seeded with the wall clock in milliseconds so they land at
the end of their column without reading siblings. Reordering stores the
caller's value as-is: siblings are never renumbered, and equal positions
are legal, so every listing breaks ties on (created_at, id).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from .domain import PositionExhaustedError, TaskValidationError, clean_task_field, utcnow

# Store sort spec for a board column: position, then the stable tie-breakers.
BOARD_SORT: list[tuple[str, int]] = [("position", 1), ("created_at", 1), ("id", 1)]
LIST_SORT: list[tuple[str, int]] = [("status", 1)] + BOARD_SORT


def initial_position(clock: Callable[[], datetime] = utcnow) -> float:
    return float(int(clock().timestamp() * 1000))


def validate_position(value: Any) -> float:
    return clean_task_field("position", value)


def midpoint(before: float | None, after: float | None) -> float:
    """
    A position strictly between two neighbours.

    The server stores whatever position a client sends; this is the helper a
    client (see ``main.py``) uses to compute one when dropping a card between
    two others.

    ``before=None`` means "top of the column", ``after=None`` means "bottom".
    Raises PositionExhaustedError once repeated halving has used up the
    float precision between the two keys.
    """
    if before is None and after is None:
        raise TaskValidationError("position", "need at least one neighbour")
    if before is None:
        return validate_position(after) - 1.0
    if after is None:
        return validate_position(before) + 1.0

    low, high = validate_position(before), validate_position(after)
    if low > high:
        low, high = high, low
    mid = low + (high - low) / 2
    if not low < mid < high:
        raise PositionExhaustedError(low, high)
    return mid
