"""
History recorder — the one place audit entries are created and bounded.

A task embeds at most ``HISTORY_LIMIT`` entries, oldest first. Appending
past the cap silently evicts from the front; anything that needs the full
trail must mirror entries to an external sink (see ``hooks.on_history``).
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from datetime import datetime
from typing import Callable, overload

from loguru import logger

from .domain import FieldChange, HistoryAction, HistoryEntry, utcnow
from .store import PushSpec

HISTORY_LIMIT = 100

Clock = Callable[[], datetime]


class History(Sequence[HistoryEntry]):
    """Bounded, append-only sequence of history entries."""

    def __init__(self, entries: Iterable[HistoryEntry] = (), limit: int = HISTORY_LIMIT) -> None:
        self._limit = limit
        self._entries: list[HistoryEntry] = []
        for entry in entries:
            self.append(entry)

    def append(self, entry: HistoryEntry) -> None:
        self._entries.append(entry)
        overflow = len(self._entries) - self._limit
        if overflow > 0:
            del self._entries[:overflow]

    @overload
    def __getitem__(self, index: int) -> HistoryEntry: ...

    @overload
    def __getitem__(self, index: slice) -> list[HistoryEntry]: ...

    def __getitem__(self, index):
        return self._entries[index]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(self._entries)

    def __repr__(self) -> str:
        return f"History({len(self)}/{self._limit})"


class HistoryRecorder:
    """
    Builds timestamped entries and the matching bounded push for the store.

    Timestamps come from the recorder's clock, never from the caller.
    """

    def __init__(self, clock: Clock = utcnow, limit: int = HISTORY_LIMIT) -> None:
        self._clock = clock
        self._limit = limit

    def record(
        self,
        action: HistoryAction,
        user_id: str,
        changes: Iterable[FieldChange] = (),
    ) -> HistoryEntry:
        entry = HistoryEntry(
            action=action,
            user_id=user_id,
            timestamp=self._clock(),
            changes=tuple(changes),
        )
        logger.debug("Audit {} by {} ({} changes)", action.value, user_id, len(entry.changes))
        return entry

    def append(self, history: Iterable[HistoryEntry], entry: HistoryEntry) -> History:
        """Return ``history`` with ``entry`` appended and the cap enforced."""
        bounded = History(history, limit=self._limit)
        bounded.append(entry)
        return bounded

    def push(self, entry: HistoryEntry) -> dict[str, PushSpec]:
        """Store push operation appending ``entry`` under the same cap."""
        return {"history": PushSpec(items=(entry.to_document(),), keep_last=self._limit)}
