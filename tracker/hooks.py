"""
Hooks system — decouple side effects from the repository.

The repository fires events after a write has landed; listeners (event
publishers, an unbounded audit sink, notifications) react. Nothing inside
tasks.py knows or cares what happens downstream, and a failing listener
never undoes or fails the write that triggered it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from .domain import HistoryEntry, Task

EVENTS = (
    "on_created",
    "on_updated",
    "on_done",
    "on_reordered",
    "on_deleted",
    "on_restored",
    "on_history",
)


@dataclass(frozen=True)
class TaskEvent:
    name: str
    task: Task
    entry: HistoryEntry | None = None  # the history entry the write appended, if any


AsyncHookFn = Callable[[TaskEvent], Awaitable[None]]


class HookRegistry:
    """Maps event names to lists of async callables."""

    def __init__(self) -> None:
        self._hooks: dict[str, list[AsyncHookFn]] = {event: [] for event in EVENTS}

    def register(self, event: str, hook: AsyncHookFn) -> None:
        if event not in self._hooks:
            raise ValueError(f"Unknown hook event: {event}")
        self._hooks[event].append(hook)

    async def fire(self, event: str, task: Task, entry: HistoryEntry | None = None) -> None:
        payload = TaskEvent(name=event, task=task, entry=entry)
        for hook in self._hooks.get(event, []):
            try:
                await hook(payload)
            except Exception as e:
                logger.error(f"Hook {event} failed for task {task.id}: {e}")


async def log_event(event: TaskEvent) -> None:
    """Built-in hook: logs every event it is registered for."""
    logger.info(f"Task {event.task.id} {event.name} → {event.task.status.value}")
