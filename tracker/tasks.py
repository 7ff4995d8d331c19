"""
TaskRepository — the single entry point for task reads and writes.

Responsibilities:
  - Tenant isolation: every store call carries the caller's team_id
  - Create / update through the lifecycle state machine
  - Reorder (position only, no audit entry)
  - Soft delete and restore
  - Board, filtered listing and stats reads

Every mutation loads the current snapshot, validates, and then issues
exactly one atomic store update combining the field writes with the
history push. Rejected operations perform zero writes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from loguru import logger

from .domain import (
    Identity,
    StaleVersionError,
    Task,
    TaskNotFoundError,
    TaskPriority,
    TaskStatus,
    clean_task_field,
    utcnow,
)
from .history import HistoryRecorder
from .hooks import HookRegistry
from .lifecycle import apply_update, create_task
from .ordering import BOARD_SORT, LIST_SORT, initial_position, validate_position
from .soft_delete import (
    DELETE_ACTION,
    RESTORE_ACTION,
    deleted_filter,
    mark_deleted,
    mark_restored,
    record_filter,
    scope_filter,
)
from .store import TEXT_SCORE, Collection, InMemoryDocumentStore

TEXT_WEIGHTS = {"title": 10, "description": 5}


@dataclass
class TaskQuery:
    """
    Filters for :meth:`TaskRepository.find_many`.

    Attributes:
        labels: Any-of match; a list or a comma-separated string.
        search: Terms matched against the title/description text index.
        include_completed: DONE tasks are hidden unless this is set or a
                           status filter is given.
        include_deleted: Also return soft-deleted tasks.
    """

    project_id: str | None = None
    status: TaskStatus | str | None = None
    assignee_id: str | None = None
    priority: TaskPriority | int | None = None
    labels: list[str] | str | None = None
    search: str | None = None
    include_completed: bool = False
    include_deleted: bool = False


@dataclass
class TaskStats:
    total: int
    by_status: dict[str, int] = field(default_factory=dict)
    by_priority: dict[int, int] = field(default_factory=dict)
    overdue: int = 0
    completed_today: int = 0


class TaskRepository:
    """
    Args:
        store:  The document store holding the ``tasks`` collection.
        hooks:  Registry fired after each successful write.
        clock:  Source of "now"; swap it in tests to control time.
    """

    COLLECTION = "tasks"

    def __init__(
        self,
        store: InMemoryDocumentStore,
        hooks: HookRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._tasks: Collection = store.collection(self.COLLECTION)
        self._hooks = hooks or HookRegistry()
        self._clock = clock
        self._recorder = HistoryRecorder(clock)
        self.ensure_indexes()

    @property
    def hooks(self) -> HookRegistry:
        return self._hooks

    def ensure_indexes(self) -> None:
        self._tasks.create_index(["team_id", "status", "position"])
        self._tasks.create_index(["team_id", "project_id"])
        self._tasks.create_index(["team_id", "assignee_id"])
        self._tasks.create_index(["team_id", "deleted_at"])
        self._tasks.create_index(["due_date"])
        self._tasks.create_index(["team_id", "labels"])
        self._tasks.create_text_index(TEXT_WEIGHTS, name="task_text_search")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, identity: Identity, data: Mapping[str, Any]) -> Task:
        """
        Create a new active task.

        Status defaults to TODO, priority to MEDIUM, and position to the
        current time in milliseconds (end of its column).

        Raises:
            TaskValidationError: A field breaks its rule.
        """
        now = self._clock()
        task = create_task(data, identity, self._recorder, now, initial_position(self._clock))
        doc = await self._tasks.insert_one(task.to_document())
        task = Task.from_document(doc)

        logger.info("Created  {} — {!r} in team {}", task.id, task.title, task.team_id)
        await self._hooks.fire("on_created", task, task.history[-1])
        await self._hooks.fire("on_history", task, task.history[-1])
        if task.completed_at is not None:
            await self._hooks.fire("on_done", task)
        return task

    async def update(
        self,
        identity: Identity,
        task_id: str,
        patch: Mapping[str, Any],
        expected_version: int | None = None,
    ) -> Task:
        """
        Apply a partial patch, appending one history entry for all changed fields.

        Args:
            expected_version: If given, the write only lands while the stored
                              task is still at this version.

        Raises:
            TaskNotFoundError:   Unknown, foreign or deleted task.
            TaskValidationError: Patch names an immutable field or breaks a rule.
            StaleVersionError:   ``expected_version`` no longer matches.
        """
        current = await self.find_one(identity, task_id)
        if expected_version is not None and current.version != expected_version:
            raise StaleVersionError(task_id, expected_version, current.version)

        outcome = apply_update(current, patch, identity.user_id, self._recorder, self._clock())

        query = record_filter(task_id, identity.team_id)
        if expected_version is not None:
            query["version"] = expected_version
        doc = await self._tasks.update_one(
            query,
            set_fields=outcome.set_fields,
            push=self._recorder.push(outcome.entry) if outcome.entry else None,
            inc={"version": 1},
        )
        if doc is None:
            await self._raise_lost_write(identity, task_id, expected_version)

        task = Task.from_document(doc)
        if outcome.entry is None:
            logger.debug("Update of {} changed nothing", task_id)
            return task

        logger.info(
            "Updated  {} — {} [{}]",
            task_id,
            outcome.entry.action.value,
            ", ".join(c.field for c in outcome.changes),
        )
        await self._hooks.fire("on_updated", task, outcome.entry)
        await self._hooks.fire("on_history", task, outcome.entry)
        if "completed_at" in outcome.set_fields:
            logger.success("Task {}  →  done  ✓", task_id)
            await self._hooks.fire("on_done", task)
        return task

    async def reorder(self, identity: Identity, task_id: str, position: float) -> Task:
        """
        Move a task within its column by setting its position verbatim.

        Siblings are not touched and equal positions are allowed. No history
        entry is written; ``updated_at`` and ``version`` still move.

        Raises:
            TaskNotFoundError:   Unknown, foreign or deleted task.
            TaskValidationError: Position is not a finite number.
        """
        position = validate_position(position)
        await self.find_one(identity, task_id)

        doc = await self._tasks.update_one(
            record_filter(task_id, identity.team_id),
            set_fields={"position": position, "updated_at": self._clock()},
            inc={"version": 1},
        )
        if doc is None:
            raise TaskNotFoundError(task_id)

        task = Task.from_document(doc)
        logger.debug("Reordered {} → {}", task_id, position)
        await self._hooks.fire("on_reordered", task)
        return task

    async def remove(self, identity: Identity, task_id: str) -> Task:
        """Soft-delete an active task. Status and position are left as they were."""
        await self.find_one(identity, task_id)

        set_fields, changes = mark_deleted(self._clock())
        entry = self._recorder.record(DELETE_ACTION, identity.user_id, changes)
        doc = await self._tasks.update_one(
            record_filter(task_id, identity.team_id),
            set_fields=set_fields,
            push=self._recorder.push(entry),
            inc={"version": 1},
        )
        if doc is None:
            raise TaskNotFoundError(task_id)

        task = Task.from_document(doc)
        logger.info("Deleted  {}", task_id)
        await self._hooks.fire("on_deleted", task, entry)
        await self._hooks.fire("on_history", task, entry)
        return task

    async def restore(self, identity: Identity, task_id: str) -> Task:
        """
        Bring a soft-deleted task back. Tasks carry no uniqueness rule, so
        restore is unconditional once the deleted task is found.

        Raises:
            TaskNotFoundError: No deleted task with this id in the team.
        """
        doc = await self._tasks.find_one(deleted_filter(task_id, identity.team_id))
        if doc is None:
            logger.warning(
                "Restore of {} refused: no deleted task in team {}", task_id, identity.team_id
            )
            raise TaskNotFoundError(task_id, f"Deleted task '{task_id}' not found.")

        set_fields, unset, changes = mark_restored(doc["deleted_at"], self._clock())
        entry = self._recorder.record(RESTORE_ACTION, identity.user_id, changes)
        doc = await self._tasks.update_one(
            deleted_filter(task_id, identity.team_id),
            set_fields=set_fields,
            unset=unset,
            push=self._recorder.push(entry),
            inc={"version": 1},
        )
        if doc is None:
            raise TaskNotFoundError(task_id, f"Deleted task '{task_id}' not found.")

        task = Task.from_document(doc)
        logger.info("Restored {}", task_id)
        await self._hooks.fire("on_restored", task, entry)
        await self._hooks.fire("on_history", task, entry)
        return task

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_one(self, identity: Identity, task_id: str) -> Task:
        doc = await self._tasks.find_one(record_filter(task_id, identity.team_id))
        if doc is None:
            logger.warning("Task {} not found for team {}", task_id, identity.team_id)
            raise TaskNotFoundError(task_id)
        return Task.from_document(doc)

    async def find_many(self, identity: Identity, query: TaskQuery | None = None) -> list[Task]:
        query = query or TaskQuery()
        flt = scope_filter(identity.team_id, include_deleted=query.include_deleted)

        if query.status is not None:
            flt["status"] = clean_task_field("status", query.status).value
        elif not query.include_completed:
            flt["status"] = {"$ne": TaskStatus.DONE.value}
        if query.project_id:
            flt["project_id"] = query.project_id
        if query.assignee_id:
            flt["assignee_id"] = query.assignee_id
        if query.priority is not None:
            flt["priority"] = int(clean_task_field("priority", query.priority))
        labels = _split_labels(query.labels)
        if labels:
            flt["labels"] = {"$in": labels}

        if query.search:
            flt["$text"] = {"$search": query.search}
            sort = [(TEXT_SCORE, -1)] + BOARD_SORT
        else:
            sort = LIST_SORT

        docs = await self._tasks.find_many(flt, sort=sort)
        return [Task.from_document(d) for d in docs]

    async def board(
        self, identity: Identity, project_id: str | None = None
    ) -> dict[TaskStatus, list[Task]]:
        """Active tasks grouped by status, each column ordered by position."""
        flt = scope_filter(identity.team_id)
        if project_id:
            flt["project_id"] = project_id

        docs = await self._tasks.find_many(flt, sort=BOARD_SORT)
        columns: dict[TaskStatus, list[Task]] = {status: [] for status in TaskStatus}
        for doc in docs:
            task = Task.from_document(doc)
            columns[task.status].append(task)
        return columns

    async def stats(self, identity: Identity, project_id: str | None = None) -> TaskStats:
        """Read-only counts over the team's active tasks."""
        flt = scope_filter(identity.team_id)
        if project_id:
            flt["project_id"] = project_id

        now = self._clock()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        tomorrow = today + timedelta(days=1)

        total, by_status, by_priority, overdue, completed_today = await asyncio.gather(
            self._tasks.count(flt),
            self._tasks.count_by(flt, "status"),
            self._tasks.count_by(flt, "priority"),
            self._tasks.count(
                {**flt, "due_date": {"$lt": now}, "status": {"$ne": TaskStatus.DONE.value}}
            ),
            self._tasks.count({**flt, "completed_at": {"$gte": today, "$lt": tomorrow}}),
        )

        status_counts = {status.value: 0 for status in TaskStatus}
        status_counts.update(by_status)
        priority_counts = {int(p): 0 for p in TaskPriority}
        priority_counts.update(by_priority)

        return TaskStats(
            total=total,
            by_status=status_counts,
            by_priority=priority_counts,
            overdue=overdue,
            completed_today=completed_today,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _raise_lost_write(
        self, identity: Identity, task_id: str, expected_version: int | None
    ) -> None:
        """The guarded update matched nothing: work out why and raise."""
        doc = await self._tasks.find_one(record_filter(task_id, identity.team_id))
        if doc is None:
            raise TaskNotFoundError(task_id)
        if expected_version is not None:
            logger.warning(
                "Stale update of {}: expected v{}, stored v{}",
                task_id,
                expected_version,
                doc["version"],
            )
            raise StaleVersionError(task_id, expected_version, doc["version"])
        raise TaskNotFoundError(task_id)


def _split_labels(labels: list[str] | str | None) -> list[str]:
    if not labels:
        return []
    if isinstance(labels, str):
        labels = labels.split(",")
    return [label.strip() for label in labels if label.strip()]
