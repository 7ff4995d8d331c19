"""
Lifecycle state machine for tasks.

Statuses form a complete graph: any of todo / in_progress / done / blocked
may move to any other. What the machine owns is everything a move implies:

  - the field-level delta of a patch
  - completed_at, stamped the first time a task reaches DONE and kept
    when it is reopened
  - the single action label for the mutation's history entry
  - updated_at and version bookkeeping

It is pure: it takes snapshots and returns snapshots. Writing them is the
repository's job.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from .domain import (
    FieldChange,
    HistoryAction,
    HistoryEntry,
    Identity,
    Task,
    TaskStatus,
    TaskValidationError,
    clean_task_field,
)
from .history import HistoryRecorder

MUTABLE_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "status",
    "priority",
    "project_id",
    "assignee_id",
    "labels",
    "tags",
    "due_date",
    "start_date",
    "estimated_hours",
    "position",
)

CREATE_FIELDS: tuple[str, ...] = tuple(f for f in MUTABLE_FIELDS if f != "position")

# Checked top to bottom; the first rule whose field changed names the entry.
ACTION_RULES: tuple[tuple[str, HistoryAction], ...] = (
    ("status", HistoryAction.STATUS_CHANGED),
    ("assignee_id", HistoryAction.ASSIGNED),
)


@dataclass
class LifecycleOutcome:
    """
    Result of applying a patch.

    Attributes:
        task: The full next snapshot.
        changes: One FieldChange per field whose value actually moved.
        entry: The history entry to append, or None for a no-op patch.
        set_fields: The document fields the store must overwrite
                    (version is left to the store's increment).
    """

    task: Task
    changes: list[FieldChange]
    entry: HistoryEntry | None
    set_fields: dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.changes)


def classify_action(changes: list[FieldChange]) -> HistoryAction:
    changed = {c.field for c in changes}
    for field_name, action in ACTION_RULES:
        if field_name in changed:
            return action
    return HistoryAction.UPDATED


def clean_patch(
    patch: Mapping[str, Any], allowed: tuple[str, ...] = MUTABLE_FIELDS
) -> dict[str, Any]:
    """Validate every key and value of ``patch``; raise before anything changes."""
    cleaned: dict[str, Any] = {}
    for key, value in patch.items():
        if key not in allowed:
            raise TaskValidationError(key, "is not a mutable task field")
        cleaned[key] = clean_task_field(key, value)
    return cleaned


def _document_value(value: Any) -> Any:
    if isinstance(value, TaskStatus):
        return value.value
    if isinstance(value, int) and not isinstance(value, bool):
        return int(value)
    return value


def apply_update(
    current: Task,
    patch: Mapping[str, Any],
    acting_user: str,
    recorder: HistoryRecorder,
    now: datetime,
) -> LifecycleOutcome:
    """
    Compute the next snapshot of ``current`` under ``patch``.

    Raises:
        TaskValidationError: A key is not mutable or a value breaks a field rule.
                             Nothing is applied in that case.
    """
    cleaned = clean_patch(patch)

    changes = [
        FieldChange(field=key, old_value=getattr(current, key), new_value=value)
        for key, value in cleaned.items()
        if getattr(current, key) != value
    ]
    updates: dict[str, Any] = {c.field: c.new_value for c in changes}

    status_change = next((c for c in changes if c.field == "status"), None)
    if (
        status_change is not None
        and status_change.new_value == TaskStatus.DONE
        and current.completed_at is None
    ):
        updates["completed_at"] = now

    updates["updated_at"] = now
    updates["version"] = current.version + 1

    entry = None
    if changes:
        entry = recorder.record(classify_action(changes), acting_user, changes)

    history = current.history
    if entry is not None:
        history = list(recorder.append(current.history, entry))

    next_task = dataclasses.replace(current, history=history, **updates)
    # version is incremented by the store, not overwritten.
    set_fields = {
        key: _document_value(value) for key, value in updates.items() if key != "version"
    }
    return LifecycleOutcome(task=next_task, changes=changes, entry=entry, set_fields=set_fields)


def create_task(
    data: Mapping[str, Any],
    identity: Identity,
    recorder: HistoryRecorder,
    now: datetime,
    position: float,
) -> Task:
    """
    Build a new active task: the degenerate transition from "nothing".

    The history starts with one ``created`` entry whose only change is
    status: None → initial status.
    """
    if "title" not in data:
        raise TaskValidationError("title", "is required")
    # None means "use the default" on creation.
    fields = {
        key: value
        for key, value in data.items()
        if not (key in ("status", "priority", "position") and value is None)
    }
    cleaned = clean_patch(fields, allowed=CREATE_FIELDS + ("position",))
    cleaned.setdefault("position", position)

    task = Task(
        team_id=identity.team_id,
        created_by=identity.user_id,
        created_at=now,
        updated_at=now,
        **cleaned,
    )
    if task.status == TaskStatus.DONE:
        task.completed_at = now

    entry = recorder.record(
        HistoryAction.CREATED,
        identity.user_id,
        [FieldChange(field="status", old_value=None, new_value=task.status)],
    )
    task.history = list(recorder.append([], entry))
    return task
