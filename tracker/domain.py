"""
Core domain: Task, Project, history records, field rules and all
tracker-specific exceptions.

Nothing here imports from the rest of the package: this is the
innermost layer and has zero side-effects.
"""

from __future__ import annotations

import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"


class TaskPriority(IntEnum):
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4
    LOWEST = 5


class HistoryAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    ASSIGNED = "assigned"
    STATUS_CHANGED = "status_changed"
    DELETED = "deleted"
    RESTORED = "restored"


class Visibility(str, Enum):
    TEAM = "team"
    PUBLIC = "public"
    PRIVATE = "private"


DEFAULT_COLUMNS = [s.value for s in TaskStatus]


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Identity:
    """The already-authenticated caller: tenant plus acting user."""

    team_id: str
    user_id: str


# ---------------------------------------------------------------------------
# History records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldChange:
    field: str
    old_value: Any
    new_value: Any

    def to_document(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "old_value": _plain(self.old_value),
            "new_value": _plain(self.new_value),
        }

    @classmethod
    def from_document(cls, raw: dict[str, Any]) -> "FieldChange":
        return cls(
            field=raw["field"],
            old_value=raw.get("old_value"),
            new_value=raw.get("new_value"),
        )


@dataclass(frozen=True)
class HistoryEntry:
    """A single immutable audit record describing one mutation."""

    action: HistoryAction
    user_id: str
    timestamp: datetime
    changes: tuple[FieldChange, ...] = ()

    def __str__(self) -> str:
        fields = ", ".join(c.field for c in self.changes)
        return f"[{self.timestamp.isoformat()}] {self.action.value} by {self.user_id} ({fields})"

    def to_document(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "user_id": self.user_id,
            "timestamp": self.timestamp,
            "changes": [c.to_document() for c in self.changes],
        }

    @classmethod
    def from_document(cls, raw: dict[str, Any]) -> "HistoryEntry":
        return cls(
            action=HistoryAction(raw["action"]),
            user_id=raw["user_id"],
            timestamp=raw["timestamp"],
            changes=tuple(FieldChange.from_document(c) for c in raw.get("changes", [])),
        )


def _plain(value: Any) -> Any:
    """Store enums by value so history documents stay JSON-friendly."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------


@dataclass
class Task:
    """
    A unit of work on a team's Kanban board.

    Attributes:
        id: Opaque unique identifier, immutable.
        team_id: Tenant partition key, immutable.
        title: 1-200 characters.
        status: Column the task sits in.
        priority: 1 (critical) .. 5 (lowest).
        position: Sort key within the (team_id, status) column.
        completed_at: Set the first time the task reaches DONE, never cleared.
        deleted_at: None while active; set by soft delete.
        version: Incremented on every mutation, usable as an ETag.
        history: Bounded audit trail, oldest first.
    """

    team_id: str
    created_by: str
    title: str
    position: float
    created_at: datetime
    updated_at: datetime
    id: str = field(default_factory=new_id)
    description: str | None = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    project_id: str | None = None
    assignee_id: str | None = None
    labels: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    due_date: datetime | None = None
    start_date: datetime | None = None
    estimated_hours: float | None = None
    completed_at: datetime | None = None
    deleted_at: datetime | None = None
    version: int = 1
    history: list[HistoryEntry] = field(default_factory=list)

    def __str__(self) -> str:
        who = f" @{self.assignee_id}" if self.assignee_id else ""
        gone = " (deleted)" if self.deleted_at else ""
        return f"[{self.id[:8]}] {self.title!r} — {self.status.value} p{int(self.priority)}{who}{gone}"

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "team_id": self.team_id,
            "created_by": self.created_by,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": int(self.priority),
            "project_id": self.project_id,
            "assignee_id": self.assignee_id,
            "labels": list(self.labels),
            "tags": list(self.tags),
            "due_date": self.due_date,
            "start_date": self.start_date,
            "estimated_hours": self.estimated_hours,
            "position": self.position,
            "completed_at": self.completed_at,
            "deleted_at": self.deleted_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
            "history": [e.to_document() for e in self.history],
        }

    @classmethod
    def from_document(cls, raw: dict[str, Any]) -> "Task":
        return cls(
            id=raw["id"],
            team_id=raw["team_id"],
            created_by=raw["created_by"],
            title=raw["title"],
            description=raw.get("description"),
            status=TaskStatus(raw["status"]),
            priority=TaskPriority(raw["priority"]),
            project_id=raw.get("project_id"),
            assignee_id=raw.get("assignee_id"),
            labels=list(raw.get("labels") or []),
            tags=list(raw.get("tags") or []),
            due_date=raw.get("due_date"),
            start_date=raw.get("start_date"),
            estimated_hours=raw.get("estimated_hours"),
            position=raw["position"],
            completed_at=raw.get("completed_at"),
            deleted_at=raw.get("deleted_at"),
            created_at=raw["created_at"],
            updated_at=raw["updated_at"],
            version=raw.get("version", 1),
            history=[HistoryEntry.from_document(e) for e in raw.get("history", [])],
        )


# ---------------------------------------------------------------------------
# Project
# ---------------------------------------------------------------------------


@dataclass
class ProjectSettings:
    columns: list[str] = field(default_factory=lambda: list(DEFAULT_COLUMNS))
    visibility: Visibility = Visibility.TEAM
    color: str | None = None

    def to_document(self) -> dict[str, Any]:
        return {
            "columns": list(self.columns),
            "visibility": self.visibility.value,
            "color": self.color,
        }

    @classmethod
    def from_document(cls, raw: dict[str, Any] | None) -> "ProjectSettings":
        if not raw:
            return cls()
        return cls(
            columns=list(raw.get("columns") or DEFAULT_COLUMNS),
            visibility=Visibility(raw.get("visibility") or Visibility.TEAM.value),
            color=raw.get("color"),
        )


@dataclass
class Project:
    """A grouping container for tasks; name is unique among a team's active projects."""

    team_id: str
    created_by: str
    name: str
    created_at: datetime
    updated_at: datetime
    id: str = field(default_factory=new_id)
    description: str | None = None
    settings: ProjectSettings = field(default_factory=ProjectSettings)
    deleted_at: datetime | None = None
    task_count: int = 0  # populated on reads, never persisted

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "team_id": self.team_id,
            "created_by": self.created_by,
            "name": self.name,
            "description": self.description,
            "settings": self.settings.to_document(),
            "deleted_at": self.deleted_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, raw: dict[str, Any], task_count: int = 0) -> "Project":
        return cls(
            id=raw["id"],
            team_id=raw["team_id"],
            created_by=raw["created_by"],
            name=raw["name"],
            description=raw.get("description"),
            settings=ProjectSettings.from_document(raw.get("settings")),
            deleted_at=raw.get("deleted_at"),
            created_at=raw["created_at"],
            updated_at=raw["updated_at"],
            task_count=task_count,
        )


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TrackerError(Exception):
    """Base for all tracker-specific errors."""


class NotFoundError(TrackerError):
    """Unknown id, another team's id, or a soft-deleted record under default filtering."""

    kind = "Record"

    def __init__(self, record_id: str, detail: str | None = None) -> None:
        super().__init__(detail or f"{self.kind} '{record_id}' not found.")
        self.record_id = record_id


class TaskNotFoundError(NotFoundError):
    kind = "Task"

    @property
    def task_id(self) -> str:
        return self.record_id


class ProjectNotFoundError(NotFoundError):
    kind = "Project"

    @property
    def project_id(self) -> str:
        return self.record_id


class ConflictError(TrackerError):
    def __init__(self, field: str, value: Any, message: str | None = None) -> None:
        super().__init__(message or f"'{field}' value {value!r} is already in use.")
        self.field = field
        self.value = value


class ProjectConflictError(ConflictError):
    pass


class StaleVersionError(ConflictError):
    """Raised when an update names a version the stored task has moved past."""

    def __init__(self, task_id: str, expected: int, actual: int) -> None:
        super().__init__(
            "version",
            expected,
            f"Task '{task_id}' is at version {actual}, update expected {expected}.",
        )
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


class ValidationError(TrackerError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class TaskValidationError(ValidationError):
    pass


class ProjectValidationError(ValidationError):
    pass


class PositionExhaustedError(TaskValidationError):
    """No float lies strictly between the two neighbouring positions."""

    def __init__(self, before: float, after: float) -> None:
        super().__init__(
            "position",
            f"no room between {before!r} and {after!r}; renumber the column.",
        )
        self.before = before
        self.after = after


# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------

TITLE_MAX = 200
DESCRIPTION_MAX = 5000
MAX_LABELS = 50
MAX_ESTIMATED_HOURS = 9999
PROJECT_NAME_MAX = 100
PROJECT_DESCRIPTION_MAX = 1000

_COLOR_RE = re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")


def _clean_text(
    value: Any, field_name: str, max_len: int, required: bool, error: type[ValidationError]
) -> str | None:
    if value is None:
        if required:
            raise error(field_name, "is required")
        return None
    if not isinstance(value, str):
        raise error(field_name, "must be a string")
    value = value.strip()
    if required and not value:
        raise error(field_name, "is required")
    if len(value) > max_len:
        raise error(field_name, f"cannot exceed {max_len} characters")
    return value


def _clean_strings(value: Any, field_name: str, limit: int | None = None) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise TaskValidationError(field_name, "must be a list of strings")
    items = list(value)
    if limit is not None and len(items) > limit:
        raise TaskValidationError(field_name, f"maximum {limit} entries allowed")
    return items


def _clean_datetime(value: Any, field_name: str) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise TaskValidationError(field_name, "is not an ISO-8601 datetime") from exc
    if not isinstance(value, datetime):
        raise TaskValidationError(field_name, "must be a datetime")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def clean_task_field(name: str, value: Any) -> Any:
    """Normalise one task field, raising TaskValidationError when it breaks a rule."""
    if name == "title":
        return _clean_text(value, name, TITLE_MAX, True, TaskValidationError)
    if name == "description":
        return _clean_text(value, name, DESCRIPTION_MAX, False, TaskValidationError)
    if name == "status":
        try:
            return TaskStatus(value)
        except ValueError as exc:
            raise TaskValidationError(name, f"must be one of {DEFAULT_COLUMNS}") from exc
    if name == "priority":
        if isinstance(value, bool):
            raise TaskValidationError(name, "must be an integer 1..5")
        try:
            return TaskPriority(value)
        except ValueError as exc:
            raise TaskValidationError(name, "must be an integer 1..5") from exc
    if name in ("project_id", "assignee_id"):
        if value is not None and (not isinstance(value, str) or not value):
            raise TaskValidationError(name, "must be a non-empty string")
        return value
    if name == "labels":
        return _clean_strings(value, name, MAX_LABELS)
    if name == "tags":
        return _clean_strings(value, name)
    if name in ("due_date", "start_date"):
        return _clean_datetime(value, name)
    if name == "estimated_hours":
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TaskValidationError(name, "must be a number")
        if not 0 <= value <= MAX_ESTIMATED_HOURS:
            raise TaskValidationError(name, f"must be between 0 and {MAX_ESTIMATED_HOURS}")
        return value
    if name == "position":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TaskValidationError(name, "must be a number")
        if not math.isfinite(value):
            raise TaskValidationError(name, "must be a finite number")
        return float(value)
    raise TaskValidationError(name, "is not a mutable task field")


def clean_project_name(value: Any) -> str:
    return _clean_text(value, "name", PROJECT_NAME_MAX, True, ProjectValidationError)


def clean_project_description(value: Any) -> str | None:
    return _clean_text(value, "description", PROJECT_DESCRIPTION_MAX, False, ProjectValidationError)


def clean_project_settings(value: Any) -> ProjectSettings:
    if value is None:
        return ProjectSettings()
    if isinstance(value, ProjectSettings):
        value = value.to_document()
    if not isinstance(value, dict):
        raise ProjectValidationError("settings", "must be an object")
    columns = value.get("columns")
    if columns is not None and (
        not isinstance(columns, (list, tuple)) or not all(isinstance(c, str) for c in columns)
    ):
        raise ProjectValidationError("settings.columns", "must be a list of strings")
    try:
        visibility = Visibility(value.get("visibility") or Visibility.TEAM.value)
    except ValueError as exc:
        raise ProjectValidationError(
            "settings.visibility", "must be one of team, public, private"
        ) from exc
    color = value.get("color")
    if color is not None and not _COLOR_RE.match(str(color)):
        raise ProjectValidationError("settings.color", "must be a hex color like #3B82F6")
    return ProjectSettings(
        columns=list(columns) if columns is not None else list(DEFAULT_COLUMNS),
        visibility=visibility,
        color=color,
    )
