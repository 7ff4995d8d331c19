"""
FastAPI REST API — thin HTTP wrapper over the task and project repositories.

Responsibilities (only):
  - Parse and validate HTTP input (via Pydantic request schemas)
  - Resolve the caller's identity from trusted gateway headers
  - Delegate to the repositories
  - Translate tracker exceptions → HTTP status codes
  - Serialise Task / Project → response schema

Lifecycle, history and ordering rules live entirely in the repositories;
nothing is duplicated here.

Endpoints:
  POST   /tasks                    Create a task
  GET    /tasks                    List tasks (filters, search)
  GET    /tasks/kanban             Board grouped by status
  GET    /tasks/stats              Counts by status / priority, overdue, done today
  GET    /tasks/{id}               Get a single task
  PATCH  /tasks/{id}               Partial update (optional If-Match version)
  PATCH  /tasks/{id}/position      Drag-and-drop reorder
  DELETE /tasks/{id}               Soft delete
  POST   /tasks/{id}/restore       Restore a soft-deleted task
  (same CRUD + /projects/stats under /projects)
  GET    /health, /health/ready
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Response
from loguru import logger
from pydantic import BaseModel, Field

from .config import Settings, configure_logging
from .domain import (
    ConflictError,
    FieldChange,
    HistoryEntry,
    Identity,
    NotFoundError,
    Project,
    Task,
    TaskStatus,
    TrackerError,
    ValidationError,
    Visibility,
    utcnow,
)
from .hooks import HookRegistry, log_event
from .projects import ProjectRepository
from .store import InMemoryDocumentStore
from .tasks import TaskQuery, TaskRepository

SERVICE_NAME = "kanban-tracker"
VERSION = "1.0.0"


# ---------------------------------------------------------------------------
# Shared repositories (created once at startup)
# ---------------------------------------------------------------------------

_tasks: TaskRepository | None = None
_projects: ProjectRepository | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _tasks, _projects
    settings = Settings.from_env()
    configure_logging(settings)

    store = InMemoryDocumentStore(persist_path=settings.persist_path)
    hooks = HookRegistry()
    hooks.register("on_done", log_event)
    _tasks = TaskRepository(store, hooks=hooks)
    _projects = ProjectRepository(store)
    logger.info("Tracker ready (persist_path={})", settings.persist_path)

    yield

    _tasks = None
    _projects = None


def get_tasks() -> TaskRepository:
    assert _tasks is not None, "Task repository not initialised"
    return _tasks


def get_projects() -> ProjectRepository:
    assert _projects is not None, "Project repository not initialised"
    return _projects


def get_identity(
    x_team_id: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
) -> Identity:
    """Identity is resolved upstream; the gateway forwards it as trusted headers."""
    if not x_team_id or not x_user_id:
        raise HTTPException(status_code=401, detail="Missing team or user identity")
    return Identity(team_id=x_team_id, user_id=x_user_id)


TasksDep = Annotated[TaskRepository, Depends(get_tasks)]
ProjectsDep = Annotated[ProjectRepository, Depends(get_projects)]
IdentityDep = Annotated[Identity, Depends(get_identity)]


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class CreateTaskRequest(BaseModel):
    """
    Request body for creating a new task.

    Attributes:
        title: Task title (1-200 characters).
        status: Initial column, defaults to todo.
        priority: 1 (critical) .. 5 (lowest), defaults to 3.
        labels: Up to 50 labels.
    """

    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    status: TaskStatus | None = None
    priority: int | None = Field(default=None, ge=1, le=5)
    project_id: str | None = None
    assignee_id: str | None = None
    labels: list[str] | None = Field(default=None, max_length=50)
    tags: list[str] | None = None
    due_date: datetime | None = None
    start_date: datetime | None = None
    estimated_hours: float | None = Field(default=None, ge=0, le=9999)


class UpdateTaskRequest(BaseModel):
    """Partial update; only the fields sent are applied."""

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    status: TaskStatus | None = None
    priority: int | None = Field(default=None, ge=1, le=5)
    project_id: str | None = None
    assignee_id: str | None = None
    labels: list[str] | None = Field(default=None, max_length=50)
    tags: list[str] | None = None
    due_date: datetime | None = None
    start_date: datetime | None = None
    estimated_hours: float | None = Field(default=None, ge=0, le=9999)
    position: float | None = None


class PositionRequest(BaseModel):
    position: float


class FieldChangeResponse(BaseModel):
    field: str
    old_value: Any
    new_value: Any

    @classmethod
    def from_change(cls, change: FieldChange) -> "FieldChangeResponse":
        return cls(**change.to_document())


class HistoryEntryResponse(BaseModel):
    action: str
    user_id: str
    timestamp: datetime
    changes: list[FieldChangeResponse]

    @classmethod
    def from_entry(cls, entry: HistoryEntry) -> "HistoryEntryResponse":
        return cls(
            action=entry.action.value,
            user_id=entry.user_id,
            timestamp=entry.timestamp,
            changes=[FieldChangeResponse.from_change(c) for c in entry.changes],
        )


class TaskResponse(BaseModel):
    id: str
    team_id: str
    title: str
    description: str | None
    status: TaskStatus
    priority: int
    project_id: str | None
    assignee_id: str | None
    created_by: str
    labels: list[str]
    tags: list[str]
    due_date: datetime | None
    start_date: datetime | None
    estimated_hours: float | None
    position: float
    completed_at: datetime | None
    deleted_at: datetime | None
    created_at: datetime
    updated_at: datetime
    version: int
    history: list[HistoryEntryResponse]

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            team_id=task.team_id,
            title=task.title,
            description=task.description,
            status=task.status,
            priority=int(task.priority),
            project_id=task.project_id,
            assignee_id=task.assignee_id,
            created_by=task.created_by,
            labels=task.labels,
            tags=task.tags,
            due_date=task.due_date,
            start_date=task.start_date,
            estimated_hours=task.estimated_hours,
            position=task.position,
            completed_at=task.completed_at,
            deleted_at=task.deleted_at,
            created_at=task.created_at,
            updated_at=task.updated_at,
            version=task.version,
            history=[HistoryEntryResponse.from_entry(e) for e in task.history],
        )


class BoardResponse(BaseModel):
    """Active tasks per column, each ordered by position."""

    todo: list[TaskResponse]
    in_progress: list[TaskResponse]
    done: list[TaskResponse]
    blocked: list[TaskResponse]


class TaskStatsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    by_priority: dict[int, int]
    overdue: int
    completed_today: int


class ProjectSettingsModel(BaseModel):
    columns: list[str] | None = None
    visibility: Visibility = Visibility.TEAM
    color: str | None = Field(default=None, pattern=r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")


class CreateProjectRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=1000)
    settings: ProjectSettingsModel | None = None


class UpdateProjectRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=1000)
    settings: ProjectSettingsModel | None = None


class ProjectResponse(BaseModel):
    id: str
    team_id: str
    name: str
    description: str | None
    created_by: str
    settings: ProjectSettingsModel
    task_count: int
    deleted_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_project(cls, project: Project) -> "ProjectResponse":
        return cls(
            id=project.id,
            team_id=project.team_id,
            name=project.name,
            description=project.description,
            created_by=project.created_by,
            settings=ProjectSettingsModel(**project.settings.to_document()),
            task_count=project.task_count,
            deleted_at=project.deleted_at,
            created_at=project.created_at,
            updated_at=project.updated_at,
        )


class ProjectStatsResponse(BaseModel):
    total_projects: int
    active_projects: int
    deleted_projects: int


# ---------------------------------------------------------------------------
# Exception → HTTP translation
# ---------------------------------------------------------------------------


def _http(exc: TrackerError) -> HTTPException:
    """Map domain exceptions to appropriate HTTP status codes."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _if_match(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip().strip('"'))
    except ValueError:
        raise HTTPException(status_code=400, detail="If-Match must be a task version number")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Kanban Tracker API",
    version=VERSION,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@app.get("/health")
def health() -> dict[str, str]:
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "timestamp": utcnow().isoformat(),
        "version": VERSION,
    }


@app.get("/health/ready")
def ready() -> dict[str, str]:
    return {"status": "ready", "service": SERVICE_NAME, "timestamp": utcnow().isoformat()}


# ---------------------------------------------------------------------------
# Task routes
# ---------------------------------------------------------------------------


@app.post("/tasks", response_model=TaskResponse, status_code=201)
async def create_task(
    body: CreateTaskRequest, tasks: TasksDep, identity: IdentityDep
) -> TaskResponse:
    try:
        task = await tasks.create(identity, body.model_dump(exclude_none=True))
    except TrackerError as exc:
        raise _http(exc)
    return TaskResponse.from_task(task)


@app.get("/tasks", response_model=list[TaskResponse])
async def list_tasks(
    tasks: TasksDep,
    identity: IdentityDep,
    project_id: str | None = Query(default=None),
    status: TaskStatus | None = Query(default=None, description="Filter by status"),
    assignee_id: str | None = Query(default=None),
    priority: int | None = Query(default=None, ge=1, le=5),
    labels: str | None = Query(default=None, description="Comma-separated, any-of"),
    search: str | None = Query(default=None, description="Search title and description"),
    include_completed: bool = Query(default=False),
    include_deleted: bool = Query(default=False),
) -> list[TaskResponse]:
    query = TaskQuery(
        project_id=project_id,
        status=status,
        assignee_id=assignee_id,
        priority=priority,
        labels=labels,
        search=search,
        include_completed=include_completed,
        include_deleted=include_deleted,
    )
    try:
        found = await tasks.find_many(identity, query)
    except TrackerError as exc:
        raise _http(exc)
    return [TaskResponse.from_task(t) for t in found]


@app.get("/tasks/kanban", response_model=BoardResponse)
async def kanban_board(
    tasks: TasksDep, identity: IdentityDep, project_id: str | None = Query(default=None)
) -> BoardResponse:
    columns = await tasks.board(identity, project_id)
    return BoardResponse(
        **{
            status.value: [TaskResponse.from_task(t) for t in column]
            for status, column in columns.items()
        }
    )


@app.get("/tasks/stats", response_model=TaskStatsResponse)
async def task_stats(
    tasks: TasksDep, identity: IdentityDep, project_id: str | None = Query(default=None)
) -> TaskStatsResponse:
    stats = await tasks.stats(identity, project_id)
    return TaskStatsResponse(
        total=stats.total,
        by_status=stats.by_status,
        by_priority=stats.by_priority,
        overdue=stats.overdue,
        completed_today=stats.completed_today,
    )


@app.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str, tasks: TasksDep, identity: IdentityDep) -> TaskResponse:
    try:
        return TaskResponse.from_task(await tasks.find_one(identity, task_id))
    except TrackerError as exc:
        raise _http(exc)


@app.patch("/tasks/{task_id}", response_model=TaskResponse)
async def update_task(
    task_id: str,
    body: UpdateTaskRequest,
    tasks: TasksDep,
    identity: IdentityDep,
    if_match: Annotated[str | None, Header()] = None,
) -> TaskResponse:
    """
    Apply a partial update.

    Send ``If-Match: <version>`` to make the write conditional on the
    task not having changed since it was read (409 otherwise).
    """
    expected = _if_match(if_match)
    try:
        task = await tasks.update(
            identity, task_id, body.model_dump(exclude_unset=True), expected_version=expected
        )
    except TrackerError as exc:
        raise _http(exc)
    return TaskResponse.from_task(task)


@app.patch("/tasks/{task_id}/position", response_model=TaskResponse)
async def reorder_task(
    task_id: str, body: PositionRequest, tasks: TasksDep, identity: IdentityDep
) -> TaskResponse:
    try:
        task = await tasks.reorder(identity, task_id, body.position)
    except TrackerError as exc:
        raise _http(exc)
    return TaskResponse.from_task(task)


@app.delete("/tasks/{task_id}", status_code=204)
async def delete_task(task_id: str, tasks: TasksDep, identity: IdentityDep) -> Response:
    try:
        await tasks.remove(identity, task_id)
    except TrackerError as exc:
        raise _http(exc)
    return Response(status_code=204)


@app.post("/tasks/{task_id}/restore", response_model=TaskResponse)
async def restore_task(task_id: str, tasks: TasksDep, identity: IdentityDep) -> TaskResponse:
    try:
        task = await tasks.restore(identity, task_id)
    except TrackerError as exc:
        raise _http(exc)
    return TaskResponse.from_task(task)


# ---------------------------------------------------------------------------
# Project routes
# ---------------------------------------------------------------------------


@app.post("/projects", response_model=ProjectResponse, status_code=201)
async def create_project(
    body: CreateProjectRequest, projects: ProjectsDep, identity: IdentityDep
) -> ProjectResponse:
    try:
        project = await projects.create(identity, body.model_dump(exclude_none=True))
    except TrackerError as exc:
        raise _http(exc)
    return ProjectResponse.from_project(project)


@app.get("/projects", response_model=list[ProjectResponse])
async def list_projects(
    projects: ProjectsDep, identity: IdentityDep, include_deleted: bool = Query(default=False)
) -> list[ProjectResponse]:
    found = await projects.find_many(identity, include_deleted=include_deleted)
    return [ProjectResponse.from_project(p) for p in found]


@app.get("/projects/stats", response_model=ProjectStatsResponse)
async def project_stats(projects: ProjectsDep, identity: IdentityDep) -> ProjectStatsResponse:
    stats = await projects.stats(identity)
    return ProjectStatsResponse(
        total_projects=stats.total_projects,
        active_projects=stats.active_projects,
        deleted_projects=stats.deleted_projects,
    )


@app.get("/projects/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: str, projects: ProjectsDep, identity: IdentityDep
) -> ProjectResponse:
    try:
        return ProjectResponse.from_project(await projects.find_one(identity, project_id))
    except TrackerError as exc:
        raise _http(exc)


@app.patch("/projects/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: str, body: UpdateProjectRequest, projects: ProjectsDep, identity: IdentityDep
) -> ProjectResponse:
    try:
        project = await projects.update(
            identity, project_id, body.model_dump(exclude_unset=True)
        )
    except TrackerError as exc:
        raise _http(exc)
    return ProjectResponse.from_project(project)


@app.delete("/projects/{project_id}", status_code=204)
async def delete_project(project_id: str, projects: ProjectsDep, identity: IdentityDep) -> Response:
    try:
        await projects.remove(identity, project_id)
    except TrackerError as exc:
        raise _http(exc)
    return Response(status_code=204)


@app.post("/projects/{project_id}/restore", response_model=ProjectResponse)
async def restore_project(
    project_id: str, projects: ProjectsDep, identity: IdentityDep
) -> ProjectResponse:
    try:
        project = await projects.restore(identity, project_id)
    except TrackerError as exc:
        raise _http(exc)
    return ProjectResponse.from_project(project)
