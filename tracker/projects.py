"""
ProjectRepository — name-unique project CRUD with soft delete.

Projects are plain grouping keys for tasks. The one rule worth guarding is
that a name is unique among the team's *active* projects, which is checked
before create, rename and restore. The partial unique index declared on
the collection is only a backstop.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping

from loguru import logger

from .domain import (
    Identity,
    Project,
    ProjectConflictError,
    ProjectNotFoundError,
    ProjectValidationError,
    clean_project_description,
    clean_project_name,
    clean_project_settings,
    utcnow,
)
from .soft_delete import deleted_filter, ensure_unique, record_filter, scope_filter
from .store import Collection, DuplicateKeyError, InMemoryDocumentStore

NAME_TAKEN = "A project with this name already exists in your team"
RESTORE_NAME_TAKEN = "Cannot restore: a project with this name already exists in your team"

UPDATABLE_FIELDS = ("name", "description", "settings")


@dataclass
class ProjectStats:
    total_projects: int
    active_projects: int
    deleted_projects: int


class ProjectRepository:
    COLLECTION = "projects"

    def __init__(
        self,
        store: InMemoryDocumentStore,
        clock: Callable[[], datetime] = utcnow,
        tasks_collection: str = "tasks",
    ) -> None:
        self._projects: Collection = store.collection(self.COLLECTION)
        self._tasks: Collection = store.collection(tasks_collection)
        self._clock = clock
        self.ensure_indexes()

    def ensure_indexes(self) -> None:
        self._projects.create_index(
            ["team_id", "name"], unique=True, partial={"deleted_at": None}, name="team_name_active"
        )
        self._projects.create_index(["team_id", "created_at"])
        self._projects.create_index(["team_id", "deleted_at"])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, identity: Identity, data: Mapping[str, Any]) -> Project:
        """
        Raises:
            ProjectValidationError: Name, description or settings break a rule.
            ProjectConflictError:   An active project of the team has this name.
        """
        unknown = set(data) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ProjectValidationError(sorted(unknown)[0], "is not a project field")
        name = clean_project_name(data.get("name"))
        description = clean_project_description(data.get("description"))
        settings = clean_project_settings(data.get("settings"))

        await ensure_unique(
            self._projects,
            identity.team_id,
            "name",
            name,
            error=ProjectConflictError,
            message=NAME_TAKEN,
        )

        now = self._clock()
        project = Project(
            team_id=identity.team_id,
            created_by=identity.user_id,
            name=name,
            description=description,
            settings=settings,
            created_at=now,
            updated_at=now,
        )
        try:
            doc = await self._projects.insert_one(project.to_document())
        except DuplicateKeyError as exc:
            raise ProjectConflictError("name", name, NAME_TAKEN) from exc

        logger.info("Project {} — {!r} created in team {}", project.id, name, identity.team_id)
        return Project.from_document(doc)

    async def update(
        self, identity: Identity, project_id: str, data: Mapping[str, Any]
    ) -> Project:
        """
        Raises:
            ProjectNotFoundError:   Unknown, foreign or deleted project.
            ProjectValidationError: A field breaks its rule.
            ProjectConflictError:   The new name is held by another active project.
        """
        project = await self.find_one(identity, project_id)

        set_fields: dict[str, Any] = {}
        for key, value in data.items():
            if key == "name":
                set_fields["name"] = clean_project_name(value)
            elif key == "description":
                set_fields["description"] = clean_project_description(value)
            elif key == "settings":
                set_fields["settings"] = clean_project_settings(value).to_document()
            else:
                raise ProjectValidationError(key, "is not a project field")

        if "name" in set_fields and set_fields["name"] != project.name:
            await ensure_unique(
                self._projects,
                identity.team_id,
                "name",
                set_fields["name"],
                exclude_id=project_id,
                error=ProjectConflictError,
                message=NAME_TAKEN,
            )

        set_fields["updated_at"] = self._clock()
        try:
            doc = await self._projects.update_one(
                record_filter(project_id, identity.team_id), set_fields=set_fields
            )
        except DuplicateKeyError as exc:
            raise ProjectConflictError("name", set_fields["name"], NAME_TAKEN) from exc
        if doc is None:
            raise ProjectNotFoundError(project_id)

        logger.info("Project {} updated [{}]", project_id, ", ".join(sorted(data)))
        return await self._with_task_count(doc)

    async def remove(self, identity: Identity, project_id: str) -> Project:
        """Soft-delete a project. Its tasks keep their project_id; nothing cascades."""
        await self.find_one(identity, project_id)
        now = self._clock()
        doc = await self._projects.update_one(
            record_filter(project_id, identity.team_id),
            set_fields={"deleted_at": now, "updated_at": now},
        )
        if doc is None:
            raise ProjectNotFoundError(project_id)
        logger.info("Project {} deleted", project_id)
        return Project.from_document(doc)

    async def restore(self, identity: Identity, project_id: str) -> Project:
        """
        Bring a deleted project back, re-checking name uniqueness first.

        Raises:
            ProjectNotFoundError: No deleted project with this id in the team.
            ProjectConflictError: An active project has taken the name meanwhile.
        """
        doc = await self._projects.find_one(deleted_filter(project_id, identity.team_id))
        if doc is None:
            raise ProjectNotFoundError(project_id, f"Deleted project '{project_id}' not found.")

        await ensure_unique(
            self._projects,
            identity.team_id,
            "name",
            doc["name"],
            exclude_id=project_id,
            error=ProjectConflictError,
            message=RESTORE_NAME_TAKEN,
        )

        try:
            doc = await self._projects.update_one(
                deleted_filter(project_id, identity.team_id),
                set_fields={"updated_at": self._clock()},
                unset=["deleted_at"],
            )
        except DuplicateKeyError as exc:
            raise ProjectConflictError("name", doc["name"], RESTORE_NAME_TAKEN) from exc
        if doc is None:
            raise ProjectNotFoundError(project_id, f"Deleted project '{project_id}' not found.")

        logger.info("Project {} restored", project_id)
        return await self._with_task_count(doc)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_one(self, identity: Identity, project_id: str) -> Project:
        doc = await self._projects.find_one(record_filter(project_id, identity.team_id))
        if doc is None:
            logger.warning("Project {} not found for team {}", project_id, identity.team_id)
            raise ProjectNotFoundError(project_id)
        return await self._with_task_count(doc)

    async def find_many(self, identity: Identity, include_deleted: bool = False) -> list[Project]:
        """Newest first."""
        docs = await self._projects.find_many(
            scope_filter(identity.team_id, include_deleted), sort=[("created_at", -1), ("id", 1)]
        )
        return [await self._with_task_count(d) for d in docs]

    async def stats(self, identity: Identity) -> ProjectStats:
        total = await self._projects.count({"team_id": identity.team_id})
        active = await self._projects.count(scope_filter(identity.team_id))
        return ProjectStats(
            total_projects=total,
            active_projects=active,
            deleted_projects=total - active,
        )

    async def _with_task_count(self, doc: dict[str, Any]) -> Project:
        count = await self._tasks.count(
            {**scope_filter(doc["team_id"]), "project_id": doc["id"]}
        )
        return Project.from_document(doc, task_count=count)
