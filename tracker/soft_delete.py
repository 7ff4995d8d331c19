"""
Soft-delete / restore guard.

Records are never removed: ``deleted_at`` flips them between active and
deleted, and restore flips them back. Two rules live here:

  - every read filter starts with the tenant key and the deletion marker,
    so nothing downstream can leak deleted records
  - uniqueness is evaluated against active siblings only, and lazily:
    a deleted record may share a name with an active one until someone
    tries to restore it
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from loguru import logger

from .domain import ConflictError, FieldChange, HistoryAction
from .store import Collection, Filter


def scope_filter(team_id: str, include_deleted: bool = False) -> dict[str, Any]:
    """Base filter for every read: tenant first, then the active-only marker."""
    query: dict[str, Any] = {"team_id": team_id}
    if not include_deleted:
        query["deleted_at"] = None
    return query


def record_filter(record_id: str, team_id: str, include_deleted: bool = False) -> dict[str, Any]:
    query = scope_filter(team_id, include_deleted)
    query["id"] = record_id
    return query


def deleted_filter(record_id: str, team_id: str) -> dict[str, Any]:
    """Matches ``record_id`` only while it sits in the deleted state."""
    return {"team_id": team_id, "deleted_at": {"$ne": None}, "id": record_id}


def mark_deleted(now: datetime) -> tuple[dict[str, Any], list[FieldChange]]:
    """Set-fields and audit changes for a soft delete. Status and position stay put."""
    set_fields = {"deleted_at": now, "updated_at": now}
    changes = [FieldChange(field="deleted_at", old_value=None, new_value=now)]
    return set_fields, changes


def mark_restored(
    deleted_at: datetime, now: datetime
) -> tuple[dict[str, Any], list[str], list[FieldChange]]:
    """Set-fields, unset-fields and audit changes for a restore."""
    set_fields = {"updated_at": now}
    unset = ["deleted_at"]
    changes = [FieldChange(field="deleted_at", old_value=deleted_at, new_value=None)]
    return set_fields, unset, changes


DELETE_ACTION = HistoryAction.DELETED
RESTORE_ACTION = HistoryAction.RESTORED


async def ensure_unique(
    collection: Collection,
    team_id: str,
    field_name: str,
    value: Any,
    exclude_id: str | None = None,
    error: type[ConflictError] = ConflictError,
    message: str | None = None,
) -> None:
    """
    Raise ``error`` if an active record of the team already holds ``value``.

    Deleted records never count; ``exclude_id`` skips the record being
    renamed or restored.
    """
    query: Filter = {**scope_filter(team_id), field_name: value}
    if exclude_id is not None:
        query = {**query, "id": {"$ne": exclude_id}}
    existing = await collection.find_one(query)
    if existing is not None:
        logger.warning(
            "Uniqueness conflict in {}: {}={!r} held by {}",
            collection.name,
            field_name,
            value,
            existing["id"],
        )
        raise error(field_name, value, message)
