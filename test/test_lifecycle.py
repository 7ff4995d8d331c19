"""Tests for tracker.lifecycle: deltas, completion stamping and action labels."""

from datetime import datetime, timedelta, timezone

import pytest

from tracker.domain import (
    FieldChange,
    HistoryAction,
    Identity,
    TaskPriority,
    TaskStatus,
    TaskValidationError,
)
from tracker.history import HistoryRecorder
from tracker.lifecycle import ACTION_RULES, apply_update, classify_action, create_task

T0 = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)
ME = Identity(team_id="team-a", user_id="alice")


@pytest.fixture
def recorder():
    return HistoryRecorder(clock=lambda: T0)


@pytest.fixture
def task(recorder):
    return create_task({"title": "  Write docs  "}, ME, recorder, T0, position=1000.0)


def test_create_defaults(task):
    assert task.title == "Write docs"
    assert task.status == TaskStatus.TODO
    assert task.priority == TaskPriority.MEDIUM
    assert task.completed_at is None
    assert task.deleted_at is None
    assert task.position == 1000.0
    assert task.created_at == task.updated_at == T0
    assert task.version == 1
    assert len(task.history) == 1
    entry = task.history[0]
    assert entry.action == HistoryAction.CREATED
    assert entry.changes == (FieldChange("status", None, TaskStatus.TODO),)


def test_create_directly_as_done_stamps_completion(recorder):
    task = create_task({"title": "Already done", "status": "done"}, ME, recorder, T0, 1.0)
    assert task.completed_at == T0


def test_create_requires_title(recorder):
    with pytest.raises(TaskValidationError) as exc:
        create_task({"description": "no title"}, ME, recorder, T0, 1.0)
    assert exc.value.field == "title"


@pytest.mark.parametrize(
    "data, field",
    [
        ({"title": ""}, "title"),
        ({"title": "x" * 201}, "title"),
        ({"title": "ok", "description": "d" * 5001}, "description"),
        ({"title": "ok", "priority": 0}, "priority"),
        ({"title": "ok", "priority": 6}, "priority"),
        ({"title": "ok", "status": "review"}, "status"),
        ({"title": "ok", "labels": [f"l{i}" for i in range(51)]}, "labels"),
        ({"title": "ok", "labels": 5}, "labels"),
        ({"title": "ok", "labels": "bug"}, "labels"),
        ({"title": "ok", "labels": {"x": 1}}, "labels"),
        ({"title": "ok", "labels": ["bug", 3]}, "labels"),
        ({"title": "ok", "tags": 7}, "tags"),
        ({"title": "ok", "estimated_hours": -1}, "estimated_hours"),
        ({"title": "ok", "estimated_hours": 10000}, "estimated_hours"),
        ({"title": "ok", "team_id": "other"}, "team_id"),
    ],
)
def test_create_rejects_bad_fields(recorder, data, field):
    with pytest.raises(TaskValidationError) as exc:
        create_task(data, ME, recorder, T0, 1.0)
    assert exc.value.field == field


def test_update_records_only_changed_fields(task, recorder):
    later = T0 + timedelta(minutes=5)
    outcome = apply_update(task, {"title": "Write docs", "priority": 1}, "bob", recorder, later)

    assert [c.field for c in outcome.changes] == ["priority"]
    assert outcome.entry.action == HistoryAction.UPDATED
    assert outcome.entry.user_id == "bob"
    assert outcome.task.priority == TaskPriority.CRITICAL
    assert outcome.task.updated_at == later
    assert outcome.task.version == 2
    assert outcome.set_fields == {"priority": 1, "updated_at": later}


def test_update_to_done_sets_completed_at_once(task, recorder):
    first = T0 + timedelta(hours=1)
    done = apply_update(task, {"status": "done"}, "alice", recorder, first).task
    assert done.completed_at == first

    second = T0 + timedelta(hours=2)
    again = apply_update(done, {"status": "done"}, "alice", recorder, second)
    assert again.task.completed_at == first
    assert again.entry is None
    assert "completed_at" not in again.set_fields


def test_reopening_keeps_completed_at(task, recorder):
    first = T0 + timedelta(hours=1)
    done = apply_update(task, {"status": "done"}, "alice", recorder, first).task

    reopened = apply_update(done, {"status": "in_progress"}, "alice", recorder, first + timedelta(1))
    assert reopened.task.completed_at == first

    redone = apply_update(
        reopened.task, {"status": "done"}, "alice", recorder, first + timedelta(2)
    )
    assert redone.task.completed_at == first
    assert redone.entry.action == HistoryAction.STATUS_CHANGED


def test_multi_field_patch_is_one_entry_with_status_precedence(task, recorder):
    outcome = apply_update(
        task,
        {"status": "in_progress", "priority": 2, "assignee_id": "bob"},
        "alice",
        recorder,
        T0,
    )

    assert outcome.entry.action == HistoryAction.STATUS_CHANGED
    assert len(outcome.entry.changes) == 3
    assert len(outcome.task.history) == 2


def test_assignment_wins_when_status_unchanged(task, recorder):
    outcome = apply_update(
        task, {"status": "todo", "priority": 2, "assignee_id": "bob"}, "alice", recorder, T0
    )

    assert outcome.entry.action == HistoryAction.ASSIGNED
    assert {c.field for c in outcome.entry.changes} == {"priority", "assignee_id"}


def test_unassigning_is_an_assignment(task, recorder):
    assigned = apply_update(task, {"assignee_id": "bob"}, "alice", recorder, T0).task
    outcome = apply_update(assigned, {"assignee_id": None}, "alice", recorder, T0)
    assert outcome.entry.action == HistoryAction.ASSIGNED
    assert outcome.task.assignee_id is None


def test_classify_action_rule_order():
    assert [action for _, action in ACTION_RULES] == [
        HistoryAction.STATUS_CHANGED,
        HistoryAction.ASSIGNED,
    ]
    assert classify_action([FieldChange("title", "a", "b")]) == HistoryAction.UPDATED
    assert classify_action([]) == HistoryAction.UPDATED


def test_immutable_fields_are_rejected_without_applying_anything(task, recorder):
    for field in ("team_id", "created_by", "completed_at", "id", "history"):
        with pytest.raises(TaskValidationError):
            apply_update(task, {"title": "new", field: "x"}, "alice", recorder, T0)
    assert task.title == "Write docs"


def test_no_op_patch_bumps_updated_at_without_history(task, recorder):
    later = T0 + timedelta(minutes=1)
    outcome = apply_update(task, {"title": "Write docs"}, "alice", recorder, later)

    assert outcome.entry is None
    assert not outcome.changed
    assert outcome.task.updated_at == later
    assert len(outcome.task.history) == 1


@pytest.mark.parametrize("labels", [5, {"x": 1}, "bug"])
def test_update_rejects_labels_that_are_not_a_list(task, recorder, labels):
    with pytest.raises(TaskValidationError) as exc:
        apply_update(task, {"labels": labels}, "alice", recorder, T0)
    assert exc.value.field == "labels"
    assert task.labels == []


def test_non_finite_position_rejected(task, recorder):
    with pytest.raises(TaskValidationError):
        apply_update(task, {"position": float("nan")}, "alice", recorder, T0)
    with pytest.raises(TaskValidationError):
        apply_update(task, {"position": float("inf")}, "alice", recorder, T0)
