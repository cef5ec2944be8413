"""Commit log and edit-history querying for relstore."""

from __future__ import annotations

import datetime
import json
from collections.abc import Mapping
from typing import Any

from relstore.graph import CommitPlan
from relstore.models import CommitRecord, EditOperation, EditRecord


def _dumps(value: Any) -> str:
    # Dates and other non-JSON values are recorded by their str() form
    return json.dumps(dict(value) if isinstance(value, Mapping) else value, default=str)


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime(
        "%Y-%m-%dT%H:%M:%S.%f"
    )


class CommitLog:
    """Append-only record of committed units of work."""

    def __init__(self) -> None:
        self.commits: list[CommitRecord] = []
        self.records: list[EditRecord] = []

    def start_commit(self, name: str | None, change_count: int) -> CommitRecord:
        commit = CommitRecord(
            id=len(self.commits) + 1,
            name=name,
            timestamp=_now(),
            change_count=change_count,
        )
        self.commits.append(commit)
        return commit

    def mark(self) -> tuple[int, int]:
        return len(self.commits), len(self.records)

    def rewind(self, mark: tuple[int, int]) -> None:
        """Drop every commit and edit record appended after ``mark``."""
        commits, records = mark
        del self.commits[commits:]
        del self.records[records:]

    def append(
        self,
        commit_id: int,
        entity_type: str,
        entity_id: str,
        operation: EditOperation,
        *,
        field_name: str | None = None,
        old_value: str | None = None,
        new_value: str | None = None,
        reason: str | None = None,
    ) -> EditRecord:
        record = EditRecord(
            id=len(self.records) + 1,
            commit_id=commit_id,
            entity_type=entity_type,
            entity_id=entity_id,
            field_name=field_name,
            operation=operation.value,
            old_value=old_value,
            new_value=new_value,
            reason=reason,
            timestamp=_now(),
        )
        self.records.append(record)
        return record


def record_create(
    log: CommitLog,
    commit_id: int,
    entity_type: str,
    entity_id: str,
    new_value: Mapping | None = None,
) -> None:
    """Record a CREATE operation in edit history."""
    log.append(
        commit_id, entity_type, entity_id, EditOperation.CREATE,
        new_value=_dumps(new_value) if new_value else None,
    )


def record_update(
    log: CommitLog,
    commit_id: int,
    entity_type: str,
    entity_id: str,
    field_name: str,
    old_value: Any,
    new_value: Any,
) -> None:
    """Record an UPDATE operation in edit history."""
    log.append(
        commit_id, entity_type, entity_id, EditOperation.UPDATE,
        field_name=field_name,
        old_value=_dumps(old_value),
        new_value=_dumps(new_value),
    )


def record_delete(
    log: CommitLog,
    commit_id: int,
    entity_type: str,
    entity_id: str,
    old_value: Mapping | None = None,
    reason: str | None = None,
) -> None:
    """Record a DELETE operation in edit history."""
    log.append(
        commit_id, entity_type, entity_id, EditOperation.DELETE,
        old_value=_dumps(old_value) if old_value else None,
        reason=reason,
    )


def row_id(parent_key: int, child_key: int) -> str:
    return f"{parent_key}->{child_key}"


def record_plan(log: CommitLog, commit: CommitRecord, plan: CommitPlan) -> None:
    """Record every mutation of an applied commit plan."""
    for entity in plan.inserts:
        record_create(
            log, commit.id, entity.kind, str(entity.key), entity.attributes
        )
    for entity in plan.updates:
        previous = plan.previous[(entity.kind, entity.key)]
        _record_field_changes(
            log, commit.id, entity.kind, str(entity.key),
            previous.attributes, entity.attributes,
        )
    for row, reason in plan.removals:
        record_delete(
            log, commit.id, row.relationship,
            row_id(row.parent_key, row.child_key),
            row.attributes, reason=reason,
        )
    for row in plan.upserts:
        record_create(
            log, commit.id, row.relationship,
            row_id(row.parent_key, row.child_key), row.attributes,
        )
    for row in plan.row_updates:
        previous = plan.previous[(row.relationship, row.parent_key, row.child_key)]
        _record_field_changes(
            log, commit.id, row.relationship,
            row_id(row.parent_key, row.child_key),
            previous.attributes, row.attributes,
        )
    for entity in plan.deletes:
        record_delete(
            log, commit.id, entity.kind, str(entity.key), entity.attributes
        )


def _record_field_changes(
    log: CommitLog,
    commit_id: int,
    entity_type: str,
    entity_id: str,
    old: Mapping[str, Any],
    new: Mapping[str, Any],
) -> None:
    for name in sorted(set(old) | set(new)):
        if old.get(name) != new.get(name):
            record_update(
                log, commit_id, entity_type, entity_id,
                name, old.get(name), new.get(name),
            )


def query_history(
    log: CommitLog,
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    since: str | None = None,
    operation: str | None = None,
    commit_id: int | None = None,
) -> list[EditRecord]:
    """Query edit history with optional filters."""
    records = log.records
    if entity_type is not None:
        records = [r for r in records if r.entity_type == entity_type]
    if entity_id is not None:
        records = [r for r in records if r.entity_id == entity_id]
    if since is not None:
        records = [r for r in records if r.timestamp > since]
    if operation is not None:
        records = [r for r in records if r.operation == operation]
    if commit_id is not None:
        records = [r for r in records if r.commit_id == commit_id]
    return list(records)
