"""
Executor for batch change requests.

Builds a store from the request's schema and applies each unit through
its own unit of work.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from ..exceptions import ConflictError, RelstoreError, ValidationError
from ..store import Store, UnitOfWork
from .schema import (
    HANDLE_PREFIX,
    BatchResult,
    Change,
    ChangeRequest,
    ChangeResult,
    OperationType,
    UnitRequest,
    UnitResult,
)

logger = logging.getLogger(__name__)


def execute_change_request(
    request: ChangeRequest,
    dry_run: bool = False,
    stop_on_error: bool = False,
    store: Optional[Store] = None,
) -> BatchResult:
    """Execute a batch change request.

    Args:
        request: The change request to execute
        dry_run: If True, leave ``store`` untouched and apply to a scratch store
        stop_on_error: If True, skip the remaining units after a failure
        store: Store to apply to; built from ``request.schema`` if omitted

    Returns:
        BatchResult with details of each unit
    """
    start_time = time.time()
    if store is None or dry_run:
        name = request.source_file.stem if request.source_file else "batch"
        store = Store.from_schema(request.schema, name=name)

    handles: Dict[str, int] = {}
    results: List[UnitResult] = []

    for i, unit in enumerate(request.units):
        result = _execute_unit(unit, i, store, handles)
        results.append(result)
        if stop_on_error and not result.committed:
            logger.info(f"Stopping after failed unit #{i + 1}")
            break

    committed_count = sum(1 for r in results if r.committed)
    failed_count = sum(1 for r in results if not r.committed)
    duration = time.time() - start_time

    return BatchResult(
        total_count=len(request.units),
        committed_count=committed_count,
        failed_count=failed_count,
        units=results,
        duration_seconds=duration,
        store=store,
        dry_run=dry_run,
    )


def _execute_unit(
    unit: UnitRequest,
    index: int,
    store: Store,
    handles: Dict[str, int],
) -> UnitResult:
    """Run one unit's changes and commit them together."""
    name = unit.name or f"unit #{index + 1}"
    uow = store.create_unit_of_work(name)
    bound: Dict[str, int] = {}
    changes: List[ChangeResult] = []

    for i, change in enumerate(unit.changes):
        changes.append(_execute_change(change, i, uow, {**handles, **bound}, bound))

    result = UnitResult(index=index, name=unit.name, committed=False, changes=changes)
    failures = result.failure_count
    if failures:
        uow.rollback()
        result.error = f"{failures} change(s) failed; unit rolled back"
        logger.warning(f"Unit {name!r} rolled back: {failures} change(s) failed")
        return result

    try:
        result.commit_id = uow.commit().id
    except ConflictError as e:
        uow.rollback()
        result.error = str(e)
        result.conflicts = [d.message for d in e.details] or [str(e)]
        return result
    except ValidationError as e:
        uow.rollback()
        result.error = str(e)
        return result

    result.committed = True
    handles.update(bound)
    return result


def _execute_change(
    change: Change,
    index: int,
    uow: UnitOfWork,
    handles: Dict[str, int],
    bound: Dict[str, int],
) -> ChangeResult:
    """Execute a single change operation.

    Returns:
        ChangeResult with success/failure status
    """
    op = change.operation

    try:
        if op == OperationType.INSERT.value:
            return _exec_insert(change, index, uow, bound)

        elif op == OperationType.UPDATE.value:
            return _exec_update(change, index, uow, handles)

        elif op == OperationType.DELETE.value:
            return _exec_delete(change, index, uow, handles)

        elif op == OperationType.LINK.value:
            return _exec_link(change, index, uow, handles)

        elif op == OperationType.UNLINK.value:
            return _exec_unlink(change, index, uow, handles)

        elif op in (OperationType.REPLACE.value, OperationType.ASSIGN.value):
            return _exec_collection(change, index, uow, handles)

        else:
            return ChangeResult(
                index=index,
                operation=op,
                success=False,
                message=f"Unknown operation: {op}",
                error=f"Unknown operation: {op}",
            )

    except RelstoreError as e:
        logger.warning(f"Change #{index + 1} ({op}) failed: {e}")
        return ChangeResult(
            index=index,
            operation=op,
            success=False,
            message=f"Error: {e}",
            error=str(e),
        )


def resolve_reference(
    uow: UnitOfWork,
    kind: str,
    ref: Any,
    handles: Dict[str, int],
) -> int:
    """Turn a key, ``@handle`` or attribute mapping into an entity key.

    Raises:
        ValidationError: If the reference is malformed, unbound or does
            not match exactly one entity
    """
    if isinstance(ref, bool):
        raise ValidationError(f"Invalid entity reference: {ref!r}")
    if isinstance(ref, int):
        return ref
    if isinstance(ref, str) and ref.startswith(HANDLE_PREFIX):
        handle = ref[len(HANDLE_PREFIX):]
        if handle not in handles:
            raise ValidationError(f"Unknown handle: {ref}")
        return handles[handle]
    if isinstance(ref, dict) and ref:
        matches = uow.find(kind, **ref)
        if len(matches) != 1:
            raise ValidationError(
                f"Lookup {ref!r} matched {len(matches)} {kind}; expected exactly one"
            )
        return matches[0].key
    raise ValidationError(f"Invalid entity reference: {ref!r}")


def _exec_insert(
    change: Change,
    index: int,
    uow: UnitOfWork,
    bound: Dict[str, int],
) -> ChangeResult:
    """Execute insert operation."""
    entity = uow.add(change.kind, **(change.params.get("attributes") or {}))
    if change.handle:
        bound[change.handle] = entity.key

    return ChangeResult(
        index=index,
        operation=change.operation,
        success=True,
        message=f"Inserted {entity.kind} {entity.key}",
        target=f"{entity.kind} {entity.key}",
        created_key=entity.key,
    )


def _exec_update(
    change: Change,
    index: int,
    uow: UnitOfWork,
    handles: Dict[str, int],
) -> ChangeResult:
    """Execute update operation."""
    key = resolve_reference(uow, change.kind, change.params["entity"], handles)
    uow.update(change.kind, key, **change.params["attributes"])

    return ChangeResult(
        index=index,
        operation=change.operation,
        success=True,
        message=f"Updated {change.kind} {key}",
        target=f"{change.kind} {key}",
    )


def _exec_delete(
    change: Change,
    index: int,
    uow: UnitOfWork,
    handles: Dict[str, int],
) -> ChangeResult:
    """Execute delete operation."""
    key = resolve_reference(uow, change.kind, change.params["entity"], handles)
    uow.delete(change.kind, key, unlink=bool(change.params.get("unlink", False)))

    return ChangeResult(
        index=index,
        operation=change.operation,
        success=True,
        message=f"Deleted {change.kind} {key}",
        target=f"{change.kind} {key}",
    )


def _exec_link(
    change: Change,
    index: int,
    uow: UnitOfWork,
    handles: Dict[str, int],
) -> ChangeResult:
    """Execute link operation."""
    rel = uow.store.graph.relationship(change.relationship)
    parent = resolve_reference(uow, rel.parent_kind, change.params["parent"], handles)
    child = resolve_reference(uow, rel.child_kind, change.params["child"], handles)
    uow.link(rel.name, parent, child, **(change.params.get("attributes") or {}))

    return ChangeResult(
        index=index,
        operation=change.operation,
        success=True,
        message=f"Linked {rel.name}: {parent} -> {child}",
        target=f"{rel.name} {parent}->{child}",
    )


def _exec_unlink(
    change: Change,
    index: int,
    uow: UnitOfWork,
    handles: Dict[str, int],
) -> ChangeResult:
    """Execute unlink operation."""
    rel = uow.store.graph.relationship(change.relationship)
    parent = resolve_reference(uow, rel.parent_kind, change.params["parent"], handles)
    child = resolve_reference(uow, rel.child_kind, change.params["child"], handles)
    uow.unlink(rel.name, parent, child)

    return ChangeResult(
        index=index,
        operation=change.operation,
        success=True,
        message=f"Unlinked {rel.name}: {parent} -> {child}",
        target=f"{rel.name} {parent}->{child}",
    )


def _exec_collection(
    change: Change,
    index: int,
    uow: UnitOfWork,
    handles: Dict[str, int],
) -> ChangeResult:
    """Execute replace or assign operation."""
    rel = uow.store.graph.relationship(change.relationship)
    parent = resolve_reference(uow, rel.parent_kind, change.params["parent"], handles)
    children = [
        resolve_reference(uow, rel.child_kind, ref, handles)
        for ref in change.params["children"]
    ]
    if change.operation == OperationType.REPLACE.value:
        diff = uow.replace_collection(rel.name, parent, children)
        verb = "Replaced"
    else:
        diff = uow.assign_collection(rel.name, parent, children)
        verb = "Assigned"

    return ChangeResult(
        index=index,
        operation=change.operation,
        success=True,
        message=(
            f"{verb} {rel.name} of {parent}: "
            f"+{diff.added} -{diff.removed}"
        ),
        target=f"{rel.name} {parent}",
    )
