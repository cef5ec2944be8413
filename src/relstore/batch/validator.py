"""
Validation for batch change requests.

Checks the declared store schema and every change statically: required
fields and types, known kinds and relationships, and entity references
that point at handles bound by an earlier insert.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Set, Tuple

from ..models import DeletePolicy
from .schema import (
    COLLECTION_OPERATIONS,
    HANDLE_PREFIX,
    OPTIONAL_FIELDS,
    REQUIRED_FIELDS,
    VALID_POLICIES,
    Change,
    ChangeRequest,
    OperationType,
    ValidationError,
    ValidationResult,
    ValidationWarning,
)

logger = logging.getLogger(__name__)


def validate_change_request(
    request: ChangeRequest,
    check_references: bool = True,
) -> ValidationResult:
    """Validate a change request.

    Args:
        request: The change request to validate
        check_references: If True, verify kinds, relationships and
            handles against the declared schema

    Returns:
        ValidationResult with errors and warnings
    """
    errors: List[ValidationError] = []
    warnings: List[ValidationWarning] = []

    kinds, relationships = _schema_names(request.schema, errors)
    handles: Set[str] = set()

    for u, unit in enumerate(request.units):
        for i, change in enumerate(unit.changes):
            change_errors, change_warnings = _validate_change(
                change,
                index=i,
                unit=u,
                kinds=kinds,
                relationships=relationships,
                handles=handles,
                check_references=check_references,
            )
            errors.extend(change_errors)
            warnings.extend(change_warnings)

    logger.debug(
        f"Validated {request.change_count} change(s): "
        f"{len(errors)} error(s), {len(warnings)} warning(s)"
    )
    return ValidationResult(
        is_valid=len(errors) == 0,
        errors=errors,
        warnings=warnings,
    )


def _schema_names(
    schema: Dict[str, Any],
    errors: List[ValidationError],
) -> Tuple[Set[str], Dict[str, Dict[str, Any]]]:
    """Collect entity kinds and relationships, reporting schema problems."""

    def schema_error(field: str, message: str) -> None:
        errors.append(ValidationError(index=-1, operation="", field=field, message=message))

    kinds: Set[str] = set()
    for kind in schema.get("entities") or []:
        if not isinstance(kind, str) or not kind:
            schema_error("store.entities", f"Invalid entity kind: {kind!r}")
        elif kind in kinds:
            schema_error("store.entities", f"Duplicate entity kind '{kind}'")
        else:
            kinds.add(kind)

    relationships: Dict[str, Dict[str, Any]] = {}
    for spec in schema.get("relationships") or []:
        if not isinstance(spec, dict):
            schema_error("store.relationships", "Each relationship must be a mapping")
            continue
        name = spec.get("name")
        if not name:
            schema_error("store.relationships", "Relationship missing field 'name'")
            continue
        if name in relationships:
            schema_error("store.relationships", f"Duplicate relationship '{name}'")
            continue
        for side in ("parent", "child"):
            if spec.get(side) not in kinds:
                schema_error(
                    "store.relationships",
                    f"Relationship '{name}': unknown {side} kind {spec.get(side)!r}",
                )
        try:
            policy = DeletePolicy.parse(spec.get("on_delete", DeletePolicy.RESTRICT))
        except ValueError:
            policy = None
            schema_error(
                "store.relationships",
                f"Relationship '{name}': invalid on_delete {spec.get('on_delete')!r}. "
                f"Valid: {', '.join(sorted(VALID_POLICIES))}",
            )
        relationships[name] = {**spec, "on_delete": policy}

    return kinds, relationships


def _validate_change(
    change: Change,
    index: int,
    unit: int,
    kinds: Set[str],
    relationships: Dict[str, Dict[str, Any]],
    handles: Set[str],
    check_references: bool,
) -> Tuple[List[ValidationError], List[ValidationWarning]]:
    """Validate a single change operation.

    Returns:
        Tuple of (errors, warnings)
    """
    errors: List[ValidationError] = []
    warnings: List[ValidationWarning] = []
    op = change.operation

    def error(field: str, message: str) -> None:
        errors.append(
            ValidationError(
                index=index,
                operation=op,
                field=field,
                message=message,
                unit=unit,
                line_number=change.line_number,
            )
        )

    def warning(message: str) -> None:
        warnings.append(
            ValidationWarning(
                index=index,
                operation=op,
                message=message,
                unit=unit,
                line_number=change.line_number,
            )
        )

    # Validate operation type
    valid_operations = {o.value for o in OperationType}
    if op not in valid_operations:
        error(
            "operation",
            f"Unknown operation '{op}'. Valid: {', '.join(sorted(valid_operations))}",
        )
        return errors, warnings

    # Validate required fields
    for field in REQUIRED_FIELDS[op]:
        if field not in change.params or change.params[field] is None:
            error(field, f"Missing required field '{field}'")

    known = set(REQUIRED_FIELDS[op]) | set(OPTIONAL_FIELDS[op])
    for field in sorted(set(change.params) - known):
        warning(f"Unknown field '{field}' is ignored")

    attributes = change.params.get("attributes")
    if attributes is not None and not isinstance(attributes, dict):
        error("attributes", "Field 'attributes' must be a mapping")

    if change.kind is not None:
        if check_references and change.kind not in kinds:
            error("kind", f"Unknown entity kind '{change.kind}'")

    rel = None
    if change.relationship is not None:
        rel = relationships.get(change.relationship)
        if check_references and rel is None:
            error("relationship", f"Unknown relationship '{change.relationship}'")

    if op == OperationType.INSERT.value:
        handle = change.handle
        if handle is not None:
            if not isinstance(handle, str) or not handle or handle.startswith(HANDLE_PREFIX):
                error("as", f"Invalid handle {handle!r}")
            elif handle in handles:
                error("as", f"Handle '{handle}' is already bound")
            else:
                handles.add(handle)

    elif op in (OperationType.UPDATE.value, OperationType.DELETE.value):
        _check_reference(change.params.get("entity"), "entity", handles, check_references, error)
        if op == OperationType.DELETE.value:
            if not isinstance(change.params.get("unlink", False), bool):
                error("unlink", "Field 'unlink' must be true or false")

    else:
        _check_reference(change.params.get("parent"), "parent", handles, check_references, error)
        if op in COLLECTION_OPERATIONS:
            children = change.params.get("children")
            if children is not None and not isinstance(children, list):
                error("children", "Field 'children' must be a list")
            else:
                for child in children or []:
                    _check_reference(child, "children", handles, check_references, error)
            if (
                op == OperationType.ASSIGN.value
                and rel is not None
                and rel["on_delete"] is DeletePolicy.RESTRICT
            ):
                warning(
                    f"Relationship '{change.relationship}' is restrict: edges left "
                    f"out by assign are rejected at commit. Use 'replace' to remove them"
                )
        else:
            _check_reference(change.params.get("child"), "child", handles, check_references, error)

    return errors, warnings


def _check_reference(
    ref: Any,
    field: str,
    handles: Set[str],
    check_references: bool,
    error: Any,
) -> None:
    """An entity reference is a key, an ``@handle`` or an attribute mapping."""
    if ref is None:
        return
    if isinstance(ref, bool):
        error(field, f"Invalid entity reference {ref!r}")
    elif isinstance(ref, int):
        if ref < 1:
            error(field, f"Entity key must be positive, got {ref}")
    elif isinstance(ref, str):
        if not ref.startswith(HANDLE_PREFIX):
            error(field, f"Entity reference '{ref}' must be a key, '@handle' or mapping")
        elif check_references and ref[len(HANDLE_PREFIX):] not in handles:
            error(field, f"Unknown handle '{ref}'")
    elif isinstance(ref, dict):
        if not ref:
            error(field, "Entity lookup mapping cannot be empty")
    else:
        error(field, f"Invalid entity reference {ref!r}")
