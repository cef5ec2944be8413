"""Integrity checks over the committed state of a store."""

from __future__ import annotations

from typing import TYPE_CHECKING

from relstore.models import Relationship, ValidationResult, ValidationSeverity

if TYPE_CHECKING:
    from relstore.store import Store


def validate_store(store: Store) -> list[ValidationResult]:
    """Run all validation rules."""
    results: list[ValidationResult] = []
    for relationship in store.relationships():
        results.extend(validate_relationship(store, relationship.name))
    results.extend(_val_ent_001(store))
    return results


def validate_relationship(store: Store, name: str) -> list[ValidationResult]:
    """Validate one relationship's association table."""
    relationship = store.graph.relationship(name)
    results: list[ValidationResult] = []
    results.extend(_val_asc_001(store, relationship))
    results.extend(_val_asc_002(store, relationship))
    results.extend(_val_asc_003(store, relationship))
    return results


def _val_asc_001(store: Store, rel: Relationship) -> list[ValidationResult]:
    """Rows whose parent entity is missing."""
    parents = store.entity_table(rel.parent_kind)
    return [
        ValidationResult(
            rule_id="VAL-ASC-001",
            severity=ValidationSeverity.ERROR.value,
            entity_type=rel.name,
            entity_id=f"{row.parent_key}->{row.child_key}",
            message=f"Row references missing {rel.parent_kind} {row.parent_key}",
            details={"kind": rel.parent_kind, "key": row.parent_key},
        )
        for row in store.association_table(rel.name).all()
        if row.parent_key not in parents
    ]


def _val_asc_002(store: Store, rel: Relationship) -> list[ValidationResult]:
    """Rows whose child entity is missing."""
    children = store.entity_table(rel.child_kind)
    return [
        ValidationResult(
            rule_id="VAL-ASC-002",
            severity=ValidationSeverity.ERROR.value,
            entity_type=rel.name,
            entity_id=f"{row.parent_key}->{row.child_key}",
            message=f"Row references missing {rel.child_kind} {row.child_key}",
            details={"kind": rel.child_kind, "key": row.child_key},
        )
        for row in store.association_table(rel.name).all()
        if row.child_key not in children
    ]


def _val_asc_003(store: Store, rel: Relationship) -> list[ValidationResult]:
    """Back-reference indices that disagree with the rows."""
    results: list[ValidationResult] = []
    table = store.association_table(rel.name)
    for row in table.all():
        by_parent = {r.child_key for r in table.rows_for_parent(row.parent_key)}
        by_child = {r.parent_key for r in table.rows_for_child(row.child_key)}
        if row.child_key not in by_parent or row.parent_key not in by_child:
            results.append(ValidationResult(
                rule_id="VAL-ASC-003",
                severity=ValidationSeverity.ERROR.value,
                entity_type=rel.name,
                entity_id=f"{row.parent_key}->{row.child_key}",
                message="Row is missing from the back-reference index",
                details=None,
            ))
    return results


def _val_ent_001(store: Store) -> list[ValidationResult]:
    """Entities that take part in relationships but have no edges."""
    results: list[ValidationResult] = []
    related_kinds = {
        kind
        for rel in store.relationships()
        for kind in (rel.parent_kind, rel.child_kind)
    }
    for kind in store.kinds():
        if kind not in related_kinds:
            continue
        for entity in store.all(kind):
            if not store.references(kind, entity.key):
                results.append(ValidationResult(
                    rule_id="VAL-ENT-001",
                    severity=ValidationSeverity.WARNING.value,
                    entity_type=kind,
                    entity_id=str(entity.key),
                    message=f"{kind} {entity.key} has no association rows",
                    details=None,
                ))
    return results
