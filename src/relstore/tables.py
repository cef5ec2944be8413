"""Keyed in-memory containers for entities and association rows."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from typing import Any

from relstore.exceptions import EntityNotFoundError, ValidationError
from relstore.models import AssociationRow, Entity, Relationship

logger = logging.getLogger(__name__)

# A delete guard raises ConflictError when the key may not be deleted.
DeleteGuard = Callable[[str, int], None]


class EntityTable:
    """All committed entities of one kind, keyed by a monotonic integer."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._rows: dict[int, Entity] = {}
        self._next_key = 1
        self._guards: list[DeleteGuard] = []

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, key: object) -> bool:
        return key in self._rows

    def __repr__(self) -> str:
        return f"EntityTable({self.kind!r}, rows={len(self._rows)})"

    def add_delete_guard(self, guard: DeleteGuard) -> None:
        self._guards.append(guard)

    def reserve_key(self) -> int:
        """Hand out the next key without storing anything.

        Reserved keys that are never inserted leave a gap; they are not
        handed out again.
        """
        key = self._next_key
        self._next_key += 1
        return key

    def insert(self, entity: Entity) -> int:
        if entity.kind != self.kind:
            raise ValidationError(
                f"Cannot insert {entity.kind!r} entity into {self.kind!r} table"
            )
        key = entity.key
        if key is None:
            key = self.reserve_key()
        elif key in self._rows:
            raise ValidationError(f"{self.kind} key already in use: {key}")
        elif key >= self._next_key:
            raise ValidationError(
                f"{self.kind} key {key} was not assigned by this table"
            )
        self._rows[key] = dataclasses.replace(
            entity, key=key, attributes=dict(entity.attributes), version=1
        )
        return key

    def get(self, key: int) -> Entity:
        try:
            return self._rows[key]
        except KeyError:
            raise EntityNotFoundError(
                f"{self.kind} not found: {key!r}"
            ) from None

    def all(self) -> list[Entity]:
        return [self._rows[key] for key in sorted(self._rows)]

    def find(self, **attributes: Any) -> list[Entity]:
        """Entities whose attributes match every given value."""
        return [
            entity for entity in self.all()
            if all(
                entity.attributes.get(name) == value
                for name, value in attributes.items()
            )
        ]

    def update(self, entity: Entity) -> Entity:
        current = self.get(entity.key)
        stored = dataclasses.replace(
            current,
            attributes=dict(entity.attributes),
            version=current.version + 1,
        )
        self._rows[entity.key] = stored
        return stored

    def delete(self, key: int) -> Entity:
        if key not in self._rows:
            raise EntityNotFoundError(f"{self.kind} not found: {key!r}")
        for guard in self._guards:
            guard(self.kind, key)
        return self._rows.pop(key)

    def snapshot(self) -> dict[int, Entity]:
        return dict(self._rows)

    def restore(self, snapshot: dict[int, Entity]) -> None:
        self._rows = dict(snapshot)


class AssociationTable:
    """Link rows of one relationship, unique by (parent key, child key)."""

    def __init__(self, relationship: Relationship) -> None:
        self.relationship = relationship
        self._rows: dict[tuple[int, int], AssociationRow] = {}
        self._by_parent: dict[int, set[int]] = {}
        self._by_child: dict[int, set[int]] = {}

    @property
    def name(self) -> str:
        return self.relationship.name

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, key: object) -> bool:
        return key in self._rows

    def __repr__(self) -> str:
        return f"AssociationTable({self.name!r}, rows={len(self._rows)})"

    def upsert(self, row: AssociationRow) -> AssociationRow:
        """Insert a row, or update the attributes of an existing one.

        Re-inserting a key with identical attributes leaves the stored row
        (and its version) untouched.
        """
        if row.relationship != self.name:
            raise ValidationError(
                f"Row for {row.relationship!r} does not belong in {self.name!r}"
            )
        existing = self._rows.get(row.key)
        if existing is not None:
            if existing.attributes == row.attributes:
                return existing
            stored = dataclasses.replace(
                existing,
                attributes=dict(row.attributes),
                version=existing.version + 1,
            )
        else:
            stored = dataclasses.replace(
                row, attributes=dict(row.attributes), version=1
            )
            self._by_parent.setdefault(row.parent_key, set()).add(row.child_key)
            self._by_child.setdefault(row.child_key, set()).add(row.parent_key)
        self._rows[row.key] = stored
        return stored

    def remove(self, parent_key: int, child_key: int) -> AssociationRow:
        try:
            row = self._rows.pop((parent_key, child_key))
        except KeyError:
            raise EntityNotFoundError(
                f"{self.name} row not found: ({parent_key}, {child_key})"
            ) from None
        _discard(self._by_parent, parent_key, child_key)
        _discard(self._by_child, child_key, parent_key)
        return row

    def get(self, parent_key: int, child_key: int) -> AssociationRow:
        try:
            return self._rows[(parent_key, child_key)]
        except KeyError:
            raise EntityNotFoundError(
                f"{self.name} row not found: ({parent_key}, {child_key})"
            ) from None

    def rows_for_parent(self, parent_key: int) -> list[AssociationRow]:
        children = self._by_parent.get(parent_key, ())
        return [self._rows[(parent_key, c)] for c in sorted(children)]

    def rows_for_child(self, child_key: int) -> list[AssociationRow]:
        parents = self._by_child.get(child_key, ())
        return [self._rows[(p, child_key)] for p in sorted(parents)]

    def all(self) -> list[AssociationRow]:
        return [self._rows[key] for key in sorted(self._rows)]

    def snapshot(self) -> dict[tuple[int, int], AssociationRow]:
        return dict(self._rows)

    def restore(self, snapshot: dict[tuple[int, int], AssociationRow]) -> None:
        self._rows = dict(snapshot)
        self._by_parent = {}
        self._by_child = {}
        for parent_key, child_key in self._rows:
            self._by_parent.setdefault(parent_key, set()).add(child_key)
            self._by_child.setdefault(child_key, set()).add(parent_key)


def _discard(index: dict[int, set[int]], key: int, value: int) -> None:
    values = index.get(key)
    if values is None:
        return
    values.discard(value)
    if not values:
        del index[key]
