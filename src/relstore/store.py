"""Store: main entry point for the relstore library."""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from relstore import history as _hist
from relstore.exceptions import (
    EntityNotFoundError,
    SchemaError,
    StateError,
    ValidationError,
)
from relstore.graph import CollectionDiff, CommitPlan, RelationshipGraph
from relstore.models import (
    AssociationRow,
    ChangeKind,
    CommitRecord,
    DeletePolicy,
    EditRecord,
    Entity,
    Relationship,
    TrackerState,
    ValidationResult,
)
from relstore.tables import AssociationTable, EntityTable
from relstore.tracker import ChangeTracker, PendingChangeSet

logger = logging.getLogger(__name__)


class Store:
    """An in-memory relational store of entities and many-to-many links."""

    def __init__(self, name: str = "store") -> None:
        self.name = name
        self._entity_tables: dict[str, EntityTable] = {}
        self._graph = RelationshipGraph(self._entity_tables)
        self._log = _hist.CommitLog()
        self._commit_lock = threading.Lock()
        self._key_lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"Store({self.name!r}, kinds={sorted(self._entity_tables)}, "
            f"relationships={[r.name for r in self._graph.relationships()]})"
        )

    @classmethod
    def from_schema(cls, schema: Mapping[str, Any], name: str = "store") -> Store:
        """Build a store from ``{"entities": [...], "relationships": [...]}``."""
        store = cls(name)
        entities = schema.get("entities") or []
        if not isinstance(entities, list):
            raise SchemaError("'entities' must be a list of kind names")
        for kind in entities:
            store.define_entity(kind)
        for spec in schema.get("relationships") or []:
            if not isinstance(spec, Mapping):
                raise SchemaError("Each relationship must be a mapping")
            missing = [f for f in ("name", "parent", "child") if not spec.get(f)]
            if missing:
                raise SchemaError(
                    f"Relationship missing field(s): {', '.join(missing)}"
                )
            store.define_relationship(
                spec["name"],
                spec["parent"],
                spec["child"],
                on_delete=spec.get("on_delete", DeletePolicy.RESTRICT),
            )
        return store

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def define_entity(self, kind: str) -> EntityTable:
        if not isinstance(kind, str) or not kind:
            raise SchemaError(f"Invalid entity kind: {kind!r}")
        if kind in self._entity_tables:
            raise SchemaError(f"Entity kind already defined: {kind!r}")
        table = EntityTable(kind)
        self._entity_tables[kind] = table
        logger.info(f"Defined entity kind {kind}")
        return table

    def define_relationship(
        self,
        name: str,
        parent_kind: str,
        child_kind: str,
        *,
        on_delete: DeletePolicy | str = DeletePolicy.RESTRICT,
    ) -> Relationship:
        try:
            policy = DeletePolicy.parse(on_delete)
        except ValueError:
            raise SchemaError(f"Invalid delete policy: {on_delete!r}") from None
        relationship = Relationship(name, parent_kind, child_kind, policy)
        self._graph.define(relationship)
        return relationship

    @property
    def graph(self) -> RelationshipGraph:
        return self._graph

    def kinds(self) -> list[str]:
        return list(self._entity_tables)

    def relationships(self) -> list[Relationship]:
        return self._graph.relationships()

    def entity_table(self, kind: str) -> EntityTable:
        try:
            return self._entity_tables[kind]
        except KeyError:
            raise EntityNotFoundError(f"Entity kind not found: {kind!r}") from None

    def association_table(self, relationship: str) -> AssociationTable:
        return self._graph.table(relationship)

    # ------------------------------------------------------------------
    # Committed reads
    # ------------------------------------------------------------------

    def get(self, kind: str, key: int) -> Entity:
        return self.entity_table(kind).get(key)

    def all(self, kind: str) -> list[Entity]:
        return self.entity_table(kind).all()

    def find(self, kind: str, **attributes: Any) -> list[Entity]:
        return self.entity_table(kind).find(**attributes)

    def rows_for_parent(self, relationship: str, key: int) -> list[AssociationRow]:
        return self._graph.table(relationship).rows_for_parent(key)

    def rows_for_child(self, relationship: str, key: int) -> list[AssociationRow]:
        return self._graph.table(relationship).rows_for_child(key)

    def references(self, kind: str, key: int) -> list[AssociationRow]:
        self.entity_table(kind)
        return self._graph.references(kind, key)

    # ------------------------------------------------------------------
    # Units of work
    # ------------------------------------------------------------------

    def create_unit_of_work(self, name: str | None = None) -> UnitOfWork:
        return UnitOfWork(self, name)

    def _reserve_key(self, kind: str) -> int:
        with self._key_lock:
            return self.entity_table(kind).reserve_key()

    def _commit(self, name: str | None, changes: PendingChangeSet) -> CommitRecord:
        with self._commit_lock:
            plan = self._graph.plan(changes)
            snapshot = self._snapshot()
            mark = self._log.mark()
            try:
                self._apply(plan)
                commit = self._log.start_commit(name, len(plan))
                _hist.record_plan(self._log, commit, plan)
            except BaseException:
                self._restore(snapshot)
                self._log.rewind(mark)
                raise
        logger.info(
            f"Committed {name or 'unit of work'} as commit {commit.id}: "
            f"{len(plan)} change(s)"
        )
        return commit

    def _apply(self, plan: CommitPlan) -> None:
        for entity in plan.inserts:
            self._entity_tables[entity.kind].insert(entity)
        for entity in plan.updates:
            self._entity_tables[entity.kind].update(entity)
        self._graph.apply_rows(plan)
        for entity in plan.deletes:
            self._entity_tables[entity.kind].delete(entity.key)

    def _snapshot(self) -> tuple[dict, dict]:
        return (
            {kind: t.snapshot() for kind, t in self._entity_tables.items()},
            {t.name: t.snapshot() for t in self._graph.tables()},
        )

    def _restore(self, snapshot: tuple[dict, dict]) -> None:
        entities, rows = snapshot
        for kind, saved in entities.items():
            self._entity_tables[kind].restore(saved)
        for name, saved in rows.items():
            self._graph.table(name).restore(saved)

    # ------------------------------------------------------------------
    # History and validation
    # ------------------------------------------------------------------

    def history(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | int | None = None,
        since: str | None = None,
        operation: str | None = None,
        commit_id: int | None = None,
    ) -> list[EditRecord]:
        return _hist.query_history(
            self._log,
            entity_type=entity_type,
            entity_id=None if entity_id is None else str(entity_id),
            since=since,
            operation=operation,
            commit_id=commit_id,
        )

    def commits(self) -> list[CommitRecord]:
        return list(self._log.commits)

    def validate(self) -> list[ValidationResult]:
        from relstore.validator import validate_store
        return validate_store(self)


class UnitOfWork:
    """A bounded set of reads and writes committed atomically.

    Committed tables are never touched before ``commit``. Leaving a
    ``with`` block without committing discards the pending changes.
    """

    def __init__(self, store: Store, name: str | None = None) -> None:
        self._store = store
        self._graph = store.graph
        self.name = name
        self._tracker = ChangeTracker()
        self._tracker.begin()
        self._closed = False

    def __enter__(self) -> UnitOfWork:
        return self

    def __exit__(self, *exc: Any) -> None:
        if not self._closed:
            self.rollback()

    def __repr__(self) -> str:
        return f"UnitOfWork({self.name!r}, state={self.state.value})"

    @property
    def store(self) -> Store:
        return self._store

    @property
    def state(self) -> TrackerState:
        return self._tracker.state

    # ------------------------------------------------------------------
    # Commit / rollback
    # ------------------------------------------------------------------

    def diff(self) -> PendingChangeSet:
        return self._tracker.diff()

    def commit(self) -> CommitRecord:
        self._require_open()
        changes = self._tracker.start_commit()
        try:
            commit = self._store._commit(self.name, changes)
        except Exception as e:
            self._tracker.commit_failed()
            logger.warning(f"Commit of {self.name or 'unit of work'} rejected: {e}")
            raise
        self._tracker.commit_succeeded()
        self._closed = True
        return commit

    def rollback(self) -> None:
        """Discard every pending change."""
        self._tracker.clear()
        self._closed = True

    def _require_open(self) -> None:
        if self._closed:
            raise StateError("Unit of work is already closed")

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def add(self, kind: str, **attributes: Any) -> Entity:
        self._require_open()
        key = self._store._reserve_key(kind)
        entity = Entity(kind=kind, key=key, attributes=dict(attributes))
        self._tracker.track(entity, ChangeKind.ADDED)
        return entity

    def get(self, kind: str, key: int) -> Entity:
        self._require_open()
        change = self._tracker.pending.entities.get((kind, key))
        if change is not None:
            if change.kind is ChangeKind.REMOVED:
                raise EntityNotFoundError(f"{kind} {key} was deleted")
            return change.target
        entity = self._store.get(kind, key)
        self._tracker.stamp(("entity", kind, key), entity.version)
        return entity

    def all(self, kind: str) -> list[Entity]:
        self._require_open()
        keys = {e.key for e in self._store.all(kind)}
        keys.update(k for (k_kind, k) in self._tracker.pending.entities if k_kind == kind)
        result = []
        for key in sorted(keys):
            try:
                result.append(self.get(kind, key))
            except EntityNotFoundError:
                continue
        return result

    def find(self, kind: str, **attributes: Any) -> list[Entity]:
        return [
            entity for entity in self.all(kind)
            if all(entity.attributes.get(n) == v for n, v in attributes.items())
        ]

    def update(self, kind: str, key: int, **attributes: Any) -> Entity:
        current = self.get(kind, key)
        updated = dataclasses.replace(
            current, attributes={**current.attributes, **attributes}
        )
        if updated == current:
            return current
        self._tracker.track(
            updated, ChangeKind.MODIFIED, self._committed_entity(kind, key)
        )
        return updated

    def delete(self, kind: str, key: int, *, unlink: bool = False) -> None:
        """Delete an entity.

        With ``unlink=True`` every association row that references the
        entity is removed explicitly, which satisfies RESTRICT policies.
        Rows linking an entity added in this unit of work always go with it.
        """
        current = self.get(kind, key)
        committed = self._committed_entity(kind, key)
        if unlink or committed is None:
            for row in self._rows_referencing(kind, key):
                self.unlink(row.relationship, row.parent_key, row.child_key)
        self._tracker.track(current, ChangeKind.REMOVED, committed)

    def _committed_entity(self, kind: str, key: int) -> Entity | None:
        table = self._store.entity_table(kind)
        return table.get(key) if key in table else None

    def _rows_referencing(self, kind: str, key: int) -> list[AssociationRow]:
        rows: list[AssociationRow] = []
        for rel in self._graph.relationships():
            if rel.parent_kind == kind:
                rows.extend(self._view(rel, key).values())
            if rel.child_kind == kind:
                parents = {
                    row.parent_key
                    for row in self._graph.table(rel).rows_for_child(key)
                }
                parents.update(
                    p for (r, p, c) in self._tracker.pending.rows
                    if r == rel.name and c == key
                )
                for parent in sorted(parents):
                    row = self._view(rel, parent).get(key)
                    if row is not None and row not in rows:
                        rows.append(row)
        return rows

    # ------------------------------------------------------------------
    # Association collections
    # ------------------------------------------------------------------

    def collection(self, relationship: str, parent_key: int) -> AssociationCollection:
        rel = self._graph.relationship(relationship)
        self._require_endpoint(rel.parent_kind, parent_key)
        self._stamp_collection(rel, parent_key)
        return AssociationCollection(self, rel, parent_key)

    def link(
        self,
        relationship: str,
        parent_key: int,
        child_key: int,
        **attributes: Any,
    ) -> AssociationRow:
        """Add an edge, or update the attributes of an existing one."""
        self._require_open()
        rel = self._graph.relationship(relationship)
        self._require_endpoint(rel.parent_kind, parent_key)
        self._require_endpoint(rel.child_kind, child_key)
        self._stamp_collection(rel, parent_key)

        key = (rel.name, parent_key, child_key)
        committed = self._committed_row(rel, parent_key, child_key)
        current = self._view(rel, parent_key).get(child_key)
        if current is not None and (not attributes or current.attributes == attributes):
            return current

        if current is None and not attributes:
            attributes = dict(committed.attributes) if committed else {}
        row = AssociationRow(rel.name, parent_key, child_key, dict(attributes))
        if committed is not None:
            self._tracker.stamp(
                ("row", rel.name, parent_key, child_key), committed.version
            )

        if self._tracker.undrop(row) is not None:
            if row == committed:
                return committed
            self._tracker.track(row, ChangeKind.MODIFIED, committed)
            return row

        change = self._tracker.pending.rows.get(key)
        if change is None:
            kind = ChangeKind.ADDED if committed is None else ChangeKind.MODIFIED
            self._tracker.track(row, kind, committed)
        elif change.kind is ChangeKind.REMOVED:
            self._tracker.track(row, ChangeKind.ADDED)
        else:
            self._tracker.track(row, ChangeKind.MODIFIED, committed)
        return row

    def unlink(self, relationship: str, parent_key: int, child_key: int) -> AssociationRow:
        """Remove an edge and record the removal as intentional."""
        self._require_open()
        rel = self._graph.relationship(relationship)
        self._stamp_collection(rel, parent_key)
        committed = self._committed_row(rel, parent_key, child_key)

        row = AssociationRow(rel.name, parent_key, child_key)
        dropped = self._tracker.undrop(row)
        if dropped is not None:
            self._tracker.track(dropped, ChangeKind.REMOVED, dropped)
            return dropped

        current = self._view(rel, parent_key).get(child_key)
        if current is None:
            raise EntityNotFoundError(
                f"{rel.name} row not found: ({parent_key}, {child_key})"
            )
        if committed is not None:
            self._tracker.stamp(
                ("row", rel.name, parent_key, child_key), committed.version
            )
        self._tracker.track(current, ChangeKind.REMOVED, committed)
        return current

    def replace_collection(
        self,
        relationship: str,
        parent_key: int,
        child_keys: Iterable[int],
    ) -> CollectionDiff:
        """Make the collection hold exactly ``child_keys``.

        Every edge left out is removed explicitly, so this commits under
        RESTRICT as well.
        """
        self._require_open()
        rel = self._graph.relationship(relationship)
        self._require_endpoint(rel.parent_kind, parent_key)
        wanted = list(dict.fromkeys(child_keys))
        current = self._view(rel, parent_key)
        for child in current:
            if child not in wanted:
                self.unlink(rel.name, parent_key, child)
        for child in wanted:
            if child not in current:
                self.link(rel.name, parent_key, child)
        return self.preview(rel.name, parent_key)

    def assign_collection(
        self,
        relationship: str,
        parent_key: int,
        child_keys: Iterable[int],
    ) -> CollectionDiff:
        """Overwrite the collection without recording removal intent.

        Edges left out are dropped: committing fails under RESTRICT and
        removes them under CASCADE or SET_NULL.
        """
        self._require_open()
        rel = self._graph.relationship(relationship)
        self._require_endpoint(rel.parent_kind, parent_key)
        self._stamp_collection(rel, parent_key)
        wanted = list(dict.fromkeys(child_keys))
        current = self._view(rel, parent_key)
        for child, row in current.items():
            if child not in wanted:
                self._tracker.track_drop(row)
        for child in wanted:
            if child not in current:
                self.link(rel.name, parent_key, child)
        return self.preview(rel.name, parent_key)

    def preview(self, relationship: str, parent_key: int) -> CollectionDiff:
        """The tagged diff this collection would commit right now."""
        rel = self._graph.relationship(relationship)
        intent = {
            child for (r, p, child), change in self._tracker.pending.rows.items()
            if r == rel.name and p == parent_key
            and change.kind is ChangeKind.REMOVED
        }
        return self._graph.diff_collection(
            rel, parent_key, self._view(rel, parent_key), intent
        )

    def _view(self, rel: Relationship, parent_key: int) -> dict[int, AssociationRow]:
        """In-memory collection: committed rows with pending changes applied."""
        rows = {
            row.child_key: row
            for row in self._graph.table(rel).rows_for_parent(parent_key)
        }
        pending = self._tracker.pending
        for (r, p, child) in pending.drops:
            if r == rel.name and p == parent_key:
                rows.pop(child, None)
        for (r, p, child), change in pending.rows.items():
            if r != rel.name or p != parent_key:
                continue
            if change.kind is ChangeKind.REMOVED:
                rows.pop(child, None)
            else:
                rows[child] = change.target
        return dict(sorted(rows.items()))

    def _committed_row(
        self, rel: Relationship, parent_key: int, child_key: int
    ) -> AssociationRow | None:
        table = self._graph.table(rel)
        if (parent_key, child_key) in table:
            return table.get(parent_key, child_key)
        return None

    def _stamp_collection(self, rel: Relationship, parent_key: int) -> None:
        children = frozenset(
            row.child_key
            for row in self._graph.table(rel).rows_for_parent(parent_key)
        )
        self._tracker.stamp(("collection", rel.name, parent_key), children)

    def _require_endpoint(self, kind: str, key: int) -> None:
        try:
            self.get(kind, key)
        except EntityNotFoundError:
            raise ValidationError(f"Foreign key not found: {kind} {key}") from None


class AssociationCollection:
    """A tracked, live view of one parent's edges in a unit of work."""

    def __init__(self, uow: UnitOfWork, relationship: Relationship, parent_key: int) -> None:
        self._uow = uow
        self.relationship = relationship
        self.parent_key = parent_key

    def __repr__(self) -> str:
        return (
            f"AssociationCollection({self.relationship.name!r}, "
            f"parent={self.parent_key}, children={self.keys()})"
        )

    def __iter__(self) -> Iterator[int]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self.keys())

    def __contains__(self, child_key: object) -> bool:
        return child_key in self.keys()

    def keys(self) -> list[int]:
        return list(self._uow._view(self.relationship, self.parent_key))

    def rows(self) -> list[AssociationRow]:
        return list(self._uow._view(self.relationship, self.parent_key).values())

    def add(self, child_key: int, **attributes: Any) -> AssociationRow:
        return self._uow.link(
            self.relationship.name, self.parent_key, child_key, **attributes
        )

    def remove(self, child_key: int) -> AssociationRow:
        return self._uow.unlink(self.relationship.name, self.parent_key, child_key)

    def clear(self) -> None:
        for child_key in self.keys():
            self.remove(child_key)

    def replace(self, child_keys: Iterable[int]) -> CollectionDiff:
        return self._uow.replace_collection(
            self.relationship.name, self.parent_key, child_keys
        )

    def assign(self, child_keys: Iterable[int]) -> CollectionDiff:
        return self._uow.assign_collection(
            self.relationship.name, self.parent_key, child_keys
        )

    def diff(self) -> CollectionDiff:
        return self._uow.preview(self.relationship.name, self.parent_key)
