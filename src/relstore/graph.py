"""Relationship definitions, back-reference lookups and commit planning."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from relstore.exceptions import (
    ConflictDetail,
    ConflictError,
    EntityNotFoundError,
    SchemaError,
    ValidationError,
)
from relstore.models import (
    AssociationRow,
    ChangeKind,
    DeletePolicy,
    DiffTag,
    Entity,
    Relationship,
)
from relstore.tables import AssociationTable, EntityTable
from relstore.tracker import PendingChangeSet

logger = logging.getLogger(__name__)

# Removal reasons recorded in the edit history
REMOVED = "removed"
DROPPED = "dropped"
CASCADE = "cascade"
ORPHANED = "orphaned"

CONCURRENCY = "concurrency"


@dataclass(frozen=True, slots=True)
class CollectionDiff:
    """Tagged membership change of one parent's association collection."""

    relationship: Relationship
    parent_key: int
    edges: tuple[tuple[int, DiffTag], ...]
    implicit: tuple[int, ...] = ()
    conflicts: tuple[ConflictDetail, ...] = ()

    def _with(self, tag: DiffTag) -> list[int]:
        return [child for child, t in self.edges if t is tag]

    @property
    def added(self) -> list[int]:
        return self._with(DiffTag.ADDED)

    @property
    def removed(self) -> list[int]:
        return self._with(DiffTag.REMOVED)

    @property
    def unchanged(self) -> list[int]:
        return self._with(DiffTag.UNCHANGED)

    @property
    def is_noop(self) -> bool:
        return not self.added and not self.removed and not self.conflicts


@dataclass
class CommitPlan:
    """The exact table mutations a commit will perform."""

    inserts: list[Entity] = field(default_factory=list)
    updates: list[Entity] = field(default_factory=list)
    deletes: list[Entity] = field(default_factory=list)
    upserts: list[AssociationRow] = field(default_factory=list)
    row_updates: list[AssociationRow] = field(default_factory=list)
    removals: list[tuple[AssociationRow, str]] = field(default_factory=list)
    diffs: list[CollectionDiff] = field(default_factory=list)
    # Committed values of updated entities and rows, keyed like the tracker.
    previous: dict[tuple, Entity | AssociationRow] = field(default_factory=dict)

    def __len__(self) -> int:
        return (
            len(self.inserts) + len(self.updates) + len(self.deletes)
            + len(self.upserts) + len(self.row_updates) + len(self.removals)
        )

    @property
    def is_empty(self) -> bool:
        return len(self) == 0


class RelationshipGraph:
    """Owns the association tables and checks integrity across them."""

    def __init__(self, entity_tables: Mapping[str, EntityTable]) -> None:
        self._entity_tables = entity_tables
        self._relationships: dict[str, Relationship] = {}
        self._tables: dict[str, AssociationTable] = {}
        # kind -> [(relationship name, "parent" | "child")]
        self._sides: dict[str, list[tuple[str, str]]] = {}
        self._guarded: set[str] = set()

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def define(self, relationship: Relationship) -> AssociationTable:
        if relationship.name in self._relationships:
            raise SchemaError(
                f"Relationship already defined: {relationship.name!r}"
            )
        for kind in (relationship.parent_kind, relationship.child_kind):
            if kind not in self._entity_tables:
                raise SchemaError(
                    f"Relationship {relationship.name!r} refers to "
                    f"unknown entity kind {kind!r}"
                )

        table = AssociationTable(relationship)
        self._relationships[relationship.name] = relationship
        self._tables[relationship.name] = table
        self._sides.setdefault(relationship.parent_kind, []).append(
            (relationship.name, "parent")
        )
        self._sides.setdefault(relationship.child_kind, []).append(
            (relationship.name, "child")
        )
        for kind in (relationship.parent_kind, relationship.child_kind):
            if kind not in self._guarded:
                self._entity_tables[kind].add_delete_guard(self._restrict_guard)
                self._guarded.add(kind)

        logger.info(
            f"Defined relationship {relationship.name}: "
            f"{relationship.parent_kind} -> {relationship.child_kind} "
            f"(on delete {relationship.on_delete.value})"
        )
        return table

    def relationship(self, name: str | Relationship) -> Relationship:
        if isinstance(name, Relationship):
            name = name.name
        try:
            return self._relationships[name]
        except KeyError:
            raise EntityNotFoundError(
                f"Relationship not found: {name!r}"
            ) from None

    def relationships(self) -> list[Relationship]:
        return list(self._relationships.values())

    def table(self, name: str | Relationship) -> AssociationTable:
        return self._tables[self.relationship(name).name]

    def tables(self) -> list[AssociationTable]:
        return list(self._tables.values())

    # ------------------------------------------------------------------
    # Back-references
    # ------------------------------------------------------------------

    def references(self, kind: str, key: int) -> list[AssociationRow]:
        """Every committed association row that points at an entity."""
        rows: list[AssociationRow] = []
        for name, side in self._sides.get(kind, ()):
            rows.extend(self._rows_for_side(name, side, key))
        return rows

    def _rows_for_side(
        self, name: str, side: str, key: int
    ) -> list[AssociationRow]:
        table = self._tables[name]
        if side == "parent":
            return table.rows_for_parent(key)
        return table.rows_for_child(key)

    def _restrict_guard(self, kind: str, key: int) -> None:
        for name, side in self._sides.get(kind, ()):
            relationship = self._relationships[name]
            if relationship.on_delete is not DeletePolicy.RESTRICT:
                continue
            rows = self._rows_for_side(name, side, key)
            if rows:
                raise ConflictError(
                    f"Cannot delete {kind} {key}: still referenced by "
                    f"{len(rows)} {name} row(s)",
                    policy=DeletePolicy.RESTRICT.value,
                    relationship=name,
                    keys=(key,),
                )

    # ------------------------------------------------------------------
    # Collection diff
    # ------------------------------------------------------------------

    def diff_collection(
        self,
        relationship: str | Relationship,
        parent_key: int,
        after: Iterable[int],
        removed_intent: Iterable[int] = (),
    ) -> CollectionDiff:
        """Compare a parent's committed edges with its in-memory collection.

        A committed edge missing from ``after`` is only tagged REMOVED when
        its removal was explicitly recorded. Otherwise it is an implicit
        drop: a conflict under RESTRICT, a removal under the other
        policies.
        """
        rel = self.relationship(relationship)
        before = {
            row.child_key
            for row in self._tables[rel.name].rows_for_parent(parent_key)
        }
        after = set(after)
        intent = set(removed_intent)

        tags: dict[int, DiffTag] = {}
        implicit: list[int] = []
        conflicts: list[ConflictDetail] = []
        for child in sorted(before - after):
            if child in intent:
                tags[child] = DiffTag.REMOVED
            elif rel.on_delete is DeletePolicy.RESTRICT:
                conflicts.append(ConflictDetail(
                    policy=DeletePolicy.RESTRICT.value,
                    relationship=rel.name,
                    keys=(parent_key, child),
                    message=(
                        f"{rel.name} edge ({parent_key}, {child}) is missing "
                        "from the new collection but was not removed; "
                        "remove it explicitly or use replace"
                    ),
                ))
            else:
                tags[child] = DiffTag.REMOVED
                implicit.append(child)
        for child in after - before:
            tags[child] = DiffTag.ADDED
        for child in before & after:
            tags[child] = DiffTag.UNCHANGED

        return CollectionDiff(
            relationship=rel,
            parent_key=parent_key,
            edges=tuple(sorted(tags.items())),
            implicit=tuple(implicit),
            conflicts=tuple(conflicts),
        )

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, changes: PendingChangeSet) -> CommitPlan:
        """Resolve a change set into table mutations without applying them.

        Raises ConflictError for concurrency and delete-policy violations
        and ValidationError for rows whose ends don't exist.
        """
        self._check_stamps(changes)

        plan = CommitPlan()
        for change in changes.entities.values():
            if change.target.kind not in self._entity_tables:
                raise ValidationError(
                    f"Unknown entity kind: {change.target.kind!r}"
                )
        plan.inserts = [c.target for c in changes.entity_changes(ChangeKind.ADDED)]
        plan.updates = [c.target for c in changes.entity_changes(ChangeKind.MODIFIED)]
        plan.deletes = [c.target for c in changes.entity_changes(ChangeKind.REMOVED)]
        for change in changes.entity_changes(ChangeKind.MODIFIED):
            plan.previous[(change.target.kind, change.target.key)] = change.original

        conflicts: list[ConflictDetail] = []
        removals: dict[tuple[str, int, int], tuple[AssociationRow, str]] = {}
        upserts: dict[tuple[str, int, int], AssociationRow] = {}
        row_updates: dict[tuple[str, int, int], AssociationRow] = {}

        for name, parent_key in sorted(changes.touched_collections()):
            rel = self.relationship(name)
            pending = {
                child: change for (r, p, child), change in changes.rows.items()
                if r == name and p == parent_key
            }
            dropped = {
                child for (r, p, child) in changes.drops
                if r == name and p == parent_key
            }
            intent = {
                child for child, change in pending.items()
                if change.kind is ChangeKind.REMOVED
            }
            after = {
                row.child_key
                for row in self._tables[name].rows_for_parent(parent_key)
            }
            after -= intent | dropped
            after |= {
                child for child, change in pending.items()
                if change.kind is not ChangeKind.REMOVED
            }

            diff = self.diff_collection(rel, parent_key, after, intent)
            plan.diffs.append(diff)
            conflicts.extend(diff.conflicts)
            for child, tag in diff.edges:
                key = (name, parent_key, child)
                if tag is DiffTag.REMOVED:
                    reason = DROPPED if child in diff.implicit else REMOVED
                    row = self._tables[name].get(parent_key, child)
                    removals[key] = (row, reason)
                elif child not in pending:
                    continue
                elif tag is DiffTag.ADDED:
                    upserts[key] = pending[child].target
                else:
                    committed = self._tables[name].get(parent_key, child)
                    if committed.attributes != pending[child].target.attributes:
                        row_updates[key] = pending[child].target
                        plan.previous[key] = committed

        for entity in plan.deletes:
            for name, side in self._sides.get(entity.kind, ()):
                rel = self._relationships[name]
                for row in self._rows_for_side(name, side, entity.key):
                    key = (name, row.parent_key, row.child_key)
                    if key in removals:
                        continue
                    if rel.on_delete is DeletePolicy.RESTRICT:
                        conflicts.append(ConflictDetail(
                            policy=DeletePolicy.RESTRICT.value,
                            relationship=name,
                            keys=(entity.key,),
                            message=(
                                f"Cannot delete {entity.kind} {entity.key}: "
                                f"{name} row ({row.parent_key}, "
                                f"{row.child_key}) still references it"
                            ),
                        ))
                    elif rel.on_delete is DeletePolicy.CASCADE:
                        removals[key] = (row, CASCADE)
                    else:
                        removals[key] = (row, ORPHANED)

        self._check_foreign_keys(
            list(upserts.values()) + list(row_updates.values()), plan
        )

        if conflicts:
            raise ConflictError.from_details(conflicts)

        plan.upserts = [upserts[key] for key in sorted(upserts)]
        plan.row_updates = [row_updates[key] for key in sorted(row_updates)]
        plan.removals = [removals[key] for key in sorted(removals)]
        logger.debug(
            f"Planned commit: {len(plan.inserts)} inserts, "
            f"{len(plan.updates)} updates, {len(plan.deletes)} deletes, "
            f"{len(plan.upserts)} row inserts, {len(plan.row_updates)} "
            f"row updates, {len(plan.removals)} row removals"
        )
        return plan

    def _check_stamps(self, changes: PendingChangeSet) -> None:
        touched: set[tuple] = {("entity", *key) for key in changes.entities}
        touched.update(("row", *key) for key in changes.rows)
        touched.update(("row", *key) for key in changes.drops)
        touched.update(
            ("collection", *key) for key in changes.touched_collections()
        )
        stale: list[ConflictDetail] = []
        for stamp, expected in changes.stamps.items():
            if stamp not in touched:
                continue
            what, name, *keys = stamp
            current = self._current_stamp(what, name, keys)
            if current != expected:
                stale.append(ConflictDetail(
                    policy=CONCURRENCY,
                    relationship=name if what != "entity" else None,
                    keys=tuple(keys),
                    message=(
                        f"{name} {tuple(keys) if len(keys) > 1 else keys[0]} "
                        "changed since this unit of work read it"
                    ),
                ))
        if stale:
            raise ConflictError.from_details(stale)

    def _current_stamp(self, what: str, name: str, keys: list[int]) -> object:
        if what == "entity":
            table = self._entity_tables[name]
            return table.get(keys[0]).version if keys[0] in table else None
        table = self._tables[name]
        if what == "row":
            key = (keys[0], keys[1])
            return table.get(*key).version if key in table else None
        return frozenset(row.child_key for row in table.rows_for_parent(keys[0]))

    def _check_foreign_keys(
        self, rows: Iterable[AssociationRow], plan: CommitPlan
    ) -> None:
        inserted = {(e.kind, e.key) for e in plan.inserts}
        deleted = {(e.kind, e.key) for e in plan.deletes}
        errors: list[str] = []
        for row in rows:
            rel = self._relationships[row.relationship]
            for kind, key in (
                (rel.parent_kind, row.parent_key),
                (rel.child_kind, row.child_key),
            ):
                if (kind, key) in deleted:
                    errors.append(
                        f"{rel.name} row ({row.parent_key}, {row.child_key}) "
                        f"references {kind} {key}, which is being deleted"
                    )
                elif (kind, key) not in inserted and key not in self._entity_tables[kind]:
                    errors.append(
                        f"{rel.name} row ({row.parent_key}, {row.child_key}) "
                        f"references missing {kind} {key}"
                    )
        if errors:
            raise ValidationError("; ".join(errors))

    def apply_rows(self, plan: CommitPlan) -> None:
        """Apply the association part of a plan, removals first."""
        for row, _reason in plan.removals:
            self._tables[row.relationship].remove(row.parent_key, row.child_key)
        for row in plan.upserts + plan.row_updates:
            self._tables[row.relationship].upsert(row)
