"""
Unit-of-work change tracking for relstore.

A ChangeTracker collects every pending mutation of one unit of work into a
PendingChangeSet. Removals recorded through ``track(row, REMOVED)`` are
explicit removal intent; rows that vanish from a reassigned collection are
recorded separately as drops so that commit planning can tell the two
apart.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set, Tuple, Union

from relstore.exceptions import StateError
from relstore.models import AssociationRow, ChangeKind, Entity, TrackerState

logger = logging.getLogger(__name__)

EntityKey = Tuple[str, int]
RowKey = Tuple[str, int, int]
Target = Union[Entity, AssociationRow]


@dataclass
class TrackedChange:
    """A pending change to one entity or association row."""
    kind: ChangeKind
    target: Target
    original: Optional[Target] = None  # committed value when first touched


@dataclass
class PendingChangeSet:
    """Everything a unit of work wants to commit."""
    entities: Dict[EntityKey, TrackedChange] = field(default_factory=dict)
    rows: Dict[RowKey, TrackedChange] = field(default_factory=dict)
    # Committed rows that disappeared from a reassigned collection
    # without an explicit removal.
    drops: Dict[RowKey, AssociationRow] = field(default_factory=dict)
    # Optimistic concurrency stamps taken when data was first read.
    stamps: Dict[Tuple[Any, ...], Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entities) + len(self.rows) + len(self.drops)

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    @property
    def removal_intents(self) -> Set[RowKey]:
        return {
            key for key, change in self.rows.items()
            if change.kind is ChangeKind.REMOVED
        }

    def entity_changes(self, kind: ChangeKind) -> list[TrackedChange]:
        return [c for c in self.entities.values() if c.kind is kind]

    def row_changes(self, kind: ChangeKind) -> list[TrackedChange]:
        return [c for c in self.rows.values() if c.kind is kind]

    def touched_collections(self) -> Set[Tuple[str, int]]:
        """(relationship, parent key) pairs whose membership may change."""
        touched = {(rel, parent) for rel, parent, _ in self.rows}
        touched.update((rel, parent) for rel, parent, _ in self.drops)
        return touched

    def copy(self) -> PendingChangeSet:
        return PendingChangeSet(
            entities=dict(self.entities),
            rows=dict(self.rows),
            drops=dict(self.drops),
            stamps=dict(self.stamps),
        )


def entity_key(entity: Entity) -> EntityKey:
    return (entity.kind, entity.key)


def row_key(row: AssociationRow) -> RowKey:
    return (row.relationship, row.parent_key, row.child_key)


class ChangeTracker:
    """Records pending inserts, updates and deletes of one unit of work."""

    def __init__(self) -> None:
        self._state = TrackerState.IDLE
        self._changes = PendingChangeSet()

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def pending(self) -> PendingChangeSet:
        """Live change set; callers must not mutate it."""
        return self._changes

    def begin(self) -> None:
        if self._state is not TrackerState.IDLE:
            raise StateError(f"Cannot begin tracking while {self._state.value}")
        self._changes = PendingChangeSet()
        self._state = TrackerState.TRACKING

    def clear(self) -> None:
        """Discard everything tracked and go back to idle."""
        self._changes = PendingChangeSet()
        self._state = TrackerState.IDLE

    def diff(self) -> PendingChangeSet:
        if self._state is TrackerState.IDLE:
            raise StateError("No unit of work is being tracked")
        return self._changes.copy()

    # ------------------------------------------------------------------
    # State transitions used by commit
    # ------------------------------------------------------------------

    def start_commit(self) -> PendingChangeSet:
        self._require(TrackerState.TRACKING)
        self._state = TrackerState.COMMITTING
        return self._changes.copy()

    def commit_succeeded(self) -> None:
        self._require(TrackerState.COMMITTING)
        self.clear()

    def commit_failed(self) -> None:
        self._require(TrackerState.COMMITTING)
        self._state = TrackerState.TRACKING

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def stamp(self, key: Tuple[Any, ...], value: Any) -> None:
        """Remember what committed data looked like on first read."""
        self._require(TrackerState.TRACKING)
        self._changes.stamps.setdefault(key, value)

    def track(
        self,
        target: Target,
        kind: ChangeKind,
        original: Optional[Target] = None,
    ) -> None:
        """Record a change; ``original`` is the committed value, if any."""
        self._require(TrackerState.TRACKING)
        if isinstance(target, Entity):
            self._merge(self._changes.entities, entity_key(target),
                        target, kind, original)
        else:
            key = row_key(target)
            self._changes.drops.pop(key, None)
            self._merge(self._changes.rows, key, target, kind, original)
        logger.debug(f"Tracked {kind.value} {target!r}")

    def track_drop(self, row: AssociationRow) -> None:
        """Record a committed row that left its collection without intent."""
        self._require(TrackerState.TRACKING)
        key = row_key(row)
        change = self._changes.rows.get(key)
        if change is not None:
            if change.kind is ChangeKind.REMOVED:
                return
            # Pending additions just vanish, pending edits are forgotten.
            del self._changes.rows[key]
            if change.original is None:
                return
            row = change.original
        self._changes.drops[key] = row

    def undrop(self, row: AssociationRow) -> Optional[AssociationRow]:
        """Forget a drop, returning the committed row if there was one."""
        self._require(TrackerState.TRACKING)
        return self._changes.drops.pop(row_key(row), None)

    def _merge(
        self,
        changes: Dict[Any, TrackedChange],
        key: Any,
        target: Target,
        kind: ChangeKind,
        original: Optional[Target],
    ) -> None:
        previous = changes.get(key)
        if previous is None:
            changes[key] = TrackedChange(kind, target, original)
            return

        original = previous.original
        if previous.kind is ChangeKind.REMOVED:
            if kind is not ChangeKind.ADDED:
                raise StateError(f"{target!r} was already removed")
            if original is not None and original == target:
                # Removed and put back unchanged.
                del changes[key]
            else:
                changes[key] = TrackedChange(ChangeKind.MODIFIED, target, original)
        elif kind is ChangeKind.REMOVED:
            if previous.kind is ChangeKind.ADDED and original is None:
                del changes[key]
            else:
                changes[key] = TrackedChange(ChangeKind.REMOVED, original, original)
        elif kind is ChangeKind.ADDED and previous.kind is not ChangeKind.REMOVED:
            raise StateError(f"{target!r} is already tracked")
        else:
            # MODIFIED on top of ADDED stays ADDED.
            if original is not None and original == target:
                del changes[key]
            else:
                changes[key] = TrackedChange(previous.kind, target, original)

    def _require(self, state: TrackerState) -> None:
        if self._state is not state:
            raise StateError(
                f"Change tracker is {self._state.value}, expected {state.value}"
            )
