"""Domain model dataclasses and enums for relstore."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DeletePolicy(str, Enum):
    """What happens to association rows when one of their ends goes away."""

    CASCADE = "cascade"
    RESTRICT = "restrict"
    SET_NULL = "set_null"

    @classmethod
    def parse(cls, value: str | DeletePolicy) -> DeletePolicy:
        """Accept ``Restrict``, ``set-null``, ``SetNull`` and friends."""
        if isinstance(value, DeletePolicy):
            return value
        normalized = str(value).strip().replace("-", "_").lower()
        if normalized == "setnull":
            normalized = "set_null"
        return cls(normalized)


class ChangeKind(str, Enum):
    """Kind of change recorded by the change tracker."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class DiffTag(str, Enum):
    """Tag attached to each edge of a collection diff."""

    ADDED = "added"
    REMOVED = "removed"
    UNCHANGED = "unchanged"


class TrackerState(str, Enum):
    """Lifecycle of a change tracker."""

    IDLE = "idle"
    TRACKING = "tracking"
    COMMITTING = "committing"


class EditOperation(str, Enum):
    """Type of mutation recorded in the edit history."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ValidationSeverity(str, Enum):
    """Severity level for validation results."""

    ERROR = "ERROR"
    WARNING = "WARNING"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Entity:
    """A keyed record of one entity kind."""

    kind: str
    key: int | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)
    version: int = field(default=0, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", _frozen(self.attributes))

    def __getitem__(self, name: str) -> Any:
        return self.attributes[name]


@dataclass(frozen=True, slots=True)
class AssociationRow:
    """One edge of a many-to-many relationship."""

    relationship: str
    parent_key: int
    child_key: int
    attributes: Mapping[str, Any] = field(default_factory=dict)
    version: int = field(default=0, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", _frozen(self.attributes))

    @property
    def key(self) -> tuple[int, int]:
        return (self.parent_key, self.child_key)


@dataclass(frozen=True, slots=True)
class Relationship:
    """A many-to-many relationship between two entity kinds."""

    name: str
    parent_kind: str
    child_kind: str
    on_delete: DeletePolicy = DeletePolicy.RESTRICT


@dataclass(frozen=True, slots=True)
class EditRecord:
    """A single edit-history entry recording one committed change."""

    id: int
    commit_id: int
    entity_type: str
    entity_id: str
    field_name: str | None
    operation: str
    old_value: str | None
    new_value: str | None
    reason: str | None
    timestamp: str


@dataclass(frozen=True, slots=True)
class CommitRecord:
    """A successfully committed unit of work."""

    id: int
    name: str | None
    timestamp: str
    change_count: int


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """A single validation finding (error or warning)."""

    rule_id: str
    severity: str
    entity_type: str
    entity_id: str
    message: str
    details: dict[str, Any] | None


def _frozen(attributes: Mapping[str, Any]) -> Mapping[str, Any]:
    """Read-only view over a private copy of ``attributes``."""
    return MappingProxyType(dict(attributes))
