"""
Data classes and constants for the batch change request system.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import DeletePolicy


# =============================================================================
# Operation Types
# =============================================================================

class OperationType(str, Enum):
    """Supported batch operations."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    LINK = "link"
    UNLINK = "unlink"
    REPLACE = "replace"
    ASSIGN = "assign"


ENTITY_OPERATIONS = {
    OperationType.INSERT.value,
    OperationType.UPDATE.value,
    OperationType.DELETE.value,
}

COLLECTION_OPERATIONS = {
    OperationType.REPLACE.value,
    OperationType.ASSIGN.value,
}

VALID_POLICIES = {policy.value for policy in DeletePolicy}

# Prefix of a handle bound by an earlier insert ("as: book1" -> "@book1")
HANDLE_PREFIX = "@"


# =============================================================================
# Field Requirements
# =============================================================================

# Required fields for each operation
REQUIRED_FIELDS: Dict[str, List[str]] = {
    OperationType.INSERT.value: ["kind"],
    OperationType.UPDATE.value: ["kind", "entity", "attributes"],
    OperationType.DELETE.value: ["kind", "entity"],
    OperationType.LINK.value: ["relationship", "parent", "child"],
    OperationType.UNLINK.value: ["relationship", "parent", "child"],
    OperationType.REPLACE.value: ["relationship", "parent", "children"],
    OperationType.ASSIGN.value: ["relationship", "parent", "children"],
}

# Optional fields for each operation
OPTIONAL_FIELDS: Dict[str, List[str]] = {
    OperationType.INSERT.value: ["attributes", "as"],
    OperationType.UPDATE.value: [],
    OperationType.DELETE.value: ["unlink"],
    OperationType.LINK.value: ["attributes"],
    OperationType.UNLINK.value: [],
    OperationType.REPLACE.value: [],
    OperationType.ASSIGN.value: [],
}


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class Change:
    """Single change operation."""
    operation: str
    params: Dict[str, Any]
    line_number: Optional[int] = None

    @property
    def kind(self) -> Optional[str]:
        """Entity kind for entity operations."""
        return self.params.get("kind")

    @property
    def relationship(self) -> Optional[str]:
        """Relationship name for link and collection operations."""
        return self.params.get("relationship")

    @property
    def handle(self) -> Optional[str]:
        """Name bound to the key of an inserted entity."""
        return self.params.get("as")


@dataclass
class UnitRequest:
    """One unit of work: changes committed together."""
    name: Optional[str]
    changes: List[Change]
    description: Optional[str] = None


@dataclass
class ChangeRequest:
    """Parsed change request from YAML."""
    schema: Dict[str, Any]
    units: List[UnitRequest]
    source_file: Optional[Path] = None

    @property
    def change_count(self) -> int:
        return sum(len(unit.changes) for unit in self.units)


@dataclass
class ValidationError:
    """Validation error for a specific change."""
    index: int
    operation: str
    field: str
    message: str
    unit: Optional[int] = None
    line_number: Optional[int] = None


@dataclass
class ValidationWarning:
    """Validation warning for a specific change."""
    index: int
    operation: str
    message: str
    unit: Optional[int] = None
    line_number: Optional[int] = None


@dataclass
class ValidationResult:
    """Result of validating a change request."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[ValidationWarning] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)


@dataclass
class ChangeResult:
    """Result of executing a single change."""
    index: int
    operation: str
    success: bool
    message: str
    target: Optional[str] = None
    created_key: Optional[int] = None
    error: Optional[str] = None


@dataclass
class UnitResult:
    """Result of executing one unit of work."""
    index: int
    name: Optional[str]
    committed: bool
    changes: List[ChangeResult]
    commit_id: Optional[int] = None
    error: Optional[str] = None
    conflicts: List[str] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return sum(1 for c in self.changes if not c.success)


@dataclass
class BatchResult:
    """Result of executing a batch change request."""
    total_count: int
    committed_count: int
    failed_count: int
    units: List[UnitResult]
    duration_seconds: float
    store: Any = None
    dry_run: bool = False

    @property
    def skipped_count(self) -> int:
        return self.total_count - self.committed_count - self.failed_count
