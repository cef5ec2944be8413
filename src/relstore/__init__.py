__version__ = "0.1.0"

from .store import (
    Store as Store,
    UnitOfWork as UnitOfWork,
    AssociationCollection as AssociationCollection,
)

from .models import (
    Entity as Entity,
    AssociationRow as AssociationRow,
    Relationship as Relationship,
    DeletePolicy as DeletePolicy,
    ChangeKind as ChangeKind,
    DiffTag as DiffTag,
    TrackerState as TrackerState,
    EditRecord as EditRecord,
    CommitRecord as CommitRecord,
    ValidationResult as ValidationResult,
)

from .exceptions import (
    RelstoreError as RelstoreError,
    ConflictError as ConflictError,
    ConflictDetail as ConflictDetail,
    EntityNotFoundError as EntityNotFoundError,
    ValidationError as ValidationError,
    SchemaError as SchemaError,
    StateError as StateError,
)

from .graph import (
    CollectionDiff as CollectionDiff,
    CommitPlan as CommitPlan,
    RelationshipGraph as RelationshipGraph,
)

from .tables import (
    EntityTable as EntityTable,
    AssociationTable as AssociationTable,
)

from .tracker import (
    ChangeTracker as ChangeTracker,
    PendingChangeSet as PendingChangeSet,
    TrackedChange as TrackedChange,
)

# Batch module - import as submodule to avoid naming conflicts
from . import batch

__all__ = [
    # Batch module
    "batch",
    # Store
    "Store",
    "UnitOfWork",
    "AssociationCollection",
    # Components
    "EntityTable",
    "AssociationTable",
    "RelationshipGraph",
    "ChangeTracker",
    "PendingChangeSet",
    "TrackedChange",
    "CollectionDiff",
    "CommitPlan",
    # Models
    "Entity",
    "AssociationRow",
    "Relationship",
    "EditRecord",
    "CommitRecord",
    "ValidationResult",
    # Enums
    "DeletePolicy",
    "ChangeKind",
    "DiffTag",
    "TrackerState",
    # Exceptions
    "RelstoreError",
    "ConflictError",
    "ConflictDetail",
    "EntityNotFoundError",
    "ValidationError",
    "SchemaError",
    "StateError",
]
