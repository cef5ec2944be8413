"""
Batch change requests for relstore.

A request is a YAML document declaring a store schema and a list of
units of work, each committed atomically.

Example usage:
    from relstore.batch import (
        load_change_request,
        validate_change_request,
        execute_change_request,
    )

    request = load_change_request("changes.yaml")

    validation = validate_change_request(request)
    if not validation.is_valid:
        for error in validation.errors:
            print(f"[{error.index}] {error.operation}: {error.message}")

    result = execute_change_request(request)
    print(f"Committed {result.committed_count}/{result.total_count} units")
"""

from .schema import (
    # Enums and constants
    OperationType as OperationType,
    REQUIRED_FIELDS as REQUIRED_FIELDS,
    OPTIONAL_FIELDS as OPTIONAL_FIELDS,
    VALID_POLICIES as VALID_POLICIES,
    HANDLE_PREFIX as HANDLE_PREFIX,
    # Data classes
    Change as Change,
    UnitRequest as UnitRequest,
    ChangeRequest as ChangeRequest,
    ValidationError as ValidationError,
    ValidationWarning as ValidationWarning,
    ValidationResult as ValidationResult,
    ChangeResult as ChangeResult,
    UnitResult as UnitResult,
    BatchResult as BatchResult,
)

from .parser import (
    load_change_request as load_change_request,
    load_yaml_file as load_yaml_file,
    ParseError as ParseError,
)

from .validator import (
    validate_change_request as validate_change_request,
)

from .executor import (
    execute_change_request as execute_change_request,
    resolve_reference as resolve_reference,
)

__all__ = [
    # Enums and constants
    "OperationType",
    "REQUIRED_FIELDS",
    "OPTIONAL_FIELDS",
    "VALID_POLICIES",
    "HANDLE_PREFIX",
    # Data classes
    "Change",
    "UnitRequest",
    "ChangeRequest",
    "ValidationError",
    "ValidationWarning",
    "ValidationResult",
    "ChangeResult",
    "UnitResult",
    "BatchResult",
    # Functions
    "load_change_request",
    "load_yaml_file",
    "validate_change_request",
    "execute_change_request",
    "resolve_reference",
    # Exceptions
    "ParseError",
]
