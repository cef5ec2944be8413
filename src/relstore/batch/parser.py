"""
YAML parser for batch change requests.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .schema import Change, ChangeRequest, UnitRequest


class ParseError(Exception):
    """Error parsing a change request file."""

    def __init__(self, message: str, line: Optional[int] = None):
        self.line = line
        super().__init__(message)


def load_change_request(
    source: Union[str, Path, Dict[str, Any]],
) -> ChangeRequest:
    """Load a change request from a YAML file or dictionary.

    Args:
        source: Path to YAML file, YAML string, or parsed dictionary

    Returns:
        ChangeRequest object

    Raises:
        ParseError: If the file cannot be parsed or is invalid
        FileNotFoundError: If the file does not exist
    """
    source_path: Optional[Path] = None

    if isinstance(source, dict):
        data = source
    elif isinstance(source, Path) or (isinstance(source, str) and _is_file_path(source)):
        source_path = Path(source)
        if not source_path.exists():
            raise FileNotFoundError(f"File not found: {source_path}")
        data = _load_yaml_file(source_path)
    else:
        # Assume it's a YAML string
        data = _load_yaml_string(source)

    return _parse_change_request(data, source_path)


def _is_file_path(s: str) -> bool:
    """Check if a string looks like a file path."""
    if "\n" in s:
        return False
    if "/" in s or "\\" in s:
        return True
    return s.endswith((".yaml", ".yml"))


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """Load YAML from a file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML: {e}", line=_error_line(e)) from e
    return _require_mapping(data, "Empty YAML file")


def _load_yaml_string(s: str) -> Dict[str, Any]:
    """Load YAML from a string."""
    try:
        data = yaml.safe_load(s)
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML: {e}", line=_error_line(e)) from e
    return _require_mapping(data, "Empty YAML content")


def _error_line(error: yaml.YAMLError) -> Optional[int]:
    mark = getattr(error, "problem_mark", None)
    return mark.line + 1 if mark else None


def _require_mapping(data: Any, empty_message: str) -> Dict[str, Any]:
    if data is None:
        raise ParseError(empty_message)
    if not isinstance(data, dict):
        raise ParseError("YAML root must be a mapping (dictionary)")
    return data


def _parse_change_request(
    data: Dict[str, Any],
    source_path: Optional[Path] = None,
) -> ChangeRequest:
    """Parse a dictionary into a ChangeRequest object."""
    schema = data.get("store")
    if schema is None:
        raise ParseError("Missing required field: 'store'")
    if not isinstance(schema, dict):
        raise ParseError("Field 'store' must be a mapping")
    if not isinstance(schema.get("entities"), list) or not schema["entities"]:
        raise ParseError("Field 'store.entities' must be a non-empty list")
    relationships = schema.get("relationships", [])
    if not isinstance(relationships, list):
        raise ParseError("Field 'store.relationships' must be a list")

    units_data = data.get("units")
    if units_data is None:
        raise ParseError("Missing required field: 'units'")
    if not isinstance(units_data, list):
        raise ParseError("Field 'units' must be a list")
    if len(units_data) == 0:
        raise ParseError("Field 'units' cannot be empty")

    units = [_parse_unit(u, i) for i, u in enumerate(units_data)]

    return ChangeRequest(
        schema=schema,
        units=units,
        source_file=source_path,
    )


def _parse_unit(unit_data: Any, index: int) -> UnitRequest:
    """Parse one entry of 'units'."""
    if not isinstance(unit_data, dict):
        raise ParseError(f"Unit #{index + 1} must be a mapping (dictionary)")

    changes_data = unit_data.get("changes")
    if changes_data is None:
        raise ParseError(f"Unit #{index + 1}: Missing required field 'changes'")
    if not isinstance(changes_data, list):
        raise ParseError(f"Unit #{index + 1}: Field 'changes' must be a list")
    if len(changes_data) == 0:
        raise ParseError(f"Unit #{index + 1}: Field 'changes' cannot be empty")

    return UnitRequest(
        name=unit_data.get("name"),
        description=unit_data.get("description"),
        changes=_parse_changes(changes_data, index),
    )


def _parse_changes(changes_data: List[Any], unit_index: int) -> List[Change]:
    """Parse a list of change dictionaries into Change objects."""
    changes = []

    for i, change_data in enumerate(changes_data):
        where = f"Unit #{unit_index + 1}, change #{i + 1}"
        if not isinstance(change_data, dict):
            raise ParseError(f"{where} must be a mapping (dictionary)")

        operation = change_data.get("operation")
        if not operation:
            raise ParseError(f"{where}: Missing required field 'operation'")
        if not isinstance(operation, str):
            raise ParseError(f"{where}: Field 'operation' must be a string")

        # Extract all other fields as params
        params = {k: v for k, v in change_data.items() if k != "operation"}

        changes.append(
            Change(
                operation=operation,
                params=params,
                line_number=None,  # YAML doesn't provide line info easily
            )
        )

    return changes


def load_yaml_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Load raw YAML from a file (exposed for testing).

    Raises:
        ParseError: If the file cannot be parsed
        FileNotFoundError: If the file does not exist
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    return _load_yaml_file(path)
