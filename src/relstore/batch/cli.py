"""
Command-line interface for batch change requests.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from .. import __version__
from ..exceptions import SchemaError
from .parser import load_change_request, ParseError
from .validator import validate_change_request
from .executor import execute_change_request
from .schema import ChangeRequest, ValidationResult, BatchResult


def main(argv: Optional[list] = None) -> int:
    """Main entry point for relstore-batch CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(levelname)s %(name)s: %(message)s",
        )

    return args.func(args)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="relstore-batch",
        description="Apply YAML change requests to an in-memory relational store",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(title="commands", dest="command")

    # validate command
    validate_parser = subparsers.add_parser(
        "validate",
        help="Validate a change request file",
    )
    validate_parser.add_argument(
        "file",
        type=Path,
        help="YAML file containing change request",
    )
    validate_parser.add_argument(
        "--no-check-refs",
        action="store_true",
        help="Skip checks of kinds, relationships and handles",
    )
    validate_parser.set_defaults(func=cmd_validate)

    # apply command
    apply_parser = subparsers.add_parser(
        "apply",
        help="Apply the units of a request file",
    )
    apply_parser.add_argument(
        "file",
        type=Path,
        help="YAML file containing change request",
    )
    apply_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run against a scratch store and report what would happen",
    )
    apply_parser.add_argument(
        "--stop-on-error",
        action="store_true",
        help="Skip the remaining units after a failed one",
    )
    apply_parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log tracked changes and commit plans",
    )
    apply_parser.set_defaults(func=cmd_apply)

    # show command
    show_parser = subparsers.add_parser(
        "show",
        help="Apply a request file and print the resulting tables",
    )
    show_parser.add_argument(
        "file",
        type=Path,
        help="YAML file containing change request",
    )
    show_parser.add_argument(
        "--no-history",
        action="store_true",
        help="Do not print the edit history",
    )
    show_parser.set_defaults(func=cmd_show)

    return parser


def _load(path: Path) -> Optional[ChangeRequest]:
    try:
        return load_change_request(path)
    except ParseError as e:
        print(f"\n  [PARSE ERROR] {e}")
        if e.line:
            print(f"               Line: {e.line}")
    except FileNotFoundError as e:
        print(f"\n  [ERROR] {e}")
    return None


def cmd_validate(args: argparse.Namespace) -> int:
    """Handle validate command."""
    print(f"\nValidating {args.file}...")

    request = _load(args.file)
    if request is None:
        return 1

    print(f"  Entities: {', '.join(map(str, request.schema.get('entities', [])))}")
    print(f"  Units:    {len(request.units)}")
    print(f"  Changes:  {request.change_count}")

    check_refs = not args.no_check_refs
    result = validate_change_request(request, check_references=check_refs)

    print("\nValidation Results:")
    _print_validation_result(result)

    if result.is_valid:
        print("\nValidation passed!")
        return 0
    else:
        print(f"\nFound {result.error_count} error(s), {result.warning_count} warning(s)")
        return 1


def cmd_apply(args: argparse.Namespace) -> int:
    """Handle apply command."""
    print(f"\nLoading {args.file}...")

    request = _load(args.file)
    if request is None:
        return 1

    print(f"  Units:   {len(request.units)}")
    print(f"  Changes: {request.change_count}")

    # Validate first
    print("\nValidating...")
    validation = validate_change_request(request)

    if not validation.is_valid:
        print("\nValidation failed:")
        _print_validation_result(validation)
        print(f"\nFound {validation.error_count} error(s). Fix errors before applying.")
        return 1

    if validation.warning_count > 0:
        print("\nWarnings:")
        _print_validation_result(validation, warnings_only=True)

    if args.dry_run:
        print("\n[DRY RUN] Simulating execution...")
    print(f"\n{'Simulating' if args.dry_run else 'Applying'} units...")

    try:
        result = execute_change_request(
            request,
            dry_run=args.dry_run,
            stop_on_error=args.stop_on_error,
        )
    except SchemaError as e:
        print(f"\n  [SCHEMA ERROR] {e}")
        return 1

    _print_batch_result(result)

    if result.failed_count > 0:
        return 1
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    """Handle show command."""
    request = _load(args.file)
    if request is None:
        return 1

    validation = validate_change_request(request)
    if not validation.is_valid:
        print("\nValidation failed:")
        _print_validation_result(validation)
        return 1

    try:
        result = execute_change_request(request)
    except SchemaError as e:
        print(f"\n  [SCHEMA ERROR] {e}")
        return 1

    store = result.store
    print(f"\nStore {store.name}")
    print(f"  Committed units: {result.committed_count}/{result.total_count}")

    for kind in store.kinds():
        entities = store.all(kind)
        print(f"\n{kind} ({len(entities)})")
        for entity in entities:
            print(f"  {entity.key:<4} {_format_attributes(entity.attributes)}")

    for rel in store.relationships():
        rows = store.association_table(rel.name).all()
        print(
            f"\n{rel.name}: {rel.parent_kind} -> {rel.child_kind} "
            f"[{rel.on_delete.value}] ({len(rows)})"
        )
        for row in rows:
            attrs = f" {_format_attributes(row.attributes)}" if row.attributes else ""
            print(f"  {row.parent_key} -> {row.child_key}{attrs}")

    if not args.no_history:
        print("\nHistory:")
        for commit in store.commits():
            print(f"  Commit {commit.id}: {commit.name or '(unnamed)'} ({commit.change_count} change(s))")
            for record in store.history(commit_id=commit.id):
                detail = f" {record.field_name}" if record.field_name else ""
                reason = f" ({record.reason})" if record.reason else ""
                print(
                    f"    {record.operation:<7} {record.entity_type} "
                    f"{record.entity_id}{detail}{reason}"
                )

    return 0 if result.failed_count == 0 else 1


def _format_attributes(attributes: dict) -> str:
    return ", ".join(f"{k}={v!r}" for k, v in attributes.items())


def _print_validation_result(
    result: ValidationResult,
    errors_only: bool = False,
    warnings_only: bool = False,
) -> None:
    """Print validation errors and warnings."""
    if not warnings_only:
        for error in result.errors:
            print(f"  [ERROR] {_where(error.unit, error.index, error.operation)}: {error.message}")
            if error.field:
                print(f"          Field: {error.field}")

    if not errors_only:
        for warning in result.warnings:
            print(f"  [WARN]  {_where(warning.unit, warning.index, warning.operation)}: {warning.message}")


def _where(unit: Optional[int], index: int, operation: str) -> str:
    if index < 0:
        return "Schema"
    prefix = f"Unit #{unit + 1}, " if unit is not None else ""
    return f"{prefix}Change #{index + 1} ({operation})"


def _print_batch_result(result: BatchResult) -> None:
    """Print batch execution result."""
    for unit in result.units:
        status = "COMMITTED" if unit.committed else "FAILED"
        if unit.committed and result.dry_run:
            status = "OK"
        print(f"\n  Unit {unit.index + 1}/{result.total_count} {unit.name or ''}: {status}")
        for change in unit.changes:
            mark = "OK" if change.success else "FAILED"
            print(f"    [{change.index + 1}] {change.operation}: {mark}")
            if change.message:
                print(f"         {change.message}")
        if unit.commit_id is not None:
            print(f"    Commit: {unit.commit_id}")
        for conflict in unit.conflicts:
            print(f"    [CONFLICT] {conflict}")
        if unit.error and not unit.conflicts:
            print(f"    [ERROR] {unit.error}")

    print(f"\nResults:")
    print(f"  Units:     {result.total_count}")
    print(f"  Committed: {result.committed_count}")
    print(f"  Failed:    {result.failed_count}")
    if result.skipped_count:
        print(f"  Skipped:   {result.skipped_count}")
    print(f"  Time:      {result.duration_seconds:.2f}s")


if __name__ == "__main__":
    sys.exit(main())
