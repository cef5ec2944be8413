"""Custom exception hierarchy for relstore."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


class RelstoreError(Exception):
    """Base exception for all relstore errors."""


class ValidationError(RelstoreError):
    """Malformed data (unknown kind, foreign key not found)."""


class EntityNotFoundError(RelstoreError):
    """Entity or association row doesn't exist in the store."""


class SchemaError(RelstoreError):
    """Invalid entity kind or relationship definition."""


class StateError(RelstoreError):
    """Operation not allowed in the current unit-of-work state."""


@dataclass(frozen=True, slots=True)
class ConflictDetail:
    """One violation found while planning a commit."""

    policy: str
    relationship: str | None
    keys: tuple[int, ...]
    message: str


class ConflictError(RelstoreError):
    """Restrict-policy, uniqueness or concurrency violation.

    ``policy``, ``relationship`` and ``keys`` describe the first
    violation; ``details`` holds every violation found in the same pass.
    """

    def __init__(
        self,
        message: str,
        *,
        policy: str,
        relationship: str | None = None,
        keys: Sequence[int] = (),
        details: Sequence[ConflictDetail] = (),
    ) -> None:
        super().__init__(message)
        self.policy = policy
        self.relationship = relationship
        self.keys = tuple(keys)
        self.details = tuple(details) or (
            ConflictDetail(policy, relationship, self.keys, message),
        )

    @classmethod
    def from_details(cls, details: Sequence[ConflictDetail]) -> ConflictError:
        first = details[0]
        if len(details) == 1:
            message = first.message
        else:
            message = f"{first.message} (and {len(details) - 1} more)"
        return cls(
            message,
            policy=first.policy,
            relationship=first.relationship,
            keys=first.keys,
            details=details,
        )
