"""Custom exceptions for the reconciliation engine."""

from typing import Any, Optional


class ReconciliationError(Exception):
    """Base exception for reconciliation errors.

    Every error names the entity it concerns and the invariant that was
    violated so that callers can surface both to the user.
    """

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        invariant: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id
        self.invariant = invariant

    def __str__(self) -> str:
        parts = [self.message]
        if self.entity_id:
            parts.append(f"[entity={self.entity_id}]")
        if self.invariant:
            parts.append(f"[invariant={self.invariant}]")
        return " ".join(parts)


class ConfigurationError(ReconciliationError):
    """Error in configuration."""

    pass


class ValidationError(ReconciliationError):
    """Data validation error, raised before any mutation."""

    pass


class NotFoundError(ReconciliationError):
    """Requested entity does not exist."""

    pass


class InvalidStateError(ReconciliationError):
    """Illegal workflow transition."""

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        current: Any = None,
        attempted: Any = None,
        invariant: Optional[str] = None,
    ):
        self.current = getattr(current, "value", current)
        self.attempted = getattr(attempted, "value", attempted)
        if current is not None or attempted is not None:
            message = f"{message} (current={self.current}, attempted={self.attempted})"
        super().__init__(message, entity_id=entity_id, invariant=invariant)


class ConsistencyError(ReconciliationError):
    """Stored header values disagree with the values recomputed from detail."""

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        invariant: Optional[str] = None,
        expected: Any = None,
        actual: Any = None,
    ):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{message} (expected={expected}, stored={actual})",
            entity_id=entity_id,
            invariant=invariant,
        )


class ConcurrencyConflict(ReconciliationError):
    """Lost update detected when committing a unit of work."""

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
    ):
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(message, entity_id=entity_id, invariant="optimistic-version")


class SnapshotLoadError(ReconciliationError):
    """Error loading a record snapshot for the command line."""

    pass
