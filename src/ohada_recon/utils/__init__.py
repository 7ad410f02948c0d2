"""Utility modules."""

from .exceptions import (
    ReconciliationError,
    ConfigurationError,
    ValidationError,
    NotFoundError,
    InvalidStateError,
    ConsistencyError,
    ConcurrencyConflict,
    SnapshotLoadError,
)
from .logging_config import setup_logging, level_from_name

__all__ = [
    "ReconciliationError",
    "ConfigurationError",
    "ValidationError",
    "NotFoundError",
    "InvalidStateError",
    "ConsistencyError",
    "ConcurrencyConflict",
    "SnapshotLoadError",
    "setup_logging",
    "level_from_name",
]
