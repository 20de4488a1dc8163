#!/usr/bin/env python3
"""
Exception hierarchy for MIB loading and storage
"""

from typing import List, Optional


class MibError(Exception):
    """Base class for all engine errors."""


# ============= LOAD ERRORS =============


class MibLoadError(MibError):
    """A MIB file could not be loaded."""


class ValidationError(MibLoadError):
    """Input file is missing, not a regular file, or too large."""


class CompileAttemptError(MibLoadError):
    """A single module-name candidate failed to compile or load."""

    def __init__(self, candidate: str, reason: str):
        self.candidate = candidate
        self.reason = reason
        super().__init__(f"{candidate}: {reason}")


class SanitizationError(MibLoadError):
    """Sanitized copy could not be written."""


class AggregateLoadError(MibLoadError):
    """Every candidate, raw and sanitized, failed."""

    def __init__(self, path: str, attempts: Optional[List] = None):
        self.path = path
        self.attempts = list(attempts or [])
        details = " | ".join(f"{a.label}: {a.error}" for a in self.attempts)
        super().__init__(f"failed to load MIB {path}: {details or 'no candidates'}")


# ============= STORAGE ERRORS =============


class StorageError(MibError):
    """Transactional read/write failure."""


class NotFoundError(MibError):
    """Lookup by an absent key."""


class NodeNotFoundError(NotFoundError):
    def __init__(self, oid: str, tried: Optional[List[str]] = None):
        self.oid = oid
        self.tried = list(tried or [])
        super().__init__(f"node not found: {oid}")


class ModuleNotFoundError(NotFoundError):  # noqa: A001
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"module not found: {name}")


# ============= WARNINGS =============


class DependencyMissingWarning(UserWarning):
    """A module imports from a module that is not in the store yet."""
