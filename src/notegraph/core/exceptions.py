"""
NoteGraph Domain-Specific Exceptions
====================================

This module defines a hierarchy of exceptions for consistent error handling
across the sync engine, the graph projection and the retrieval layer.

Exception Hierarchy:
    NoteGraphError (base)
    ├── RecoverableError (transient, resync or degrade possible)
    │   ├── PersistenceError
    │   ├── HydrationError
    │   └── CandidateSourceError
    └── IrrecoverableError (permanent, requires intervention)
        ├── ConfigurationError
        ├── SyncNotReadyError
        ├── ValidationError
        └── NotFoundError

Usage Guidelines:
    - Mutation APIs catch ValidationError / NotFoundError, log them and no-op
    - Search never raises CandidateSourceError to callers; it degrades
    - SyncNotReadyError always propagates (it is a programming error)
"""

from typing import Optional, Any
from enum import Enum


class ErrorCategory(Enum):
    """Categories for error classification."""
    STORAGE = "STORAGE"
    SYNC = "SYNC"
    SEARCH = "SEARCH"
    CONFIG = "CONFIG"
    VALIDATION = "VALIDATION"
    SYSTEM = "SYSTEM"


class NoteGraphError(Exception):
    """
    Base exception for all NoteGraph errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        context: Additional context about the error
        recoverable: Whether the error is potentially recoverable
    """

    error_code: str = "NOTEGRAPH_ERROR"
    recoverable: bool = True
    category: ErrorCategory = ErrorCategory.SYSTEM

    def __init__(
        self,
        message: str,
        context: Optional[dict] = None,
        error_code: Optional[str] = None,
        recoverable: Optional[bool] = None
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        if error_code is not None:
            self.error_code = error_code
        if recoverable is not None:
            self.recoverable = recoverable

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to a JSON-friendly dictionary."""
        result = {
            "error": self.message,
            "code": self.error_code,
            "category": self.category.value,
            "recoverable": self.recoverable,
        }
        if self.context:
            result["context"] = self.context
        return result


# =============================================================================
# Base Categories: Recoverable vs Irrecoverable
# =============================================================================

class RecoverableError(NoteGraphError):
    """
    Base class for recoverable errors.

    The engine recovers from these on its own:
    - Flush failures (full resync)
    - Candidate source outages (empty candidate list)
    """
    recoverable = True


class IrrecoverableError(NoteGraphError):
    """
    Base class for irrecoverable errors.

    These need a caller fix:
    - Invalid configuration
    - Bad mutation payloads
    - Using the engine before it is hydrated
    """
    recoverable = False


# =============================================================================
# Storage / Sync Errors
# =============================================================================

class PersistenceError(RecoverableError):
    """Raised when a persistent store operation fails."""
    error_code = "PERSISTENCE_ERROR"
    category = ErrorCategory.STORAGE

    def __init__(self, operation: str, reason: str, context: Optional[dict] = None):
        ctx = {"operation": operation}
        if context:
            ctx.update(context)
        super().__init__(f"Store operation '{operation}' failed: {reason}", ctx)
        self.operation = operation
        self.reason = reason


class HydrationError(RecoverableError):
    """Raised when the local caches cannot be loaded from the store."""
    error_code = "HYDRATION_ERROR"
    category = ErrorCategory.SYNC

    def __init__(self, reason: str, context: Optional[dict] = None):
        super().__init__(f"Hydration failed: {reason}", context)
        self.reason = reason


class SyncNotReadyError(IrrecoverableError):
    """Raised when a mutation is attempted before initialize() completed."""
    error_code = "SYNC_NOT_READY_ERROR"
    category = ErrorCategory.SYNC

    def __init__(self, operation: str, context: Optional[dict] = None):
        ctx = {"operation": operation}
        if context:
            ctx.update(context)
        super().__init__(
            f"Cannot run '{operation}': sync engine is not hydrated, call initialize() first",
            ctx,
        )
        self.operation = operation


# =============================================================================
# Search Errors
# =============================================================================

class CandidateSourceError(RecoverableError):
    """Raised when a lexical or vector candidate source fails."""
    error_code = "CANDIDATE_SOURCE_ERROR"
    category = ErrorCategory.SEARCH

    def __init__(self, source_name: str, reason: str, context: Optional[dict] = None):
        ctx = {"source": source_name}
        if context:
            ctx.update(context)
        super().__init__(f"Candidate source '{source_name}' failed: {reason}", ctx)
        self.source_name = source_name
        self.reason = reason


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(IrrecoverableError):
    """Raised when configuration is invalid or missing."""
    error_code = "CONFIGURATION_ERROR"
    category = ErrorCategory.CONFIG

    def __init__(self, config_key: str, reason: str, context: Optional[dict] = None):
        ctx = {"config_key": config_key}
        if context:
            ctx.update(context)
        super().__init__(f"Configuration error for '{config_key}': {reason}", ctx)
        self.config_key = config_key


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(IrrecoverableError):
    """Raised when a mutation payload is missing required fields."""
    error_code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION

    def __init__(self, field: str, reason: str, value: Any = None, context: Optional[dict] = None):
        ctx = {"field": field}
        if value is not None:
            # Truncate large values
            value_str = str(value)
            if len(value_str) > 100:
                value_str = value_str[:100] + "..."
            ctx["value"] = value_str
        if context:
            ctx.update(context)
        super().__init__(f"Validation error for '{field}': {reason}", ctx)
        self.field = field
        self.reason = reason


# =============================================================================
# Not Found Errors
# =============================================================================

class NotFoundError(IrrecoverableError):
    """Raised when a mutation targets an id that is not in the local cache."""
    error_code = "NOT_FOUND_ERROR"
    category = ErrorCategory.SYNC

    def __init__(self, resource_type: str, resource_id: str, context: Optional[dict] = None):
        ctx = {"resource_type": resource_type, "resource_id": resource_id}
        if context:
            ctx.update(context)
        super().__init__(f"{resource_type} '{resource_id}' not found", ctx)
        self.resource_type = resource_type
        self.resource_id = resource_id


__all__ = [
    "ErrorCategory",
    "NoteGraphError",
    "RecoverableError",
    "IrrecoverableError",
    "PersistenceError",
    "HydrationError",
    "SyncNotReadyError",
    "CandidateSourceError",
    "ConfigurationError",
    "ValidationError",
    "NotFoundError",
]
