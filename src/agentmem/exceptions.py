#!/usr/bin/env python3
"""Exception Hierarchy for the agentmem memory store.

Every error raised by the store derives from MemoryStoreError, so callers
can catch store failures with a single except clause and still tell the
three interesting situations apart:

    - the input was invalid (ValidationError, DimensionMismatchError)
    - the store is currently unavailable (StoreError, CircuitOpenError)
    - the store is permanently misconfigured (SchemaError, ConfigurationError)

Exception Hierarchy:
    MemoryStoreError (base)
    ├── ConfigurationError (unrecoverable - fix config)
    ├── ValidationError (unrecoverable - fix input)
    │   └── DimensionMismatchError
    ├── StoreError (recoverable - retried)
    │   ├── ConnectionPoolError
    │   ├── TransactionError
    │   └── IntegrityError (unrecoverable)
    ├── CircuitOpenError (recoverable once the breaker closes)
    └── SchemaError (fatal, startup only)

Author: agentmem Team
"""
from datetime import datetime
from typing import Any, Optional

# ============================================
# Base Exception
# ============================================

class MemoryStoreError(Exception):
    """Base exception for all memory store errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "CIRCUIT_OPEN")
        details: Additional context as a dictionary
        timestamp: When the error occurred
        cause: The original exception that caused this error
        recoverable: Whether this error might go away on retry
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.utcnow()
        self.cause = cause
        self.recoverable = recoverable

        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.code:
            parts.insert(0, f"[{self.code}]")
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================
# Configuration Errors (Unrecoverable)
# ============================================

class ConfigurationError(MemoryStoreError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )


# ============================================
# Caller Input Errors (Never Retried)
# ============================================

class ValidationError(MemoryStoreError):
    """Raised when a caller-supplied parameter is missing or invalid.

    Always raised before any round-trip to the store.
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        kwargs.setdefault("code", "VALIDATION_ERROR")
        super().__init__(
            message,
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.field = field


class DimensionMismatchError(ValidationError):
    """Raised when an embedding does not have the configured dimension."""

    def __init__(self, expected: int, actual: int, **kwargs):
        details = kwargs.pop("details", {})
        details["expected"] = expected
        details["actual"] = actual
        super().__init__(
            f"Invalid embedding dimension: expected {expected}, got {actual}",
            field="embedding",
            code="DIMENSION_MISMATCH",
            details=details,
            **kwargs,
        )
        self.expected = expected
        self.actual = actual


# ============================================
# Store Errors (Usually Recoverable)
# ============================================

class StoreError(MemoryStoreError):
    """Wraps a backing-store failure.

    Transient store errors are retried by the resilient executor; once
    retries are exhausted the last one is surfaced to the caller.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        kwargs.setdefault("recoverable", True)
        super().__init__(message, details=details, **kwargs)
        self.operation = operation


class ConnectionPoolError(StoreError):
    """Raised when the connection pool is exhausted or unavailable."""

    def __init__(
        self,
        message: str = "Database connection pool error",
        **kwargs,
    ):
        super().__init__(message, code="CONNECTION_POOL_ERROR", **kwargs)


class TransactionError(StoreError):
    """Raised when a database transaction fails."""

    def __init__(
        self,
        message: str = "Database transaction failed",
        **kwargs,
    ):
        super().__init__(message, code="TRANSACTION_ERROR", **kwargs)


class IntegrityError(StoreError):
    """Raised when a database integrity constraint is violated."""

    def __init__(
        self,
        message: str = "Database integrity error",
        constraint: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if constraint:
            details["constraint"] = constraint
        super().__init__(
            message,
            code="INTEGRITY_ERROR",
            details=details,
            recoverable=False,  # Retrying the same row cannot help
            **kwargs,
        )
        self.constraint = constraint


# ============================================
# Circuit Breaker
# ============================================

class CircuitOpenError(MemoryStoreError):
    """Raised when the circuit breaker is open and calls are rejected.

    No store round-trip is attempted when this is raised.

    Attributes:
        reset_at: When the circuit breaker will admit a trial call
        failure_count: Failures recorded when the call was rejected
    """

    def __init__(
        self,
        message: str = "Circuit breaker is open, requests rejected",
        reset_at: Optional[datetime] = None,
        failure_count: int = 0,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if reset_at:
            details["reset_at"] = reset_at.isoformat()
        details["failure_count"] = failure_count

        super().__init__(
            message,
            code="CIRCUIT_OPEN",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.reset_at = reset_at
        self.failure_count = failure_count


# ============================================
# Schema Errors (Fatal)
# ============================================

class SchemaError(MemoryStoreError):
    """Raised when the schema cannot be verified or applied at startup.

    The bootstrap transaction has been rolled back when this is raised.
    """

    def __init__(
        self,
        message: str = "Failed to apply database schema",
        **kwargs,
    ):
        super().__init__(
            message,
            code="SCHEMA_ERROR",
            recoverable=False,
            **kwargs,
        )


# Errors that are deterministic for a given input; retrying cannot help.
NON_RETRYABLE_ERRORS = (
    ValidationError,
    ConfigurationError,
    IntegrityError,
    SchemaError,
    CircuitOpenError,
)


__all__ = [
    "MemoryStoreError",
    "ConfigurationError",
    "ValidationError",
    "DimensionMismatchError",
    "StoreError",
    "ConnectionPoolError",
    "TransactionError",
    "IntegrityError",
    "CircuitOpenError",
    "SchemaError",
    "NON_RETRYABLE_ERRORS",
]
