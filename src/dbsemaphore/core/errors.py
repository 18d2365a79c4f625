"""
Structured error types for dbsemaphore.

Every failure the semaphore surfaces is a ``SemaphoreError`` carrying the
metadata callers need to decide what to do next: a category for routing,
a retryable flag, structured context (semaphore, owner, permits) and the
chained cause.

Manifesto:
    - **Typed Error Hierarchy:** Programming errors and store hiccups are
      different types, never the same ``Exception``
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry semaphore/owner metadata for logging
    - **Error Chaining:** Driver exceptions are kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       SemaphoreError                             │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientStoreError    CapacityConflictError                    │
        │  (DATABASE, retryable)  (CONFLICT)                               │
        │                                                                  │
        │  InvalidArgumentError   OverReleaseError                         │
        │  (VALIDATION)           (VALIDATION)                             │
        │       │                                                          │
        │  UnknownSemaphoreError                                           │
        │                                                                  │
        │  TimeoutExceededError   AcquireCancelledError                    │
        │  (TIMEOUT)              (CANCELLED)                              │
        │                                                                  │
        │  ConfigError ── InvalidConfigError                               │
        │  (CONFIG)                                                        │
        └─────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Retry CapacityConflictError / OverReleaseError / InvalidArgumentError
    ✅ DO: Treat them as programming errors and surface them immediately

    ❌ DON'T: Let raw SQLAlchemy exceptions escape a store transaction
    ✅ DO: Translate them to TransientStoreError with ``cause=``

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context,
    dbsemaphore

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Attributes:
        DATABASE: Connectivity, lock timeouts, driver errors
        CONFLICT: Existing state disagrees with the request
        VALIDATION: Malformed or unsatisfiable requests
        TIMEOUT: Deadline elapsed before the request was served
        CANCELLED: Request aborted by its caller or by shutdown
        CONFIG: Invalid descriptors or settings
        INTERNAL: Bugs, unexpected state
    """

    DATABASE = "DATABASE"
    CONFLICT = "CONFLICT"
    VALIDATION = "VALIDATION"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only non-None fields are emitted by ``to_dict()`` so the context can be
    splatted straight into a structlog call.

    Attributes:
        semaphore: Name of the semaphore pool involved
        owner: Owner identifier of the calling process
        permits: Number of permits the request was about
        operation: Store operation that failed (``try_grant``, ``release`` ...)
        metadata: Additional key-value pairs
    """

    semaphore: str | None = None
    owner: str | None = None
    permits: int | None = None
    operation: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["semaphore", "owner", "permits", "operation"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class SemaphoreError(Exception):
    """
    Base exception for all dbsemaphore errors.

    Subclasses set ``default_category`` and ``default_retryable`` so the
    right semantics apply without every raise site repeating them.

    Examples:
        >>> error = SemaphoreError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.to_dict()["category"]
        'INTERNAL'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict

        if self.cause is not None:
            result["cause"] = str(self.cause)

        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# STORE ERRORS (Retryable)
# =============================================================================


class TransientStoreError(SemaphoreError):
    """
    Connectivity, lock-timeout or driver failure inside a store transaction.

    Raised by ``store_transaction`` for every SQLAlchemy error. The
    transaction was rolled back, so retrying is always safe. The acquire
    loop retries these until its deadline; the heartbeat emitter retries
    a bounded number of times per tick.
    """

    default_category = ErrorCategory.DATABASE
    default_retryable = True


# =============================================================================
# PROGRAMMING ERRORS (Never Retryable)
# =============================================================================


class CapacityConflictError(SemaphoreError):
    """A pool already exists with a different total capacity."""

    default_category = ErrorCategory.CONFLICT
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        existing_total: int | None = None,
        requested_total: int | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.existing_total = existing_total
        self.requested_total = requested_total

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.existing_total is not None:
            result["existing_total"] = self.existing_total
        if self.requested_total is not None:
            result["requested_total"] = self.requested_total
        return result


class InvalidArgumentError(SemaphoreError):
    """Malformed or never-satisfiable request (``n <= 0``, ``n > capacity``)."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class UnknownSemaphoreError(InvalidArgumentError):
    """The named pool does not exist in the store."""

    def __init__(self, name: str, message: str | None = None):
        super().__init__(
            message or f"Semaphore {name!r} does not exist",
            field="name",
            value=name,
            context=ErrorContext(semaphore=name),
        )
        self.name = name


class OverReleaseError(SemaphoreError):
    """Release of more permits than the owner holds."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        held: int = 0,
        requested: int = 0,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.held = held
        self.requested = requested

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["held"] = self.held
        result["requested"] = self.requested
        return result


# =============================================================================
# ACQUIRE OUTCOMES
# =============================================================================


class TimeoutExceededError(SemaphoreError):
    """Permits could not be obtained before the deadline."""

    default_category = ErrorCategory.TIMEOUT
    default_retryable = True


class AcquireCancelledError(SemaphoreError):
    """A pending acquire was cancelled by its token or by ``close()``."""

    default_category = ErrorCategory.CANCELLED
    default_retryable = False


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(SemaphoreError):
    """
    Configuration error.

    Never retryable - configuration must be fixed.
    """

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class InvalidConfigError(ConfigError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        self.key = key
        self.value = value
        super().__init__(message or f"Invalid configuration for {key}: {value!r}")


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "SemaphoreError",
    "TransientStoreError",
    "CapacityConflictError",
    "InvalidArgumentError",
    "UnknownSemaphoreError",
    "OverReleaseError",
    "TimeoutExceededError",
    "AcquireCancelledError",
    "ConfigError",
    "InvalidConfigError",
]
