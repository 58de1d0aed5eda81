"""
Structured error types for repokit.

Every failure surfaced by a query, mutation or transaction is one of the
typed errors below.  Callers branch on the error *kind* instead of on raw
driver exceptions, while the original driver error stays inspectable via
``cause`` (and ``__cause__`` for tracebacks).

Manifesto:
    - **Typed hierarchy:** One class per failure kind callers act on
    - **Never swallow:** Driver errors are wrapped, never discarded
    - **Rich context:** Table, operation, batch offset and SQL travel with the error
    - **Explicit retry semantics:** Only transient driver failures are retryable

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        RepoKitError                          │
        │          (category, retryable, context, cause)               │
        ├──────────────────────────────────────────────────────────────┤
        │                                                              │
        │  SchemaError        ConfigurationError    InvalidStateError  │
        │  (SCHEMA)           (CONFIG)              (STATE)            │
        │                                                              │
        │  ExecutionError     NotFoundError         CancelledError     │
        │  (DATABASE)         (NOT_FOUND)           (CANCELLED)        │
        │       │                                                      │
        │  RollbackError                                               │
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> try:
    ...     repo.batch_update(users, BatchUpdateOption(key_field="id"))
    ... except ExecutionError as e:
    ...     e.offset, e.cause
    (1310, OperationalError(...))

    >>> err = SchemaError("no persisted fields").with_context(table="users")
    >>> err.context.table
    'users'

Guardrails:
    ❌ DON'T: Let a raw ``sqlalchemy.exc.DBAPIError`` escape a terminal call
    ✅ DO: Wrap it with ``ExecutionError.from_driver(exc, ...)``

    ❌ DON'T: Log an execution failure and carry on
    ✅ DO: Raise to the immediate caller

Tags:
    error-handling, exception-hierarchy, repokit, data-access

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy import exc as sa_exc


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and logging.

    Attributes:
        SCHEMA: Entity type has no persisted fields, or a field is missing
        CONFIG: Missing batch key field, invalid batch/page parameters
        DATABASE: Statement execution failed in the driver
        NOT_FOUND: A single-row lookup matched nothing
        STATE: Operation against an unattached or closed unit of work
        CANCELLED: Caller-supplied cancellation or deadline fired
        INTERNAL: Bugs, unexpected state
        UNKNOWN: Uncategorized errors
    """

    SCHEMA = "SCHEMA"
    CONFIG = "CONFIG"
    DATABASE = "DATABASE"
    NOT_FOUND = "NOT_FOUND"
    STATE = "STATE"
    CANCELLED = "CANCELLED"

    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        table: Table the failing operation targeted
        operation: Repository/query operation name (e.g. ``"batch_insert"``)
        entity: Entity type name
        sql: Rendered SQL of the failing statement, when known
        metadata: Additional key-value pairs
    """

    table: str | None = None
    operation: str | None = None
    entity: str | None = None
    sql: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["table", "operation", "entity", "sql"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class RepoKitError(Exception):
    """
    Base exception for all repokit errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    call sites only pass what differs from the defaults.

    Examples:
        >>> error = RepoKitError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False

        >>> try:
        ...     raise ConnectionError("DNS lookup failed")
        ... except ConnectionError as e:
        ...     error = RepoKitError("Network error", cause=e)
        >>> error.cause
        ConnectionError('DNS lookup failed')
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

    def with_context(self, **kwargs: Any) -> RepoKitError:
        """
        Add context to this error (fluent API).

        Known ``ErrorContext`` fields are set directly; anything else lands
        in ``context.metadata``.
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logging."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        ctx = self.context.to_dict()
        if ctx:
            result["context"] = ctx
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class SchemaError(RepoKitError):
    """Entity type has no persisted fields, or a requested field is absent."""

    default_category = ErrorCategory.SCHEMA

    def __init__(self, message: str, *, field: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.field = field


class ConfigurationError(RepoKitError):
    """Invalid caller-supplied configuration (batch key, page size, limit...)."""

    default_category = ErrorCategory.CONFIG

    def __init__(
        self,
        message: str,
        *,
        key: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.key = key
        self.value = value


class ExecutionError(RepoKitError):
    """
    Underlying statement execution failed.

    Wraps the driver error in ``cause``.  Batch operations also record the
    ``offset`` of the first window that failed; every window before it was
    executed successfully.
    """

    default_category = ErrorCategory.DATABASE

    def __init__(self, message: str, *, offset: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.offset = offset

    @classmethod
    def from_driver(
        cls,
        exc: BaseException,
        *,
        operation: str | None = None,
        sql: str | None = None,
    ) -> ExecutionError:
        """Wrap a driver/SQLAlchemy exception.

        Operational failures (lost connections, lock timeouts) are marked
        retryable; everything else is not.
        """
        retryable = isinstance(exc, (sa_exc.OperationalError, sa_exc.DisconnectionError))
        message = f"{operation} failed: {exc}" if operation else str(exc)
        return cls(
            message,
            retryable=retryable,
            cause=exc,
            context=ErrorContext(operation=operation, sql=sql),
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.offset is not None:
            result["offset"] = self.offset
        return result


class RollbackError(ExecutionError):
    """Rolling back after a failed unit of work also failed.

    ``original`` is the error raised by the unit of work's body; ``cause``
    is the rollback failure.
    """

    def __init__(self, message: str, *, original: BaseException, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.original = original


class NotFoundError(RepoKitError):
    """A query that must return one row returned none."""

    default_category = ErrorCategory.NOT_FOUND


class InvalidStateError(RepoKitError):
    """Operation attempted on an unattached or closed unit of work."""

    default_category = ErrorCategory.STATE


class CancelledError(RepoKitError):
    """Operation aborted by caller-supplied cancellation or deadline."""

    default_category = ErrorCategory.CANCELLED


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, RepoKitError):
        return error.retryable
    return False


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, RepoKitError):
        return error.category
    if isinstance(error, sa_exc.DBAPIError):
        return ErrorCategory.DATABASE
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "RepoKitError",
    "SchemaError",
    "ConfigurationError",
    "ExecutionError",
    "RollbackError",
    "NotFoundError",
    "InvalidStateError",
    "CancelledError",
    "is_retryable",
    "categorize_error",
]
