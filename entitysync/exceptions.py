"""Custom exception classes for entity-sync.

This module provides specific exception types for better error handling and debugging.
"""

from typing import Any, Dict, List, Optional


class EntitySyncError(Exception):
    """Base exception for all entity-sync errors."""

    error_code: str = "ERR000"  # Override in subclasses

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, error_code: Optional[str] = None):
        """
        Initialize entity-sync exception.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional context
            error_code: Optional error code override
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def __str__(self) -> str:
        """Return string representation with error code and details."""
        parts = [f"[{self.error_code}] {self.message}"]
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)


class ConfigValidationError(EntitySyncError):
    """Raised when configuration validation fails.

    Examples:
        - Missing required configuration keys
        - Invalid configuration values
        - Type mismatches in configuration
    """

    error_code = "CFG001"

    def __init__(self, message: str, config_path: Optional[str] = None, key: Optional[str] = None):
        """
        Initialize configuration validation error.

        Args:
            message: Description of validation failure
            config_path: Path to config file that failed validation
            key: Specific configuration key that caused the error
        """
        details = {}
        if config_path:
            details['config_path'] = config_path
        if key:
            details['config_key'] = key
        super().__init__(message, details)


class InvalidKeyError(EntitySyncError):
    """Raised when a key cannot be built or decoded.

    Examples:
        - Flat key arrays with an odd number of elements
        - Zero integer ids or empty names
        - Incomplete ancestors
        - Undecodable URL-safe key strings
    """

    error_code = "KEY001"

    def __init__(self, message: str, raw: Optional[Any] = None):
        details = {}
        if raw is not None:
            details['raw'] = repr(raw)
        super().__init__(message, details)


class CodecError(EntitySyncError):
    """Raised when an entity cannot be encoded to or decoded from a document.

    Codec errors are fatal to the single entity being processed, never to a
    whole batch.

    Examples:
        - Unknown type tag
        - Type/value mismatch
        - Unparseable timestamp
        - Non-finite float
        - Unsupported property value type
    """

    error_code = "CODEC001"

    def __init__(
        self,
        message: str,
        property_name: Optional[str] = None,
        expected: Optional[str] = None,
        actual: Optional[Any] = None,
    ):
        """
        Initialize codec error.

        Args:
            message: Description of the codec failure
            property_name: Name of the offending property
            expected: Expected shape or type tag
            actual: The value (or its shape) actually found
        """
        details = {}
        if property_name is not None:
            details['property'] = property_name
        if expected is not None:
            details['expected'] = expected
        if actual is not None:
            details['actual'] = actual
        super().__init__(message, details)
        self.property_name = property_name


class StoreError(EntitySyncError):
    """Raised when a store read or write fails.

    Examples:
        - Query execution failures
        - Put/get failures
        - Corrupt stored data
    """

    error_code = "STORE001"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        kind: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        """
        Initialize store error.

        Args:
            message: Description of store failure
            operation: Operation that failed (query, get, put, allocate_ids)
            kind: Entity kind involved in the operation
            original_error: Original exception that caused this error
        """
        details = {}
        if operation:
            details['operation'] = operation
        if kind:
            details['kind'] = kind
        if original_error:
            details['original_error'] = str(original_error)
            details['error_type'] = type(original_error).__name__

        super().__init__(message, details)
        self.original_error = original_error


class StoreTimeoutError(StoreError):
    """Raised when a store operation times out.

    Timeouts are transient: the scan engine re-issues the query from its
    last good cursor instead of counting them against the error budget.
    """

    error_code = "STORE002"


class InvalidCursorError(StoreError):
    """Raised when a cursor is used with a query it was not issued for."""

    error_code = "STORE003"


class NoSuchEntityError(StoreError):
    """Raised when a get by key finds no entity."""

    error_code = "STORE004"


class IngestionError(EntitySyncError):
    """Raised when a sink rejects a batch of rows.

    Examples:
        - HTTP request failures
        - Per-row insert errors reported by the sink
    """

    error_code = "INGEST001"

    def __init__(
        self,
        message: str,
        destination: Optional[str] = None,
        row_count: Optional[int] = None,
        row_errors: Optional[List[Any]] = None,
        original_error: Optional[Exception] = None
    ):
        """
        Initialize ingestion error.

        Args:
            message: Description of ingestion failure
            destination: Sink destination (project:dataset.table)
            row_count: Number of rows in the failed request
            row_errors: Per-row errors reported by the sink
            original_error: Original exception that caused this error
        """
        details = {}
        if destination:
            details['destination'] = destination
        if row_count is not None:
            details['row_count'] = row_count
        if row_errors:
            details['failed_rows'] = [getattr(e, "index", None) for e in row_errors]
        if original_error:
            details['original_error'] = str(original_error)
            details['error_type'] = type(original_error).__name__

        super().__init__(message, details)
        self.row_errors = list(row_errors or [])
        self.original_error = original_error


class InvalidRangeError(EntitySyncError):
    """Raised when a key range cannot be synced.

    Examples:
        - Missing start key
        - Start and end keys of different kinds
    """

    error_code = "SYNC001"


class SyncCancelledError(EntitySyncError):
    """Raised (or recorded) when the caller cancels a range sync."""

    error_code = "SYNC002"


class SyncErrors(EntitySyncError):
    """Aggregate of every error recorded during one range sync."""

    error_code = "SYNC003"

    def __init__(self, errors: List[Exception]):
        self.errors = list(errors)
        super().__init__(";".join(str(e) for e in self.errors), {'count': len(self.errors)})

    def __len__(self) -> int:
        return len(self.errors)

    def __iter__(self):
        return iter(self.errors)
