"""Error taxonomy shared by every persistence provider."""

from typing import Optional


class DatabaseError(Exception):
    """Base error raised by persistence providers."""

    retryable = False

    def __init__(self, message: str, provider: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.provider = provider
        self.cause = cause


class NotConnectedError(DatabaseError):
    """Operation issued before connect() or after disconnect()."""

    def __init__(self, provider: str):
        super().__init__("Database not connected", provider)


class DatabaseConnectionError(DatabaseError, ConnectionError):
    """Backend unreachable at connect time."""

    def __init__(self, provider: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"Connection failed: {message}", provider, cause)


class RecordNotFoundError(DatabaseError):
    """A write targeted a specific record that does not exist."""

    def __init__(self, provider: str, record_type: str, identifier: str):
        super().__init__(f"{record_type} not found: {identifier}", provider)
        self.record_type = record_type
        self.identifier = identifier


class OperationTimeoutError(DatabaseError, TimeoutError):
    """An in-flight operation exceeded its deadline.

    Safe to retry for reads, upserts and deletes. Appends (milestones,
    extended memories, messages) may already have been applied.
    """

    retryable = True

    def __init__(self, provider: str, operation: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s: {operation}", provider)
        self.operation = operation
        self.timeout = timeout


class InvalidRequestError(DatabaseError, ValueError):
    """Request rejected before any I/O was attempted."""

    def __init__(self, message: str, provider: str = "core"):
        super().__init__(message, provider)
