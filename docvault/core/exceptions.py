"""Custom exception hierarchy."""

from typing import Optional


class AppError(Exception):
    """Base exception for application errors."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error


class APIClientError(AppError):
    """Raised when an external API call fails."""
    pass


class APITimeoutError(APIClientError):
    """Raised when an external API call times out."""
    pass


class DatabaseError(AppError):
    """Raised when a database operation fails."""
    pass


class ValidationError(AppError):
    """Raised when input validation fails."""
    pass


class ConfigurationError(AppError):
    """Raised when configuration is invalid or missing."""
    pass


class StorageError(AppError):
    """Base exception for storage synchronization errors."""
    pass


class BackendWriteError(StorageError):
    """A single backend rejected or failed a write (network, 5xx, timeout)."""

    def __init__(
        self,
        message: str,
        backend_name: str,
        original_error: Exception = None,
    ):
        super().__init__(message, original_error=original_error)
        self.backend_name = backend_name


class BackendNotFoundError(StorageError):
    """Raised when an object or backend cannot be found."""
    pass


class RetryExhaustedError(StorageError):
    """A sync queue item ran past the retry ceiling."""

    def __init__(self, message: str, document_id: str, backend_name: str):
        super().__init__(message)
        self.document_id = document_id
        self.backend_name = backend_name


class VaultError(AppError):
    """Base exception for vault lock/retention errors."""
    pass


class IllegalTransitionError(VaultError):
    """Raised when a lock state transition is not allowed."""
    pass


class RetentionViolation(IllegalTransitionError):
    """Raised when unlocking a document still under retention."""

    def __init__(self, message: str, retention_end_date: Optional[object] = None):
        super().__init__(message)
        self.retention_end_date = retention_end_date


class ConcurrentModificationError(VaultError):
    """Raised to the losing writer when two actors modify the same record."""
    pass


class PermissionDeniedError(VaultError):
    """Raised when an actor's role does not allow an operation."""
    pass


class DocumentNotFoundError(VaultError):
    """Raised when a document id is unknown to the catalog."""
    pass


class VerificationError(VaultError):
    """Raised when the verification provider fails or rejects a document."""
    pass


class EventTransportError(AppError):
    """Raised when the event transport is disconnected or a send fails."""
    pass


class VerificationUnavailableError(VerificationError):
    """Raised when the verification provider keeps failing and retries run out."""
    pass
