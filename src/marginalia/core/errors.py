"""Specific error types for the embedding worker."""

from .base import ApplicationError, ErrorCode, ErrorDetails, ErrorLevel, ServiceErrorDetails, StorageErrorDetails


class ModelUnavailableError(ApplicationError):
    """The embedding model failed to initialize or is not ready yet."""

    def __init__(self, message: str, details: ServiceErrorDetails | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.MODEL_INITIALIZATION_ERROR,
            level=ErrorLevel.WARNING,
            details=details or ServiceErrorDetails(
                source="embedding_model",
                operation="initialize",
                service_name="unknown",
            ),
        )


class PersistenceUnavailableError(ApplicationError):
    """The durable key-value layer is absent or stopped answering."""

    def __init__(self, message: str, details: StorageErrorDetails | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.STORAGE_CONNECTION,
            level=ErrorLevel.WARNING,
            details=details or StorageErrorDetails(
                source="persistent_cache",
                operation="check_available",
                namespace="unknown",
            ),
        )


class EmbeddingNotFoundError(ApplicationError):
    """Requested id has no stored embedding."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.NOT_FOUND,
            level=ErrorLevel.INFO,
            details=details,
        )


class MalformedDemoDataError(ApplicationError):
    """Demo embedding blob could not be fetched or has the wrong size."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.INVALID_INPUT,
            level=ErrorLevel.WARNING,
            details=details,
        )


class DimensionMismatchError(ApplicationError):
    """A vector does not have the configured embedding dimension."""

    def __init__(self, message: str, details: ErrorDetails | dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.DIMENSION_MISMATCH,
            level=ErrorLevel.ERROR,
            details=details,
        )


class ProcessingError(ApplicationError):
    """General processing errors."""

    def __init__(self, message: str, details: ErrorDetails | dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.PROCESSING_FAILED,
            level=ErrorLevel.ERROR,
            details=details,
        )
