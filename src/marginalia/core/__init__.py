from .base import ApplicationError, ErrorCode, ErrorLevel
from .errors import (
    DimensionMismatchError,
    EmbeddingNotFoundError,
    MalformedDemoDataError,
    ModelUnavailableError,
    PersistenceUnavailableError,
    ProcessingError,
)
