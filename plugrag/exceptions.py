class PlugRAGError(Exception):
    """Base exception for plugrag."""


class ConfigurationError(PlugRAGError):
    """Raised when configuration is missing or invalid."""


class CredentialError(ConfigurationError):
    """Raised when no usable API key exists for a bot."""


class BotNotFoundError(ConfigurationError):
    """Raised when a bot is unknown or not owned by the caller."""


class ObjectNotFoundError(PlugRAGError):
    """Raised when the object store has no (or empty) bytes for a key."""


class ContentError(PlugRAGError):
    """Raised when a document yields nothing that can be embedded."""


class ExtractionError(PlugRAGError):
    """Raised by an extractor that cannot handle its input."""


class VectorStoreError(PlugRAGError):
    """Raised when a vector collection cannot be read or written."""


class JobError(PlugRAGError):
    """Raised on invalid job queue operations."""


class LLMError(PlugRAGError):
    """Raised when the model API rejects a request."""


# Retriable errors


class TransientError(PlugRAGError):
    pass


class NetworkError(TransientError):
    pass


class RateLimitError(TransientError):
    pass


class StepTimeoutError(TransientError):
    """Raised when a pipeline step exceeds its time budget."""


NON_RETRYABLE = (ConfigurationError, ObjectNotFoundError, ContentError, JobError)


def is_retryable(error: BaseException) -> bool:
    """Decide whether a failed job should be attempted again.

    Transient errors and anything unclassified are retried; configuration
    and content problems will not fix themselves and fail the job at once.
    """
    if isinstance(error, TransientError):
        return True
    return not isinstance(error, NON_RETRYABLE)


def error_text(error: BaseException) -> str:
    """Non-empty human-readable text for an exception."""
    return str(error) or type(error).__name__
