# core/errors.py
from typing import Any, Optional


class CollectorError(Exception):
    """Root of every error the collector raises on purpose."""
    code = "COLLECTOR_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def __str__(self):
        return self.message


class ConfigurationError(CollectorError):
    code = "CONFIGURATION_ERROR"


class ValidationError(CollectorError):
    code = "VALIDATION_ERROR"


class StorageError(CollectorError):
    code = "STORAGE_ERROR"


class DataProviderError(CollectorError):
    code = "DATA_PROVIDER_ERROR"


class RateLimitedError(DataProviderError):
    """Provider asked us to slow down."""
    code = "RATE_LIMITED"


class NotFoundError(DataProviderError):
    """Provider reports no data for the requested range. Not a failure."""
    code = "NOT_FOUND"


class TransientNetworkError(DataProviderError):
    """Connection reset, timeout, 5xx."""
    code = "TRANSIENT_NETWORK"


class FatalProviderError(DataProviderError):
    """Provider rejected the request in a way a retry cannot fix (bad key, bad params)."""
    code = "FATAL_PROVIDER"


class ResultWindowTooLargeError(FatalProviderError):
    """Provider will not page this deep into one query; a smaller block range is needed."""
    code = "RESULT_WINDOW_TOO_LARGE"


class RetryExhaustedError(CollectorError):
    code = "RETRY_EXHAUSTED"

    def __init__(self, description: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{description} failed after {attempts} attempts: {last_error}",
            details={"attempts": attempts, "last_error": repr(last_error)},
        )
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
