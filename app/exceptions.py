import enum
from http import HTTPStatus
from typing import Any

_EXTRA_KEYS = ("action", "account_id", "provider", "queue", "job_id", "key")


class ErrorType(enum.Enum):
    CIRCUIT_OPEN = "circuit_open"
    DUPLICATE_JOB = "duplicate_job"
    ENTITY_NOT_FOUND = "entity_not_found"
    INTERNAL_ERROR = "internal_error"
    INVALID_DATA = "invalid_data"
    JOB_FAILED = "job_failed"
    LOCK_NOT_ACQUIRED = "lock_not_acquired"
    NOT_SUPPORTED = "not_supported"
    PROVIDER_AUTH = "provider_auth"
    PROVIDER_RATE_LIMITED = "provider_rate_limited"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    STALE_CURSOR = "stale_cursor"
    STORE_UNAVAILABLE = "store_unavailable"
    THIRD_PARTY_REQUEST = "third_party_request"
    UNSPECIFIED = "unspecified"


class BaseError(Exception):
    extra: dict[str, Any]

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.UNSPECIFIED,
        status_code: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR,
        **kwargs: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.extra = {}

        for key in _EXTRA_KEYS:
            value = kwargs.get(key)
            if value is not None:
                self.extra[key] = value

    def __str__(self) -> str:
        return f"error: {self.error_type.value}; description: {self.message}"


class EntityNotFoundError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.ENTITY_NOT_FOUND,
        status_code: HTTPStatus = HTTPStatus.NOT_FOUND,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class InvalidDataError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.INVALID_DATA,
        status_code: HTTPStatus = HTTPStatus.BAD_REQUEST,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class NotSupportedError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.NOT_SUPPORTED,
        status_code: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class TransientStoreError(BaseError):
    """The relational store could not be reached; safe to retry."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.STORE_UNAVAILABLE,
        status_code: HTTPStatus = HTTPStatus.SERVICE_UNAVAILABLE,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class CounterStoreError(BaseError):
    """The shared counter store (Redis) failed."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.STORE_UNAVAILABLE,
        status_code: HTTPStatus = HTTPStatus.SERVICE_UNAVAILABLE,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class ProviderError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.THIRD_PARTY_REQUEST,
        status_code: HTTPStatus = HTTPStatus.BAD_GATEWAY,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class ProviderRateLimitedError(ProviderError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.PROVIDER_RATE_LIMITED,
        status_code: HTTPStatus = HTTPStatus.TOO_MANY_REQUESTS,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class ProviderAuthError(ProviderError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.PROVIDER_AUTH,
        status_code: HTTPStatus = HTTPStatus.UNAUTHORIZED,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class ProviderUnavailableError(ProviderError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.PROVIDER_UNAVAILABLE,
        status_code: HTTPStatus = HTTPStatus.SERVICE_UNAVAILABLE,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class StaleCursorError(ProviderError):
    """The provider rejected the incremental cursor; a full sync is required."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.STALE_CURSOR,
        status_code: HTTPStatus = HTTPStatus.GONE,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class CircuitOpenError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.CIRCUIT_OPEN,
        status_code: HTTPStatus = HTTPStatus.SERVICE_UNAVAILABLE,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class LockNotAcquiredError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.LOCK_NOT_ACQUIRED,
        status_code: HTTPStatus = HTTPStatus.CONFLICT,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class DuplicateJobError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.DUPLICATE_JOB,
        status_code: HTTPStatus = HTTPStatus.CONFLICT,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class JobPermanentFailure(BaseError):
    """A job exhausted its attempts and will not be retried."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.JOB_FAILED,
        status_code: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)
