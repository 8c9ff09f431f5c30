import asyncio
import re
from enum import Enum
from typing import Optional, Dict, Any

from sqlalchemy.exc import SQLAlchemyError


class ErrorKind(str, Enum):
    """Structured failure kinds the job queue branches on."""
    UNSUPPORTED_PROVIDER = "unsupported_provider"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NORMALIZATION = "normalization"
    PERSISTENCE = "persistence"
    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


# Kinds that mean the account itself needs a human to fix it
RECONFIGURATION_KINDS = frozenset({
    ErrorKind.UNSUPPORTED_PROVIDER,
    ErrorKind.AUTH,
    ErrorKind.CONFIGURATION,
})


class NimbusException(Exception):
    """Base exception for all ingestion errors."""
    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = True

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class UnsupportedProviderError(NimbusException):
    """Raised when the adapter registry has no adapter for a provider tag."""
    kind = ErrorKind.UNSUPPORTED_PROVIDER
    retryable = False

    def __init__(self, provider: str):
        super().__init__(
            f"Unsupported cloud provider: {provider}",
            code="unsupported_provider",
            status_code=400,
            details={"provider": provider}
        )
        self.provider = provider


class AdapterError(NimbusException):
    """
    Raised when an external cloud adapter fails.
    Automatically sanitizes error messages to avoid leaking internal cloud details.
    """
    def __init__(self, message: str, code: str = "adapter_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(self._sanitize(message), code=code, status_code=502, details=details)

    @staticmethod
    def _sanitize(msg: str) -> str:
        """Remove request IDs and inline secrets from provider error messages."""
        msg = re.sub(r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', '[REDACTED_ID]', msg, flags=re.IGNORECASE)
        msg = re.sub(r'(?i)(access_key|secret_key|token|password|signature)=[^&\s]+', r'\1=[REDACTED]', msg)
        return msg


class ProviderAuthError(AdapterError):
    """Credentials rejected or the provider API is not enabled for the account."""
    kind = ErrorKind.AUTH
    retryable = False

    def __init__(self, message: str, code: str = "provider_auth_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)
        self.status_code = 401


class ProviderRateLimitError(AdapterError):
    """The provider throttled us. Carries an optional retry-after hint in seconds."""
    kind = ErrorKind.RATE_LIMIT
    retryable = True

    def __init__(
        self,
        message: str,
        code: str = "provider_rate_limited",
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code=code, details=details)
        self.status_code = 429
        self.retry_after = retry_after


class ProviderTimeoutError(AdapterError):
    """A provider call exceeded its wait bound or the network dropped."""
    kind = ErrorKind.TIMEOUT
    retryable = True

    def __init__(self, message: str, code: str = "provider_timeout", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)
        self.status_code = 504


class NormalizationError(NimbusException):
    """A whole chunk of raw records could not be mapped to FOCUS."""
    kind = ErrorKind.NORMALIZATION
    retryable = False

    def __init__(self, message: str, skipped: int = 0, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="normalization_error", status_code=422, details=details)
        self.skipped = skipped


class PersistenceError(NimbusException):
    """Writing to the cost line item store failed. Safe to retry, writes are idempotent."""
    kind = ErrorKind.PERSISTENCE
    retryable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="persistence_error", status_code=503, details=details)


class JobTimeoutError(NimbusException):
    """Raised when a job exceeds its handler timeout."""
    kind = ErrorKind.TIMEOUT
    retryable = True

    def __init__(self, job_id: str, timeout_seconds: float):
        super().__init__(
            message=f"Job {job_id} exceeded timeout of {timeout_seconds} seconds",
            code="job_timeout",
            status_code=504,
            details={"job_id": job_id, "timeout_seconds": timeout_seconds}
        )


class ConfigurationError(NimbusException):
    """Raised when a job payload, account or credentials are invalid."""
    kind = ErrorKind.CONFIGURATION
    retryable = False

    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)


class ResourceNotFoundError(NimbusException):
    """Raised when a requested resource is not found."""
    kind = ErrorKind.NOT_FOUND
    retryable = False

    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)


class AccountNotFoundError(ResourceNotFoundError):
    def __init__(self, account_id: str):
        super().__init__(f"Cloud account {account_id} not found", code="account_not_found", details={"cloud_account_id": account_id})


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception raised by a job to the kind the retry policy understands."""
    if isinstance(exc, NimbusException):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, SQLAlchemyError):
        return ErrorKind.PERSISTENCE
    return ErrorKind.UNKNOWN
