from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Failure kinds shared by every trust-core operation."""

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_INACTIVE = "account_inactive"
    UNVERIFIED_IDENTITY = "unverified_identity"
    INVALID_TOKEN = "invalid_token"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_EXPIRED = "token_expired"
    FEDERATION_ERROR = "federation_error"
    TRANSIENT_STORE_ERROR = "transient_store_error"
    INTEGRITY_VIOLATION = "integrity_violation"
    CONFIGURATION_ERROR = "configuration_error"


# (status_code, error_code) for the presentation layer
_KIND_CODES: dict[ErrorKind, tuple[int, str]] = {
    ErrorKind.INVALID_CREDENTIALS: (401, "unauthorized"),
    ErrorKind.INVALID_TOKEN: (401, "unauthorized"),
    ErrorKind.TOKEN_REVOKED: (401, "unauthorized"),
    ErrorKind.TOKEN_EXPIRED: (401, "unauthorized"),
    ErrorKind.ACCOUNT_INACTIVE: (403, "forbidden"),
    ErrorKind.UNVERIFIED_IDENTITY: (403, "forbidden"),
    ErrorKind.FEDERATION_ERROR: (502, "federation_error"),
    ErrorKind.TRANSIENT_STORE_ERROR: (503, "unavailable"),
    ErrorKind.INTEGRITY_VIOLATION: (409, "integrity_violation"),
    ErrorKind.CONFIGURATION_ERROR: (500, "server_error"),
}

# Kinds a caller may retry at its own discretion
RETRYABLE_KINDS = frozenset(
    {ErrorKind.TRANSIENT_STORE_ERROR, ErrorKind.FEDERATION_ERROR}
)


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception carries an ``ErrorKind`` plus the HTTP ``status_code`` and
    ``error_code`` an API layer maps it to:
    - unauthorized (401)
    - forbidden (403)
    - integrity_violation (409)
    - server_error (500)
    - federation_error (502)
    - unavailable (503)
    """

    kind: ErrorKind = ErrorKind.CONFIGURATION_ERROR

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[ErrorKind] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.detail = detail or {}

    @property
    def status_code(self) -> int:
        return _KIND_CODES[self.kind][0]

    @property
    def error_code(self) -> str:
        return _KIND_CODES[self.kind][1]


class ValidationError(ServiceError, ValueError):
    """Malformed input such as an empty secret or a non-positive retention period."""

    kind = ErrorKind.CONFIGURATION_ERROR

    @property
    def status_code(self) -> int:
        return 400

    @property
    def error_code(self) -> str:
        return "validation_error"


class TransientStoreError(ServiceError):
    """Store call timed out or the backing store is unreachable (retryable)."""

    kind = ErrorKind.TRANSIENT_STORE_ERROR


class FederationError(ServiceError):
    """External identity provider exchange failed (retryable)."""

    kind = ErrorKind.FEDERATION_ERROR


class IntegrityViolation(ServiceError):
    """A stored audit entry no longer matches its chained hash."""

    kind = ErrorKind.INTEGRITY_VIOLATION


class ConfigurationError(ServiceError):
    """Missing or unusable configuration, detected at construction time."""

    kind = ErrorKind.CONFIGURATION_ERROR


_KIND_EXCEPTIONS: dict[ErrorKind, type[ServiceError]] = {
    ErrorKind.TRANSIENT_STORE_ERROR: TransientStoreError,
    ErrorKind.FEDERATION_ERROR: FederationError,
    ErrorKind.INTEGRITY_VIOLATION: IntegrityViolation,
    ErrorKind.CONFIGURATION_ERROR: ConfigurationError,
}


@dataclass(frozen=True)
class Failure:
    """Typed business failure returned instead of raised."""

    kind: ErrorKind
    message: str
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def status_code(self) -> int:
        return _KIND_CODES[self.kind][0]

    @property
    def error_code(self) -> str:
        return _KIND_CODES[self.kind][1]

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_exception(self) -> ServiceError:
        exc_cls = _KIND_EXCEPTIONS.get(self.kind, ServiceError)
        return exc_cls(self.message, kind=self.kind, detail=dict(self.detail))


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a ``Failure``; callers branch on ``ok``."""

    value: Optional[T] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.failure.kind if self.failure else None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(
        cls, kind: ErrorKind, message: str, detail: Optional[dict] = None
    ) -> "Result[T]":
        return cls(failure=Failure(kind, message, detail or {}))

    @classmethod
    def from_error(cls, exc: ServiceError) -> "Result[T]":
        return cls(failure=Failure(exc.kind, exc.message, dict(exc.detail)))

    def unwrap(self) -> T:
        if self.failure is not None:
            raise self.failure.to_exception()
        return self.value  # type: ignore[return-value]


__all__ = [
    "ErrorKind",
    "RETRYABLE_KINDS",
    "ServiceError",
    "ValidationError",
    "TransientStoreError",
    "FederationError",
    "IntegrityViolation",
    "ConfigurationError",
    "Failure",
    "Result",
]
