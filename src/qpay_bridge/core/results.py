"""
Result objects and error taxonomy shared by the gateway client and workflows.

Expected failures (bad credentials, gateway rejections, invalid signatures)
are returned as values rather than raised, in the same spirit as payment SDK
responses that expose ``is_success()``, ``body`` and ``errors``. Callers
inspect the result and decide how to surface the error.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Result(Generic[T, E]):
    """Outcome of an operation: either a value or an error, never both."""

    value: T | None = None
    error: E | None = None

    @classmethod
    def ok(cls, value: T) -> "Result[T, E]":
        return cls(value=value)

    @classmethod
    def fail(cls, error: E) -> "Result[T, E]":
        return cls(error=error)

    def is_success(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, raising ``ValueError`` if the result is a failure."""
        if self.error is not None:
            raise ValueError(f"Result is a failure: {self.error}")
        return self.value  # type: ignore[return-value]


class AuthErrorKind(Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    NETWORK_ERROR = "network_error"
    UNEXPECTED_RESPONSE = "unexpected_response"


@dataclass(frozen=True)
class AuthError:
    """Failure of the client-credentials exchange."""

    kind: AuthErrorKind
    message: str
    status_code: int | None = None


class RequestErrorKind(Enum):
    AUTHENTICATION_FAILED = "authentication_failed"
    GATEWAY_ERROR = "gateway_error"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    UNEXPECTED_RESPONSE = "unexpected_response"


@dataclass(frozen=True)
class RequestError:
    """Failure of an authenticated call to the payment gateway."""

    kind: RequestErrorKind
    message: str
    status_code: int | None = None
    body: str | None = None
    auth_error: AuthError | None = None

    @property
    def is_retryable(self) -> bool:
        """Whether the caller may retry the call later with backoff.

        Only server-side gateway errors and transport failures qualify; 4xx
        responses and exhausted authentication are final.
        """
        if self.kind in (RequestErrorKind.TIMEOUT, RequestErrorKind.NETWORK_ERROR):
            return True
        if self.kind == RequestErrorKind.GATEWAY_ERROR and self.status_code is not None:
            return self.status_code >= 500
        return False

    @classmethod
    def from_auth_error(cls, error: AuthError) -> "RequestError":
        if error.kind == AuthErrorKind.NETWORK_ERROR:
            kind = RequestErrorKind.NETWORK_ERROR
        else:
            kind = RequestErrorKind.AUTHENTICATION_FAILED
        return cls(
            kind=kind,
            message=error.message,
            status_code=error.status_code,
            auth_error=error,
        )


class WorkflowErrorKind(Enum):
    DUPLICATE_INVOICE = "duplicate_invoice"
    VALIDATION_ERROR = "validation_error"
    GATEWAY_REJECTED = "gateway_rejected"
    AUTHENTICATION_FAILED = "authentication_failed"
    NETWORK_ERROR = "network_error"
    UNEXPECTED_RESPONSE = "unexpected_response"
    NOT_FOUND = "not_found"


_WORKFLOW_HTTP_STATUS = {
    WorkflowErrorKind.DUPLICATE_INVOICE: 409,
    WorkflowErrorKind.VALIDATION_ERROR: 422,
    WorkflowErrorKind.GATEWAY_REJECTED: 502,
    WorkflowErrorKind.AUTHENTICATION_FAILED: 502,
    WorkflowErrorKind.NETWORK_ERROR: 504,
    WorkflowErrorKind.UNEXPECTED_RESPONSE: 502,
    WorkflowErrorKind.NOT_FOUND: 404,
}


@dataclass(frozen=True)
class WorkflowError:
    """Failure of an invoice workflow operation."""

    kind: WorkflowErrorKind
    message: str
    request_error: RequestError | None = None

    @property
    def http_status(self) -> int:
        return _WORKFLOW_HTTP_STATUS[self.kind]

    @classmethod
    def from_request_error(cls, error: RequestError) -> "WorkflowError":
        if error.kind == RequestErrorKind.AUTHENTICATION_FAILED:
            kind = WorkflowErrorKind.AUTHENTICATION_FAILED
        elif error.kind in (RequestErrorKind.TIMEOUT, RequestErrorKind.NETWORK_ERROR):
            kind = WorkflowErrorKind.NETWORK_ERROR
        elif error.kind == RequestErrorKind.UNEXPECTED_RESPONSE:
            kind = WorkflowErrorKind.UNEXPECTED_RESPONSE
        else:
            kind = WorkflowErrorKind.GATEWAY_REJECTED
        return cls(kind=kind, message=error.message, request_error=error)


class ReconcileErrorKind(Enum):
    INVALID_SIGNATURE = "invalid_signature"
    RECORD_NOT_FOUND = "record_not_found"
    MALFORMED_PAYLOAD = "malformed_payload"


_RECONCILE_HTTP_STATUS = {
    ReconcileErrorKind.INVALID_SIGNATURE: 401,
    ReconcileErrorKind.RECORD_NOT_FOUND: 200,
    ReconcileErrorKind.MALFORMED_PAYLOAD: 400,
}


@dataclass(frozen=True)
class ReconcileError:
    """Failure to reconcile an inbound payment notification."""

    kind: ReconcileErrorKind
    message: str
    invoice_id: str | None = None

    @property
    def acknowledge(self) -> bool:
        """Whether the gateway should still receive a success acknowledgement."""
        return self.kind == ReconcileErrorKind.RECORD_NOT_FOUND

    @property
    def http_status(self) -> int:
        return _RECONCILE_HTTP_STATUS[self.kind]
