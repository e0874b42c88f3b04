"""Gateway error taxonomy.

Every error a caller can see carries a machine-readable ``kind``, a human
message, whether trying again later may help, and for quota errors the
current usage snapshot.
"""

from __future__ import annotations

from app.gateway.types import FailureClass, FatalFailure, RetryableFailure, UsageSnapshot


class GatewayError(Exception):
    """Base class for all errors surfaced by the generation gateway."""

    kind = "gateway_error"
    retryable = False
    status_code = 500

    def __init__(self, message: str, snapshot: UsageSnapshot | None = None):
        super().__init__(message)
        self.message = message
        self.snapshot = snapshot

    def to_dict(self) -> dict:
        data = {
            "error": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.snapshot is not None:
            data["usage"] = self.snapshot.to_dict()
        return data


class ValidationError(GatewayError):
    """Bad input. Never retried, never consumes quota."""

    kind = "validation_error"
    status_code = 400


class QuotaExceeded(GatewayError):
    """Local usage quota rejected the request before any remote work."""

    kind = "quota_exceeded"
    retryable = True
    status_code = 429


class RemoteRateLimited(GatewayError):
    kind = "remote_rate_limited"
    retryable = True
    status_code = 503


class RemoteServerError(GatewayError):
    kind = "remote_server_error"
    retryable = True
    status_code = 502


class GatewayTimeout(GatewayError):
    kind = "timeout"
    retryable = True
    status_code = 504


class RemoteClientError(GatewayError):
    """Remote rejected the request itself (bad input, content policy)."""

    kind = "remote_client_error"
    status_code = 422


class RemoteProtocolError(GatewayError):
    """Remote answered without the expected artifact."""

    kind = "remote_protocol_error"
    status_code = 502


_ERROR_BY_CLASS: dict[FailureClass, type[GatewayError]] = {
    FailureClass.RATE_LIMITED: RemoteRateLimited,
    FailureClass.SERVER_ERROR: RemoteServerError,
    FailureClass.TIMEOUT: GatewayTimeout,
    FailureClass.CLIENT_ERROR: RemoteClientError,
    FailureClass.PROTOCOL_ERROR: RemoteProtocolError,
}


def error_from_outcome(outcome: RetryableFailure | FatalFailure) -> GatewayError:
    """Map a terminal remote failure to the error the caller sees."""
    error_cls = _ERROR_BY_CLASS.get(outcome.classification, GatewayError)
    if isinstance(outcome, RetryableFailure):
        message = outcome.message or "The generation service is busy. Please try again shortly."
    else:
        message = outcome.reason or "The request was rejected. Please change your input."
    return error_cls(message)
