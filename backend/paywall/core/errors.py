from __future__ import annotations

from typing import Any

CREDENTIAL_FAILURE_STATUSES = {401, 403}


class PaywallError(RuntimeError):
    status_code = 500

    def __init__(self, message: str, *, details: Any = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code


class ValidationError(PaywallError):
    """Malformed request; never retried."""

    status_code = 400


class ConfigurationError(PaywallError):
    """Missing credentials or settings; operator-actionable."""

    status_code = 500


class NotFoundError(PaywallError):
    status_code = 404


class GatewayError(PaywallError):
    """The payment gateway answered with an error or stayed unreachable.

    ``retryable`` tells the caller whether asking again later can succeed
    (transient outage) or not (bad payment id, rejected credentials).
    """

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        retryable: bool = False,
        attempts: int = 1,
        details: Any = None,
    ) -> None:
        if retryable:
            status_code = 503
        elif upstream_status in CREDENTIAL_FAILURE_STATUSES:
            # The access token was refused; the caller cannot fix that.
            status_code = 500
        else:
            status_code = 400
        super().__init__(message, details=details, status_code=status_code)
        self.upstream_status = upstream_status
        self.retryable = retryable
        self.attempts = attempts
