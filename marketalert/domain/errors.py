# marketalert/domain/errors.py
from __future__ import annotations


class MarketAlertError(Exception):
    """Base for every typed error raised by the scan/notification core."""


class NotFoundError(MarketAlertError):
    def __init__(self, kind: str, ref: object) -> None:
        super().__init__(f"{kind} not found: {ref}")
        self.kind = kind
        self.ref = ref


class ConflictError(MarketAlertError):
    """A scan is already active for the institution (or the institution id is taken)."""

    def __init__(self, institution_id: str, active_scan_id: str | None = None, message: str | None = None) -> None:
        super().__init__(message or f"scan already running for institution {institution_id}")
        self.institution_id = institution_id
        self.active_scan_id = active_scan_id


class InvalidStateError(MarketAlertError):
    pass


class ValidationError(MarketAlertError):
    pass


class ExternalServiceError(MarketAlertError):
    def __init__(self, service: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status_code = status_code


class TransientError(ExternalServiceError):
    """Timeout, network error, 408/429/5xx. Safe to retry."""


class PermanentError(ExternalServiceError):
    """
    4xx (other than 408/429), malformed responses, missing credentials.
    is_configuration marks failures no retry or later batch can fix (bad API key).
    """

    def __init__(
        self,
        service: str,
        message: str,
        *,
        status_code: int | None = None,
        is_configuration: bool = False,
    ) -> None:
        super().__init__(service, message, status_code=status_code)
        self.is_configuration = is_configuration
