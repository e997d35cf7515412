"""Failures raised by the flight price provider client."""
from typing import Optional


class ProviderError(Exception):
    """The provider could not produce a price this time."""


class TransientProviderError(ProviderError):
    """Network blip, timeout or 5xx/408 response; safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CircuitOpenError(ProviderError):
    """The circuit breaker is open; the call was rejected without network I/O."""


class ProviderAuthError(ProviderError):
    """Credentials missing or rejected by the provider."""
