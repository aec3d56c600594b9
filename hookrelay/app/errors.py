"""Domain-specific exceptions for HookRelay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay errors."""


class CryptoError(RelayError):
    """Key derivation or signature computation failed."""


class AdmissionError(RelayError):
    """A transport connection was refused by admission control."""

    reason = "rejected"

    def __init__(self, tenant_id: str, message: str | None = None) -> None:
        self.tenant_id = tenant_id
        super().__init__(message or f"Connection rejected ({self.reason})")


class UnknownTenant(AdmissionError):
    """No tenant record exists for the secret."""

    reason = "unknown_tenant"

    def __init__(self, tenant_id: str) -> None:
        super().__init__(tenant_id, "Secret not found — complete webhook signature validation first")


class TenantDisabled(AdmissionError):
    """The tenant exists but is disabled."""

    reason = "tenant_disabled"

    def __init__(self, tenant_id: str) -> None:
        super().__init__(tenant_id, "Secret is disabled")


class ConnectionLimitExceeded(AdmissionError):
    """The tenant already has its maximum number of live connections."""

    reason = "connection_limit_exceeded"

    def __init__(self, tenant_id: str, limit: int) -> None:
        self.limit = limit
        super().__init__(tenant_id, f"Connection limit reached ({limit})")


class AdmissionDenied(RelayError):
    """Payload rejected for a secret that is unknown or disabled.

    Deliberately does not say which of the two applies.
    """

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        super().__init__("Secret disabled or not found")


class SendError(RelayError):
    """Delivering a frame to a single channel failed."""
