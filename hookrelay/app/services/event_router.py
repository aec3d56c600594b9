"""Inbound webhook event routing.

Each event arrives for one secret and takes exactly one of two paths:

Handshake
    The body carries a challenge (by default ``body["d"]["event_ts"]`` and
    ``body["d"]["plain_token"]``). The router answers with the Ed25519
    signature derived from the secret. In auto-onboarding mode an unknown
    secret is registered on the spot; a disabled secret is never
    re-enabled by a handshake.

Payload
    Anything else. Unknown or disabled secrets are refused with
    ``AdmissionDenied`` (without saying which); otherwise the body is fanned
    out to the secret's live connections and the delivery status is
    returned. Delivery problems never raise: the event source only needs to
    know the event was accepted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from hookrelay.app.config import Settings
from hookrelay.app.errors import AdmissionDenied, CryptoError
from hookrelay.app.services import signer
from hookrelay.app.services.activity_log import ActivityLog, mask_secret
from hookrelay.app.services.signer import SIGNATURE_DISABLED, SignatureResponse, VerificationChallenge
from hookrelay.app.services.tenant_registry import TenantRegistry
from hookrelay.app.services.ws_manager import ConnectionManager, DeliveryResult, DeliveryStatus


class ChallengeExtractor(Protocol):
    def __call__(self, body: Any) -> VerificationChallenge | None: ...


@dataclass(frozen=True)
class FieldChallengeExtractor:
    """Reads the challenge from two fields nested under one envelope key."""

    envelope: str = "d"
    timestamp_field: str = "event_ts"
    token_field: str = "plain_token"

    @classmethod
    def from_settings(cls, settings: Settings) -> FieldChallengeExtractor:
        return cls(
            envelope=settings.handshake_envelope,
            timestamp_field=settings.handshake_timestamp_field,
            token_field=settings.handshake_token_field,
        )

    def __call__(self, body: Any) -> VerificationChallenge | None:
        if not isinstance(body, dict):
            return None
        inner = body.get(self.envelope)
        if not isinstance(inner, dict):
            return None
        event_ts = inner.get(self.timestamp_field)
        plain_token = inner.get(self.token_field)
        if not event_ts or not plain_token:
            return None
        return VerificationChallenge(event_ts=str(event_ts), plain_token=str(plain_token))


class EventRouter:
    def __init__(
        self,
        registry: TenantRegistry,
        manager: ConnectionManager,
        activity: ActivityLog,
        *,
        extractor: ChallengeExtractor | None = None,
        signature_validation: bool = True,
    ) -> None:
        self._registry = registry
        self._manager = manager
        self._activity = activity
        self.extractor: ChallengeExtractor = extractor or FieldChallengeExtractor()
        self.signature_validation = signature_validation

    async def handle(self, tenant_id: str, body: Any) -> dict[str, Any]:
        """Route one inbound event and return the response body."""
        challenge = self.extractor(body)
        if challenge is not None:
            return (await self.handshake(tenant_id, challenge)).to_dict()
        return (await self.deliver(tenant_id, body)).to_dict()

    async def handshake(self, tenant_id: str, challenge: VerificationChallenge) -> SignatureResponse:
        """Answer a signature challenge.

        Raises:
            CryptoError: signing failed; nothing is created or touched.
        """
        secret = mask_secret(tenant_id)
        self._activity.record("info", "Signature validation request received", secret=secret)

        if self.signature_validation:
            try:
                response = signer.sign_challenge(tenant_id, challenge)
            except CryptoError:
                self._activity.record("error", "Signature validation failed", secret=secret)
                raise
            self._activity.record("info", "Signature validation succeeded", secret=secret)
        else:
            self._activity.record(
                "warning", "Signature validation disabled, accepting challenge", secret=secret
            )
            response = SignatureResponse(plain_token=challenge.plain_token, signature=SIGNATURE_DISABLED)

        if not self._registry.policy.require_manual_key_management:
            created = await self._registry.create_if_absent(
                tenant_id,
                description=(
                    "Auto-registered (signature validated)"
                    if self.signature_validation
                    else "Auto-registered (signature validation disabled)"
                ),
            )
            if created is not None:
                self._activity.record("info", "New secret auto-registered after handshake", secret=secret)

        await self._registry.touch_last_used(tenant_id)
        return response

    async def deliver(self, tenant_id: str, payload: Any) -> DeliveryResult:
        """Fan a payload out to the secret's live connections.

        Raises:
            AdmissionDenied: the secret is unknown or disabled.
        """
        secret = mask_secret(tenant_id)
        if not await self._registry.is_admissible(tenant_id):
            self._activity.record("warning", "Payload rejected: secret disabled or not found", secret=secret)
            raise AdmissionDenied(tenant_id)

        await self._registry.touch_last_used(tenant_id)
        result = await self._manager.dispatch(tenant_id, payload)

        if result.status is DeliveryStatus.DELIVERED:
            self._activity.record(
                "info", "Payload delivered", secret=secret, delivered=result.delivered, failed=result.failed
            )
        elif result.status is DeliveryStatus.NO_SUBSCRIBER:
            self._activity.record("warning", "Payload dropped: no live connection", secret=secret)
        else:
            self._activity.record("error", "Payload delivery failed", secret=secret, failed=result.failed)
        return result
