"""Ed25519 challenge signing for webhook callback validation.

The upstream event source validates a callback URL by sending a challenge
``{"event_ts": ..., "plain_token": ...}`` and expecting back the plain token
together with an Ed25519 signature over ``event_ts + plain_token``. The
signing key is derived from the tenant secret itself, so the same signature
can be reproduced at any time without storing keys or nonces:

- the secret's UTF-8 bytes are repeated until at least 32 bytes are
  available, then truncated to exactly 32 bytes;
- those 32 bytes are the Ed25519 private key seed;
- the signature is hex-encoded in lowercase.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from loguru import logger

from hookrelay.app.errors import CryptoError

KEY_SIZE = 32

# Returned instead of a real signature when validation is switched off globally
SIGNATURE_DISABLED = "signature_disabled"


@dataclass(frozen=True)
class VerificationChallenge:
    """One handshake challenge. Consumed once, never persisted."""

    event_ts: str
    plain_token: str


@dataclass(frozen=True)
class SignatureResponse:
    plain_token: str
    signature: str

    def to_dict(self) -> dict[str, str]:
        return {"plain_token": self.plain_token, "signature": self.signature}


def derive_key(secret: str) -> bytes:
    """Derive the 32-byte Ed25519 seed from a tenant secret."""
    raw = secret.encode("utf-8")
    if not raw:
        raise CryptoError("Cannot derive a signing key from an empty secret")
    if len(raw) < KEY_SIZE:
        raw = raw * (KEY_SIZE // len(raw) + 1)
    return raw[:KEY_SIZE]


def sign(secret: str, event_ts: str, plain_token: str) -> SignatureResponse:
    """Sign ``event_ts + plain_token`` with the key derived from ``secret``.

    Raises:
        CryptoError: if the key cannot be derived or signing fails.
    """
    try:
        private_key = Ed25519PrivateKey.from_private_bytes(derive_key(secret))
        message = f"{event_ts}{plain_token}".encode("utf-8")
        signature = private_key.sign(message)
    except CryptoError:
        logger.error("Signature generation failed: empty secret")
        raise
    except Exception as exc:
        logger.exception("Signature generation failed")
        raise CryptoError("Signature generation failed") from exc

    return SignatureResponse(plain_token=plain_token, signature=signature.hex())


def verify(secret: str, event_ts: str, plain_token: str, signature: str) -> bool:
    """Check ``signature`` against a freshly computed one. Never raises."""
    try:
        expected = sign(secret, event_ts, plain_token).signature
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
    except Exception:
        logger.debug("Signature verification failed for challenge ts={}", event_ts)
        return False


def sign_challenge(secret: str, challenge: VerificationChallenge) -> SignatureResponse:
    return sign(secret, challenge.event_ts, challenge.plain_token)
