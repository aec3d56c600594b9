"""Tests for webhook event routing: handshakes, onboarding and delivery."""

import pytest
from conftest import FakeChannel, handshake_body

from hookrelay.app.errors import AdmissionDenied, CryptoError
from hookrelay.app.services import signer
from hookrelay.app.services.event_router import EventRouter, FieldChallengeExtractor
from hookrelay.app.services.signer import SIGNATURE_DISABLED, VerificationChallenge
from hookrelay.app.services.ws_manager import DeliveryStatus

# ---------------------------------------------------------------------------
# Challenge extraction
# ---------------------------------------------------------------------------


def test_extractor_reads_default_fields():
    challenge = FieldChallengeExtractor()(handshake_body())
    assert challenge == VerificationChallenge(event_ts="1700000000", plain_token="abcd1234")


@pytest.mark.parametrize(
    "body",
    [
        {"d": {"event_ts": "1700000000"}},
        {"d": {"plain_token": "abcd1234"}},
        {"d": {"event_ts": "", "plain_token": "abcd1234"}},
        {"d": "not a dict"},
        {"event_ts": "1700000000", "plain_token": "abcd1234"},
        ["d"],
        "text",
    ],
)
def test_extractor_treats_incomplete_bodies_as_payloads(body):
    assert FieldChallengeExtractor()(body) is None


def test_extractor_field_names_are_configurable():
    extractor = FieldChallengeExtractor(envelope="data", timestamp_field="ts", token_field="token")
    body = {"data": {"ts": 1700000000, "token": "xyz"}}
    assert extractor(body) == VerificationChallenge(event_ts="1700000000", plain_token="xyz")
    assert extractor(handshake_body()) is None


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_handshake_signs_and_onboards_unknown_secret(router, registry):
    response = await router.handle("new-secret", handshake_body())

    assert response == signer.sign("new-secret", "1700000000", "abcd1234").to_dict()
    record = await registry.get("new-secret")
    assert record is not None
    assert record.enabled is True
    assert record.last_used_at is not None


@pytest.mark.asyncio
async def test_handshake_in_manual_mode_creates_nothing(router, registry, policy):
    policy.require_manual_key_management = True

    response = await router.handle("new-secret", handshake_body())

    assert signer.verify("new-secret", "1700000000", "abcd1234", response["signature"])
    assert await registry.get("new-secret") is None
    with pytest.raises(AdmissionDenied):
        await router.handle("new-secret", {"event": "push"})


@pytest.mark.asyncio
async def test_handshake_never_re_enables_disabled_secret(router, registry):
    await registry.upsert("blocked", enabled=False, description="abuse")

    response = await router.handle("blocked", handshake_body())

    assert response["plain_token"] == "abcd1234"
    record = await registry.get("blocked")
    assert record.enabled is False
    assert record.description == "abuse"


@pytest.mark.asyncio
async def test_handshake_with_validation_disabled(registry, manager, activity):
    router = EventRouter(registry, manager, activity, signature_validation=False)

    response = await router.handle("new-secret", handshake_body())

    assert response == {"plain_token": "abcd1234", "signature": SIGNATURE_DISABLED}
    record = await registry.get("new-secret")
    assert record is not None
    assert "disabled" in record.description


@pytest.mark.asyncio
async def test_handshake_crypto_failure_creates_nothing(router, registry):
    with pytest.raises(CryptoError):
        await router.handle("", handshake_body())
    assert await registry.count() == 0


@pytest.mark.asyncio
async def test_handshake_uses_custom_extractor(registry, manager, activity):
    router = EventRouter(
        registry,
        manager,
        activity,
        extractor=FieldChallengeExtractor(envelope="payload"),
    )
    body = {"payload": {"event_ts": "1", "plain_token": "tok"}}

    response = await router.handle("tenant-a", body)

    assert response["signature"] == signer.sign("tenant-a", "1", "tok").signature


# ---------------------------------------------------------------------------
# Payload delivery
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_payload_for_unknown_secret_is_denied(router, registry):
    """Unknown ids are never onboarded through the payload path."""
    with pytest.raises(AdmissionDenied):
        await router.handle("ghost", {"event": "push"})
    assert await registry.get("ghost") is None


@pytest.mark.asyncio
async def test_payload_for_disabled_secret_leaves_last_used_untouched(router, registry):
    await registry.upsert("blocked", enabled=False)

    with pytest.raises(AdmissionDenied) as exc_info:
        await router.handle("blocked", {"event": "push"})

    assert str(exc_info.value) == "Secret disabled or not found"
    assert (await registry.get("blocked")).last_used_at is None


@pytest.mark.asyncio
async def test_payload_delivered_to_subscribers(router, registry, manager):
    await registry.upsert("tenant-a")
    channel = FakeChannel()
    await manager.admit("tenant-a", channel)

    response = await router.handle("tenant-a", {"event": "push", "d": {"event_ts": "1"}})

    assert response == {"status": "delivered", "delivered": 1, "failed": 0}
    assert channel.messages() == [{"event": "push", "d": {"event_ts": "1"}}]
    assert (await registry.get("tenant-a")).last_used_at is not None


@pytest.mark.asyncio
async def test_payload_without_subscribers_is_not_an_error(router, registry, activity):
    await registry.upsert("tenant-a")

    result = await router.deliver("tenant-a", {"event": "push"})

    assert result.status is DeliveryStatus.NO_SUBSCRIBER
    assert activity.recent(limit=1)[0].message == "Payload dropped: no live connection"


@pytest.mark.asyncio
async def test_send_failure_reported_not_raised(router, registry, manager):
    await registry.upsert("tenant-a")
    await manager.admit("tenant-a", FakeChannel(fail_with=RuntimeError("gone")))

    result = await router.deliver("tenant-a", {"event": "push"})

    assert result.status is DeliveryStatus.SEND_ERROR
    assert manager.count("tenant-a") == 0
