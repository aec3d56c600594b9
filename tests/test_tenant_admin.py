"""Tests for administrator operations on secrets."""

import pytest
from conftest import FakeChannel

from hookrelay.app.errors import TenantDisabled, UnknownTenant
from hookrelay.app.services.activity_log import ActivityLog, mask_secret


async def _connect(manager, secret, n=1):
    channels = [FakeChannel() for _ in range(n)]
    for ch in channels:
        await manager.admit(secret, ch)
    return channels


@pytest.mark.asyncio
async def test_add_and_connect(admin, manager):
    record = await admin.add("tenant-a", description="A", max_connections=2)
    assert record.enabled is True
    assert record.max_connections == 2
    await _connect(manager, "tenant-a", 2)
    assert manager.count("tenant-a") == 2


@pytest.mark.asyncio
async def test_disable_drops_live_connections(admin, manager):
    await admin.add("tenant-a")
    channels = await _connect(manager, "tenant-a", 2)

    record = await admin.disable("tenant-a", reason="abuse")

    assert record.enabled is False
    assert record.disabled_reason == "abuse"
    assert manager.count("tenant-a") == 0
    assert all(ch.closed for ch in channels)
    with pytest.raises(TenantDisabled):
        await manager.admit("tenant-a", FakeChannel())


@pytest.mark.asyncio
async def test_enable_clears_block(admin, manager):
    await admin.add("tenant-a")
    await admin.disable("tenant-a", reason="abuse")

    record = await admin.enable("tenant-a")

    assert record.enabled is True
    assert record.disabled_reason is None
    await manager.admit("tenant-a", FakeChannel())


@pytest.mark.asyncio
async def test_remove_drops_live_connections(admin, manager):
    await admin.add("tenant-a")
    channels = await _connect(manager, "tenant-a")

    assert await admin.remove("tenant-a") is True

    assert channels[0].closed
    assert manager.count("tenant-a") == 0
    with pytest.raises(UnknownTenant):
        await manager.admit("tenant-a", FakeChannel())
    assert await admin.remove("tenant-a") is False


@pytest.mark.asyncio
async def test_update_to_disabled_drops_connections(admin, manager):
    await admin.add("tenant-a")
    channels = await _connect(manager, "tenant-a")

    record = await admin.update("tenant-a", enabled=False)

    assert record.enabled is False
    assert channels[0].closed


@pytest.mark.asyncio
async def test_update_keeps_connections_of_enabled_secret(admin, manager):
    await admin.add("tenant-a")
    channels = await _connect(manager, "tenant-a")

    record = await admin.update("tenant-a", description="renamed", max_connections=9)

    assert record.description == "renamed"
    assert record.max_connections == 9
    assert not channels[0].closed


@pytest.mark.asyncio
async def test_update_to_disabled_stamps_block_time(admin, registry):
    await admin.add("tenant-a")

    record = await admin.update("tenant-a", enabled=False)

    assert record.disabled_at is not None
    assert [r.id for r in await admin.blocked()] == ["tenant-a"]

    record = await admin.update("tenant-a", enabled=True, description="back")
    assert record.enabled is True
    assert record.disabled_at is None
    assert record.description == "back"
    assert (await registry.get("tenant-a")).disabled_at is None


@pytest.mark.asyncio
async def test_lowering_max_connections_drops_newest(admin, manager):
    await admin.add("tenant-a", max_connections=3)
    channels = await _connect(manager, "tenant-a", 3)

    await admin.update("tenant-a", max_connections=1)

    assert manager.count("tenant-a") == 1
    assert not channels[0].closed
    assert channels[1].closed and channels[2].closed
    assert channels[1].close_code == 1008


@pytest.mark.asyncio
async def test_update_unknown_secret(admin):
    assert await admin.update("ghost", description="x") is None


@pytest.mark.asyncio
async def test_blocked_lists_disabled_secrets(admin):
    await admin.add("tenant-a")
    await admin.add("tenant-b")
    await admin.disable("tenant-b", reason="spam")

    assert [r.id for r in await admin.blocked()] == ["tenant-b"]


@pytest.mark.asyncio
async def test_kick_keeps_secret_enabled(admin, manager, registry):
    await admin.add("tenant-a")
    await _connect(manager, "tenant-a", 2)

    assert await admin.kick("tenant-a") == 2
    assert manager.count("tenant-a") == 0
    assert (await registry.get("tenant-a")).enabled is True


@pytest.mark.asyncio
async def test_batch(admin, registry):
    await admin.add("tenant-a")
    await admin.add("tenant-b")

    result = await admin.batch("disable", ["tenant-a", "tenant-b", "ghost"])
    assert result["success"] == 2
    assert result["failed"] == 1
    assert len(result["errors"]) == 1

    result = await admin.batch("delete", ["tenant-a"])
    assert result["success"] == 1
    assert await registry.get("tenant-a") is None


# ---------------------------------------------------------------------------
# Activity log
# ---------------------------------------------------------------------------


def test_mask_secret():
    assert mask_secret("abcdef") == "abcd***"
    assert mask_secret("abcd") == "***"
    assert mask_secret("") == "***"


def test_activity_log_is_bounded_and_newest_first():
    log = ActivityLog(max_entries=3)
    for i in range(5):
        log.record("info", f"event {i}")
    log.record("error", "boom", code=1)

    assert len(log) == 3
    assert [e.message for e in log.recent()] == ["boom", "event 4", "event 3"]
    assert [e.message for e in log.recent(level="error")] == ["boom"]
    assert log.recent(limit=1)[0].details == {"code": 1}
    assert log.count("info") == 2

    log.clear()
    assert log.recent() == []
