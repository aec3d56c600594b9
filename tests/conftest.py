"""Shared test fixtures for HookRelay.

Provides an isolated SQLite database per test, an in-memory Channel test
double, service factories wired the same way ``RelayServices.build`` wires
them, and a Starlette TestClient over a fresh app.
"""

import os

# Keep test runs from writing data/hookrelay.log (must precede app imports)
os.environ.setdefault("HOOKRELAY_LOG_TO_FILE", "false")

import json  # noqa: E402
from collections.abc import AsyncGenerator, Iterator  # noqa: E402
from pathlib import Path  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine  # noqa: E402
from starlette.testclient import TestClient  # noqa: E402

from hookrelay.app.config import Settings  # noqa: E402
from hookrelay.app.db import create_engine, create_session_factory, init_db  # noqa: E402
from hookrelay.app.errors import SendError  # noqa: E402
from hookrelay.app.main import create_app  # noqa: E402
from hookrelay.app.services.activity_log import ActivityLog  # noqa: E402
from hookrelay.app.services.event_router import EventRouter  # noqa: E402
from hookrelay.app.services.tenant_admin import TenantAdmin  # noqa: E402
from hookrelay.app.services.tenant_registry import AdmissionPolicy, TenantRegistry  # noqa: E402
from hookrelay.app.services.ws_manager import ConnectionManager  # noqa: E402

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeChannel:
    """In-memory Channel. Records frames; can be told to fail on send."""

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.sent: list[str] = []
        self.fail_with = fail_with
        self.close_calls = 0
        self.close_code: int | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_text(self, data: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        if self._closed:
            raise SendError("Channel is closed")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls += 1
        if self._closed:
            return
        self._closed = True
        self.close_code = code

    def drop(self) -> None:
        """Simulate the peer vanishing without a close handshake."""
        self._closed = True

    def messages(self) -> list[Any]:
        return [json.loads(s) for s in self.sent]


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Settings / database fixtures
# ---------------------------------------------------------------------------


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'hookrelay-test.db'}",
        "data_dir": tmp_path,
        "log_to_file": False,
        "admin_token": None,
        "enable_heartbeat": False,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite file with all tables created."""
    engine = create_engine(settings)
    await init_db(engine, settings)
    yield engine
    await engine.dispose()


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def policy() -> AdmissionPolicy:
    return AdmissionPolicy(
        default_allow_new_connections=True,
        require_manual_key_management=False,
        max_connections_per_secret=5,
    )


@pytest.fixture
def activity() -> ActivityLog:
    return ActivityLog(max_entries=500)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(engine: AsyncEngine, policy: AdmissionPolicy) -> TenantRegistry:
    return TenantRegistry(create_session_factory(engine), policy)


@pytest.fixture
def manager(registry: TenantRegistry, activity: ActivityLog, clock: FakeClock) -> ConnectionManager:
    return ConnectionManager(registry, activity, clock=clock)


@pytest.fixture
def router(registry: TenantRegistry, manager: ConnectionManager, activity: ActivityLog) -> EventRouter:
    return EventRouter(registry, manager, activity)


@pytest.fixture
def admin(registry: TenantRegistry, manager: ConnectionManager, activity: ActivityLog) -> TenantAdmin:
    return TenantAdmin(registry, manager, activity)


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def client(settings: Settings) -> Iterator[TestClient]:
    """TestClient over a fresh app; the context manager runs startup/shutdown."""
    with TestClient(create_app(settings)) as c:
        yield c


def handshake_body(event_ts: str = "1700000000", plain_token: str = "abcd1234") -> dict:
    return {"op": 13, "d": {"event_ts": event_ts, "plain_token": plain_token}}
