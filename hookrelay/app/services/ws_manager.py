"""Live WebSocket connections per secret.

The manager exclusively owns the table ``secret -> [LiveConnection]``. It
admits new channels (tenant must exist, be enabled, and be under its
connection cap), fans payloads out to every channel of a secret, and evicts
connections on close, send failure, admin action or heartbeat timeout.

Several connections for one secret coexist up to the effective limit (the
tenant's ``max_connections`` or the system default). Replacing the previous
connection is the ``limit=1`` case.

All table mutations happen under a single asyncio lock. Channel sends and
closes never happen while holding it: the channel handles are copied under
the lock and used after it is released.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from starlette.websockets import WebSocket, WebSocketState

from hookrelay.app.errors import (
    AdmissionError,
    ConnectionLimitExceeded,
    SendError,
    TenantDisabled,
    UnknownTenant,
)
from hookrelay.app.services.activity_log import ActivityLog, mask_secret
from hookrelay.app.services.tenant_registry import TenantRegistry

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class EvictionCause(StrEnum):
    CLOSED = "closed"
    ERROR = "error"
    SEND_ERROR = "send_error"
    KICKED = "kicked"
    TENANT_DISABLED = "tenant_disabled"
    TENANT_DELETED = "tenant_deleted"
    OVER_LIMIT = "over_limit"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"
    STALE = "stale"
    SHUTDOWN = "shutdown"


# WebSocket close code and reason sent to the peer for each cause
_CLOSE_FRAMES: dict[EvictionCause, tuple[int, str]] = {
    EvictionCause.CLOSED: (1000, ""),
    EvictionCause.ERROR: (1011, "Connection error"),
    EvictionCause.SEND_ERROR: (1011, "Delivery failed"),
    EvictionCause.KICKED: (1008, "Disconnected by administrator"),
    EvictionCause.TENANT_DISABLED: (1008, "Secret disabled"),
    EvictionCause.TENANT_DELETED: (1008, "Secret removed"),
    EvictionCause.OVER_LIMIT: (1008, "Connection limit reduced"),
    EvictionCause.HEARTBEAT_TIMEOUT: (1001, "Heartbeat timeout"),
    EvictionCause.STALE: (1001, "Connection stale"),
    EvictionCause.SHUTDOWN: (1001, "Server shutting down"),
}


class Channel(Protocol):
    """Bidirectional message sink owned by the manager for one connection."""

    @property
    def closed(self) -> bool: ...

    async def send_text(self, data: str) -> None:
        """Send one text frame. Raises SendError on failure."""
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the channel. Calling it again is a no-op."""
        ...


class WebSocketChannel:
    """Channel backed by a Starlette WebSocket.

    The manager admits the channel before the socket is accepted. Sends
    issued in that window wait for ``open()``; an eviction in that window is
    applied by ``open()`` as a close before accept.
    """

    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws
        self._closed = False
        self._close_frame = (1000, "")
        self._opened = asyncio.Event()

    @property
    def closed(self) -> bool:
        return (
            self._closed
            or self._ws.application_state == WebSocketState.DISCONNECTED
            or self._ws.client_state == WebSocketState.DISCONNECTED
        )

    async def open(self, greeting: str | None = None) -> None:
        """Accept the socket and send ``greeting`` before any other frame.

        Raises:
            SendError: the channel was closed before it could be accepted.
        """
        try:
            if self._closed:
                code, reason = self._close_frame
                await self._ws.close(code=code, reason=reason)
                raise SendError("Channel closed before accept")
            await self._ws.accept()
            if greeting is not None:
                await self._ws.send_text(greeting)
        finally:
            self._opened.set()

    async def send_text(self, data: str) -> None:
        if not self._opened.is_set():
            await self._opened.wait()
        if self.closed:
            raise SendError("Channel is closed")
        try:
            await self._ws.send_text(data)
        except Exception as exc:
            raise SendError(str(exc) or exc.__class__.__name__) from exc

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        self._close_frame = (code, reason)
        self._opened.set()
        if self._ws.application_state != WebSocketState.CONNECTED:
            return  # not accepted yet: open() sends the close
        try:
            await self._ws.close(code=code, reason=reason)
        except Exception:
            # Peer already gone; the receive loop sees the disconnect
            logger.debug("WS close raced with peer disconnect", exc_info=True)


@dataclass(eq=False)
class LiveConnection:
    """One admitted channel. Compared by identity."""

    tenant_id: str
    channel: Channel
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    connected_at: str = field(default_factory=_now_iso)
    last_seen_at: float = 0.0
    missed_probes: int = 0
    probe_sent_at: float | None = None  # None = no probe outstanding

    @property
    def awaiting_pong(self) -> bool:
        return self.probe_sent_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "connected_at": self.connected_at,
            "missed_probes": self.missed_probes,
            "awaiting_pong": self.awaiting_pong,
            "closed": self.channel.closed,
        }


@dataclass
class ConnectionStats:
    total_connections: int = 0
    max_concurrent: int = 0
    rejected_connections: int = 0
    connections_dropped: int = 0
    heartbeats_sent: int = 0
    heartbeats_received: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class DeliveryStatus(StrEnum):
    DELIVERED = "delivered"
    NO_SUBSCRIBER = "no_subscriber"
    SEND_ERROR = "send_error"


@dataclass(frozen=True)
class DeliveryResult:
    status: DeliveryStatus
    delivered: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "delivered": self.delivered, "failed": self.failed}


class ConnectionManager:
    """Owns every live connection, keyed by secret."""

    def __init__(
        self,
        registry: TenantRegistry,
        activity: ActivityLog,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._activity = activity
        self._clock = clock
        self._connections: dict[str, list[LiveConnection]] = {}
        self._last_used: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self.stats = ConnectionStats()

    @property
    def active_count(self) -> int:
        return sum(len(conns) for conns in self._connections.values())

    def count(self, tenant_id: str) -> int:
        return len(self._connections.get(tenant_id, ()))

    # -- Admission ------------------------------------------------------------

    async def admit(self, tenant_id: str, channel: Channel) -> LiveConnection:
        """Register ``channel`` for ``tenant_id``.

        Checks, in order: the tenant exists, it is enabled, and it has fewer
        live connections than its effective limit. Never creates a tenant.

        Raises:
            UnknownTenant, TenantDisabled, ConnectionLimitExceeded
        """
        record = await self._registry.get(tenant_id)
        try:
            if record is None:
                raise UnknownTenant(tenant_id)
            if not record.enabled:
                raise TenantDisabled(tenant_id)

            limit = self._registry.effective_limit(record)
            async with self._lock:
                if len(self._connections.get(tenant_id, ())) >= limit:
                    raise ConnectionLimitExceeded(tenant_id, limit)
                conn = LiveConnection(tenant_id=tenant_id, channel=channel, last_seen_at=self._clock())
                self._connections.setdefault(tenant_id, []).append(conn)
                self.stats.total_connections += 1
                self.stats.max_concurrent = max(self.stats.max_concurrent, self.active_count)
        except AdmissionError as exc:
            self.stats.rejected_connections += 1
            self._activity.record(
                "warning",
                "WebSocket connection rejected",
                secret=mask_secret(tenant_id),
                reason=exc.reason,
            )
            raise

        self._activity.record(
            "info",
            "WebSocket connection established",
            secret=mask_secret(tenant_id),
            connection_id=conn.id,
            connections=self.count(tenant_id),
        )
        return conn

    # -- Delivery -------------------------------------------------------------

    async def dispatch(self, tenant_id: str, payload: Any) -> DeliveryResult:
        """Send ``payload`` to every live connection of ``tenant_id``.

        A failing channel is removed on its own; its siblings still receive
        the payload.
        """
        message = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)

        async with self._lock:
            targets = list(self._connections.get(tenant_id, ()))
        if not targets:
            return DeliveryResult(DeliveryStatus.NO_SUBSCRIBER)

        results = await asyncio.gather(
            *(conn.channel.send_text(message) for conn in targets),
            return_exceptions=True,
        )
        async with self._lock:
            if tenant_id in self._connections:
                self._last_used[tenant_id] = _now_iso()

        failed: list[LiveConnection] = []
        for conn, res in zip(targets, results, strict=True):
            if isinstance(res, BaseException):
                logger.warning("Failed to send to WS %s (%s), removing", conn.id, res)
                failed.append(conn)
        for conn in failed:
            await self.release(conn, EvictionCause.SEND_ERROR)

        delivered = len(targets) - len(failed)
        status = DeliveryStatus.DELIVERED if delivered else DeliveryStatus.SEND_ERROR
        return DeliveryResult(status, delivered=delivered, failed=len(failed))

    async def send(self, conn: LiveConnection, message: dict[str, Any]) -> bool:
        """Send a control frame to one connection; evicts it on failure."""
        try:
            await conn.channel.send_text(json.dumps(message))
        except Exception as exc:
            logger.warning("Failed to send control frame to WS %s (%s), removing", conn.id, exc)
            await self.release(conn, EvictionCause.SEND_ERROR)
            return False
        return True

    # -- Liveness -------------------------------------------------------------

    def mark_alive(self, conn: LiveConnection) -> None:
        """Record a pong or a client ping for ``conn``."""
        conn.missed_probes = 0
        conn.probe_sent_at = None
        conn.last_seen_at = self._clock()
        self.stats.heartbeats_received += 1

    # -- Eviction -------------------------------------------------------------

    async def release(self, conn: LiveConnection, cause: EvictionCause) -> bool:
        """Remove one connection and close its channel.

        Returns False if it was already gone, so racing evictions are no-ops.
        """
        async with self._lock:
            live = self._connections.get(conn.tenant_id)
            if not live or conn not in live:
                return False
            live.remove(conn)
            if not live:
                del self._connections[conn.tenant_id]
                self._last_used.pop(conn.tenant_id, None)

        await self._close(conn, cause)
        return True

    async def evict(self, tenant_id: str, cause: EvictionCause = EvictionCause.KICKED) -> int:
        """Close and remove every connection of ``tenant_id``."""
        async with self._lock:
            evicted = self._connections.pop(tenant_id, [])
            self._last_used.pop(tenant_id, None)
        for conn in evicted:
            await self._close(conn, cause)
        return len(evicted)

    async def evict_connection(
        self,
        tenant_id: str,
        connection_id: str,
        cause: EvictionCause = EvictionCause.KICKED,
    ) -> bool:
        async with self._lock:
            match = next(
                (c for c in self._connections.get(tenant_id, ()) if c.id == connection_id),
                None,
            )
        if match is None:
            return False
        return await self.release(match, cause)

    async def trim(self, tenant_id: str, limit: int) -> int:
        """Close the newest connections of ``tenant_id`` beyond ``limit``.

        Used when a limit is lowered below the live count. Returns how many
        connections were dropped.
        """
        async with self._lock:
            live = self._connections.get(tenant_id)
            if not live or len(live) <= limit:
                return 0
            excess = live[limit:]
            del live[limit:]
            if not live:
                del self._connections[tenant_id]
                self._last_used.pop(tenant_id, None)
        for conn in excess:
            await self._close(conn, EvictionCause.OVER_LIMIT)
        return len(excess)

    async def close_all(self) -> None:
        """Close all connections gracefully (for shutdown)."""
        async with self._lock:
            everything = [c for conns in self._connections.values() for c in conns]
            self._connections.clear()
            self._last_used.clear()
        for conn in everything:
            await self._close(conn, EvictionCause.SHUTDOWN)

    async def _close(self, conn: LiveConnection, cause: EvictionCause) -> None:
        if cause is not EvictionCause.CLOSED:
            self.stats.connections_dropped += 1
        code, reason = _CLOSE_FRAMES[cause]
        try:
            await conn.channel.close(code=code, reason=reason)
        except Exception:
            logger.exception("Error closing WS %s", conn.id)

        level = "info" if cause in (EvictionCause.CLOSED, EvictionCause.SHUTDOWN) else "warning"
        self._activity.record(
            level,
            "WebSocket connection closed",
            secret=mask_secret(conn.tenant_id),
            connection_id=conn.id,
            cause=cause.value,
        )

    # -- Observability --------------------------------------------------------

    async def connections(self, tenant_id: str | None = None) -> list[LiveConnection]:
        """A copy of the live connections, optionally for one secret."""
        async with self._lock:
            if tenant_id is not None:
                return list(self._connections.get(tenant_id, ()))
            return [c for conns in self._connections.values() for c in conns]

    async def snapshot(self) -> list[dict[str, Any]]:
        async with self._lock:
            return [
                {
                    "id": tenant_id,
                    "connection_count": len(conns),
                    "last_used": self._last_used.get(tenant_id),
                    "connections": [c.to_dict() for c in conns],
                }
                for tenant_id, conns in self._connections.items()
            ]
