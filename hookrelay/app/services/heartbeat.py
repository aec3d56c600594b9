"""Heartbeat supervisor — one background loop probing every live connection.

Every ``interval`` seconds the supervisor makes one pass over the connection
table. For each connection:

- a channel that already reports closed is evicted as stale;
- if a probe is outstanding and ``timeout`` seconds have passed since it was
  sent, the probe counts as missed;
- once ``max_missed`` probes are missed the connection is evicted
  (cause ``heartbeat_timeout``);
- otherwise a fresh ``{"type": "ping"}`` is sent.

A ``{"type": "pong"}`` reply, or a ping initiated by the client, resets the
counter through ``ConnectionManager.mark_alive``. A connection that never
answers is therefore evicted on cycle ``max_missed + 1``, after exactly
``max_missed`` missed probes.

When heartbeats are disabled, ``start()`` does nothing and dead peers are
only noticed through transport close/error events.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable

from loguru import logger

from hookrelay.app.config import Settings
from hookrelay.app.services.ws_manager import ConnectionManager, EvictionCause, LiveConnection

PING_FRAME = {"type": "ping"}


class HeartbeatSupervisor:
    def __init__(
        self,
        manager: ConnectionManager,
        *,
        enabled: bool = True,
        interval: float = 30.0,
        timeout: float = 5.0,
        max_missed: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._manager = manager
        self.enabled = enabled
        self.interval = interval
        self.timeout = timeout
        self.max_missed = max_missed
        self._clock = clock
        self._task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, manager: ConnectionManager, settings: Settings) -> HeartbeatSupervisor:
        return cls(
            manager,
            enabled=settings.enable_heartbeat,
            interval=settings.heartbeat_interval,
            timeout=settings.heartbeat_timeout,
            max_missed=settings.heartbeat_max_missed,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background loop. Call once at app startup."""
        if not self.enabled:
            logger.info("Heartbeat disabled — relying on transport close events")
            return
        if not self.running:
            self._task = asyncio.create_task(self._loop(), name="heartbeat-supervisor")
            logger.info(
                "Heartbeat supervisor started (interval={}s, timeout={}s, max_missed={})",
                self.interval,
                self.timeout,
                self.max_missed,
            )

    async def stop(self) -> None:
        """Stop the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Heartbeat supervisor stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Heartbeat cycle failed")

    async def run_cycle(self, now: float | None = None) -> list[LiveConnection]:
        """Run one probe pass. Returns the connections evicted in this pass."""
        now = self._clock() if now is None else now
        evicted: list[LiveConnection] = []
        to_probe: list[LiveConnection] = []

        for conn in await self._manager.connections():
            if conn.channel.closed:
                if await self._manager.release(conn, EvictionCause.STALE):
                    evicted.append(conn)
                continue

            if conn.probe_sent_at is not None:
                if now - conn.probe_sent_at < self.timeout:
                    continue  # still waiting for this probe's pong
                conn.missed_probes += 1
                logger.debug(
                    "Missed heartbeat from WS {} ({}/{})", conn.id, conn.missed_probes, self.max_missed
                )
                if conn.missed_probes >= self.max_missed:
                    if await self._manager.release(conn, EvictionCause.HEARTBEAT_TIMEOUT):
                        evicted.append(conn)
                    continue

            to_probe.append(conn)

        for conn in to_probe:
            conn.probe_sent_at = now
        sent = await asyncio.gather(*(self._manager.send(conn, PING_FRAME) for conn in to_probe))
        self._manager.stats.heartbeats_sent += sum(sent)
        evicted.extend(conn for conn, ok in zip(to_probe, sent, strict=True) if not ok)
        return evicted
