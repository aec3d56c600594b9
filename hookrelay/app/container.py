"""Service wiring: every relay component is built once per application.

``RelayServices.build()`` is called by ``create_app()``; routers reach the
instance through ``request.app.state.services`` (see ``api/deps.py``).
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from hookrelay.app.config import Settings
from hookrelay.app.db import create_engine, create_session_factory, init_db
from hookrelay.app.schemas.config import RuntimeConfig, RuntimeConfigUpdate
from hookrelay.app.services.activity_log import ActivityLog
from hookrelay.app.services.event_router import EventRouter, FieldChallengeExtractor
from hookrelay.app.services.heartbeat import HeartbeatSupervisor
from hookrelay.app.services.tenant_admin import TenantAdmin
from hookrelay.app.services.tenant_registry import AdmissionPolicy, TenantRegistry
from hookrelay.app.services.ws_manager import ConnectionManager


@dataclass
class RelayServices:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    activity: ActivityLog
    registry: TenantRegistry
    manager: ConnectionManager
    heartbeat: HeartbeatSupervisor
    router: EventRouter
    admin: TenantAdmin

    @classmethod
    def build(cls, settings: Settings) -> RelayServices:
        engine = create_engine(settings)
        session_factory = create_session_factory(engine)
        activity = ActivityLog(max_entries=settings.max_log_entries)
        registry = TenantRegistry(session_factory, AdmissionPolicy.from_settings(settings))
        manager = ConnectionManager(registry, activity)
        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            activity=activity,
            registry=registry,
            manager=manager,
            heartbeat=HeartbeatSupervisor.from_settings(manager, settings),
            router=EventRouter(
                registry,
                manager,
                activity,
                extractor=FieldChallengeExtractor.from_settings(settings),
                signature_validation=settings.enable_signature_validation,
            ),
            admin=TenantAdmin(registry, manager, activity),
        )

    async def startup(self) -> None:
        await init_db(self.engine, self.settings)
        self.heartbeat.start()

    async def shutdown(self) -> None:
        await self.heartbeat.stop()
        await self.manager.close_all()
        await self.engine.dispose()

    def runtime_config(self) -> RuntimeConfig:
        policy = self.registry.policy
        return RuntimeConfig(
            enable_signature_validation=self.router.signature_validation,
            default_allow_new_connections=policy.default_allow_new_connections,
            require_manual_key_management=policy.require_manual_key_management,
            max_connections_per_secret=policy.max_connections_per_secret,
            enable_heartbeat=self.heartbeat.enabled,
            heartbeat_interval=self.heartbeat.interval,
            heartbeat_timeout=self.heartbeat.timeout,
            heartbeat_max_missed=self.heartbeat.max_missed,
        )

    async def _enforce_connection_limits(self) -> None:
        """Drop connections above each secret's limit after the default changed."""
        for tenant_id in sorted({c.tenant_id for c in await self.manager.connections()}):
            record = await self.registry.get(tenant_id)
            await self.manager.trim(tenant_id, self.registry.effective_limit(record))

    async def update_runtime_config(self, update: RuntimeConfigUpdate) -> RuntimeConfig:
        changes = update.model_dump(exclude_none=True)
        policy = self.registry.policy

        if "enable_signature_validation" in changes:
            self.router.signature_validation = changes["enable_signature_validation"]
        for name in (
            "default_allow_new_connections",
            "require_manual_key_management",
            "max_connections_per_secret",
        ):
            if name in changes:
                setattr(policy, name, changes[name])
        if "max_connections_per_secret" in changes:
            await self._enforce_connection_limits()

        if "heartbeat_interval" in changes:
            self.heartbeat.interval = changes["heartbeat_interval"]
        if "heartbeat_timeout" in changes:
            self.heartbeat.timeout = changes["heartbeat_timeout"]
        if "heartbeat_max_missed" in changes:
            self.heartbeat.max_missed = changes["heartbeat_max_missed"]
        if "enable_heartbeat" in changes:
            self.heartbeat.enabled = changes["enable_heartbeat"]
            if self.heartbeat.enabled:
                self.heartbeat.start()
            else:
                await self.heartbeat.stop()

        if changes:
            self.activity.record("info", "Runtime configuration updated", fields=sorted(changes))
            logger.debug("Runtime config now: {}", self.runtime_config().model_dump())
        return self.runtime_config()
