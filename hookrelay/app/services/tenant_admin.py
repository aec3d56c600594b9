"""Administrator operations on secrets and their connections.

Thin layer over TenantRegistry and ConnectionManager. Its one rule: any
action that leaves a secret disabled or deleted also drops that secret's
live connections.
"""

from __future__ import annotations

from typing import Any, Literal

from hookrelay.app.models.tenant import TenantRecord
from hookrelay.app.services.activity_log import ActivityLog, mask_secret
from hookrelay.app.services.tenant_registry import TenantRegistry
from hookrelay.app.services.ws_manager import ConnectionManager, EvictionCause

BatchAction = Literal["enable", "disable", "delete"]

DEFAULT_BLOCK_REASON = "Blocked by administrator"


class TenantAdmin:
    def __init__(
        self,
        registry: TenantRegistry,
        manager: ConnectionManager,
        activity: ActivityLog,
    ) -> None:
        self._registry = registry
        self._manager = manager
        self._activity = activity

    async def add(
        self,
        secret: str,
        *,
        description: str | None = None,
        enabled: bool = True,
        max_connections: int | None = None,
    ) -> TenantRecord:
        record = await self._registry.upsert(
            secret,
            enabled=enabled,
            description=description,
            max_connections=max_connections,
        )
        self._activity.record("info", "Secret added", secret=mask_secret(secret), enabled=enabled)
        if not enabled:
            await self._manager.evict(secret, EvictionCause.TENANT_DISABLED)
        return record

    async def update(self, secret: str, **fields: Any) -> TenantRecord | None:
        """Patch an existing secret. Returns None if it does not exist.

        Toggling ``enabled`` goes through the same path as enable/disable, so
        the block timestamp is kept in step. Lowering the connection limit
        drops the newest connections above it.
        """
        record = await self._registry.get(secret)
        if record is None:
            return None
        changed = sorted(fields)
        enabled = fields.pop("enabled", None)
        if fields:
            record = await self._registry.upsert(secret, **fields)
        if enabled is not None and enabled != record.enabled:
            record = await self._registry.set_enabled(secret, enabled)
            if record is None:
                return None
        self._activity.record("info", "Secret updated", secret=mask_secret(secret), fields=changed)

        if not record.enabled:
            await self._manager.evict(secret, EvictionCause.TENANT_DISABLED)
        elif "max_connections" in fields:
            await self._manager.trim(secret, self._registry.effective_limit(record))
        return record

    async def remove(self, secret: str) -> bool:
        removed = await self._registry.remove(secret)
        dropped = await self._manager.evict(secret, EvictionCause.TENANT_DELETED)
        if removed:
            self._activity.record(
                "info", "Secret removed", secret=mask_secret(secret), connections_dropped=dropped
            )
        return removed

    async def enable(self, secret: str) -> TenantRecord | None:
        record = await self._registry.set_enabled(secret, True)
        if record is not None:
            self._activity.record("info", "Secret enabled", secret=mask_secret(secret))
        return record

    async def disable(self, secret: str, reason: str | None = None) -> TenantRecord | None:
        """Disable (block) a secret and drop its live connections."""
        record = await self._registry.set_enabled(secret, False, reason=reason)
        if record is None:
            return None
        dropped = await self._manager.evict(secret, EvictionCause.TENANT_DISABLED)
        self._activity.record(
            "info",
            "Secret disabled",
            secret=mask_secret(secret),
            reason=reason,
            connections_dropped=dropped,
        )
        return record

    async def blocked(self) -> list[TenantRecord]:
        return [r for r in await self._registry.list_all() if not r.enabled]

    async def kick(self, secret: str) -> int:
        dropped = await self._manager.evict(secret, EvictionCause.KICKED)
        self._activity.record(
            "info", "Connections kicked by administrator", secret=mask_secret(secret), dropped=dropped
        )
        return dropped

    async def kick_connection(self, secret: str, connection_id: str) -> bool:
        return await self._manager.evict_connection(secret, connection_id, EvictionCause.KICKED)

    async def batch(self, action: BatchAction, secrets: list[str]) -> dict[str, Any]:
        results: dict[str, Any] = {"success": 0, "failed": 0, "errors": []}
        for secret in secrets:
            if action == "enable":
                ok = await self.enable(secret) is not None
            elif action == "disable":
                ok = await self.disable(secret) is not None
            elif action == "delete":
                ok = await self.remove(secret)
            else:
                results["errors"].append(f"Secret {mask_secret(secret)}: unknown action {action}")
                results["failed"] += 1
                continue

            if ok:
                results["success"] += 1
            else:
                results["errors"].append(f"Secret {mask_secret(secret)}: not found")
                results["failed"] += 1

        self._activity.record(
            "info",
            "Batch secret operation",
            action=action,
            count=len(secrets),
            success=results["success"],
            failed=results["failed"],
        )
        return results
