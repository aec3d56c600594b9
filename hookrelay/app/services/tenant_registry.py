"""Tenant registry — the admission contract every other component consults.

A tenant is identified by its secret. Whether an id may receive payloads or
open connections follows a dual-mode policy:

- a known tenant is admissible iff it is enabled;
- an unknown tenant is never admissible in manual key-management mode
  (secrets must be provisioned out-of-band), otherwise it follows
  ``default_allow_new_connections`` (open / auto-onboarding mode).

Records are stored through an async SQLAlchemy session factory; the rest of
the core only sees the methods below.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.app.config import Settings
from hookrelay.app.models.tenant import TenantRecord

EXPORT_VERSION = "2.0.0"

# Window used by stats() to count a tenant as "recently used"
RECENT_USE_WINDOW = timedelta(days=7)

_MUTABLE_FIELDS = frozenset(
    {
        "enabled",
        "description",
        "max_connections",
        "created_at",
        "last_used_at",
        "disabled_reason",
        "disabled_at",
    }
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    """Parse a stored ISO timestamp; imported values may be naive or malformed."""
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=UTC)


@dataclass
class AdmissionPolicy:
    """Registry-wide admission flags. Mutable at runtime via the admin API."""

    default_allow_new_connections: bool = True
    require_manual_key_management: bool = False
    max_connections_per_secret: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> AdmissionPolicy:
        return cls(
            default_allow_new_connections=settings.default_allow_new_connections,
            require_manual_key_management=settings.require_manual_key_management,
            max_connections_per_secret=settings.max_connections_per_secret,
        )


def decide_admission(record: TenantRecord | None, policy: AdmissionPolicy) -> bool:
    """Apply the admission rule to an optional record."""
    if record is not None:
        return bool(record.enabled)
    if policy.require_manual_key_management:
        return False
    return policy.default_allow_new_connections


class TenantRegistry:
    """Tenant records plus the admission policy that governs unknown ids."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: AdmissionPolicy,
    ) -> None:
        self._session_factory = session_factory
        self.policy = policy

    # -- Lookups --------------------------------------------------------------

    async def get(self, tenant_id: str) -> TenantRecord | None:
        async with self._session_factory() as db:
            return await db.get(TenantRecord, tenant_id)

    async def list_all(self) -> list[TenantRecord]:
        async with self._session_factory() as db:
            result = await db.execute(select(TenantRecord).order_by(TenantRecord.created_at))
            return list(result.scalars().all())

    async def is_admissible(self, tenant_id: str) -> bool:
        return decide_admission(await self.get(tenant_id), self.policy)

    def effective_limit(self, record: TenantRecord | None) -> int:
        """The tenant's own connection cap, else the system default."""
        if record is not None and record.max_connections:
            return record.max_connections
        return self.policy.max_connections_per_secret

    # -- Mutations ------------------------------------------------------------

    async def upsert(self, tenant_id: str, **fields: Any) -> TenantRecord:
        """Create the record, or update the given fields of an existing one."""
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown tenant fields: {', '.join(sorted(unknown))}")

        async with self._session_factory() as db:
            record = await db.get(TenantRecord, tenant_id)
            if record is None:
                record = TenantRecord(
                    id=tenant_id,
                    enabled=fields.pop("enabled", True),
                    created_at=fields.pop("created_at", None) or _now(),
                )
                db.add(record)
            for name, value in fields.items():
                setattr(record, name, value)
            await db.commit()
            return record

    async def create_if_absent(self, tenant_id: str, **fields: Any) -> TenantRecord | None:
        """Insert a new record only when the id is unknown.

        Returns the new record, or None if one already existed (including one
        created concurrently).
        """
        async with self._session_factory() as db:
            if await db.get(TenantRecord, tenant_id) is not None:
                return None
            record = TenantRecord(
                id=tenant_id,
                enabled=fields.pop("enabled", True),
                created_at=_now(),
                **fields,
            )
            db.add(record)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return None
            return record

    async def remove(self, tenant_id: str) -> bool:
        async with self._session_factory() as db:
            record = await db.get(TenantRecord, tenant_id)
            if record is None:
                return False
            await db.delete(record)
            await db.commit()
            return True

    async def touch_last_used(self, tenant_id: str) -> None:
        """Stamp ``last_used_at``. Unknown ids are ignored."""
        async with self._session_factory() as db:
            await db.execute(
                update(TenantRecord)
                .where(TenantRecord.id == tenant_id)
                .values(last_used_at=_now())
            )
            await db.commit()

    async def set_enabled(
        self, tenant_id: str, enabled: bool, reason: str | None = None
    ) -> TenantRecord | None:
        """Enable or disable a known tenant. Returns None for unknown ids."""
        async with self._session_factory() as db:
            record = await db.get(TenantRecord, tenant_id)
            if record is None:
                return None
            record.enabled = enabled
            if enabled:
                record.disabled_reason = None
                record.disabled_at = None
            else:
                record.disabled_reason = reason
                record.disabled_at = _now()
            await db.commit()
            return record

    # -- Bulk / reporting -----------------------------------------------------

    async def export(self) -> dict[str, Any]:
        records = await self.list_all()
        return {
            "secrets": {
                r.id: {
                    "enabled": r.enabled,
                    "description": r.description,
                    "maxConnections": r.max_connections,
                    "createdAt": r.created_at,
                    "lastUsed": r.last_used_at,
                }
                for r in records
            },
            "metadata": {
                "exportedAt": _now(),
                "version": EXPORT_VERSION,
                "totalSecrets": len(records),
            },
        }

    async def import_records(
        self, data: dict[str, Any], overwrite_existing: bool = False
    ) -> dict[str, Any]:
        """Import records in the export() format.

        Existing ids are skipped unless ``overwrite_existing`` is set.
        Malformed entries are reported in ``errors`` and do not abort the import.
        """
        result: dict[str, Any] = {"imported": 0, "skipped": 0, "errors": []}

        async with self._session_factory() as db:
            for tenant_id, entry in (data.get("secrets") or {}).items():
                if not isinstance(entry, dict):
                    result["errors"].append(f"Secret {tenant_id}: invalid record format")
                    continue

                max_connections = entry.get("maxConnections")
                if max_connections is not None and not isinstance(max_connections, int):
                    result["errors"].append(f"Secret {tenant_id}: maxConnections must be an integer")
                    continue

                existing = await db.get(TenantRecord, tenant_id)
                if existing is not None and not overwrite_existing:
                    result["skipped"] += 1
                    continue
                if existing is not None:
                    await db.delete(existing)
                    await db.flush()

                db.add(
                    TenantRecord(
                        id=tenant_id,
                        enabled=bool(entry.get("enabled", True)),
                        description=entry.get("description") or "Imported secret",
                        max_connections=max_connections,
                        created_at=entry.get("createdAt") or _now(),
                        last_used_at=entry.get("lastUsed"),
                    )
                )
                result["imported"] += 1
            await db.commit()

        logger.info(
            "Secret import finished: imported={} skipped={} errors={}",
            result["imported"],
            result["skipped"],
            len(result["errors"]),
        )
        return result

    async def stats(self, now: datetime | None = None) -> dict[str, int]:
        now = now or datetime.now(UTC)
        records = await self.list_all()
        recent = 0
        for r in records:
            last_used = _parse_ts(r.last_used_at)
            if last_used and now - last_used < RECENT_USE_WINDOW:
                recent += 1
        enabled = sum(1 for r in records if r.enabled)
        return {
            "total": len(records),
            "enabled": enabled,
            "disabled": len(records) - enabled,
            "recently_used": recent,
            "never_used": sum(1 for r in records if not r.last_used_at),
        }

    async def count(self) -> int:
        async with self._session_factory() as db:
            result = await db.execute(select(func.count()).select_from(TenantRecord))
            return int(result.scalar_one())
