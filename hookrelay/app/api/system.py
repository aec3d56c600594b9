"""Activity log, runtime config and dashboard endpoints."""

import os
import time

from fastapi import APIRouter, Depends, HTTPException, Query

from hookrelay.app.api.deps import get_services, require_admin
from hookrelay.app.container import RelayServices
from hookrelay.app.schemas.config import RuntimeConfig, RuntimeConfigUpdate
from hookrelay.app.services.activity_log import LEVELS

router = APIRouter(tags=["system"], dependencies=[Depends(require_admin)])

_STARTED_AT = time.monotonic()


@router.get("/logs")
async def get_logs(
    limit: int = Query(default=100, ge=1, le=10000),
    level: str | None = Query(default=None),
    services: RelayServices = Depends(get_services),
) -> dict:
    if level is not None and level not in LEVELS:
        raise HTTPException(status_code=400, detail=f"Unknown level: {level}")
    entries = services.activity.recent(limit=limit, level=level)
    return {
        "logs": [e.to_dict() for e in entries],
        "total": services.activity.count(level),
    }


@router.get("/config", response_model=RuntimeConfig)
async def get_config(services: RelayServices = Depends(get_services)) -> RuntimeConfig:
    return services.runtime_config()


@router.put("/config", response_model=RuntimeConfig)
async def update_config(
    data: RuntimeConfigUpdate, services: RelayServices = Depends(get_services)
) -> RuntimeConfig:
    return await services.update_runtime_config(data)


@router.get("/dashboard/stats")
async def dashboard_stats(services: RelayServices = Depends(get_services)) -> dict:
    manager = services.manager
    tenant_stats = await services.registry.stats()
    return {
        "connections": {
            "active": manager.active_count,
            **manager.stats.to_dict(),
        },
        "secrets": {
            "total": tenant_stats["total"],
            "blocked": tenant_stats["disabled"],
        },
        "logs": {
            "total": services.activity.count(),
            "errors": services.activity.count("error"),
            "warnings": services.activity.count("warning"),
        },
        "system": {
            "uptime": round(time.monotonic() - _STARTED_AT, 1),
            "cpu_cores": os.cpu_count(),
            "heartbeat_running": services.heartbeat.running,
        },
    }
