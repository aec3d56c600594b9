"""Live connection listing and kick endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from hookrelay.app.api.deps import get_services, require_admin
from hookrelay.app.container import RelayServices
from hookrelay.app.services.tenant_registry import decide_admission

router = APIRouter(prefix="/connections", tags=["connections"], dependencies=[Depends(require_admin)])


@router.get("")
async def list_connections(services: RelayServices = Depends(get_services)) -> dict:
    snapshot = await services.manager.snapshot()
    for entry in snapshot:
        record = await services.registry.get(entry["id"])
        entry["enabled"] = decide_admission(record, services.registry.policy)
        entry["description"] = record.description if record else None
        entry["created_at"] = record.created_at if record else None
    return {
        "connections": snapshot,
        "total": services.manager.active_count,
        "stats": services.manager.stats.to_dict(),
    }


@router.post("/{secret}/kick")
async def kick_secret(secret: str, services: RelayServices = Depends(get_services)) -> dict:
    dropped = await services.admin.kick(secret)
    return {"success": True, "dropped": dropped}


@router.delete("/{secret}/{connection_id}", status_code=204)
async def kick_connection(
    secret: str, connection_id: str, services: RelayServices = Depends(get_services)
) -> None:
    if not await services.admin.kick_connection(secret, connection_id):
        raise HTTPException(status_code=404, detail="Connection not found")
