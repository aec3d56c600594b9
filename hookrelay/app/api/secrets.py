"""Secret (tenant) management endpoints for the admin UI."""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from hookrelay.app.api.deps import get_services, require_admin
from hookrelay.app.container import RelayServices
from hookrelay.app.models.tenant import TenantRecord
from hookrelay.app.schemas.tenant import (
    BatchRequest,
    BlockRequest,
    ImportRequest,
    TenantCreate,
    TenantListResponse,
    TenantResponse,
    TenantStats,
    TenantUpdate,
)
from hookrelay.app.services.tenant_admin import DEFAULT_BLOCK_REASON

router = APIRouter(prefix="/secrets", tags=["secrets"], dependencies=[Depends(require_admin)])


def _to_response(record: TenantRecord, services: RelayServices) -> TenantResponse:
    response = TenantResponse.model_validate(record)
    response.connections = services.manager.count(record.id)
    return response


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail="Secret not found")


@router.get("", response_model=TenantListResponse)
async def list_secrets(services: RelayServices = Depends(get_services)) -> TenantListResponse:
    records = await services.registry.list_all()
    return TenantListResponse(secrets=[_to_response(r, services) for r in records])


@router.post("", response_model=TenantResponse, status_code=201)
async def add_secret(
    data: TenantCreate, services: RelayServices = Depends(get_services)
) -> TenantResponse:
    if await services.registry.get(data.secret) is not None:
        raise HTTPException(status_code=409, detail="Secret already exists")
    record = await services.admin.add(
        data.secret,
        description=data.description,
        enabled=data.enabled,
        max_connections=data.max_connections,
    )
    return _to_response(record, services)


# Static paths are declared before /{secret} so they are not captured by it.


@router.get("/blocked")
async def list_blocked(services: RelayServices = Depends(get_services)) -> dict:
    records = await services.admin.blocked()
    return {
        "blocked_secrets": [r.id for r in records],
        "bans": [
            {"secret": r.id, "reason": r.disabled_reason, "banned_at": r.disabled_at}
            for r in records
        ],
        "total": len(records),
    }


@router.get("/stats", response_model=TenantStats)
async def secret_stats(services: RelayServices = Depends(get_services)) -> dict:
    return await services.registry.stats()


@router.get("/export")
async def export_secrets(
    response: Response, services: RelayServices = Depends(get_services)
) -> dict:
    data = await services.registry.export()
    services.activity.record(
        "info", "Secrets exported", count=data["metadata"]["totalSecrets"]
    )
    stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    response.headers["Content-Disposition"] = f'attachment; filename="secrets-export-{stamp}.json"'
    return data


@router.post("/import")
async def import_secrets(
    data: ImportRequest,
    overwrite_existing: bool = Query(default=False),
    services: RelayServices = Depends(get_services),
) -> dict:
    result = await services.registry.import_records(
        data.model_dump(), overwrite_existing=overwrite_existing
    )
    services.activity.record(
        "info",
        "Secrets imported",
        imported=result["imported"],
        skipped=result["skipped"],
        errors=len(result["errors"]),
    )
    return {"success": True, "result": result}


@router.post("/batch")
async def batch_secrets(data: BatchRequest, services: RelayServices = Depends(get_services)) -> dict:
    results = await services.admin.batch(data.action, data.secrets)
    return {"success": True, "results": results}


@router.get("/{secret}", response_model=TenantResponse)
async def get_secret(secret: str, services: RelayServices = Depends(get_services)) -> TenantResponse:
    record = await services.registry.get(secret)
    if record is None:
        raise _not_found()
    return _to_response(record, services)


@router.put("/{secret}", response_model=TenantResponse)
async def update_secret(
    secret: str, data: TenantUpdate, services: RelayServices = Depends(get_services)
) -> TenantResponse:
    fields = data.model_dump(exclude_unset=True)
    if fields.get("enabled", False) is None:
        del fields["enabled"]
    record = await services.admin.update(secret, **fields)
    if record is None:
        raise _not_found()
    return _to_response(record, services)


@router.delete("/{secret}", status_code=204)
async def delete_secret(secret: str, services: RelayServices = Depends(get_services)) -> None:
    if not await services.admin.remove(secret):
        raise _not_found()


@router.post("/{secret}/enable", response_model=TenantResponse)
@router.post("/{secret}/unblock", response_model=TenantResponse)
async def enable_secret(secret: str, services: RelayServices = Depends(get_services)) -> TenantResponse:
    record = await services.admin.enable(secret)
    if record is None:
        raise _not_found()
    return _to_response(record, services)


@router.post("/{secret}/disable", response_model=TenantResponse)
async def disable_secret(secret: str, services: RelayServices = Depends(get_services)) -> TenantResponse:
    record = await services.admin.disable(secret)
    if record is None:
        raise _not_found()
    return _to_response(record, services)


@router.post("/{secret}/block", response_model=TenantResponse)
async def block_secret(
    secret: str,
    data: BlockRequest | None = None,
    services: RelayServices = Depends(get_services),
) -> TenantResponse:
    reason = (data.reason if data else None) or DEFAULT_BLOCK_REASON
    record = await services.admin.disable(secret, reason=reason)
    if record is None:
        raise _not_found()
    return _to_response(record, services)
