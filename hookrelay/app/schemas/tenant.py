from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class TenantCreate(BaseModel):
    secret: str = Field(min_length=1, max_length=512, description="The tenant secret (opaque)")
    description: str | None = Field(default=None, max_length=500)
    enabled: bool = True
    max_connections: int | None = Field(
        default=None, ge=1, le=1000, description="Overrides the system-wide per-secret limit"
    )


class TenantUpdate(BaseModel):
    description: str | None = Field(default=None, max_length=500)
    enabled: bool | None = None
    max_connections: int | None = Field(default=None, ge=1, le=1000)


class TenantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    secret: str = Field(validation_alias=AliasChoices("id", "secret"))
    enabled: bool
    description: str | None = None
    max_connections: int | None = None
    created_at: str
    last_used_at: str | None = None
    disabled_reason: str | None = None
    disabled_at: str | None = None
    connections: int = 0


class TenantListResponse(BaseModel):
    secrets: list[TenantResponse]


class BlockRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class BatchRequest(BaseModel):
    action: Literal["enable", "disable", "delete"]
    secrets: list[str] = Field(min_length=1, max_length=1000)


class ImportRequest(BaseModel):
    secrets: dict[str, Any]
    metadata: dict[str, Any] | None = None


class TenantStats(BaseModel):
    total: int
    enabled: int
    disabled: int
    recently_used: int
    never_used: int
