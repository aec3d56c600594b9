from pydantic import BaseModel, Field


class RuntimeConfig(BaseModel):
    """Security and heartbeat flags that can change without a restart."""

    enable_signature_validation: bool
    default_allow_new_connections: bool
    require_manual_key_management: bool
    max_connections_per_secret: int
    enable_heartbeat: bool
    heartbeat_interval: float
    heartbeat_timeout: float
    heartbeat_max_missed: int


class RuntimeConfigUpdate(BaseModel):
    enable_signature_validation: bool | None = None
    default_allow_new_connections: bool | None = None
    require_manual_key_management: bool | None = None
    max_connections_per_secret: int | None = Field(default=None, ge=1, le=1000)
    enable_heartbeat: bool | None = None
    heartbeat_interval: float | None = Field(default=None, gt=0)
    heartbeat_timeout: float | None = Field(default=None, gt=0)
    heartbeat_max_missed: int | None = Field(default=None, ge=1)
