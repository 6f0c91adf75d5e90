"""Response models for the control API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ApiModel(BaseModel):
    """Base model serializing to the camelCase keys used on the wire."""

    model_config = ConfigDict(populate_by_name=True)


class ModelItem(ApiModel):
    """One catalog entry."""

    index: int = Field(..., description="Position in the catalog; used by /api/load.")
    name: str = Field(..., description="Display name.")
    path: str = Field(..., description="Absolute path of the primary file.")
    filename: str = Field(..., description="File name of the primary file.")
    base_name: str = Field(..., alias="baseName")
    shard_count: int = Field(1, alias="shardCount")


class ModelListResponse(ApiModel):
    success: bool = True
    data: list[ModelItem] = Field(default_factory=list)


class ReloadResponse(ModelListResponse):
    message: str


class LoadedModel(ApiModel):
    """Model served by the current instance."""

    base_name: str = Field(..., alias="baseName")
    path: str


class InstanceStatus(ApiModel):
    """Summary of one running-set member."""

    instance_id: str = Field(..., alias="instanceId")
    index: int
    name: str
    base_name: str = Field(..., alias="baseName")
    path: str
    port: int
    state: str
    pid: int | None = None
    started_at: float = Field(..., alias="startedAt")
    ready_at: float | None = Field(None, alias="readyAt")
    readiness_timed_out: bool = Field(False, alias="readinessTimedOut")


class StatusData(ApiModel):
    loaded: bool
    model: LoadedModel | None = None
    server_port: int = Field(0, alias="serverPort")
    state: str | None = None
    multi_instance: bool = Field(False, alias="multiInstance")
    instances: list[InstanceStatus] = Field(default_factory=list)


class StatusResponse(ApiModel):
    success: bool = True
    data: StatusData


class LoadData(ApiModel):
    path: str
    base_name: str = Field(..., alias="baseName")
    port: int
    instance_id: str = Field(..., alias="instanceId")


class LoadResponse(ApiModel):
    success: bool = True
    message: str
    data: LoadData


class UnloadResponse(ApiModel):
    success: bool = True
    message: str = "Model unloaded"
    data: list[str] = Field(default_factory=list, description="Ids of the stopped instances.")


class ErrorResponse(ApiModel):
    success: bool = False
    message: str


class HealthResponse(ApiModel):
    status: str = "ok"
