"""Control API routes.

Handlers only translate between HTTP and the supervisor attached at
``app.state.supervisor``; every lifecycle decision lives in
:class:`lmgo.hub.supervisor.ModelSupervisor`.
"""

from __future__ import annotations

from http import HTTPStatus

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from loguru import logger

from ..core.catalog import ModelEntry
from ..hub.errors import LmgoError
from ..hub.supervisor import InstanceSnapshot, ModelSupervisor, SupervisorStatus
from ..schemas.api import (
    ErrorResponse,
    HealthResponse,
    InstanceStatus,
    LoadData,
    LoadedModel,
    LoadResponse,
    ModelItem,
    ModelListResponse,
    ReloadResponse,
    StatusData,
    StatusResponse,
    UnloadResponse,
)

api_router = APIRouter(prefix="/api")


def _get_supervisor(raw_request: Request) -> ModelSupervisor:
    return raw_request.app.state.supervisor


def _error_response(message: str, status_code: int | HTTPStatus) -> JSONResponse:
    """Return ``{"success": false, "message": ...}`` with ``status_code``."""

    return JSONResponse(
        status_code=int(status_code),
        content=ErrorResponse(message=message).model_dump(),
    )


def _lmgo_error_response(exc: LmgoError) -> JSONResponse:
    return _error_response(str(exc), exc.status_code or HTTPStatus.INTERNAL_SERVER_ERROR)


def _model_item(entry: ModelEntry) -> ModelItem:
    return ModelItem(
        index=entry.index,
        name=entry.display_name,
        path=entry.path,
        filename=entry.filename,
        base_name=entry.base_name,
        shard_count=entry.shard_count,
    )


def _instance_status(snapshot: InstanceSnapshot) -> InstanceStatus:
    return InstanceStatus(
        instance_id=snapshot.instance_id,
        index=snapshot.index,
        name=snapshot.name,
        base_name=snapshot.base_name,
        path=snapshot.path,
        port=snapshot.port,
        state=snapshot.state,
        pid=snapshot.pid,
        started_at=snapshot.started_at,
        ready_at=snapshot.ready_at,
        readiness_timed_out=snapshot.readiness_timed_out,
    )


def build_status_data(status: SupervisorStatus) -> StatusData:
    """Convert a supervisor snapshot into the ``/api/status`` payload."""

    current = status.current
    return StatusData(
        loaded=status.loaded,
        model=(
            LoadedModel(base_name=current.base_name, path=current.path)
            if current is not None
            else None
        ),
        server_port=current.port if current is not None else 0,
        state=current.state if current is not None else None,
        multi_instance=status.multi_instance,
        instances=[_instance_status(item) for item in status.instances],
    )


@api_router.get("/models", response_model=ModelListResponse)
async def list_models(raw_request: Request) -> ModelListResponse:
    """Return the catalog in index order."""

    supervisor = _get_supervisor(raw_request)
    return ModelListResponse(data=[_model_item(entry) for entry in supervisor.catalog])


@api_router.post("/models/reload", response_model=ReloadResponse)
async def reload_models(raw_request: Request) -> ReloadResponse | JSONResponse:
    """Rescan the model directory."""

    supervisor = _get_supervisor(raw_request)
    try:
        entries = await supervisor.reload_catalog()
    except LmgoError as exc:
        logger.error(f"Catalog reload failed: {exc}")
        return _error_response(str(exc), HTTPStatus.INTERNAL_SERVER_ERROR)
    return ReloadResponse(
        message=f"Found {len(entries)} model(s)",
        data=[_model_item(entry) for entry in entries],
    )


@api_router.get("/status", response_model=StatusResponse)
async def status(raw_request: Request) -> StatusResponse:
    """Return what is currently loaded."""

    supervisor = _get_supervisor(raw_request)
    snapshot = await supervisor.status()
    return StatusResponse(data=build_status_data(snapshot))


@api_router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Liveness probe for the control API itself."""

    return HealthResponse()


@api_router.post("/load", response_model=LoadResponse)
async def load_model(raw_request: Request, index: str | None = None) -> LoadResponse | JSONResponse:
    """Start the model at catalog position ``index``.

    The index is parsed here rather than by FastAPI validation so that a
    missing or malformed value answers 400 in the same envelope as an
    out-of-range one.
    """
    if index is None or not index.strip():
        return _error_response("Missing required query parameter: index", HTTPStatus.BAD_REQUEST)
    try:
        position = int(index)
    except ValueError:
        return _error_response(f"Invalid model index: {index}", HTTPStatus.BAD_REQUEST)

    supervisor = _get_supervisor(raw_request)
    try:
        instance = await supervisor.load(position)
    except LmgoError as exc:
        logger.error(f"Load request for index {position} failed: {exc}")
        return _lmgo_error_response(exc)

    entry = instance.entry
    return LoadResponse(
        message=f"Loading model {entry.display_name} on port {instance.port}",
        data=LoadData(
            path=entry.path,
            base_name=entry.base_name,
            port=instance.port,
            instance_id=instance.instance_id,
        ),
    )


@api_router.post("/unload", response_model=UnloadResponse)
async def unload_model(raw_request: Request, instance: str | None = None) -> UnloadResponse:
    """Stop one instance, or all of them when ``instance`` is omitted."""

    supervisor = _get_supervisor(raw_request)
    stopped = await supervisor.unload(instance or None)
    return UnloadResponse(data=[item.instance_id for item in stopped])
