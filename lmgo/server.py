"""Control API application factory and logging setup.

The FastAPI app exposes the supervisor over HTTP. It is created around an
already-validated configuration and catalog; startup failures (bad config,
empty model directory, busy API port) are handled by the CLI before the app
is built.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager, suppress
from pathlib import Path
import sys
from typing import Any, cast

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
import uvicorn

from .api.routes import api_router
from .config import LmgoConfig
from .core.catalog import ModelCatalog
from .hub.supervisor import ModelSupervisor
from .middleware.request_logging import RequestLoggingMiddleware
from .version import __version__

MODEL_LOG_NAME = "models.log"


def _is_model_record(record: dict[str, Any]) -> bool:
    extra = record.get("extra", {})
    return isinstance(extra, dict) and extra.get("model") is not None


def configure_logging(
    log_file: str | None = None,
    *,
    no_log_file: bool = False,
    log_level: str = "INFO",
) -> None:
    """Set up loguru handlers used by the supervisor.

    Replaces the default loguru handler with a compact, colored console
    handler. Output relayed from inference servers carries a ``model`` extra;
    it goes to a separate ``models.log`` next to ``log_file`` and only
    reaches the console at DEBUG level.

    Parameters
    ----------
    log_file : str, optional
        Path of the rotating supervisor log. Defaults to ``logs/lmgo.log``.
    no_log_file : bool, default False (keyword-only)
        When True, only console logs are emitted.
    log_level : str, default "INFO"
        Minimum log level to emit (e.g. "DEBUG", "INFO").
    """
    logger.remove()
    show_model_output = log_level.upper() == "DEBUG"

    def _console_filter(record: dict[str, Any]) -> bool:  # pragma: no cover - tiny helper
        return show_model_output or not _is_model_record(record)

    def _supervisor_filter(record: dict[str, Any]) -> bool:  # pragma: no cover - tiny helper
        return not _is_model_record(record)

    # stderr keeps console logging alive when stdout is a closed pipe.
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "✦ <level>{message}</level>",
        colorize=True,
        enqueue=True,
        filter=cast("Callable[[Any], bool]", _console_filter),
    )
    if no_log_file:
        return

    file_path = Path(log_file if log_file else "logs/lmgo.log")
    with suppress(OSError):
        file_path.parent.mkdir(parents=True, exist_ok=True)
    logger.add(
        str(file_path),
        rotation="1 MB",
        retention="10 days",
        level=log_level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
        enqueue=True,
        filter=cast("Callable[[Any], bool]", _supervisor_filter),
    )
    logger.add(
        str(file_path.parent / MODEL_LOG_NAME),
        rotation="10 MB",
        retention="10 days",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss} | {extra[model]} | {message}",
        enqueue=True,
        filter=cast("Callable[[Any], bool]", _is_model_record),
    )


def create_app(
    config: LmgoConfig,
    *,
    catalog: ModelCatalog | None = None,
    supervisor: ModelSupervisor | None = None,
    config_provider: Callable[[], LmgoConfig] | None = None,
) -> FastAPI:
    """Create the control API application.

    Parameters
    ----------
    config : LmgoConfig
        Validated configuration.
    catalog : ModelCatalog | None, optional
        Already-scanned catalog; a new one is built from ``config`` otherwise.
    supervisor : ModelSupervisor | None, optional
        Pre-built supervisor, mainly for tests.
    config_provider : Callable[[], LmgoConfig] | None, optional
        Passed to the supervisor to re-read the config before each operation.

    Returns
    -------
    FastAPI
        Application with the supervisor attached at ``app.state.supervisor``.
    """
    if supervisor is None:
        if catalog is None:
            catalog = ModelCatalog(
                config.model_path,
                recursive=config.recursive_scan,
                exclude_patterns=config.exclude_patterns,
            )
        supervisor = ModelSupervisor(config, catalog, config_provider=config_provider)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(f"Control API listening on http://{config.api_host}:{config.api_port}")
        if config.auto_load_models:
            supervisor.schedule_autoload(config.auto_load_models)
        yield
        logger.info("Control API shutting down")
        await supervisor.shutdown()

    app = FastAPI(
        title="lmgo",
        description="Control API for local llama-server instances",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.supervisor = supervisor

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.include_router(api_router)
    return app


def setup_server(
    config: LmgoConfig,
    catalog: ModelCatalog,
    *,
    config_provider: Callable[[], LmgoConfig] | None = None,
) -> uvicorn.Config:
    """Build the app and return a Uvicorn config ready to ``run()``.

    Parameters
    ----------
    config : LmgoConfig
        Validated configuration; ``api_host``/``api_port`` select the bind address.
    catalog : ModelCatalog
        Scanned, non-empty catalog.
    config_provider : Callable[[], LmgoConfig] | None, optional
        Re-reads the config before each load/unload.

    Returns
    -------
    uvicorn.Config
        Pass to ``uvicorn.Server(config).run()`` to start serving.
    """
    app = create_app(config, catalog=catalog, config_provider=config_provider)
    return uvicorn.Config(
        app=app,
        host=config.api_host,
        port=config.api_port,
        log_level=config.log_level.lower(),
        access_log=False,
    )
