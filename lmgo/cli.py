"""Command-line interface for lmgo.

``lmgo serve`` runs the supervisor and its control API in the foreground.
The remaining commands are thin clients that call the control API of a
running supervisor, except ``autostart`` which edits the config file.
"""

from __future__ import annotations

from pathlib import Path
import time
from typing import Any, Literal

import click
import httpx
from loguru import logger
import uvicorn

from .config import LmgoConfig, load_config, reread_config, set_auto_start
from .const import CONFIG_PATH_ENV, DEFAULT_LOG_LEVEL, FATAL_EXIT_DELAY
from .core.catalog import ModelCatalog
from .hub.errors import CatalogError, ConfigError
from .hub.observability import LoggingNotifier
from .server import configure_logging, setup_server
from .utils.network import client_host, is_port_available
from .version import __version__

_LOG_LEVELS = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]


class UpperChoice(click.Choice):
    """Case-insensitive choice type that returns the canonical uppercase value."""

    def convert(self, value: Any, param: click.Parameter | None, ctx: click.Context | None) -> Any:
        if isinstance(value, str):
            value = value.upper()
        return super().convert(value, param, ctx)


@click.group()
@click.version_option(
    version=__version__,
    message="""
✨ %(prog)s - supervisor for local llama-server instances ✨
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
🚀 Version: %(version)s
""",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar=CONFIG_PATH_ENV,
    default=None,
    help="Path to the config file (default: ./lmgo.json).",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Top-level Click command group for lmgo."""

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _load_config_or_fail(config_path: Path | None) -> LmgoConfig:
    """Load the configuration or exit with a CLI error.

    Raises
    ------
    click.ClickException
        If the configuration cannot be loaded.
    """
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _fatal(message: str) -> None:
    """Report a fatal startup error, give the operator time to see it, then exit 1."""

    LoggingNotifier().fatal(message)
    time.sleep(FATAL_EXIT_DELAY)
    raise click.ClickException(message)


def _api_base_url(config: LmgoConfig) -> str:
    return f"http://{client_host(config.api_host)}:{config.api_port}"


def _call_api(
    config: LmgoConfig,
    method: str,
    path: str,
    *,
    params: dict[str, Any] | None = None,
    timeout: float = 10.0,
) -> dict[str, Any]:
    """Call the control API synchronously and return the parsed JSON body.

    Parameters
    ----------
    config : LmgoConfig
        Configuration used to determine the API base URL.
    method : str
        HTTP method (GET/POST).
    path : str
        Path part of the URL, starting with ``/api``.
    params : dict[str, Any] | None
        Query parameters.
    timeout : float
        Request timeout in seconds.

    Returns
    -------
    dict[str, Any]
        Parsed JSON response.

    Raises
    ------
    click.ClickException
        On connectivity failures or non-2xx responses.
    """
    base = _api_base_url(config)
    url = f"{base}{path}"
    try:
        with httpx.Client(timeout=timeout) as client:
            resp = client.request(method, url, params=params)
    except httpx.HTTPError as exc:
        raise click.ClickException(f"Failed to contact lmgo at {base}: {exc}") from exc

    try:
        payload: Any = resp.json()
    except ValueError:
        payload = {"raw": resp.text}
    if not isinstance(payload, dict):
        payload = {"raw": resp.text}

    if resp.status_code >= 400:
        message = payload.get("message") or payload.get("raw") or resp.reason_phrase
        raise click.ClickException(f"lmgo responded {resp.status_code}: {message}")
    return payload


_FLASH_STYLES: dict[str, tuple[str, str]] = {
    "info": ("[info]", "cyan"),
    "success": ("[ok]", "green"),
    "warning": ("[warn]", "yellow"),
    "error": ("[err]", "red"),
}


def _flash(message: str, tone: Literal["info", "success", "warning", "error"] = "info") -> None:
    """Emit a short, colorized status line for CLI actions."""

    prefix, color = _FLASH_STYLES.get(tone, _FLASH_STYLES["info"])
    click.echo(click.style(f"{prefix} {message}", fg=color))


def _print_models(models: list[dict[str, Any]]) -> None:
    if not models:
        click.echo("No models found")
        return
    for item in models:
        click.echo(f"[{item.get('index')}] {item.get('name')}")
        click.echo(f"      {item.get('path')}")


def _print_status(data: dict[str, Any]) -> None:
    if not data.get("loaded"):
        click.echo("No model loaded")
    else:
        model = data.get("model") or {}
        click.echo(
            f"Loaded: {model.get('baseName')} on port {data.get('serverPort')} "
            f"({data.get('state')})",
        )
        click.echo(f"Path:   {model.get('path')}")

    instances = data.get("instances") or []
    if len(instances) > 1 or (instances and not data.get("loaded")):
        click.echo("")
        click.echo(f"{'INSTANCE':<36} {'PORT':>6} {'STATE':<10} PID")
        for inst in instances:
            pid = inst.get("pid")
            state = inst.get("state", "")
            if inst.get("readinessTimedOut"):
                state = f"{state}*"
            click.echo(
                f"{inst.get('instanceId', ''):<36} {inst.get('port', 0):>6} "
                f"{state:<10} {pid if pid is not None else '-'}",
            )


@cli.command(help="Run the supervisor and its control API in the foreground")
@click.option(
    "--log-level",
    type=UpperChoice(_LOG_LEVELS),
    default=None,
    help="Override the configured log level.",
)
@click.option("--no-log-file", is_flag=True, default=False, help="Only log to the console.")
@click.pass_context
def serve(ctx: click.Context, log_level: str | None, no_log_file: bool) -> None:
    """Validate startup preconditions, then serve until interrupted.

    A bad config, a missing or empty model directory, and a busy control
    port are fatal: they are reported and the command exits with status 1.
    """
    config_path: Path | None = ctx.obj.get("config_path")
    configure_logging(no_log_file=True, log_level=log_level or DEFAULT_LOG_LEVEL)

    try:
        config = load_config(config_path)
    except ConfigError as exc:
        _fatal(str(exc))
        return

    configure_logging(
        log_file=config.log_file,
        no_log_file=no_log_file or not config.log_file,
        log_level=log_level or config.log_level,
    )
    logger.info(f"lmgo {__version__} starting (config: {config.source_path})")

    catalog = ModelCatalog(
        config.model_path,
        recursive=config.recursive_scan,
        exclude_patterns=config.exclude_patterns,
    )
    try:
        catalog.require_models()
    except CatalogError as exc:
        _fatal(str(exc))
        return

    if not is_port_available(config.api_host, config.api_port):
        _fatal(
            f"Port {config.api_port} is already in use on host {config.api_host}. "
            "Please stop the service using that port.",
        )
        return

    source_path = config.source_path

    def _config_provider() -> LmgoConfig:
        return reread_config(source_path)

    uvicorn_config = setup_server(config, catalog, config_provider=_config_provider)
    uvicorn.Server(uvicorn_config).run()


@cli.command(help="List the models the running supervisor can load")
@click.pass_context
def models(ctx: click.Context) -> None:
    config = _load_config_or_fail(ctx.obj.get("config_path"))
    payload = _call_api(config, "GET", "/api/models")
    _print_models(payload.get("data") or [])


@cli.command(help="Rescan the model directory")
@click.pass_context
def reload(ctx: click.Context) -> None:
    config = _load_config_or_fail(ctx.obj.get("config_path"))
    payload = _call_api(config, "POST", "/api/models/reload", timeout=60.0)
    _flash(payload.get("message", "Catalog reloaded"), tone="success")
    _print_models(payload.get("data") or [])


@cli.command(help="Show what is currently loaded")
@click.pass_context
def status(ctx: click.Context) -> None:
    config = _load_config_or_fail(ctx.obj.get("config_path"))
    try:
        payload = _call_api(config, "GET", "/api/status")
    except click.ClickException:
        _flash("lmgo is not running", tone="warning")
        return
    _print_status(payload.get("data") or {})


@cli.command(help="Load the model at INDEX (see `lmgo models`)")
@click.argument("index", type=int)
@click.pass_context
def load(ctx: click.Context, index: int) -> None:
    config = _load_config_or_fail(ctx.obj.get("config_path"))
    # Replacing a model waits for the previous server to release its port.
    payload = _call_api(config, "POST", "/api/load", params={"index": index}, timeout=60.0)
    _flash(payload.get("message", "Model loading"), tone="success")
    data = payload.get("data") or {}
    if data:
        click.echo(f"Instance: {data.get('instanceId')}  port: {data.get('port')}")


@cli.command(help="Unload the current model, or one instance with --instance")
@click.option("--instance", "instance_id", default=None, help="Instance id from `lmgo status`.")
@click.pass_context
def unload(ctx: click.Context, instance_id: str | None) -> None:
    config = _load_config_or_fail(ctx.obj.get("config_path"))
    params = {"instance": instance_id} if instance_id else None
    payload = _call_api(config, "POST", "/api/unload", params=params, timeout=90.0)
    stopped = payload.get("data") or []
    if not stopped:
        _flash("Nothing was loaded", tone="info")
        return
    _flash(f"{payload.get('message', 'Model unloaded')}: {', '.join(stopped)}", tone="success")


@cli.command(help="Check that the control API answers")
@click.pass_context
def health(ctx: click.Context) -> None:
    config = _load_config_or_fail(ctx.obj.get("config_path"))
    payload = _call_api(config, "GET", "/api/health", timeout=3.0)
    _flash(f"lmgo is up ({payload.get('status', 'unknown')})", tone="success")


@cli.command(help="Turn the auto-start flag in the config file on or off")
@click.argument("state", type=click.Choice(["on", "off"], case_sensitive=False))
@click.pass_context
def autostart(ctx: click.Context, state: str) -> None:
    config = _load_config_or_fail(ctx.obj.get("config_path"))
    try:
        set_auto_start(config, state.lower() == "on")
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    _flash(f"Auto-start {'enabled' if config.auto_start else 'disabled'}", tone="success")
