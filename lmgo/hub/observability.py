"""Operator-visible notifications for model lifecycle events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger


@dataclass(slots=True)
class ModelContext:
    """Static metadata describing an instance for notifications."""

    instance_id: str
    display_name: str
    port: int


class Notifier(Protocol):
    """Protocol for observing model lifecycle events."""

    enabled: bool

    def model_loaded(self, ctx: ModelContext, *, timed_out: bool) -> None:
        """Record that ``ctx`` finished loading (or stopped being waited on)."""

    def model_load_failed(self, ctx: ModelContext, *, error: str) -> None:
        """Record that the server for ``ctx`` could not be started."""

    def model_stopped(self, ctx: ModelContext, *, exit_code: int | None) -> None:
        """Record that ``ctx`` was unloaded."""

    def model_crashed(self, ctx: ModelContext, *, exit_code: int | None) -> None:
        """Record that ``ctx`` exited on its own."""

    def model_not_found(self, name: str) -> None:
        """Record that an auto-load name matched no catalog entry."""

    def fatal(self, message: str) -> None:
        """Record a fatal startup error."""


class LoggingNotifier:
    """Default notifier that renders each event as a contextual log record.

    When ``enabled`` is False the events are still logged, at DEBUG level, so
    the notification toggle only silences the operator-facing channel.
    """

    def __init__(self, *, enabled: bool = True, base_logger: Any | None = None) -> None:
        self.enabled = enabled
        self._logger = base_logger or logger

    def _bound(self, ctx: ModelContext | None = None) -> Any:
        if ctx is None:
            return self._logger.bind(notification=True)
        return self._logger.bind(
            notification=True,
            instance=ctx.instance_id,
            port=ctx.port,
        )

    def _emit(self, level: str, message: str, ctx: ModelContext | None = None) -> None:
        self._bound(ctx).log(level if self.enabled else "DEBUG", message)

    def model_loaded(self, ctx: ModelContext, *, timed_out: bool) -> None:
        """Announce a finished load."""

        if timed_out:
            self._emit(
                "WARNING",
                f"Model '{ctx.display_name}' did not report ready in time; treating it as loaded (port {ctx.port})",
                ctx,
            )
            return
        self._emit("INFO", f"Model '{ctx.display_name}' loaded successfully (port {ctx.port})", ctx)

    def model_load_failed(self, ctx: ModelContext, *, error: str) -> None:
        """Announce a failed spawn."""

        self._emit(
            "ERROR",
            f"Model '{ctx.display_name}' failed to load (port {ctx.port}): {error}",
            ctx,
        )

    def model_stopped(self, ctx: ModelContext, *, exit_code: int | None) -> None:
        """Announce an unload."""

        self._emit(
            "INFO",
            f"Model '{ctx.display_name}' stopped (port {ctx.port}, exit_code={exit_code})",
            ctx,
        )

    def model_crashed(self, ctx: ModelContext, *, exit_code: int | None) -> None:
        """Announce an unexpected exit."""

        self._emit(
            "WARNING",
            f"Model '{ctx.display_name}' has stopped running (port {ctx.port}, exit_code={exit_code})",
            ctx,
        )

    def model_not_found(self, name: str) -> None:
        """Announce an auto-load name without a match."""

        self._emit("WARNING", f"Model specified in config not found: {name}; it will not be loaded")

    def fatal(self, message: str) -> None:
        """Announce a fatal error; always emitted."""

        self._bound().error(f"Fatal error: {message}")
