"""Lifecycle supervisor for inference server instances.

The supervisor owns the running-set: every spawned server process, the port
it was given and the state it is in. Loading spawns ``llama-server`` for a
catalog entry, then a readiness task and an exit watcher run in the
background. Unloading kills the process, waits for it to exit and for its port
to stop answering before the instance leaves the running-set.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
import itertools
import time
from typing import Any

from loguru import logger

from ..config import LmgoConfig
from ..const import AUTOLOAD_DELAY, PORT_SETTLE_DELAY
from ..core.arguments import resolve_model_args
from ..core.catalog import ModelCatalog, ModelEntry
from ..utils.browser import open_browser
from .errors import ConfigError, LmgoError, LoadFailedError
from .observability import LoggingNotifier, ModelContext, Notifier
from .polling import wait_for_ready, wait_for_shutdown
from .ports import PortAllocator, build_port_allocator
from .process import ManagedProcess, ProcessFactory, build_server_command, spawn_server_process

ReadyWaiter = Callable[..., Awaitable[bool]]
ShutdownWaiter = Callable[..., Awaitable[bool]]


class InstanceState(str, Enum):
    """Lifecycle state of one server instance."""

    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


_LIVE_STATES = frozenset({InstanceState.STARTING, InstanceState.READY})
_FINAL_STATES = frozenset({InstanceState.STOPPED, InstanceState.CRASHED})


@dataclass(eq=False)
class ModelInstance:
    """One spawned inference server and its bookkeeping.

    Instances compare by identity so a late watcher can never remove a newer
    instance registered under the same id.
    """

    entry: ModelEntry
    port: int
    sequence: int
    host: str
    process: ManagedProcess | None = None
    state: InstanceState = InstanceState.STARTING
    exit_code: int | None = None
    started_at: float = field(default_factory=time.time)
    ready_at: float | None = None
    readiness_timed_out: bool = False
    spawned: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    stopped: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def instance_id(self) -> str:
        """Return ``<base_name>#<sequence>``."""

        return f"{self.entry.base_name}#{self.sequence}"

    @property
    def url(self) -> str:
        """Return the server's base URL."""

        return f"http://{self.host}:{self.port}"

    @property
    def is_live(self) -> bool:
        """Return True while the instance is starting or ready."""

        return self.state in _LIVE_STATES

    @property
    def pid(self) -> int | None:
        """Return the child PID while a handle is held."""

        return self.process.pid if self.process is not None else None

    def context(self) -> ModelContext:
        """Return the notification context for this instance."""

        return ModelContext(
            instance_id=self.instance_id,
            display_name=self.entry.display_name,
            port=self.port,
        )

    def snapshot(self) -> InstanceSnapshot:
        """Return an immutable view of the current bookkeeping."""

        return InstanceSnapshot(
            instance_id=self.instance_id,
            index=self.entry.index,
            name=self.entry.display_name,
            base_name=self.entry.base_name,
            path=self.entry.path,
            port=self.port,
            state=self.state.value,
            pid=self.pid,
            started_at=self.started_at,
            ready_at=self.ready_at,
            readiness_timed_out=self.readiness_timed_out,
        )


@dataclass(frozen=True, slots=True)
class InstanceSnapshot:
    """Point-in-time summary of an instance for status reporting."""

    instance_id: str
    index: int
    name: str
    base_name: str
    path: str
    port: int
    state: str
    pid: int | None
    started_at: float
    ready_at: float | None
    readiness_timed_out: bool


@dataclass(frozen=True, slots=True)
class SupervisorStatus:
    """Snapshot returned by :meth:`ModelSupervisor.status`."""

    current: InstanceSnapshot | None
    instances: tuple[InstanceSnapshot, ...]
    multi_instance: bool
    timestamp: float

    @property
    def loaded(self) -> bool:
        """Return True if some instance is starting or ready."""

        return self.current is not None


class ModelSupervisor:
    """Load, unload and watch inference server processes.

    Parameters
    ----------
    config : LmgoConfig
        Initial configuration. Port policy and instance policy are taken from
        it once and stay fixed for the supervisor's lifetime.
    catalog : ModelCatalog
        Catalog that ``load`` indexes into.
    config_provider : Callable[[], LmgoConfig] | None, optional
        Re-reads the configuration before each load/unload so argument and
        toggle edits apply without a restart.
    port_allocator : PortAllocator | None, optional
        Defaults to the allocator selected by ``config.port_policy``.
    process_factory : ProcessFactory | None, optional
        Spawns the server; defaults to :func:`spawn_server_process`.
    notifier : Notifier | None, optional
        Receives lifecycle events; defaults to :class:`LoggingNotifier`.
    browser_opener : Callable[[str], Awaitable[Any]] | None, optional
        Opens the web interface when ``auto_open_web`` is enabled.
    ready_waiter, shutdown_waiter : optional
        Replace the HTTP readiness/shutdown polls.
    settle_delay : float, optional
        Pause after shutdown confirmation before the port is reused.
    """

    def __init__(
        self,
        config: LmgoConfig,
        catalog: ModelCatalog,
        *,
        config_provider: Callable[[], LmgoConfig] | None = None,
        port_allocator: PortAllocator | None = None,
        process_factory: ProcessFactory | None = None,
        notifier: Notifier | None = None,
        browser_opener: Callable[[str], Awaitable[Any]] | None = None,
        ready_waiter: ReadyWaiter | None = None,
        shutdown_waiter: ShutdownWaiter | None = None,
        settle_delay: float = PORT_SETTLE_DELAY,
    ) -> None:
        self.config = config
        self.catalog = catalog
        self.multi_instance = config.multi_instance
        self._config_provider = config_provider
        self._ports = port_allocator or build_port_allocator(config)
        self._process_factory: ProcessFactory = process_factory or spawn_server_process
        self.notifier: Notifier = notifier or LoggingNotifier(enabled=config.notifications)
        self._browser_opener = browser_opener or open_browser
        self._ready_waiter: ReadyWaiter = ready_waiter or wait_for_ready
        self._shutdown_waiter: ShutdownWaiter = shutdown_waiter or wait_for_shutdown
        self._settle_delay = settle_delay
        self._instances: dict[str, ModelInstance] = {}
        self._sequence = itertools.count(1)
        # Guards the running-set; never held across I/O.
        self._lock = asyncio.Lock()
        # Serializes whole load/unload sequences in single-instance mode.
        self._operation_lock = asyncio.Lock()
        self._bg_tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # configuration
    # ------------------------------------------------------------------

    async def refresh_config(self) -> LmgoConfig:
        """Re-read the configuration, keeping the last good one on failure.

        The provider runs in a worker thread since it reads from disk.
        """

        if self._config_provider is None:
            return self.config
        try:
            config = await asyncio.to_thread(self._config_provider)
        except ConfigError as exc:
            logger.warning(f"Failed to re-read configuration, keeping previous settings: {exc}")
            return self.config
        self.config = config
        self.notifier.enabled = config.notifications
        return config

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    async def load(self, index: int) -> ModelInstance:
        """Start a server for the catalog entry at ``index``.

        In single-instance mode the current instance is stopped first, unless
        it already serves the same model, in which case it is returned as is.

        Raises
        ------
        InvalidIndexError
            If ``index`` is outside the catalog.
        PortAllocationError
            If no port is left.
        LoadFailedError
            If the server process could not be started.
        """
        entry = self.catalog.get(index)
        await self.refresh_config()
        if self.multi_instance:
            return await self._start_instance(entry)

        async with self._operation_lock:
            async with self._lock:
                current = self._current_locked()
                previous = list(self._instances.values())
            if current is not None and current.entry.path == entry.path:
                logger.info(f"Model {entry.display_name} is already loaded on port {current.port}")
                return current
            if previous:
                await asyncio.gather(*(self._stop_instance(inst) for inst in previous))
            return await self._start_instance(entry)

    async def unload(self, instance_id: str | None = None) -> list[ModelInstance]:
        """Stop one instance, or every instance when ``instance_id`` is None.

        Unknown ids and an empty running-set are a successful no-op.

        Returns
        -------
        list[ModelInstance]
            The instances that were stopped.
        """
        await self.refresh_config()
        if self.multi_instance:
            return await self._unload_targets(instance_id)
        async with self._operation_lock:
            return await self._unload_targets(instance_id)

    async def status(self) -> SupervisorStatus:
        """Return a snapshot of the running-set."""

        async with self._lock:
            current = self._current_locked()
            instances = tuple(
                inst.snapshot()
                for inst in sorted(self._instances.values(), key=lambda inst: inst.sequence)
            )
            current_snapshot = current.snapshot() if current is not None else None
        return SupervisorStatus(
            current=current_snapshot,
            instances=instances,
            multi_instance=self.multi_instance,
            timestamp=time.time(),
        )

    async def reload_catalog(self) -> tuple[ModelEntry, ...]:
        """Rescan the model directory with the current settings.

        Running instances keep the entries they were started with.

        Raises
        ------
        CatalogError
            If the directory cannot be read.
        """
        config = await self.refresh_config()
        self.catalog.directory = config.model_path
        self.catalog.recursive = config.recursive_scan
        self.catalog.exclude_patterns = tuple(config.exclude_patterns)
        entries = await asyncio.to_thread(self.catalog.rescan)
        logger.info(f"Catalog reloaded: {len(entries)} model(s)")
        return entries

    async def autoload(
        self,
        names: Sequence[str] | None = None,
        *,
        delay: float = AUTOLOAD_DELAY,
    ) -> list[ModelInstance]:
        """Load the models named in ``autoLoadModels`` after ``delay`` seconds.

        Names without a catalog match are reported and skipped; load failures
        are logged and do not stop the remaining names.
        """
        if names is None:
            names = list(self.config.auto_load_models)
        if not names:
            return []
        if delay > 0:
            await asyncio.sleep(delay)

        started: list[ModelInstance] = []
        for name in names:
            entry = self.catalog.find(name)
            if entry is None:
                self.notifier.model_not_found(name)
                continue
            async with self._lock:
                already = any(
                    inst.entry.path == entry.path and inst.is_live
                    for inst in self._instances.values()
                )
            if already:
                logger.info(f"Auto-load skipped, model already running: {entry.display_name}")
                continue
            logger.info(f"Auto-loading model: {entry.display_name}")
            try:
                started.append(await self.load(entry.index))
            except LmgoError as exc:
                logger.warning(f"Auto-load failed for '{name}': {exc}")
        return started

    def schedule_autoload(self, names: Sequence[str] | None = None) -> asyncio.Task[Any]:
        """Run :meth:`autoload` as a tracked background task."""

        task = asyncio.create_task(self.autoload(names))
        self._track_task(task, "autoload")
        return task

    async def shutdown(self) -> None:
        """Stop every instance and cancel remaining background tasks."""

        logger.info("Shutting down all model instances")
        await self.unload()
        pending = [task for task in self._bg_tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _current_locked(self) -> ModelInstance | None:
        live = [inst for inst in self._instances.values() if inst.is_live]
        if not live:
            return None
        return max(live, key=lambda inst: inst.sequence)

    def _remove_locked(self, instance: ModelInstance) -> None:
        if self._instances.get(instance.instance_id) is instance:
            del self._instances[instance.instance_id]

    async def _start_instance(self, entry: ModelEntry) -> ModelInstance:
        config = self.config
        port = self._ports.allocate()
        instance = ModelInstance(
            entry=entry,
            port=port,
            sequence=next(self._sequence),
            host=config.host,
        )
        async with self._lock:
            self._instances[instance.instance_id] = instance

        args = resolve_model_args(config, entry)
        command = build_server_command(config.server_path, entry.path, port, args)
        logger.info(f"Starting model {entry.display_name} on port {port} with args: {args}")
        process: ManagedProcess | None = None
        try:
            process = await self._process_factory(command, instance.instance_id)
        except OSError as exc:
            self.notifier.model_load_failed(instance.context(), error=str(exc))
            raise LoadFailedError(
                f"Failed to start server for {entry.display_name} on port {port}: {exc}",
            ) from exc
        finally:
            if process is None:
                # Spawn failed or was cancelled.
                self._finish_stop(instance)
                instance.spawned.set()

        instance.process = process
        instance.spawned.set()
        self._track_task(
            asyncio.create_task(self._watch_exit(instance, process)),
            f"exit-watch:{instance.instance_id}",
        )
        if instance.state is InstanceState.STOPPED:
            # An interrupted stop already released this instance.
            self._finish_stop(instance)
            raise LoadFailedError(f"Model {entry.display_name} was stopped while starting")
        logger.info(f"Started model {entry.display_name} (PID {process.pid}, port {port})")

        self._track_task(
            asyncio.create_task(self._await_ready(instance)),
            f"readiness:{instance.instance_id}",
        )
        if config.auto_open_web:
            self._track_task(
                asyncio.create_task(self._browser_opener(instance.url)),
                f"browser:{instance.instance_id}",
            )
        return instance

    async def _await_ready(self, instance: ModelInstance) -> None:
        ready = await self._ready_waiter(
            instance.host,
            instance.port,
            abort=lambda: not instance.is_live,
        )
        async with self._lock:
            if instance.state is not InstanceState.STARTING:
                return
            instance.state = InstanceState.READY
            instance.ready_at = time.time()
            instance.readiness_timed_out = not ready
        if not ready:
            logger.warning(
                f"Model {instance.entry.display_name} did not become ready in time; marking it ready anyway",
            )
        self.notifier.model_loaded(instance.context(), timed_out=not ready)

    async def _watch_exit(self, instance: ModelInstance, process: ManagedProcess) -> None:
        code = await process.wait()
        async with self._lock:
            instance.exit_code = code
            if instance.process is process:
                instance.process = None
            crashed = instance.state in _LIVE_STATES
            if crashed:
                instance.state = InstanceState.CRASHED
                self._remove_locked(instance)
        if not crashed:
            return
        logger.warning(
            f"Model {instance.entry.display_name} exited unexpectedly (port {instance.port}, exit_code={code})",
        )
        instance.stopped.set()
        self.notifier.model_crashed(instance.context(), exit_code=code)

    async def _unload_targets(self, instance_id: str | None) -> list[ModelInstance]:
        async with self._lock:
            if instance_id is None:
                targets = list(self._instances.values())
            else:
                found = self._instances.get(instance_id)
                targets = [found] if found is not None else []
        if not targets:
            logger.info("No model instance to unload")
            return []
        await asyncio.gather(*(self._stop_instance(inst) for inst in targets))
        return targets

    async def _stop_instance(self, instance: ModelInstance) -> None:
        async with self._lock:
            owner = instance.state in _LIVE_STATES
            if owner:
                instance.state = InstanceState.STOPPING
        if not owner:
            if instance.state not in _FINAL_STATES:
                await instance.stopped.wait()
            return

        name = instance.entry.display_name
        completed = False
        try:
            await instance.spawned.wait()
            if instance.process is None:
                # Spawn failed while the stop was pending.
                return

            process = instance.process
            logger.info(f"Stopping model {name} (PID {process.pid}, port {instance.port})")
            if process.returncode is None:
                with suppress(ProcessLookupError):
                    process.kill()
            code = await process.wait()
            async with self._lock:
                instance.exit_code = code
                if instance.process is process:
                    instance.process = None

            await self._shutdown_waiter(instance.host, instance.port)
            if self._settle_delay > 0:
                await asyncio.sleep(self._settle_delay)
            completed = True
        finally:
            if not completed and instance.state is not InstanceState.STOPPED:
                logger.warning(f"Stop of model {name} was interrupted (port {instance.port})")
            self._finish_stop(instance)

        logger.info(f"Model {name} unloaded (port {instance.port})")
        self.notifier.model_stopped(instance.context(), exit_code=instance.exit_code)

    def _finish_stop(self, instance: ModelInstance) -> None:
        """Mark ``instance`` stopped and drop it from the running-set.

        Runs without awaiting, so it completes even when the caller is being
        cancelled; the running-set lock only ever guards await-free sections.
        """
        process = instance.process
        if process is not None and process.returncode is None:
            with suppress(ProcessLookupError):
                process.kill()
        instance.state = InstanceState.STOPPED
        self._remove_locked(instance)
        instance.stopped.set()

    def _track_task(self, task: asyncio.Task[Any], label: str) -> None:
        """Track a background task and log failures."""

        self._bg_tasks.add(task)

        def _on_done(fut: asyncio.Task[Any]) -> None:
            self._bg_tasks.discard(fut)
            if fut.cancelled():
                logger.debug(f"Background task cancelled: {label}")
                return
            exc = fut.exception()
            if exc:
                logger.warning(f"Background task failed ({label}): {exc}")

        task.add_done_callback(_on_done)
