"""Shared test fixtures and helpers for the test suite.

The stub process types here stand in for real ``llama-server`` children so
supervisor and API tests never spawn processes or open sockets.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Sequence
import itertools
from pathlib import Path
from typing import Any

import pytest

from lmgo.config import LmgoConfig
from lmgo.core.catalog import ModelCatalog
from lmgo.hub.observability import ModelContext
from lmgo.hub.supervisor import ModelSupervisor

MODEL_FILES = (
    "alpha.gguf",
    "beta.gguf",
    "big-00001-of-00002.gguf",
    "big-00002-of-00002.gguf",
)


def write_model_files(root: Path, names: Iterable[str]) -> Path:
    """Create empty model files (and parent folders) under ``root``."""

    root.mkdir(parents=True, exist_ok=True)
    for name in names:
        target = root / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(b"")
    return root


async def settle(rounds: int = 10) -> None:
    """Yield to the loop so background tasks can make progress."""

    for _ in range(rounds):
        await asyncio.sleep(0)


class StubProcess:
    """In-memory child process whose exit is driven by the test."""

    _pid_counter = itertools.count(4000)

    def __init__(self, command: Sequence[str], name: str) -> None:
        self.command = list(command)
        self.name = name
        self.pid = next(self._pid_counter)
        self.returncode: int | None = None
        self.kill_calls = 0
        self._exited = asyncio.Event()

    def kill(self) -> None:
        """Record the kill and exit like SIGKILL would."""

        self.kill_calls += 1
        self.exit(-9)

    def exit(self, code: int = 0) -> None:
        """Simulate the process exiting on its own with ``code``."""

        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode


class StubProcessFactory:
    """Callable factory that records spawned stub processes."""

    def __init__(self) -> None:
        self.processes: list[StubProcess] = []
        self.fail_with: OSError | None = None

    async def __call__(self, command: Sequence[str], name: str) -> StubProcess:
        if self.fail_with is not None:
            raise self.fail_with
        process = StubProcess(command, name)
        self.processes.append(process)
        return process

    @property
    def last(self) -> StubProcess:
        return self.processes[-1]


class RecordingNotifier:
    """Capture lifecycle notifications emitted by the supervisor."""

    def __init__(self) -> None:
        self.enabled = True
        self.events: list[tuple[str, str, Any]] = []

    def names(self, kind: str) -> list[str]:
        return [name for event, name, _ in self.events if event == kind]

    def model_loaded(self, ctx: ModelContext, *, timed_out: bool) -> None:
        self.events.append(("loaded", ctx.instance_id, timed_out))

    def model_load_failed(self, ctx: ModelContext, *, error: str) -> None:
        self.events.append(("load_failed", ctx.instance_id, error))

    def model_stopped(self, ctx: ModelContext, *, exit_code: int | None) -> None:
        self.events.append(("stopped", ctx.instance_id, exit_code))

    def model_crashed(self, ctx: ModelContext, *, exit_code: int | None) -> None:
        self.events.append(("crashed", ctx.instance_id, exit_code))

    def model_not_found(self, name: str) -> None:
        self.events.append(("not_found", name, None))

    def fatal(self, message: str) -> None:
        self.events.append(("fatal", message, None))


@pytest.fixture
def model_dir(tmp_path: Path) -> Path:
    """Model directory with two single files and one two-part shard group."""

    return write_model_files(tmp_path / "models", MODEL_FILES)


@pytest.fixture
def make_config(tmp_path: Path, model_dir: Path) -> Callable[..., LmgoConfig]:
    """Factory for `LmgoConfig` objects pointing at ``model_dir``."""

    def _factory(**overrides: Any) -> LmgoConfig:
        values: dict[str, Any] = {
            "model_dir": str(model_dir),
            "default_args": ["-c", "4096"],
            "log_file": None,
        }
        values.update(overrides)
        return LmgoConfig(**values, source_path=tmp_path / "lmgo.json")

    return _factory


@pytest.fixture
def catalog(model_dir: Path) -> ModelCatalog:
    scanned = ModelCatalog(model_dir)
    scanned.rescan()
    return scanned


@pytest.fixture
def process_factory() -> StubProcessFactory:
    return StubProcessFactory()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def shutdown_calls() -> list[int]:
    """Ports passed to the stub shutdown poll, in call order."""

    return []


@pytest.fixture
def make_supervisor(
    make_config: Callable[..., LmgoConfig],
    catalog: ModelCatalog,
    process_factory: StubProcessFactory,
    notifier: RecordingNotifier,
    shutdown_calls: list[int],
) -> Callable[..., ModelSupervisor]:
    """Factory for supervisors wired to stub processes and instant polls.

    ``ready`` selects what the readiness poll reports; pass a coroutine
    function as ``ready_waiter`` to control it fully.
    """

    def _factory(
        config: LmgoConfig | None = None,
        *,
        ready: bool = True,
        **kwargs: Any,
    ) -> ModelSupervisor:
        async def _ready(host: str, port: int, *, abort: Callable[[], bool] | None = None) -> bool:
            return ready

        async def _shutdown(host: str, port: int) -> bool:
            shutdown_calls.append(port)
            return True

        kwargs.setdefault("process_factory", process_factory)
        kwargs.setdefault("notifier", notifier)
        kwargs.setdefault("ready_waiter", _ready)
        kwargs.setdefault("shutdown_waiter", _shutdown)
        kwargs.setdefault("settle_delay", 0)
        return ModelSupervisor(config or make_config(), catalog, **kwargs)

    return _factory
