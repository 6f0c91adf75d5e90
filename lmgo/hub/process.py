"""Inference server subprocess management."""

from __future__ import annotations

import asyncio
from asyncio import subprocess as aio_subprocess
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
import os
from typing import Any, Protocol

from loguru import logger


class ManagedProcess(Protocol):
    """Minimal interface the supervisor needs from a child process."""

    @property
    def pid(self) -> int | None:
        """Return the operating system PID."""

    @property
    def returncode(self) -> int | None:
        """Return the exit code once the process ended, else ``None``."""

    def kill(self) -> None:
        """Forcefully terminate the process."""

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""


ProcessFactory = Callable[[Sequence[str], str], Awaitable[ManagedProcess]]


def build_server_command(
    server_path: str,
    model_path: str,
    port: int,
    extra_args: Sequence[str],
) -> list[str]:
    """Return the argv used to launch the inference server."""

    return [server_path, "-m", model_path, "--port", str(port), *extra_args]


class ServerProcess:
    """Own one spawned inference server and relay its output to the log."""

    def __init__(self, process: aio_subprocess.Process, *, name: str) -> None:
        self.name = name
        self._process = process
        self._drain_tasks: list[asyncio.Task[Any]] = []
        for stream, stream_name in ((process.stdout, "stdout"), (process.stderr, "stderr")):
            if stream is not None:
                self._drain_tasks.append(
                    asyncio.create_task(self._drain_stream(stream, stream_name))
                )

    @property
    def pid(self) -> int | None:
        """Return the process identifier."""

        return self._process.pid

    @property
    def returncode(self) -> int | None:
        """Return the exit code of the process, if available."""

        return self._process.returncode

    def kill(self) -> None:
        """Kill the process unless it has already exited."""

        if self._process.returncode is not None:
            return
        with suppress(ProcessLookupError):
            self._process.kill()

    async def wait(self) -> int:
        """Wait for the process to exit; output readers stop on their own at EOF."""

        return await self._process.wait()

    async def _drain_stream(self, stream: asyncio.StreamReader, stream_name: str) -> None:
        """Read lines from ``stream`` and log them bound to the model name."""

        prefix = f"server[{self.name}].{stream_name}"
        bound_logger = logger.bind(model=self.name)
        try:
            while True:
                line = await stream.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip()
                if text:
                    bound_logger.debug(f"{prefix}: {text}")
        except asyncio.CancelledError:
            return
        except Exception as exc:  # pragma: no cover
            logger.warning(f"Error reading {prefix}: {exc}")


async def spawn_server_process(command: Sequence[str], name: str) -> ManagedProcess:
    """Spawn ``command`` and wrap it in a :class:`ServerProcess`.

    Raises
    ------
    OSError
        If the executable cannot be started.
    """
    env = os.environ.copy()
    process = await asyncio.create_subprocess_exec(
        *command,
        env=env,
        stdin=aio_subprocess.DEVNULL,
        stdout=aio_subprocess.PIPE,
        stderr=aio_subprocess.PIPE,
    )
    return ServerProcess(process, name=name)
