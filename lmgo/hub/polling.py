"""Bounded HTTP polling used to detect readiness and shutdown of a server.

Process exit says nothing about whether the server finished loading weights
or released its listening socket, so both transitions are observed through
the server's own probe endpoint.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import json
import time

import httpx
from loguru import logger

from ..const import (
    LOADING_MESSAGE,
    PROBE_PATH,
    READY_POLL_INTERVAL,
    READY_POLL_TIMEOUT,
    READY_REQUEST_TIMEOUT,
    SHUTDOWN_POLL_INTERVAL,
    SHUTDOWN_POLL_TIMEOUT,
    SHUTDOWN_REQUEST_TIMEOUT,
)


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    *,
    interval: float,
    timeout: float,
    abort: Callable[[], bool] | None = None,
) -> bool:
    """Call ``check`` every ``interval`` seconds until it returns True.

    Parameters
    ----------
    check : Callable[[], Awaitable[bool]]
        Probe returning True once the awaited condition holds.
    interval : float
        Delay between probes in seconds.
    timeout : float
        Upper bound for the whole loop in seconds.
    abort : Callable[[], bool] | None, optional
        Evaluated before each probe; True stops the loop early.

    Returns
    -------
    bool
        True if ``check`` succeeded, False on timeout or abort. A timeout is
        never raised; cancelling the awaiting task stops the loop.
    """
    deadline = time.monotonic() + timeout
    while True:
        if abort is not None and abort():
            return False
        if await check():
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(interval, remaining))


def probe_url(host: str, port: int) -> str:
    """Return the probe URL of a server bound to ``host:port``."""

    return f"http://{host}:{port}{PROBE_PATH}"


def is_loading_payload(body: bytes) -> bool:
    """Return True for the server's ``{"error": {"message": "Loading model"}}`` reply."""

    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return False
    if not isinstance(payload, dict):
        return False
    error = payload.get("error")
    if not isinstance(error, dict):
        return False
    return error.get("message") == LOADING_MESSAGE


async def wait_for_ready(
    host: str,
    port: int,
    *,
    interval: float = READY_POLL_INTERVAL,
    timeout: float = READY_POLL_TIMEOUT,
    request_timeout: float = READY_REQUEST_TIMEOUT,
    abort: Callable[[], bool] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """Poll the probe endpoint until the server stops reporting it is loading.

    Connection failures and the loading payload mean "not yet"; any other
    answer, including error statuses and malformed bodies, means ready.

    Returns
    -------
    bool
        True once ready, False on timeout or abort.
    """
    url = probe_url(host, port)

    async with httpx.AsyncClient(timeout=request_timeout, transport=transport) as client:

        async def _check() -> bool:
            try:
                response = await client.get(url)
            except httpx.HTTPError:
                return False
            return not is_loading_payload(response.content)

        ready = await poll_until(_check, interval=interval, timeout=timeout, abort=abort)

    if ready:
        logger.debug(f"Server on port {port} answered {url}")
    elif abort is None or not abort():
        logger.warning(f"Timed out after {timeout:.0f}s waiting for server on port {port}")
    return ready


async def wait_for_shutdown(
    host: str,
    port: int,
    *,
    interval: float = SHUTDOWN_POLL_INTERVAL,
    timeout: float = SHUTDOWN_POLL_TIMEOUT,
    request_timeout: float = SHUTDOWN_REQUEST_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """Poll until the probe endpoint stops answering.

    Only a transport failure (refused connection, timeout) confirms shutdown;
    an HTTP error status still means something is listening.

    Returns
    -------
    bool
        True once the port stopped answering, False on timeout.
    """
    url = probe_url(host, port)

    async with httpx.AsyncClient(timeout=request_timeout, transport=transport) as client:

        async def _check() -> bool:
            try:
                await client.get(url)
            except httpx.TransportError:
                return True
            return False

        released = await poll_until(_check, interval=interval, timeout=timeout)

    if not released:
        logger.warning(f"Timed out after {timeout:.0f}s waiting for port {port} to close")
    return released
