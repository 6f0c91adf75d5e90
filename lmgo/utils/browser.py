"""Open a model's web interface in the default browser."""

from __future__ import annotations

import asyncio
import webbrowser

from loguru import logger


async def open_browser(url: str) -> bool:
    """Open ``url`` without blocking the event loop; failures are only logged."""

    try:
        opened = await asyncio.to_thread(webbrowser.open, url)
    except webbrowser.Error as exc:
        logger.warning(f"Failed to open browser for {url}: {exc}")
        return False
    if not opened:
        logger.debug(f"No browser available to open {url}")
    return bool(opened)
