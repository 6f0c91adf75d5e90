"""Resolution of the argument list passed to the inference server."""

from __future__ import annotations

from loguru import logger

from ..config import LmgoConfig
from .catalog import ModelEntry


def resolve_model_args(config: LmgoConfig, entry: ModelEntry) -> list[str]:
    """Return the extra server arguments for ``entry``.

    A non-empty per-model list registered under the entry's base name wins
    verbatim; otherwise the global default list is used. The lists are never
    merged and the result is always a fresh copy.
    """
    override = config.model_specific_args.get(entry.base_name)
    if override:
        logger.debug(f"Using model-specific config for {entry.base_name}")
        return list(override)
    logger.debug(f"Using default config for {entry.base_name}")
    return list(config.default_args)
