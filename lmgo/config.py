"""Configuration file parsing, validation and persistence.

The configuration lives in a single JSON document (``lmgo.json`` by default).
When the file is missing the packaged default template is written to disk and
loaded, so a first run always leaves an editable file behind. Files ending in
``.yaml``/``.yml`` are parsed with PyYAML instead of ``json``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from importlib import resources
import json
import os
from pathlib import Path
from typing import Any

from loguru import logger
import yaml

from .const import (
    CONFIG_PATH_ENV,
    DEFAULT_API_HOST,
    DEFAULT_API_PORT,
    DEFAULT_BASE_PORT,
    DEFAULT_CONFIG_PATH,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MODEL_DIR,
    DEFAULT_SERVER_HOST,
    DEFAULT_SERVER_PATH,
    PORT_MAX,
    PORT_MIN,
    PORT_POLICIES,
    PORT_POLICY_FIXED,
    PORT_POLICY_INCREMENT,
)
from .hub.errors import ConfigError

_YAML_SUFFIXES = {".yaml", ".yml"}

# attribute name -> JSON key
_FIELD_KEYS: dict[str, str] = {
    "model_dir": "modelDir",
    "server_path": "serverPath",
    "host": "host",
    "base_port": "basePort",
    "api_host": "apiHost",
    "api_port": "apiPort",
    "port_policy": "portPolicy",
    "multi_instance": "multiInstance",
    "recursive_scan": "recursiveScan",
    "default_args": "defaultArgs",
    "model_specific_args": "modelSpecificArgs",
    "exclude_patterns": "excludePatterns",
    "auto_load_models": "autoLoadModels",
    "auto_open_web": "autoOpenWebEnabled",
    "notifications": "notifications",
    "auto_start": "autoStart",
    "log_level": "logLevel",
    "log_file": "logFile",
}


@dataclass(slots=True)
class LmgoConfig:
    """Process-wide configuration loaded from the config file."""

    model_dir: str = DEFAULT_MODEL_DIR
    server_path: str = DEFAULT_SERVER_PATH
    host: str = DEFAULT_SERVER_HOST
    base_port: int = DEFAULT_BASE_PORT
    api_host: str = DEFAULT_API_HOST
    api_port: int = DEFAULT_API_PORT
    port_policy: str = PORT_POLICY_FIXED
    multi_instance: bool = False
    recursive_scan: bool = True
    default_args: list[str] = field(default_factory=list)
    model_specific_args: dict[str, list[str]] = field(default_factory=dict)
    exclude_patterns: list[str] = field(default_factory=list)
    auto_load_models: list[str] = field(default_factory=list)
    auto_open_web: bool = False
    notifications: bool = True
    auto_start: bool = False
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: str | None = DEFAULT_LOG_FILE
    source_path: Path | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        """Validate port settings and normalize simple fields."""
        self.log_level = str(self.log_level).upper()
        self.port_policy = str(self.port_policy).lower()
        self.base_port = _coerce_port(self.base_port, field_name="basePort")
        self.api_port = _coerce_port(self.api_port, field_name="apiPort")
        if self.base_port == self.api_port:
            raise ConfigError(
                f"basePort and apiPort must differ (both are {self.base_port})",
            )
        if self.port_policy not in PORT_POLICIES:
            raise ConfigError(
                f"portPolicy must be one of {', '.join(PORT_POLICIES)}, got '{self.port_policy}'",
            )
        if self.multi_instance and self.port_policy != PORT_POLICY_INCREMENT:
            raise ConfigError("multiInstance requires portPolicy 'increment'")

    @property
    def model_path(self) -> Path:
        """Return the model directory, resolved relative to the config file."""

        path = Path(self.model_dir).expanduser()
        if not path.is_absolute() and self.source_path is not None:
            path = self.source_path.parent / path
        return path

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON document representation of this config."""

        payload: dict[str, Any] = {}
        for attr, key in _FIELD_KEYS.items():
            value = getattr(self, attr)
            if isinstance(value, list):
                value = list(value)
            elif isinstance(value, dict):
                value = {name: list(args) for name, args in value.items()}
            payload[key] = value
        return payload

    @classmethod
    def from_mapping(cls, data: dict[str, Any], *, source_path: Path | None = None) -> LmgoConfig:
        """Build a config from a parsed document.

        Parameters
        ----------
        data : dict[str, Any]
            Parsed JSON/YAML mapping using the documented camelCase keys.
        source_path : Path | None, optional
            File the mapping was read from.

        Returns
        -------
        LmgoConfig
            The validated configuration.

        Raises
        ------
        ConfigError
            If a field has the wrong shape or the port settings are invalid.
        """
        if not isinstance(data, dict):
            raise ConfigError("Config root must be a mapping")

        unknown = set(data) - set(_FIELD_KEYS.values())
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")

        kwargs: dict[str, Any] = {}
        for attr, key in _FIELD_KEYS.items():
            if key not in data:
                continue
            # null disables file logging; elsewhere it means "use the default"
            if data[key] is None and attr != "log_file":
                continue
            kwargs[attr] = data[key]

        for attr in ("default_args", "exclude_patterns", "auto_load_models"):
            if attr in kwargs:
                kwargs[attr] = _string_list(kwargs[attr], field_name=_FIELD_KEYS[attr])
        if "model_specific_args" in kwargs:
            kwargs["model_specific_args"] = _args_table(kwargs["model_specific_args"])
        for attr in ("multi_instance", "recursive_scan", "auto_open_web", "notifications", "auto_start"):
            if attr in kwargs and not isinstance(kwargs[attr], bool):
                raise ConfigError(f"{_FIELD_KEYS[attr]} must be a boolean")
        for attr in ("model_dir", "server_path", "host", "api_host"):
            if attr in kwargs:
                kwargs[attr] = str(kwargs[attr])

        return cls(**kwargs, source_path=source_path)


def _coerce_port(value: Any, *, field_name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be an integer")
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be an integer") from exc
    if not (PORT_MIN <= port <= PORT_MAX):
        raise ConfigError(f"{field_name} must be between {PORT_MIN} and {PORT_MAX}")
    return port


def _string_list(value: Any, *, field_name: str) -> list[str]:
    if not isinstance(value, list):
        raise ConfigError(f"{field_name} must be an array of strings")
    return [str(item) for item in value]


def _args_table(value: Any) -> dict[str, list[str]]:
    if not isinstance(value, dict):
        raise ConfigError("modelSpecificArgs must be a mapping of base name to argument array")
    table: dict[str, list[str]] = {}
    for name, args in value.items():
        if args is None:
            table[str(name)] = []
            continue
        table[str(name)] = _string_list(args, field_name=f"modelSpecificArgs.{name}")
    return table


def resolve_config_path(config_path: Path | str | None = None) -> Path:
    """Return the config path from the argument, the environment, or the default."""

    if config_path is not None:
        return Path(config_path).expanduser()
    env_value = os.environ.get(CONFIG_PATH_ENV)
    if env_value:
        return Path(env_value).expanduser()
    return DEFAULT_CONFIG_PATH


def default_config_data() -> dict[str, Any]:
    """Return a fresh copy of the packaged default config template."""

    text = resources.files("lmgo").joinpath("default_config.json").read_text(encoding="utf-8")
    data = json.loads(text)
    if not isinstance(data, dict):  # pragma: no cover - packaged template is a mapping
        raise ConfigError("Embedded default config is not a mapping")
    return data


def _parse_file(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read config file '{path}': {exc}") from exc

    try:
        if path.suffix.lower() in _YAML_SUFFIXES:
            loaded = yaml.safe_load(text) or {}
        else:
            loaded = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to parse config file '{path}': {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigError("Config root must be a mapping")
    return loaded


def save_config(config: LmgoConfig, config_path: Path | str | None = None) -> Path:
    """Write ``config`` to disk and return the path written.

    Raises
    ------
    ConfigError
        If the file cannot be written.
    """
    path = Path(config_path) if config_path is not None else config.source_path
    if path is None:
        path = DEFAULT_CONFIG_PATH
    payload = config.to_dict()
    try:
        if path.parent and not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix.lower() in _YAML_SUFFIXES:
            text = yaml.safe_dump(payload, sort_keys=False)
        else:
            text = json.dumps(payload, indent=2) + "\n"
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to write config file '{path}': {exc}") from exc
    logger.info(f"Config saved to: {path}")
    return path


def load_config(config_path: Path | str | None = None) -> LmgoConfig:
    """Load and validate the configuration file.

    A missing file is created from the packaged default template first.

    Parameters
    ----------
    config_path : Path, str, or None, optional
        Path to the config file. When None, ``LMGO_CONFIG_PATH`` or
        ``lmgo.json`` in the working directory is used.

    Returns
    -------
    LmgoConfig
        The loaded configuration.

    Raises
    ------
    ConfigError
        If the file cannot be read, parsed or validated.
    """
    path = resolve_config_path(config_path)

    if not path.exists():
        logger.info(f"Config file {path} does not exist, creating default config...")
        config = LmgoConfig.from_mapping(default_config_data(), source_path=path)
        save_config(config, path)
        logger.info(f"Default model directory: {config.model_dir}")
        logger.info(f"Default port: {config.base_port}")
        return config

    config = LmgoConfig.from_mapping(_parse_file(path), source_path=path)
    logger.debug(
        f"Config loaded: modelDir={config.model_dir}, basePort={config.base_port}, "
        f"portPolicy={config.port_policy}, autoOpenWeb={config.auto_open_web}, "
        f"model-specific entries={len(config.model_specific_args)}",
    )
    return config


def reread_config(config_path: Path | str) -> LmgoConfig:
    """Re-read an existing config file without creating one.

    Raises
    ------
    ConfigError
        If the file has disappeared or cannot be loaded.
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file {path} no longer exists")
    return load_config(path)


def set_auto_start(config: LmgoConfig, enabled: bool) -> LmgoConfig:
    """Persist the auto-start toggle, the only field changed in place."""

    config.auto_start = bool(enabled)
    save_config(config)
    logger.info(f"{'Enabled' if enabled else 'Disabled'} auto-start on boot")
    return config
