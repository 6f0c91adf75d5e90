"""CLI tests with the control API client stubbed out."""

from __future__ import annotations

from collections.abc import Iterator
import json
from pathlib import Path
import sys
from typing import Any

import click
from click.testing import CliRunner
from loguru import logger
import pytest

from lmgo import cli as cli_module
from lmgo.cli import _api_base_url, cli
from lmgo.config import LmgoConfig, load_config


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    """`serve` reconfigures loguru against the runner's streams; undo that."""

    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def config_file(tmp_path: Path, model_dir: Path) -> Path:
    path = tmp_path / "lmgo.json"
    path.write_text(
        json.dumps({"modelDir": str(model_dir), "logFile": None}),
        encoding="utf-8",
    )
    return path


class _ApiRecorder:
    """Replacement for ``_call_api`` returning canned payloads per path."""

    def __init__(self, responses: dict[tuple[str, str], dict[str, Any]]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, str, dict[str, Any] | None]] = []

    def __call__(
        self,
        _config: LmgoConfig,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        timeout: float = 10.0,
    ) -> dict[str, Any]:
        self.calls.append((method, path, params))
        try:
            return self.responses[(method, path)]
        except KeyError:
            raise click.ClickException(f"unexpected call {method} {path}") from None


def _invoke(config_file: Path, *args: str) -> Any:
    return CliRunner().invoke(cli, ["--config", str(config_file), *args])


def test_models_prints_index_and_name(
    monkeypatch: pytest.MonkeyPatch, config_file: Path
) -> None:
    recorder = _ApiRecorder(
        {
            ("GET", "/api/models"): {
                "success": True,
                "data": [
                    {"index": 0, "name": "alpha.gguf", "path": "/m/alpha.gguf"},
                    {"index": 1, "name": "big (2 shards)", "path": "/m/big-00001-of-00002.gguf"},
                ],
            }
        }
    )
    monkeypatch.setattr("lmgo.cli._call_api", recorder)

    result = _invoke(config_file, "models")

    assert result.exit_code == 0
    assert "[0] alpha.gguf" in result.output
    assert "[1] big (2 shards)" in result.output


def test_status_shows_loaded_model(monkeypatch: pytest.MonkeyPatch, config_file: Path) -> None:
    recorder = _ApiRecorder(
        {
            ("GET", "/api/status"): {
                "success": True,
                "data": {
                    "loaded": True,
                    "model": {"baseName": "alpha", "path": "/m/alpha.gguf"},
                    "serverPort": 8080,
                    "state": "ready",
                    "instances": [
                        {"instanceId": "alpha#1", "port": 8080, "state": "ready", "pid": 42}
                    ],
                },
            }
        }
    )
    monkeypatch.setattr("lmgo.cli._call_api", recorder)

    result = _invoke(config_file, "status")

    assert result.exit_code == 0
    assert "Loaded: alpha on port 8080 (ready)" in result.output


def test_status_when_supervisor_is_down(
    monkeypatch: pytest.MonkeyPatch, config_file: Path
) -> None:
    monkeypatch.setattr("lmgo.cli._call_api", _ApiRecorder({}))

    result = _invoke(config_file, "status")

    assert result.exit_code == 0
    assert "not running" in result.output


def test_load_and_unload_pass_query_parameters(
    monkeypatch: pytest.MonkeyPatch, config_file: Path
) -> None:
    recorder = _ApiRecorder(
        {
            ("POST", "/api/load"): {
                "success": True,
                "message": "Loading model beta.gguf on port 8080",
                "data": {"instanceId": "beta#1", "port": 8080},
            },
            ("POST", "/api/unload"): {
                "success": True,
                "message": "Model unloaded",
                "data": ["beta#1"],
            },
        }
    )
    monkeypatch.setattr("lmgo.cli._call_api", recorder)

    loaded = _invoke(config_file, "load", "1")
    unloaded = _invoke(config_file, "unload", "--instance", "beta#1")

    assert loaded.exit_code == 0
    assert "beta#1" in loaded.output
    assert unloaded.exit_code == 0
    assert recorder.calls == [
        ("POST", "/api/load", {"index": 1}),
        ("POST", "/api/unload", {"instance": "beta#1"}),
    ]


def test_api_errors_exit_nonzero(monkeypatch: pytest.MonkeyPatch, config_file: Path) -> None:
    monkeypatch.setattr("lmgo.cli._call_api", _ApiRecorder({}))

    result = _invoke(config_file, "load", "7")

    assert result.exit_code == 1
    assert "unexpected call" in result.output


def test_autostart_toggles_config_file(config_file: Path) -> None:
    result = _invoke(config_file, "autostart", "on")

    assert result.exit_code == 0
    assert load_config(config_file).auto_start is True

    _invoke(config_file, "autostart", "OFF")
    assert load_config(config_file).auto_start is False


def test_api_base_url_replaces_wildcard_host() -> None:
    assert _api_base_url(LmgoConfig()) == "http://127.0.0.1:9696"
    assert _api_base_url(LmgoConfig(api_host="10.0.0.5", api_port=9000)) == "http://10.0.0.5:9000"


def test_serve_exits_when_model_directory_is_empty(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()
    path = tmp_path / "lmgo.json"
    path.write_text(json.dumps({"modelDir": str(empty), "logFile": None}), encoding="utf-8")
    monkeypatch.setattr(cli_module, "FATAL_EXIT_DELAY", 0)

    result = CliRunner().invoke(cli, ["--config", str(path), "serve", "--no-log-file"])

    assert result.exit_code == 1
    assert "No .gguf files found" in result.output


def test_serve_exits_on_invalid_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = tmp_path / "lmgo.json"
    path.write_text(json.dumps({"basePort": 9696, "apiPort": 9696}), encoding="utf-8")
    monkeypatch.setattr(cli_module, "FATAL_EXIT_DELAY", 0)

    result = CliRunner().invoke(cli, ["--config", str(path), "serve", "--no-log-file"])

    assert result.exit_code == 1
    assert "must differ" in result.output
