"""Shared defaults for configuration, polling, and process control."""

from __future__ import annotations

from pathlib import Path

# Config file
DEFAULT_CONFIG_PATH = Path("lmgo.json")
CONFIG_PATH_ENV = "LMGO_CONFIG_PATH"

# Model discovery
MODEL_FILE_SUFFIX = ".gguf"
DEFAULT_MODEL_DIR = "./models"

# Child server
DEFAULT_SERVER_PATH = "llama-server"
DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_BASE_PORT = 8080
PORT_POLICY_FIXED = "fixed"
PORT_POLICY_INCREMENT = "increment"
PORT_POLICIES = (PORT_POLICY_FIXED, PORT_POLICY_INCREMENT)
PORT_MIN = 1
PORT_MAX = 65535

# Control API
DEFAULT_API_HOST = "0.0.0.0"
DEFAULT_API_PORT = 9696

# Logging
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FILE = "logs/lmgo.log"

# Probe path exposed by the inference server
PROBE_PATH = "/models"
LOADING_MESSAGE = "Loading model"

# Readiness polling
READY_POLL_INTERVAL = 0.5
READY_POLL_TIMEOUT = 300.0
READY_REQUEST_TIMEOUT = 5.0

# Shutdown polling
SHUTDOWN_POLL_INTERVAL = 0.2
SHUTDOWN_POLL_TIMEOUT = 30.0
SHUTDOWN_REQUEST_TIMEOUT = 2.0
PORT_SETTLE_DELAY = 0.5

# Startup
AUTOLOAD_DELAY = 1.0
FATAL_EXIT_DELAY = 2.0
