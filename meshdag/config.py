"""Configuration loading and defaults.

Reads from config.toml at the project root, with environment variable overrides.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from dotenv import load_dotenv

# Look for .env in the package's parent directory (project root)
_project_root = Path(__file__).resolve().parent.parent
load_dotenv(_project_root / ".env")
load_dotenv()  # also check cwd

# ---------------------------------------------------------------------------
# Load config.toml
# ---------------------------------------------------------------------------

_toml_path = Path(os.getenv("MESHDAG_CONFIG", str(_project_root / "config.toml")))
_cfg: dict = {}
if _toml_path.exists():
    with open(_toml_path, "rb") as f:
        _cfg = tomllib.load(f)

_engine = _cfg.get("engine", {})
_breaker = _cfg.get("breaker", {})
_contracts = _cfg.get("contracts", {})
_server = _cfg.get("server", {})


def _flag(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Engine defaults
# ---------------------------------------------------------------------------

DEFAULT_MAX_CONCURRENCY = int(os.getenv("MESHDAG_MAX_CONCURRENCY", _engine.get("max_concurrency", 4)))
DEFAULT_TASK_TIMEOUT = float(os.getenv("MESHDAG_TASK_TIMEOUT", _engine.get("task_timeout", 30.0)))
DEFAULT_RETRY_ATTEMPTS = int(os.getenv("MESHDAG_RETRY_ATTEMPTS", _engine.get("retry_attempts", 3)))
DEFAULT_INITIAL_DELAY = float(os.getenv("MESHDAG_INITIAL_DELAY", _engine.get("initial_delay", 1.0)))
DEFAULT_MAX_DELAY = float(os.getenv("MESHDAG_MAX_DELAY", _engine.get("max_delay", 30.0)))

# Scheduled-task poll loop tick
POLL_INTERVAL = float(os.getenv("MESHDAG_POLL_INTERVAL", _engine.get("poll_interval", 1.0)))

# Resolver: inputs up to this size take the direct existence-check path
FAST_PATH_LIMIT = int(os.getenv("MESHDAG_FAST_PATH_LIMIT", _engine.get("fast_path_limit", 3)))
BLOCK_ON_CONFLICTS = _flag(os.getenv("MESHDAG_BLOCK_ON_CONFLICTS", _engine.get("block_on_conflicts", False)))

# Metrics
THROUGHPUT_WINDOW = float(os.getenv("MESHDAG_THROUGHPUT_WINDOW", _engine.get("throughput_window", 60)))
FAILURE_HISTORY_LIMIT = int(os.getenv("MESHDAG_FAILURE_HISTORY", _engine.get("failure_history", 1000)))

SUPPORTED_TASK_TYPES: list[str] = list(
    _engine.get("task_types", ["default", "data-processing", "api-call", "file-operation"])
)

# "module:callable" for the task body the gateway injects into the engine
TASK_RUNNER = os.getenv("MESHDAG_TASK_RUNNER", _engine.get("task_runner", "meshdag.runners:echo_runner"))

# Trace records (optional append-only JSONL file)
_trace_log = os.getenv("MESHDAG_TRACE_LOG", _engine.get("trace_log", ""))
TRACE_LOG_FILE = Path(_trace_log) if _trace_log else None
SOURCE_AGENT = os.getenv("MESHDAG_AGENT_ID", _engine.get("agent_id", "alex"))

# ---------------------------------------------------------------------------
# Circuit breaker: per task type threshold / cooldown
# ---------------------------------------------------------------------------

DEFAULT_BREAKER_THRESHOLD = int(os.getenv("MESHDAG_BREAKER_THRESHOLD", _breaker.get("threshold", 3)))
DEFAULT_BREAKER_COOLDOWN = float(os.getenv("MESHDAG_BREAKER_COOLDOWN", _breaker.get("cooldown", 30.0)))

# External calls trip early and stay open longer; bulk data work tolerates more noise.
BREAKER_OVERRIDES: dict[str, dict[str, float]] = {
    "api-call": {"threshold": 2, "cooldown": 60.0},
    "data-processing": {"threshold": 5, "cooldown": 15.0},
    "file-operation": {"threshold": 3, "cooldown": 30.0},
}
for _type, _values in _breaker.get("types", {}).items():
    BREAKER_OVERRIDES.setdefault(_type, {}).update(_values)

# ---------------------------------------------------------------------------
# Output contracts: keys a task's output mapping must carry, per task type
# ---------------------------------------------------------------------------

OUTPUT_CONTRACTS: dict[str, list[str]] = {
    "api-call": ["status"],
    "data-processing": ["records_processed"],
    "file-operation": ["files_processed"],
}
OUTPUT_CONTRACTS.update({k: list(v) for k, v in _contracts.items()})

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

SERVER_HOST = os.getenv("MESHDAG_HOST", _server.get("host", "0.0.0.0"))
SERVER_PORT = int(os.getenv("MESHDAG_PORT", _server.get("port", 8000)))
LOG_LEVEL = os.getenv("MESHDAG_LOG_LEVEL", _server.get("log_level", "INFO")).upper()
