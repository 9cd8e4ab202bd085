"""
Argus service configuration from environment variables.

Environment variables:
- ARGUS_HOST / ARGUS_PORT: Bind address (default 127.0.0.1:4242)
- ARGUS_TRANSCRIPT_ROOTS: Transcript directories, os.pathsep separated
  (default ~/.claude/projects)
- ARGUS_POLL_INTERVAL / ARGUS_REAP_INTERVAL / ARGUS_PING_INTERVAL: Timer
  periods in seconds
- ARGUS_CONFIG: Optional YAML file whose keys override the values above
"""
import os
from pathlib import Path
from typing import List, Optional

import yaml

from argus.errors import ConfigError

ENV_PREFIX = "ARGUS_"


def _env(name: str, default: str) -> str:
    return os.environ.get(ENV_PREFIX + name, default)


def _as_int(name: str, value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def _as_float(name: str, value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}")


def _as_roots(value) -> List[Path]:
    if isinstance(value, (list, tuple)):
        parts = [str(v) for v in value]
    else:
        parts = str(value).split(os.pathsep)
    return [Path(p).expanduser() for p in parts if p.strip()]


class Config:
    """Argus service configuration from environment variables."""

    # Server
    HOST: str = "127.0.0.1"
    PORT: int = 4242
    LOG_LEVEL: str = "INFO"

    # Discovery
    TRANSCRIPT_ROOTS: List[Path] = []
    RECENT_WINDOW: float = 300.0  # transcripts modified within this many seconds
    TRANSCRIPT_HEAD_BYTES: int = 64 * 1024
    TRANSCRIPT_TAIL_BYTES: int = 256 * 1024
    TASK_TEXT_LIMIT: int = 100

    # Timers (seconds)
    POLL_INTERVAL: float = 5.0
    REAP_INTERVAL: float = 30.0
    PING_INTERVAL: float = 30.0

    # Reaper thresholds (seconds)
    AGENT_IDLE_AFTER: float = 120.0
    AGENT_STALE_AFTER: float = 600.0
    BLOCKED_STALE_AFTER: float = 3600.0
    PROJECT_STALE_AFTER: float = 1800.0

    # Bounds
    COMPLETED_WORK_LIMIT: int = 50
    SUBSCRIBER_QUEUE_SIZE: int = 16

    _INTS = ("PORT", "TRANSCRIPT_HEAD_BYTES", "TRANSCRIPT_TAIL_BYTES", "TASK_TEXT_LIMIT",
             "COMPLETED_WORK_LIMIT", "SUBSCRIBER_QUEUE_SIZE")
    _FLOATS = ("RECENT_WINDOW", "POLL_INTERVAL", "REAP_INTERVAL", "PING_INTERVAL",
               "AGENT_IDLE_AFTER", "AGENT_STALE_AFTER", "BLOCKED_STALE_AFTER",
               "PROJECT_STALE_AFTER")
    _STRS = ("HOST", "LOG_LEVEL")

    def __init__(self, **overrides):
        self.TRANSCRIPT_ROOTS = [Path.home() / ".claude" / "projects"]
        self.update(overrides)

    def update(self, values: dict):
        """Apply overrides; keys are matched case-insensitively."""
        for key, value in values.items():
            name = key.upper()
            if name == "TRANSCRIPT_ROOTS":
                self.TRANSCRIPT_ROOTS = _as_roots(value)
            elif name in self._INTS:
                setattr(self, name, _as_int(name, value))
            elif name in self._FLOATS:
                setattr(self, name, _as_float(name, value))
            elif name in self._STRS:
                setattr(self, name, str(value))
            else:
                raise ConfigError(f"Unknown configuration key: {key}")

    @classmethod
    def from_env(cls) -> "Config":
        cfg = cls()
        names = ("TRANSCRIPT_ROOTS",) + cls._INTS + cls._FLOATS + cls._STRS
        cfg.update({n: os.environ[ENV_PREFIX + n] for n in names if ENV_PREFIX + n in os.environ})
        config_file = _env("CONFIG", "")
        if config_file:
            cfg.update(load_config_file(Path(config_file)))
        return cfg


def load_config_file(path: Path) -> dict:
    """Load a YAML override file. An empty file yields no overrides."""
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    with open(path, 'r', encoding='utf-8') as f:
        data: Optional[dict] = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


config = Config.from_env()
