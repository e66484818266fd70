"""
config.py — runtime settings, read from GREENLINK_* environment variables.

Defaults match the reference deployment: greenhouse on localhost:9057,
5 connection attempts 5 seconds apart, heartbeat every minute over nodes 1-3.
Command-line flags in run_node.py override whatever is set here.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 9057
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_DELAY = 5.0
DEFAULT_HEARTBEAT_INTERVAL = 60.0
DEFAULT_NODE_IDS = (1, 2, 3)
DEFAULT_LOG_LEVEL = "INFO"


def _parse_int(env: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _parse_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


def _parse_node_ids(env: Mapping[str, str], name: str) -> Tuple[int, ...]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return DEFAULT_NODE_IDS
    try:
        ids = tuple(int(part) for part in raw.split(",") if part.strip())
    except ValueError:
        raise ValueError(f"{name} must be a comma-separated list of integers, got {raw!r}") from None
    if not ids:
        raise ValueError(f"{name} must name at least one node id")
    return ids


@dataclass(frozen=True)
class Settings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_delay: float = DEFAULT_RETRY_DELAY
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    node_ids: Tuple[int, ...] = DEFAULT_NODE_IDS
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from the environment (os.environ unless given)."""
        env = os.environ if environ is None else environ
        return cls(
            host=env.get("GREENLINK_HOST") or DEFAULT_HOST,
            port=_parse_int(env, "GREENLINK_PORT", DEFAULT_PORT, minimum=0),
            max_attempts=_parse_int(env, "GREENLINK_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS, minimum=1),
            retry_delay=_parse_float(env, "GREENLINK_RETRY_DELAY", DEFAULT_RETRY_DELAY),
            heartbeat_interval=_parse_float(
                env, "GREENLINK_HEARTBEAT_INTERVAL", DEFAULT_HEARTBEAT_INTERVAL
            ),
            node_ids=_parse_node_ids(env, "GREENLINK_NODE_IDS"),
            log_level=(env.get("GREENLINK_LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper(),
        )
