"""
Relay configuration for REViewer.

Values are resolved in this order of priority:
1. Explicit keyword overrides (CLI flags in main.py)
2. REVIEWER_* environment variables
3. Built-in defaults

The relay only ever binds to a loopback address; any other host is
rejected here rather than at bind time.
"""

import ipaddress
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigError

DEFAULT_PORT = 8765
DEFAULT_LIVENESS_TIMEOUT_S = 60.0
DEFAULT_REQUEST_TIMEOUT_S = 30.0
DEFAULT_MAX_BODY_MB = 100
DEFAULT_CACHE_TTL_S = 300.0

_ENV_PREFIX = "REVIEWER_"


@dataclass(frozen=True)
class RelayConfig:
    """Settings shared by the relay server, session registry and correlator."""

    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    liveness_timeout_s: float = DEFAULT_LIVENESS_TIMEOUT_S
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S
    max_body_bytes: int = DEFAULT_MAX_BODY_MB * 1024 * 1024
    cache_ttl_s: float = DEFAULT_CACHE_TTL_S
    log_level: str = "INFO"

    def __post_init__(self):
        if not _is_loopback(self.host):
            raise ConfigError(f"Relay must bind to a loopback address, got {self.host!r}")
        if not 0 < self.port <= 65535:
            raise ConfigError(f"Invalid port: {self.port}")
        if self.liveness_timeout_s <= 0:
            raise ConfigError("liveness_timeout_s must be positive")
        if self.request_timeout_s <= 0:
            raise ConfigError("request_timeout_s must be positive")
        if self.max_body_bytes <= 0:
            raise ConfigError("max_body_bytes must be positive")
        if self.cache_ttl_s < 0:
            raise ConfigError("cache_ttl_s must not be negative")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides: Any) -> "RelayConfig":
        """Build a config from REVIEWER_* variables, then apply non-None overrides."""
        env = os.environ if env is None else env
        values: Dict[str, Any] = {}

        if env.get(f"{_ENV_PREFIX}HOST"):
            values["host"] = env[f"{_ENV_PREFIX}HOST"]
        if env.get(f"{_ENV_PREFIX}PORT"):
            values["port"] = _parse_number(env, "PORT", int)
        if env.get(f"{_ENV_PREFIX}LIVENESS_TIMEOUT"):
            values["liveness_timeout_s"] = _parse_number(env, "LIVENESS_TIMEOUT", float)
        if env.get(f"{_ENV_PREFIX}REQUEST_TIMEOUT"):
            values["request_timeout_s"] = _parse_number(env, "REQUEST_TIMEOUT", float)
        if env.get(f"{_ENV_PREFIX}MAX_BODY_MB"):
            values["max_body_bytes"] = int(_parse_number(env, "MAX_BODY_MB", float) * 1024 * 1024)
        if env.get(f"{_ENV_PREFIX}CACHE_TTL"):
            values["cache_ttl_s"] = _parse_number(env, "CACHE_TTL", float)
        if env.get(f"{_ENV_PREFIX}LOG_LEVEL"):
            values["log_level"] = env[f"{_ENV_PREFIX}LOG_LEVEL"].upper()

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def liveness_timeout_ms(self) -> int:
        return int(self.liveness_timeout_s * 1000)


def _parse_number(env: Mapping[str, str], name: str, kind):
    raw = env[f"{_ENV_PREFIX}{name}"]
    try:
        return kind(raw)
    except ValueError:
        raise ConfigError(f"{_ENV_PREFIX}{name} must be a number, got {raw!r}") from None


def _is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False
