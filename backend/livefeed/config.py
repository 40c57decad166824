"""Process configuration, read once from the environment at startup."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from .errors import ConfigurationError

DEFAULT_DATASET = "EQUS.MINI"
DEFAULT_HIST_URL = "https://hist.databento.com"
DEFAULT_RELAY_URL = "ws://127.0.0.1:8765"


@dataclass(frozen=True, slots=True)
class Settings:
    """Every tunable of the service. Components receive this explicitly."""

    databento_api_key: str | None = None
    dataset: str = DEFAULT_DATASET
    hist_url: str = DEFAULT_HIST_URL
    relay_url: str = DEFAULT_RELAY_URL
    host: str = "0.0.0.0"
    port: int = 7878
    cors_origins: tuple[str, ...] = ("http://localhost:3000",)
    log_level: str = "INFO"
    feed_reconnect_delay: float = 5.0
    relay_reconnect_delay: float = 5.0
    relay_connect_retry_delay: float = 10.0
    subscribe_settle_delay: float = 0.5
    subscribe_timeout: float = 8.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from environment variables.

        - DATABENTO_API_KEY blank or unset -> None. Not fatal here: the
          subscribe and backfill paths reject requests without it.
        - Unparseable numbers -> ConfigurationError.
        """
        env = os.environ if environ is None else environ

        api_key = env.get("DATABENTO_API_KEY", "").strip() or None
        origins = tuple(o.strip() for o in env.get("CORS_ORIGINS", "").split(",") if o.strip())

        return cls(
            databento_api_key=api_key,
            dataset=env.get("DATABENTO_DATASET", "").strip() or DEFAULT_DATASET,
            hist_url=(env.get("DATABENTO_HIST_URL", "").strip() or DEFAULT_HIST_URL).rstrip("/"),
            relay_url=env.get("RELAY_URL", "").strip() or DEFAULT_RELAY_URL,
            host=env.get("HOST", "").strip() or "0.0.0.0",
            port=_number(env, "PORT", 7878, int),
            cors_origins=origins or ("http://localhost:3000",),
            log_level=(env.get("LOG_LEVEL", "").strip() or "INFO").upper(),
            feed_reconnect_delay=_number(env, "FEED_RECONNECT_DELAY", 5.0, float),
            relay_reconnect_delay=_number(env, "RELAY_RECONNECT_DELAY", 5.0, float),
            relay_connect_retry_delay=_number(env, "RELAY_CONNECT_RETRY_DELAY", 10.0, float),
            subscribe_settle_delay=_number(env, "SUBSCRIBE_SETTLE_DELAY", 0.5, float),
            subscribe_timeout=_number(env, "SUBSCRIBE_TIMEOUT", 8.0, float),
        )


def _number(env: Mapping[str, str], name: str, default, kind):
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = kind(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {raw!r}")
    return value
