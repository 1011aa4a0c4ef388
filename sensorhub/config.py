from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from .delivery import RETRY_INITIAL_S, RETRY_MAX_S
from .errors import ConfigurationError
from .observability import parse_log_level
from .scheduler import MAX_INTERVAL_S, MIN_INTERVAL_S, TICK_INTERVAL_S, TIME_TO_STALE_S, PublishIntervals
from .store import SqlitePragmas, SqliteSampleStore

logger = logging.getLogger("sensorhub.config")


_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})

_N = TypeVar("_N", int, float)


def _env_positive(name: str, cast: Callable[[str], _N], *, default: Optional[_N]) -> Optional[_N]:
    """Read a positive finite number; unset or blank gives default, junk warns."""

    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        value = None
    if value is None or not math.isfinite(value) or value <= 0:
        logger.warning("invalid %s=%r; using %s", name, raw, "unbounded" if default is None else default)
        return default
    return value


def _env_int(name: str, *, default: int) -> int:
    value = _env_positive(name, int, default=default)
    return default if value is None else value


def _env_float(name: str, *, default: float) -> float:
    value = _env_positive(name, float, default=default)
    return default if value is None else value


def _env_bool(name: str, *, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    if raw:
        logger.warning("invalid %s=%r; using %s", name, raw, default)
    return default


@dataclass(frozen=True)
class StoreConfig:
    path: str = "./sensorhub_samples.sqlite"
    max_samples_per_channel: int = 100
    max_age_s: int | None = None
    max_db_bytes: int | None = None
    journal_mode: str = "WAL"
    synchronous: str = "NORMAL"
    temp_store: str = "MEMORY"
    eviction_batch_size: int = 100
    recover_corruption: bool = True


@dataclass(frozen=True)
class AgentConfig:
    api_url: str = "http://localhost:8082"
    device_id: str = "demo-sensorhub-001"
    token: str = "dev-device-token-001"

    tick_interval_s: float = TICK_INTERVAL_S
    intervals: PublishIntervals = field(default_factory=PublishIntervals)
    retry_initial_s: float = RETRY_INITIAL_S
    retry_max_s: float = RETRY_MAX_S

    http_timeout_s: float = 5.0
    probe_interval_s: float = 30.0
    failures_before_stop: int = 3

    store: StoreConfig = field(default_factory=StoreConfig)

    log_level: int = logging.INFO
    log_format: str = "text"

    def validate(self) -> "AgentConfig":
        if not self.api_url.strip():
            raise ConfigurationError("SENSORHUB_API_URL must not be empty")
        if not self.device_id.strip():
            raise ConfigurationError("SENSORHUB_DEVICE_ID must not be empty")
        self.intervals.validate()
        if self.retry_initial_s > self.retry_max_s:
            raise ConfigurationError(
                f"RETRY_INITIAL_S ({self.retry_initial_s}) must not exceed RETRY_MAX_S ({self.retry_max_s})"
            )
        if self.log_format not in {"text", "json"}:
            raise ConfigurationError(f"LOG_FORMAT must be 'text' or 'json' (got {self.log_format!r})")
        return self


def load_config_from_env() -> AgentConfig:
    intervals = PublishIntervals(
        min_interval_s=_env_float("MIN_PUBLISH_INTERVAL_S", default=MIN_INTERVAL_S),
        max_interval_s=_env_float("MAX_PUBLISH_INTERVAL_S", default=MAX_INTERVAL_S),
        time_to_stale_s=_env_float("TIME_TO_STALE_S", default=TIME_TO_STALE_S),
    )
    store = StoreConfig(
        path=os.getenv("STORE_DB_PATH", "./sensorhub_samples.sqlite"),
        max_samples_per_channel=_env_int("STORE_MAX_SAMPLES_PER_CHANNEL", default=100),
        max_age_s=_env_positive("STORE_MAX_AGE_S", int, default=None),
        max_db_bytes=_env_positive("STORE_MAX_DB_BYTES", int, default=None),
        journal_mode=os.getenv("STORE_SQLITE_JOURNAL_MODE", "WAL"),
        synchronous=os.getenv("STORE_SQLITE_SYNCHRONOUS", "NORMAL"),
        temp_store=os.getenv("STORE_SQLITE_TEMP_STORE", "MEMORY"),
        eviction_batch_size=_env_int("STORE_EVICTION_BATCH_SIZE", default=100),
        recover_corruption=_env_bool("STORE_RECOVER_CORRUPTION", default=True),
    )
    config = AgentConfig(
        api_url=os.getenv("SENSORHUB_API_URL", "http://localhost:8082"),
        device_id=os.getenv("SENSORHUB_DEVICE_ID", "demo-sensorhub-001"),
        token=os.getenv("SENSORHUB_DEVICE_TOKEN", "dev-device-token-001"),
        tick_interval_s=_env_float("TICK_INTERVAL_S", default=TICK_INTERVAL_S),
        intervals=intervals,
        retry_initial_s=_env_float("RETRY_INITIAL_S", default=RETRY_INITIAL_S),
        retry_max_s=_env_float("RETRY_MAX_S", default=RETRY_MAX_S),
        http_timeout_s=_env_float("HTTP_TIMEOUT_S", default=5.0),
        probe_interval_s=_env_float("SESSION_PROBE_INTERVAL_S", default=30.0),
        failures_before_stop=_env_int("SESSION_FAILURES_BEFORE_STOP", default=3),
        store=store,
        log_level=parse_log_level(os.getenv("LOG_LEVEL")),
        log_format=(os.getenv("LOG_FORMAT") or "text").strip().lower(),
    )
    return config.validate()


def build_store(config: StoreConfig) -> SqliteSampleStore:
    return SqliteSampleStore(
        config.path,
        max_samples_per_channel=config.max_samples_per_channel,
        max_db_bytes=config.max_db_bytes,
        pragmas=SqlitePragmas.coerce(
            journal_mode=config.journal_mode,
            synchronous=config.synchronous,
            temp_store=config.temp_store,
        ),
        eviction_batch_size=config.eviction_batch_size,
        recover_corruption=config.recover_corruption,
    )
