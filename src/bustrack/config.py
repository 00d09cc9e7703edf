"""Settings for BusTrack, loaded from defaults, a JSON file and the environment."""

import json
import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

KMB_API_BASE = "https://data.etabus.gov.hk/v1/transport/kmb"
OSRM_BASE = "https://router.project-osrm.org"
GOOGLE_DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"

MINUTE_MS = 60 * 1000


@dataclass(frozen=True)
class CacheSettings:
    default_ttl_ms: int = 5 * MINUTE_MS
    routes_ttl_ms: int = 5 * MINUTE_MS
    stops_ttl_ms: int = 20 * MINUTE_MS
    route_stops_ttl_ms: int = 20 * MINUTE_MS
    detail_ttl_ms: int = 5 * MINUTE_MS
    eta_ttl_ms: int = 30 * 1000
    path_ttl_ms: int = 60 * MINUTE_MS


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 3
    base_delay_s: float = 2.0
    max_delay_s: float = 30.0
    jitter_s: float = 0.5


@dataclass(frozen=True)
class DirectionsSettings:
    osrm_base: str = OSRM_BASE
    osrm_timeout_s: float = 5.0
    google_url: str = GOOGLE_DIRECTIONS_URL
    google_timeout_s: float = 10.0
    google_api_key: Optional[str] = None
    batch_size: int = 25
    requests_per_second: float = 25.0


@dataclass(frozen=True)
class NearbySettings:
    radius_m: float = 500.0
    max_groups: int = 30
    max_workers: int = 8


@dataclass(frozen=True)
class Settings:
    api_base: str = KMB_API_BASE
    http_timeout_s: float = 10.0
    cache: CacheSettings = field(default_factory=CacheSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    directions: DirectionsSettings = field(default_factory=DirectionsSettings)
    nearby: NearbySettings = field(default_factory=NearbySettings)

    @classmethod
    def from_env(cls, base: Optional["Settings"] = None) -> "Settings":
        """Apply BUSTRACK_API_BASE and GOOGLE_API_KEY on top of ``base``."""
        base = base or cls()
        api_base = os.getenv("BUSTRACK_API_BASE", "").strip() or base.api_base
        api_key = os.getenv("GOOGLE_API_KEY", "").strip() or base.directions.google_api_key
        directions = replace(base.directions, google_api_key=api_key)
        return cls(
            api_base=api_base.rstrip("/"),
            http_timeout_s=base.http_timeout_s,
            cache=base.cache,
            retry=base.retry,
            directions=directions,
            nearby=base.nearby,
        )


def _section(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key, {})
    if not isinstance(value, dict):
        raise ValueError(f"'{key}' must be an object")
    return value


def _build(cls, values: Dict[str, Any], where: str):
    known = cls.__dataclass_fields__
    unknown = sorted(set(values) - set(known))
    if unknown:
        raise ValueError(f"Unknown keys in {where}: {unknown}")
    return cls(**values)


def _positive(value: Any, where: str) -> None:
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"{where} must be > 0")


def load_settings(path: str) -> Settings:
    """
    Load settings from a JSON file. Every section is optional:

        {"api_base": "...", "http_timeout_s": 10,
         "cache": {"stops_ttl_ms": 1200000},
         "retry": {"max_attempts": 3},
         "directions": {"batch_size": 25},
         "nearby": {"radius_m": 500, "max_groups": 30}}

    Environment overrides are applied last.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Settings file not found: {p.resolve()}")

    raw = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("Settings root must be an object")

    cache = _build(CacheSettings, _section(raw, "cache"), "cache")
    retry = _build(RetrySettings, _section(raw, "retry"), "retry")
    directions = _build(DirectionsSettings, _section(raw, "directions"), "directions")
    nearby = _build(NearbySettings, _section(raw, "nearby"), "nearby")

    for name, value in asdict(cache).items():
        _positive(value, f"cache.{name}")
    if not isinstance(retry.max_attempts, int) or retry.max_attempts < 1:
        raise ValueError("retry.max_attempts must be >= 1")
    if retry.base_delay_s < 0 or retry.jitter_s < 0:
        raise ValueError("retry delays must be >= 0")
    _positive(directions.batch_size, "directions.batch_size")
    _positive(directions.requests_per_second, "directions.requests_per_second")
    _positive(directions.osrm_timeout_s, "directions.osrm_timeout_s")
    _positive(nearby.radius_m, "nearby.radius_m")
    _positive(nearby.max_groups, "nearby.max_groups")
    _positive(nearby.max_workers, "nearby.max_workers")

    http_timeout_s = raw.get("http_timeout_s", 10.0)
    _positive(http_timeout_s, "http_timeout_s")

    settings = Settings(
        api_base=str(raw.get("api_base", KMB_API_BASE)).rstrip("/"),
        http_timeout_s=float(http_timeout_s),
        cache=cache,
        retry=retry,
        directions=directions,
        nearby=nearby,
    )
    return Settings.from_env(settings)
