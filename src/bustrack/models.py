"""Data models for BusTrack."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional

from .exceptions import SchemaError

OUTBOUND = "O"
INBOUND = "I"

# Path segment used by the route-stop and route endpoints
BOUND_PATHS = {OUTBOUND: "outbound", INBOUND: "inbound"}


def _require(data: Dict[str, Any], key: str, kind: str) -> Any:
    if not isinstance(data, dict):
        raise SchemaError(f"{kind} record is not an object: {data!r}")
    if key not in data or data[key] is None:
        raise SchemaError(f"Missing '{key}' in {kind} record")
    return data[key]


def _text(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    return "" if value is None else str(value)


def _as_int(value: Any, key: str, kind: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise SchemaError(f"'{key}' in {kind} record is not an integer: {value!r}")


def _as_float(value: Any, key: str, kind: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise SchemaError(f"'{key}' in {kind} record is not a number: {value!r}")


class Coordinate(NamedTuple):
    lat: float
    lon: float


class RouteKey(NamedTuple):
    """Composite identity of a route direction: (route, bound, service_type)."""
    route: str
    bound: str
    service_type: str

    def __str__(self) -> str:
        return f"{self.route}_{self.bound}_{self.service_type}"

    @classmethod
    def parse(cls, value: str) -> "RouteKey":
        """Parse the "1A_O_1" form used in navigation ids."""
        parts = value.split("_")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Invalid route key '{value}'")
        return cls(*parts)


def opposite_bound(bound: str) -> str:
    return INBOUND if bound == OUTBOUND else OUTBOUND


@dataclass(frozen=True)
class StopRecord:
    """A physical bus stop as published upstream."""
    stop_id: str
    name_en: str
    name_tc: str
    name_sc: str
    lat: float
    lon: float

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "StopRecord":
        return cls(
            stop_id=str(_require(data, "stop", "stop")),
            name_en=_text(data, "name_en"),
            name_tc=_text(data, "name_tc"),
            name_sc=_text(data, "name_sc"),
            lat=_as_float(_require(data, "lat", "stop"), "lat", "stop"),
            lon=_as_float(_require(data, "long", "stop"), "long", "stop"),
        )

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.lat, self.lon)


@dataclass(frozen=True)
class RouteRecord:
    """One direction of one service variant of a route."""
    route: str
    bound: str  # "O" or "I"
    service_type: str
    orig_en: str
    orig_tc: str
    orig_sc: str
    dest_en: str
    dest_tc: str
    dest_sc: str

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RouteRecord":
        bound = str(_require(data, "bound", "route")).upper()
        if bound not in BOUND_PATHS:
            raise SchemaError(f"Unknown bound '{bound}' in route record")
        return cls(
            route=str(_require(data, "route", "route")),
            bound=bound,
            service_type=str(_require(data, "service_type", "route")),
            orig_en=_text(data, "orig_en"),
            orig_tc=_text(data, "orig_tc"),
            orig_sc=_text(data, "orig_sc"),
            dest_en=_text(data, "dest_en"),
            dest_tc=_text(data, "dest_tc"),
            dest_sc=_text(data, "dest_sc"),
        )

    @property
    def key(self) -> RouteKey:
        return RouteKey(self.route, self.bound, self.service_type)


@dataclass(frozen=True)
class RouteStopLink:
    """Junction record placing a stop at a sequence position on a route."""
    route: str
    bound: str
    service_type: str
    seq: int  # 1-based position along the route
    stop_id: str

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RouteStopLink":
        return cls(
            route=str(_require(data, "route", "route-stop")),
            bound=str(_require(data, "bound", "route-stop")).upper(),
            service_type=str(_require(data, "service_type", "route-stop")),
            seq=_as_int(_require(data, "seq", "route-stop"), "seq", "route-stop"),
            stop_id=str(_require(data, "stop", "route-stop")),
        )

    @property
    def key(self) -> RouteKey:
        return RouteKey(self.route, self.bound, self.service_type)


@dataclass(frozen=True)
class EtaEntry:
    """A single upcoming-bus estimate for one stop occurrence on a route."""
    route: str
    direction: str
    service_type: str
    seq: int
    eta_seq: int  # 1 = next bus, 2 = the one after, ...
    eta: Optional[str]  # ISO-8601 instant; None when upstream has no estimate
    rmk_en: str = ""
    rmk_tc: str = ""
    rmk_sc: str = ""
    dest_en: str = ""
    dest_tc: str = ""
    dest_sc: str = ""
    data_timestamp: str = ""
    co: str = "KMB"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "EtaEntry":
        eta = data.get("eta") if isinstance(data, dict) else None
        return cls(
            route=str(_require(data, "route", "eta")),
            direction=str(_require(data, "dir", "eta")).upper(),
            service_type=str(_require(data, "service_type", "eta")),
            seq=_as_int(_require(data, "seq", "eta"), "seq", "eta"),
            eta_seq=_as_int(_require(data, "eta_seq", "eta"), "eta_seq", "eta"),
            eta=str(eta) if eta else None,
            rmk_en=_text(data, "rmk_en"),
            rmk_tc=_text(data, "rmk_tc"),
            rmk_sc=_text(data, "rmk_sc"),
            dest_en=_text(data, "dest_en"),
            dest_tc=_text(data, "dest_tc"),
            dest_sc=_text(data, "dest_sc"),
            data_timestamp=_text(data, "data_timestamp"),
            co=_text(data, "co") or "KMB",
        )

    @property
    def route_key(self) -> RouteKey:
        return RouteKey(self.route, self.direction, self.service_type)


@dataclass
class MergedRouteEta:
    """All upcoming buses for one (direction, seq) stop occurrence of a route."""
    route: str
    direction: str
    service_type: str
    seq: int
    dest_en: str
    dest_tc: str
    dest_sc: str
    data_timestamp: str
    route_stop: RouteStopLink
    stop: StopRecord
    eta_entries: List[EtaEntry] = field(default_factory=list)


@dataclass(frozen=True)
class NearbyStop:
    """A stop together with its distance from the user."""
    stop: StopRecord
    distance_m: float


@dataclass
class StopGroup:
    """Stop records sharing a normalized name, shown as one physical stop."""
    name: str
    members: List[NearbyStop]
    representative: StopRecord
    distance_m: float

    @property
    def stop_ids(self) -> List[str]:
        return [member.stop.stop_id for member in self.members]


@dataclass(frozen=True)
class RouteMembership:
    """A route passing through a stop or stop group."""
    route: str
    bound: str
    service_type: str
    orig_en: str
    orig_tc: str
    dest_en: str
    dest_tc: str
    nearest_stop_id: str  # Closest member stop served by this route
    resolved: bool = True  # False when route metadata was missing upstream

    @property
    def key(self) -> RouteKey:
        return RouteKey(self.route, self.bound, self.service_type)


@dataclass(frozen=True)
class NearbyRoute:
    """A route passing near the user, with its nearest nearby stop."""
    route: RouteRecord
    distance_m: float
    nearest_stop_id: str
    nearest_stop_name: str


@dataclass(frozen=True)
class GroupEta:
    """Soonest upcoming bus for one route key across a stop group."""
    route_key: RouteKey
    stop_id: str
    entry: EtaEntry
    minutes: Optional[int]  # None when upstream gave no estimate


@dataclass(frozen=True)
class CacheEntry:
    payload: Any
    fetched_at_ms: int


@dataclass(frozen=True)
class PathCacheEntry:
    polyline: List[Coordinate]
    fetched_at_ms: int


@dataclass(frozen=True)
class MapCommand:
    """Instruction for the map display: center on a coordinate at a zoom."""
    center: Coordinate
    zoom: float
    label: str = ""


@dataclass
class RouteMap:
    """Stops and road-following segments of a route, ready to draw."""
    route_key: RouteKey
    stops: List[StopRecord]
    segments: List[List[Coordinate]]
    focus: Optional[MapCommand]


@dataclass
class NearbyView:
    """Complete nearby-stops screen data, possibly partial on upstream failure."""
    groups: List[StopGroup]
    routes_by_group: Dict[str, List[RouteMembership]]
    errors: List[str]
    last_updated: datetime
