"""BusTrack - Nearby stops, routes and live arrivals for KMB buses."""

__version__ = "0.1.0"

from .models import (
    Coordinate,
    EtaEntry,
    GroupEta,
    MapCommand,
    MergedRouteEta,
    NearbyRoute,
    NearbyStop,
    NearbyView,
    RouteKey,
    RouteMap,
    RouteMembership,
    RouteRecord,
    RouteStopLink,
    StopGroup,
    StopRecord,
)
from .exceptions import (
    BusTrackError,
    FetchError,
    InvalidTimeError,
    NetworkError,
    OperationCancelled,
    RateLimitError,
    ResolutionGapError,
    SchemaError,
)
from .config import Settings, load_settings
from .cache import TTLCache
from .kmb_client import KMBClient
from .directions import PathResolver
from .bus_tracker import BusTracker

__all__ = [
    "BusTracker",
    "KMBClient",
    "PathResolver",
    "TTLCache",
    "Settings",
    "load_settings",
    "Coordinate",
    "EtaEntry",
    "GroupEta",
    "MapCommand",
    "MergedRouteEta",
    "NearbyRoute",
    "NearbyStop",
    "NearbyView",
    "RouteKey",
    "RouteMap",
    "RouteMembership",
    "RouteRecord",
    "RouteStopLink",
    "StopGroup",
    "StopRecord",
    "BusTrackError",
    "FetchError",
    "InvalidTimeError",
    "NetworkError",
    "OperationCancelled",
    "RateLimitError",
    "ResolutionGapError",
    "SchemaError",
]
