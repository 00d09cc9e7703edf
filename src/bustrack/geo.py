"""Great-circle distance and distance formatting."""

import logging
import math
from typing import Any, Optional

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371e3


def _coerce(value: Any) -> Optional[float]:
    """Parse a coordinate that may arrive as a string; None if unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def distance_meters(lat1: Any, lon1: Any, lat2: Any, lon2: Any) -> float:
    """
    Haversine distance between two points in meters.

    Coordinates may be floats or numeric strings. Returns ``math.inf`` when any
    coordinate is missing or unparseable; never raises.
    """
    coords = [_coerce(lat1), _coerce(lon1), _coerce(lat2), _coerce(lon2)]
    if any(c is None for c in coords):
        logger.debug(f"Invalid coordinates for distance: {(lat1, lon1, lat2, lon2)}")
        return math.inf
    lat1, lon1, lat2, lon2 = coords

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def format_distance(meters: float) -> str:
    """Render a distance as "350m" below one kilometre, else "1.2km"."""
    if meters < 1000:
        return f"{int(math.floor(meters + 0.5))}m"
    return f"{meters / 1000:.1f}km"
