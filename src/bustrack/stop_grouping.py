"""Filtering stops around a point and grouping colocated stop records."""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from .geo import distance_meters
from .models import NearbyStop, StopGroup, StopRecord

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_M = 500.0
DEFAULT_MAX_GROUPS = 30


def normalize_name_key(stop: StopRecord) -> Tuple[str, str]:
    """Grouping key: trimmed, case-insensitive (English, Chinese) names."""
    return (stop.name_en.strip().casefold(), stop.name_tc.strip().casefold())


def _within_radius(
    stops: Iterable[StopRecord], user_lat: float, user_lon: float, radius_m: float
) -> List[NearbyStop]:
    nearby = []
    for stop in stops:
        distance = distance_meters(user_lat, user_lon, stop.lat, stop.lon)
        if distance <= radius_m:
            nearby.append(NearbyStop(stop=stop, distance_m=distance))
    return nearby


def nearest_stops(
    stops: Iterable[StopRecord],
    user_lat: float,
    user_lon: float,
    radius_m: float = DEFAULT_RADIUS_M,
    limit: int = DEFAULT_MAX_GROUPS,
) -> List[NearbyStop]:
    """Stops within ``radius_m`` of the user, nearest first, at most ``limit``."""
    nearby = _within_radius(stops, user_lat, user_lon, radius_m)
    nearby.sort(key=lambda n: n.distance_m)
    return nearby[:limit]


def _split_by_spread(members: List[NearbyStop], max_spread_m: float) -> List[List[NearbyStop]]:
    """Split a name bucket into clusters whose members lie near the cluster's first member."""
    clusters: List[List[NearbyStop]] = []
    for member in members:
        for cluster in clusters:
            anchor = cluster[0].stop
            if distance_meters(anchor.lat, anchor.lon, member.stop.lat, member.stop.lon) <= max_spread_m:
                cluster.append(member)
                break
        else:
            clusters.append([member])
    return clusters


def group_stops(
    stops: Iterable[StopRecord],
    user_lat: float,
    user_lon: float,
    radius_m: float = DEFAULT_RADIUS_M,
    max_groups: int = DEFAULT_MAX_GROUPS,
    max_member_spread_m: Optional[float] = None,
) -> List[StopGroup]:
    """
    Group the stops around the user into one entry per physical stop.

    Stops within ``radius_m`` are bucketed by their normalized names. Each
    bucket becomes a group whose representative is its nearest member, and the
    groups are returned nearest first, at most ``max_groups`` of them. Ties keep
    the input order.

    Name equality is only a proxy for "same place". Passing
    ``max_member_spread_m`` additionally splits a bucket so that every member
    lies within that distance of its group's nearest member.
    """
    nearby = _within_radius(stops, user_lat, user_lon, radius_m)

    buckets: Dict[Tuple[str, str], List[NearbyStop]] = {}
    for item in nearby:
        buckets.setdefault(normalize_name_key(item.stop), []).append(item)

    groups: List[StopGroup] = []
    for members in buckets.values():
        members.sort(key=lambda n: n.distance_m)
        clusters = [members] if max_member_spread_m is None else _split_by_spread(members, max_member_spread_m)
        for cluster in clusters:
            representative = cluster[0]
            groups.append(
                StopGroup(
                    name=representative.stop.name_en.strip(),
                    members=cluster,
                    representative=representative.stop,
                    distance_m=representative.distance_m,
                )
            )

    groups.sort(key=lambda g: g.distance_m)
    logger.debug(f"Grouped {len(nearby)} nearby stops into {len(groups)} groups")
    return groups[:max_groups]
