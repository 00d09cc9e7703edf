"""Cross-referencing stops, routes and route-stop links."""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .models import (
    NearbyRoute,
    NearbyStop,
    RouteKey,
    RouteMembership,
    RouteRecord,
    RouteStopLink,
    StopGroup,
)

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"


def route_sort_key(route: str) -> Tuple[int, int, str]:
    """
    Sort key for route numbers.

    Purely numeric route numbers come first in numeric order ("2" < "10");
    every other route number follows in plain string order ("10A" < "1A" <
    "N21"). Equal numbers fall back to the string itself so the key is total.
    """
    text = route.strip()
    if text.isdigit():
        return (0, int(text), text)
    return (1, 0, text)


def index_routes(routes: Iterable[RouteRecord]) -> Dict[RouteKey, RouteRecord]:
    index: Dict[RouteKey, RouteRecord] = {}
    for route in routes:
        index.setdefault(route.key, route)
    return index


def index_links_by_stop(links: Iterable[RouteStopLink]) -> Dict[str, List[RouteStopLink]]:
    index: Dict[str, List[RouteStopLink]] = {}
    for link in links:
        index.setdefault(link.stop_id, []).append(link)
    return index


def _membership(key: RouteKey, record: Optional[RouteRecord], nearest_stop_id: str) -> RouteMembership:
    if record is None:
        return RouteMembership(
            route=key.route,
            bound=key.bound,
            service_type=key.service_type,
            orig_en=UNKNOWN,
            orig_tc=UNKNOWN,
            dest_en=UNKNOWN,
            dest_tc=UNKNOWN,
            nearest_stop_id=nearest_stop_id,
            resolved=False,
        )
    return RouteMembership(
        route=record.route,
        bound=record.bound,
        service_type=record.service_type,
        orig_en=record.orig_en,
        orig_tc=record.orig_tc,
        dest_en=record.dest_en,
        dest_tc=record.dest_tc,
        nearest_stop_id=nearest_stop_id,
    )


def _sorted(memberships: List[RouteMembership]) -> List[RouteMembership]:
    return sorted(memberships, key=lambda m: (route_sort_key(m.route), m.bound, m.service_type))


def _resolve(
    members: Sequence[NearbyStop],
    links_by_stop: Dict[str, List[RouteStopLink]],
    routes_by_key: Dict[RouteKey, RouteRecord],
) -> List[RouteMembership]:
    nearest: Dict[RouteKey, NearbyStop] = {}
    for member in members:
        for link in links_by_stop.get(member.stop.stop_id, []):
            current = nearest.get(link.key)
            if current is None or member.distance_m < current.distance_m:
                nearest[link.key] = member

    memberships = []
    unresolved = 0
    for key, member in nearest.items():
        record = routes_by_key.get(key)
        if record is None:
            unresolved += 1
        memberships.append(_membership(key, record, member.stop.stop_id))
    if unresolved:
        logger.debug(f"{unresolved} routes had no matching route record")
    return _sorted(memberships)


def resolve_routes_for_group(
    group: StopGroup,
    all_links: Iterable[RouteStopLink],
    all_routes: Iterable[RouteRecord],
) -> List[RouteMembership]:
    """
    Routes passing through any stop of ``group``.

    Each route key appears once, with the member stop nearest to the user that
    the route serves. Routes missing from ``all_routes`` are kept with
    "Unknown" origin and destination.
    """
    return _resolve(group.members, index_links_by_stop(all_links), index_routes(all_routes))


def resolve_routes_for_groups(
    groups: Sequence[StopGroup],
    all_links: Iterable[RouteStopLink],
    all_routes: Iterable[RouteRecord],
) -> Dict[str, List[RouteMembership]]:
    """Routes for every group, keyed by the representative's stop id."""
    links_by_stop = index_links_by_stop(all_links)
    routes_by_key = index_routes(all_routes)
    return {
        group.representative.stop_id: _resolve(group.members, links_by_stop, routes_by_key)
        for group in groups
    }


def resolve_routes_for_stops(
    nearby: Sequence[NearbyStop],
    all_links: Iterable[RouteStopLink],
    all_routes: Iterable[RouteRecord],
) -> Dict[str, List[RouteMembership]]:
    """Routes passing through each individual stop, keyed by stop id."""
    links_by_stop = index_links_by_stop(all_links)
    routes_by_key = index_routes(all_routes)
    return {item.stop.stop_id: _resolve([item], links_by_stop, routes_by_key) for item in nearby}


def nearby_routes(
    nearby: Sequence[NearbyStop],
    all_links: Iterable[RouteStopLink],
    all_routes: Iterable[RouteRecord],
) -> List[NearbyRoute]:
    """
    One entry per route passing a nearby stop, nearest first.

    Routes without a route record are left out, since the entry displays the
    route's origin and destination.
    """
    by_stop_id = {item.stop.stop_id: item for item in nearby}
    routes_by_key = index_routes(all_routes)

    nearest: Dict[RouteKey, NearbyStop] = {}
    for link in all_links:
        item = by_stop_id.get(link.stop_id)
        if item is None:
            continue
        current = nearest.get(link.key)
        if current is None or item.distance_m < current.distance_m:
            nearest[link.key] = item

    result: List[NearbyRoute] = []
    skipped: Set[RouteKey] = set()
    for key, item in nearest.items():
        record = routes_by_key.get(key)
        if record is None:
            skipped.add(key)
            continue
        result.append(
            NearbyRoute(
                route=record,
                distance_m=item.distance_m,
                nearest_stop_id=item.stop.stop_id,
                nearest_stop_name=item.stop.name_en or UNKNOWN,
            )
        )
    if skipped:
        logger.debug(f"Left out {len(skipped)} nearby routes without route records")

    result.sort(key=lambda r: r.distance_m)
    return result
