"""Main BusTrack class."""

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

from .concurrency import CancellationToken, gather
from .config import Settings
from .directions import PathResolver
from .eta import aggregate_group_eta, merge_route_eta
from .exceptions import FetchError, RateLimitError, ResolutionGapError, SchemaError
from .kmb_client import KMBClient
from .models import (
    GroupEta,
    MapCommand,
    MergedRouteEta,
    NearbyRoute,
    NearbyView,
    RouteKey,
    RouteMap,
    RouteRecord,
    StopGroup,
    StopRecord,
)
from .route_membership import nearby_routes, resolve_routes_for_groups
from .stop_grouping import group_stops, nearest_stops

logger = logging.getLogger(__name__)

STOP_FOCUS_ZOOM = 16

LOAD_FAILED = "An error occurred while loading data. Please try again later."
ROUTES_RATE_LIMITED = "Couldn't load route information due to API rate limits. You can still view the stops."
ROUTES_FAILED = "Couldn't fetch route information. Stops are still available."


class BusTracker:
    """
    Tracks nearby stops, routes and live arrivals for KMB buses.

    This class provides methods to:
    - Find stop groups and the routes serving them around a location
    - Find routes passing near a location
    - Get per-stop arrival estimates along a route
    - Get the soonest arrival per route at a stop group
    - Build the stops and road-following path of a route for a map

    Loads can be superseded: ``begin_load`` cancels the token handed out by
    the previous call, and the superseded load raises ``OperationCancelled``
    at its next stage boundary.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[KMBClient] = None,
        path_resolver: Optional[PathResolver] = None,
    ):
        """
        Initialize the tracker.

        Args:
            settings: Configuration. Defaults plus environment overrides when None.
            client: KMB API client. Built from ``settings`` when None.
            path_resolver: Directions resolver. Built from ``settings`` when None.
        """
        self.settings = settings or Settings.from_env()
        self.client = client or KMBClient(self.settings)
        self.path_resolver = path_resolver or PathResolver(
            self.settings.directions, ttl_ms=self.settings.cache.path_ttl_ms
        )
        self._current_load: Optional[CancellationToken] = None
        self._load_lock = threading.Lock()

    def begin_load(self) -> CancellationToken:
        """Cancel the load in progress, if any, and return a token for a new one."""
        token = CancellationToken()
        with self._load_lock:
            if self._current_load is not None:
                self._current_load.cancel()
            self._current_load = token
        return token

    @property
    def _workers(self) -> int:
        return self.settings.nearby.max_workers

    def load_nearby(self, lat: float, lon: float, token: Optional[CancellationToken] = None) -> NearbyView:
        """
        Get the stop groups around a location and the routes serving each.

        Upstream failures never blank the result: when route data cannot be
        loaded the groups are returned without routes, and when the route
        table alone is missing routes are shown with "Unknown" destinations.
        Messages describing what failed are collected in ``errors``.

        Args:
            lat: User latitude.
            lon: User longitude.
            token: Cancellation token. A new load is started when None.

        Returns:
            NearbyView with groups nearest first and routes keyed by the
            representative stop id of each group.
        """
        token = token or self.begin_load()
        nearby = self.settings.nearby
        errors: List[str] = []

        stops_result, links_result = gather(
            [
                lambda: self.client.try_fetch(self.client.fetch_all_stops),
                lambda: self.client.try_fetch(self.client.fetch_all_route_stop_links),
            ],
            token=token,
        )

        if not stops_result.ok:
            logger.error(f"Error loading nearby stops: {stops_result.error}")
            errors.append(LOAD_FAILED)
            return NearbyView(groups=[], routes_by_group={}, errors=errors, last_updated=datetime.now())

        groups = group_stops(stops_result.value, lat, lon, nearby.radius_m, nearby.max_groups)
        logger.info(f"Found {len(groups)} stop groups within {nearby.radius_m:.0f}m")
        if not groups:
            return NearbyView(groups=[], routes_by_group={}, errors=errors, last_updated=datetime.now())

        if not links_result.ok:
            errors.append(self._route_error_message(links_result.error))
            return NearbyView(groups=groups, routes_by_group={}, errors=errors, last_updated=datetime.now())

        token.raise_if_cancelled()
        routes_result = self.client.try_fetch(self.client.fetch_all_routes)
        routes: List[RouteRecord] = []
        if routes_result.ok:
            routes = routes_result.value
        else:
            errors.append(self._route_error_message(routes_result.error))

        token.raise_if_cancelled()
        routes_by_group = resolve_routes_for_groups(groups, links_result.value, routes)
        return NearbyView(
            groups=groups,
            routes_by_group=routes_by_group,
            errors=errors,
            last_updated=datetime.now(),
        )

    def get_nearby_routes(self, lat: float, lon: float, token: Optional[CancellationToken] = None) -> List[NearbyRoute]:
        """
        Get the routes passing through stops near a location, nearest first.

        Raises:
            FetchError: Stops, route-stop links or routes could not be loaded.
        """
        token = token or self.begin_load()
        nearby = self.settings.nearby

        stops, links = gather(
            [self.client.fetch_all_stops, self.client.fetch_all_route_stop_links],
            token=token,
        )
        close = nearest_stops(stops, lat, lon, nearby.radius_m, nearby.max_groups)
        if not close:
            return []

        token.raise_if_cancelled()
        routes = self.client.fetch_all_routes()
        return nearby_routes(close, links, routes)

    def get_route(self, route: str, bound: str, service_type: str) -> RouteRecord:
        return self.client.fetch_route(route, bound, service_type)

    def search_routes(self, query: str) -> List[RouteRecord]:
        """Routes whose number contains ``query``, ignoring case."""
        needle = query.strip().upper()
        if not needle:
            return []
        return [r for r in self.client.fetch_all_routes() if needle in r.route.upper()]

    def get_route_stops(
        self, route: str, bound: str, service_type: str, token: Optional[CancellationToken] = None
    ) -> List[StopRecord]:
        """
        Get the stops of a route direction in sequence order.

        Stops whose details cannot be fetched are left out.
        """
        links = self.client.fetch_route_stop_links(route, bound, service_type)
        details = self._fetch_stop_details([link.stop_id for link in links], token)
        return [details[link.stop_id] for link in links if link.stop_id in details]

    def get_route_eta(
        self, route: str, bound: str, service_type: str, token: Optional[CancellationToken] = None
    ) -> List[MergedRouteEta]:
        """
        Get arrival estimates for every stop of a route direction.

        Args:
            route: Route number (e.g., "1A").
            bound: "O" (outbound) or "I" (inbound).
            service_type: Service variant (e.g., "1").

        Returns:
            One MergedRouteEta per (direction, seq) with upcoming buses,
            ordered by direction then sequence. Only service type "2" is
            narrowed to ``bound``.
        """
        token = token or self.begin_load()
        eta_entries, links = gather(
            [
                lambda: self.client.fetch_route_eta(route, service_type),
                lambda: self.client.fetch_route_stop_links(route, bound, service_type),
            ],
            token=token,
        )
        details = self._fetch_stop_details([link.stop_id for link in links], token)
        token.raise_if_cancelled()
        merged = merge_route_eta(eta_entries, links, details, bound=bound, service_type=service_type)
        logger.debug(f"Merged {len(eta_entries)} ETA entries into {len(merged)} stops for {route} {bound}")
        return merged

    def get_group_eta(self, group: StopGroup, token: Optional[CancellationToken] = None) -> List[GroupEta]:
        """
        Get the soonest upcoming bus per route across every stop of a group.

        Stops whose ETA feed fails are skipped.

        Raises:
            FetchError: The ETA feed failed for every stop of the group.
        """
        token = token or self.begin_load()
        stop_ids = group.stop_ids
        results = gather(
            [lambda stop_id=stop_id: self.client.fetch_stop_eta(stop_id) for stop_id in stop_ids],
            max_workers=self._workers,
            token=token,
            return_exceptions=True,
        )

        etas_by_stop = {}
        failures: List[FetchError] = []
        for stop_id, result in zip(stop_ids, results):
            if isinstance(result, FetchError):
                logger.warning(f"Failed to fetch ETA for stop {stop_id}: {result}")
                failures.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                etas_by_stop[stop_id] = result

        if failures and not etas_by_stop:
            raise failures[0]
        return aggregate_group_eta(etas_by_stop)

    def get_route_map(
        self,
        route: str,
        bound: str,
        service_type: str,
        focus_stop_id: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> RouteMap:
        """
        Get everything the map needs to draw a route direction.

        Segments between consecutive stops follow the road where a directions
        provider answers and fall back to straight lines otherwise. The focus
        command centers on ``focus_stop_id`` when it is on the route, else on
        the first stop.
        """
        token = token or self.begin_load()
        stops = self.get_route_stops(route, bound, service_type, token)
        token.raise_if_cancelled()
        segments = self.path_resolver.resolve_route_paths([s.coordinate for s in stops], token)

        focus_stop = next((s for s in stops if s.stop_id == focus_stop_id), stops[0] if stops else None)
        return RouteMap(
            route_key=RouteKey(route, bound, service_type),
            stops=stops,
            segments=segments,
            focus=self.focus_command(focus_stop) if focus_stop else None,
        )

    @staticmethod
    def focus_command(stop: StopRecord, zoom: float = STOP_FOCUS_ZOOM) -> MapCommand:
        """Map command centering on a stop."""
        return MapCommand(center=stop.coordinate, zoom=zoom, label=stop.name_en)

    def cleanup(self) -> None:
        """Cancel any load in progress and clear caches."""
        with self._load_lock:
            if self._current_load is not None:
                self._current_load.cancel()
                self._current_load = None
        self.client.clear_cache()
        self.path_resolver.clear_cache()
        logger.info("Cleaned up tracker resources")

    def _fetch_stop_details(
        self, stop_ids: List[str], token: Optional[CancellationToken]
    ) -> Dict[str, StopRecord]:
        unique_ids = list(dict.fromkeys(stop_ids))
        results = gather(
            [lambda stop_id=stop_id: self.client.fetch_stop_detail(stop_id) for stop_id in unique_ids],
            max_workers=self._workers,
            token=token,
            return_exceptions=True,
        )
        details: Dict[str, StopRecord] = {}
        for stop_id, result in zip(unique_ids, results):
            if isinstance(result, (FetchError, ResolutionGapError, SchemaError)):
                logger.warning(f"Error fetching stop info for {stop_id}: {result}")
            elif isinstance(result, BaseException):
                raise result
            else:
                details[stop_id] = result
        return details

    @staticmethod
    def _route_error_message(error: Optional[FetchError]) -> str:
        logger.warning(f"Error loading route information: {error}")
        if isinstance(error, RateLimitError):
            return ROUTES_RATE_LIMITED
        return ROUTES_FAILED
