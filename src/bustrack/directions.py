"""Road-following paths between stops, from OSRM with Google Directions as backup."""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import polyline
import requests

from .cache import system_clock_ms
from .concurrency import CancellationToken, gather
from .config import DirectionsSettings
from .models import Coordinate, PathCacheEntry

logger = logging.getLogger(__name__)

PATH_TTL_MS = 60 * 60 * 1000

# Errors that mean "this provider gave us nothing usable"
PROVIDER_ERRORS = (requests.RequestException, ValueError, KeyError, TypeError, IndexError, AttributeError)


def decode_polyline(encoded: str) -> List[Coordinate]:
    return [Coordinate(lat, lon) for lat, lon in polyline.decode(encoded)]


def straight_line(origin: Coordinate, destination: Coordinate) -> List[Coordinate]:
    """Degraded path drawn when no provider could route between two points."""
    return [Coordinate(*origin), Coordinate(*destination)]


def path_cache_key(origin: Coordinate, destination: Coordinate) -> str:
    return f"{origin.lat},{origin.lon}-{destination.lat},{destination.lon}"


class PathResolver:
    """Resolves and caches road-following polylines between coordinate pairs."""

    def __init__(
        self,
        settings: Optional[DirectionsSettings] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], int] = system_clock_ms,
        sleep: Callable[[float], None] = time.sleep,
        ttl_ms: int = PATH_TTL_MS,
    ):
        self.settings = settings or DirectionsSettings()
        self._session = session or requests.Session()
        self._clock = clock
        self._sleep = sleep
        self._ttl_ms = ttl_ms
        self._paths: Dict[str, PathCacheEntry] = {}
        self._lock = threading.Lock()

    def resolve_path(self, origin: Coordinate, destination: Coordinate) -> Optional[List[Coordinate]]:
        """
        Road-following path from ``origin`` to ``destination``.

        Tries OSRM first, then Google Directions when an API key is configured.
        Returns None when both fail; callers then draw ``straight_line``.
        """
        key = path_cache_key(origin, destination)
        with self._lock:
            cached = self._paths.get(key)
        if cached is not None and self._clock() - cached.fetched_at_ms < self._ttl_ms:
            logger.debug(f"Path cache hit for {key}")
            return cached.polyline

        start = time.monotonic()
        path = self._fetch_osrm(origin, destination)
        if path is None:
            path = self._fetch_google(origin, destination)

        if not path:
            logger.warning(f"No directions for {key} after {(time.monotonic() - start) * 1000:.0f}ms")
            return None

        with self._lock:
            self._paths[key] = PathCacheEntry(polyline=path, fetched_at_ms=self._clock())
        return path

    def path_or_straight_line(self, origin: Coordinate, destination: Coordinate) -> List[Coordinate]:
        return self.resolve_path(origin, destination) or straight_line(origin, destination)

    def resolve_route_paths(
        self,
        points: Sequence[Coordinate],
        token: Optional[CancellationToken] = None,
    ) -> List[List[Coordinate]]:
        """
        Paths for every consecutive pair of ``points``, in order.

        Pairs are resolved concurrently in batches of ``batch_size``, with a
        pause between batches sized to stay under ``requests_per_second``.
        Segments that cannot be routed come back as straight lines.
        """
        pairs = list(zip(points, points[1:]))
        batch_size = max(1, int(self.settings.batch_size))
        delay_s = batch_size / self.settings.requests_per_second

        segments: List[List[Coordinate]] = []
        for start in range(0, len(pairs), batch_size):
            if start:
                self._sleep(delay_s)
            batch = pairs[start:start + batch_size]
            segments.extend(
                gather(
                    [lambda o=o, d=d: self.path_or_straight_line(o, d) for o, d in batch],
                    max_workers=batch_size,
                    token=token,
                )
            )
        return segments

    def clear_cache(self) -> None:
        with self._lock:
            self._paths.clear()

    def _fetch_osrm(self, origin: Coordinate, destination: Coordinate) -> Optional[List[Coordinate]]:
        """
        Path from the OSRM demo server.

        ``osrm_timeout_s`` is the budget for the whole call. requests applies
        it to the connect and to each socket read, so a response trickling in
        past the budget is still waited for; it is then discarded and the
        caller falls back to Google.
        """
        url = (
            f"{self.settings.osrm_base}/route/v1/driving/"
            f"{origin.lon},{origin.lat};{destination.lon},{destination.lat}"
        )
        budget_ms = self.settings.osrm_timeout_s * 1000
        started_ms = self._clock()
        try:
            response = self._session.get(
                url,
                params={"overview": "full", "geometries": "polyline"},
                timeout=self.settings.osrm_timeout_s,
            )
            elapsed_ms = self._clock() - started_ms
            if elapsed_ms > budget_ms:
                logger.warning(f"OSRM answered after {elapsed_ms:.0f}ms, over the {budget_ms:.0f}ms budget")
                return None
            if not response.ok:
                logger.warning(f"OSRM returned HTTP {response.status_code}")
                return None
            data = response.json()
            if not isinstance(data, dict):
                logger.warning(f"OSRM returned a {type(data).__name__} body")
                return None
            if data.get("code") != "Ok" or not data.get("routes"):
                logger.warning(f"OSRM found no route: {data.get('code')}")
                return None
            return decode_polyline(data["routes"][0]["geometry"])
        except PROVIDER_ERRORS as e:
            logger.warning(f"OSRM request failed: {type(e).__name__}: {e}")
            return None

    def _fetch_google(self, origin: Coordinate, destination: Coordinate) -> Optional[List[Coordinate]]:
        api_key = self.settings.google_api_key
        if not api_key:
            logger.info("Google API key missing, cannot fall back to Google Directions")
            return None
        try:
            response = self._session.get(
                self.settings.google_url,
                params={
                    "origin": f"{origin.lat},{origin.lon}",
                    "destination": f"{destination.lat},{destination.lon}",
                    "key": api_key,
                    "mode": "driving",
                },
                timeout=self.settings.google_timeout_s,
            )
            response.raise_for_status()
            return self._parse_google_route(response.json())
        except PROVIDER_ERRORS as e:
            logger.warning(f"Google Directions request failed: {type(e).__name__}: {e}")
            return None

    @staticmethod
    def _parse_google_route(data: Dict[str, Any]) -> Optional[List[Coordinate]]:
        """Concatenate the step polylines of the first route, else use its overview."""
        if not isinstance(data, dict):
            logger.warning(f"Google Directions returned a {type(data).__name__} body")
            return None
        routes = data.get("routes") or []
        if not routes:
            logger.warning(f"Google Directions found no route: {data.get('status')}")
            return None
        route = routes[0]

        path: List[Coordinate] = []
        for leg in route.get("legs") or []:
            for step in leg.get("steps") or []:
                points = (step.get("polyline") or {}).get("points")
                if points:
                    path.extend(decode_polyline(points))
        if path:
            return path

        overview = (route.get("overview_polyline") or {}).get("points")
        if overview:
            return decode_polyline(overview)
        return None
