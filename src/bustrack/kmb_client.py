"""KMB open-data API fetcher with TTL caching and bounded retry."""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

import requests

from .cache import TTLCache
from .config import Settings
from .exceptions import FetchError, NetworkError, RateLimitError, ResolutionGapError, SchemaError
from .models import BOUND_PATHS, EtaEntry, RouteKey, RouteRecord, RouteStopLink, StopRecord
from .retry import FetchResult, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Bulk resources cached under fixed keys
ALL_ROUTES = "all_routes"
ALL_STOPS = "all_stops"
ALL_ROUTE_STOP_LINKS = "all_route_stop_links"

RESOURCE_PATHS = {
    ALL_ROUTES: "/route/",
    ALL_STOPS: "/stop",
    ALL_ROUTE_STOP_LINKS: "/route-stop",
}

OK_STATUSES = (200, 201)
RATE_LIMIT_STATUSES = (403, 429)


def parse_records(records: Any, parser: Callable[[Dict[str, Any]], T], kind: str) -> List[T]:
    """
    Parse a list of upstream records, skipping the malformed ones.

    A bad record is logged and left out rather than passed on half-built.
    """
    if not isinstance(records, list):
        raise FetchError(f"Expected a list of {kind} records, got {type(records).__name__}")

    parsed: List[T] = []
    skipped = 0
    for record in records:
        try:
            parsed.append(parser(record))
        except SchemaError as e:
            skipped += 1
            logger.debug(f"Skipping malformed {kind} record: {e}")
    if skipped:
        logger.warning(f"Skipped {skipped} malformed {kind} records out of {len(records)}")
    return parsed


class KMBClient:
    """Fetches, validates and caches KMB transit data."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        cache: Optional[TTLCache] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the client.

        Args:
            settings: Base URL, timeouts, TTLs and retry policy. Defaults apply when None.
            cache: Shared cache instance. A private one is created when None.
            session: HTTP session, injectable for tests.
            sleep: Used for retry backoff, injectable for tests.
        """
        self.settings = settings or Settings()
        ttl = self.settings.cache
        self.cache = cache or TTLCache(default_ttl_ms=ttl.default_ttl_ms)
        self._session = session or requests.Session()
        self._sleep = sleep
        self._timeout = self.settings.http_timeout_s
        retry = self.settings.retry
        self.retry_policy = RetryPolicy(
            max_attempts=retry.max_attempts,
            base_delay_s=retry.base_delay_s,
            max_delay_s=retry.max_delay_s,
            jitter_s=retry.jitter_s,
            retry_on=(RateLimitError, NetworkError),
        )
        self._resource_ttls = {
            ALL_ROUTES: ttl.routes_ttl_ms,
            ALL_STOPS: ttl.stops_ttl_ms,
            ALL_ROUTE_STOP_LINKS: ttl.route_stops_ttl_ms,
        }
        self._resource_parsers = {
            ALL_ROUTES: (RouteRecord.from_api, "route"),
            ALL_STOPS: (StopRecord.from_api, "stop"),
            ALL_ROUTE_STOP_LINKS: (RouteStopLink.from_api, "route-stop"),
        }

    # Bulk resources

    def fetch(self, resource_key: str) -> list:
        """
        Fetch one of the bulk resources (``all_routes``, ``all_stops``,
        ``all_route_stop_links``), served from cache while fresh.

        Raises:
            RateLimitError: Upstream kept rate-limiting after every retry.
            FetchError: Any other failed request.
            ValueError: Unknown resource key.
        """
        if resource_key not in RESOURCE_PATHS:
            raise ValueError(f"Unknown resource '{resource_key}'")

        parser, kind = self._resource_parsers[resource_key]
        url = f"{self.settings.api_base}{RESOURCE_PATHS[resource_key]}"
        return self._cached(
            resource_key,
            self._resource_ttls[resource_key],
            lambda: parse_records(self._get_data(url), parser, kind),
        )

    def fetch_all_routes(self) -> List[RouteRecord]:
        return self.fetch(ALL_ROUTES)

    def fetch_all_stops(self) -> List[StopRecord]:
        return self.fetch(ALL_STOPS)

    def fetch_all_route_stop_links(self) -> List[RouteStopLink]:
        return self.fetch(ALL_ROUTE_STOP_LINKS)

    # Keyed lookups

    def fetch_route(self, route: str, bound: str, service_type: str) -> RouteRecord:
        """
        Fetch a single route direction.

        Raises:
            ResolutionGapError: Upstream has no such route.
        """
        key = RouteKey(route, bound, service_type)
        url = f"{self.settings.api_base}/route/{route}/{self._bound_path(bound)}/{service_type}"

        def load() -> RouteRecord:
            data = self._get_data(url)
            if not data:
                raise ResolutionGapError(f"Route {key} not found")
            return RouteRecord.from_api(data)

        return self._cached(f"route:{key}", self.settings.cache.detail_ttl_ms, load)

    def fetch_route_stop_links(self, route: str, bound: str, service_type: str) -> List[RouteStopLink]:
        """Fetch the stops of one route direction, ordered by sequence."""
        key = RouteKey(route, bound, service_type)
        url = f"{self.settings.api_base}/route-stop/{route}/{self._bound_path(bound)}/{service_type}"

        def load() -> List[RouteStopLink]:
            links = parse_records(self._get_data(url), RouteStopLink.from_api, "route-stop")
            return sorted(links, key=lambda link: link.seq)

        return self._cached(f"route-stop:{key}", self.settings.cache.detail_ttl_ms, load)

    def fetch_stop_detail(self, stop_id: str) -> StopRecord:
        """
        Fetch a single stop.

        Raises:
            ResolutionGapError: Upstream has no such stop.
        """
        url = f"{self.settings.api_base}/stop/{stop_id}"

        def load() -> StopRecord:
            data = self._get_data(url)
            if not data:
                raise ResolutionGapError(f"Stop {stop_id} not found")
            return StopRecord.from_api(data)

        return self._cached(f"stop:{stop_id}", self.settings.cache.detail_ttl_ms, load)

    def fetch_route_eta(self, route: str, service_type: str) -> List[EtaEntry]:
        """Fetch the raw ETA feed of a route (both directions)."""
        url = f"{self.settings.api_base}/route-eta/{route}/{service_type}"
        return self._cached(
            f"route-eta:{route}_{service_type}",
            self.settings.cache.eta_ttl_ms,
            lambda: parse_records(self._get_data(url), EtaEntry.from_api, "eta"),
        )

    def fetch_stop_eta(self, stop_id: str) -> List[EtaEntry]:
        """Fetch the raw ETA feed of a physical stop (all routes through it)."""
        url = f"{self.settings.api_base}/stop-eta/{stop_id}"
        return self._cached(
            f"stop-eta:{stop_id}",
            self.settings.cache.eta_ttl_ms,
            lambda: parse_records(self._get_data(url), EtaEntry.from_api, "eta"),
        )

    def try_fetch(self, func: Callable[..., T], *args: Any) -> FetchResult:
        """Call one of the fetch methods, returning failures as a FetchResult."""
        try:
            return FetchResult(value=func(*args))
        except FetchError as e:
            return FetchResult(error=e)

    def clear_cache(self) -> None:
        """Manually clear the cache."""
        self.cache.clear()

    # Internals

    @staticmethod
    def _bound_path(bound: str) -> str:
        try:
            return BOUND_PATHS[bound.upper()]
        except KeyError:
            raise ValueError(f"Bound must be 'O' or 'I', got '{bound}'")

    def _cached(self, key: str, ttl_ms: int, load: Callable[[], T]) -> T:
        def load_with_retry() -> T:
            start = time.monotonic()
            result = call_with_retry(load, self.retry_policy, sleep=self._sleep, description=key)
            logger.debug(f"Loaded {key} in {(time.monotonic() - start) * 1000:.0f}ms")
            return result

        return self.cache.get_or_load(key, load_with_retry, ttl_ms)

    def _get_data(self, url: str) -> Any:
        """
        GET ``url`` and return the ``data`` member of its JSON body.

        Raises:
            NetworkError: The request never produced a response.
            RateLimitError: HTTP 403 or 429.
            FetchError: Any other non-2xx status or an unusable body.
        """
        logger.debug(f"Fetching {url}")
        try:
            response = self._session.get(url, timeout=self._timeout)
        except requests.RequestException as e:
            logger.error(f"Failed to fetch {url}: {e}")
            raise NetworkError(f"Request to {url} failed: {e}", url=url) from e

        status = response.status_code
        if status in RATE_LIMIT_STATUSES:
            raise RateLimitError(f"Rate limited by {url} (HTTP {status})", url=url, status=status)
        if status not in OK_STATUSES:
            raise FetchError(f"HTTP error {status} from {url}", url=url, status=status)

        try:
            body = response.json()
        except ValueError as e:
            raise FetchError(f"Invalid JSON from {url}: {e}", url=url, status=status) from e
        if not isinstance(body, dict) or "data" not in body:
            raise FetchError(f"Response from {url} has no 'data' member", url=url, status=status)
        return body["data"]
