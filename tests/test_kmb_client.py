"""Tests for KMBClient, TTLCache and the retry helpers."""

import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock
import sys
from pathlib import Path

import requests

# Add src to path so we can import bustrack
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from bustrack.cache import TTLCache
from bustrack.config import RetrySettings, Settings
from bustrack.exceptions import FetchError, NetworkError, RateLimitError, ResolutionGapError
from bustrack.kmb_client import ALL_ROUTES, ALL_STOPS, KMBClient
from bustrack.retry import RetryPolicy, call_with_retry

STOP = {
    "stop": "18492910339410B1",
    "name_en": "CHUK YUEN ESTATE BUS TERMINUS",
    "name_tc": "竹園邨總站",
    "name_sc": "竹园邨总站",
    "lat": "22.345415",
    "long": "114.192640",
}

ROUTE = {
    "route": "1A",
    "bound": "O",
    "service_type": "1",
    "orig_en": "STAR FERRY",
    "orig_tc": "尖沙咀碼頭",
    "orig_sc": "尖沙咀码头",
    "dest_en": "SAU MAU PING (CENTRAL)",
    "dest_tc": "秀茂坪(中)",
    "dest_sc": "秀茂坪(中)",
}


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, now_ms: int = 1_000_000):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


def make_response(status=200, data=None, body=None):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = body if body is not None else {"data": data}
    return response


def make_client(session, clock=None, max_attempts=3, sleep=None):
    settings = Settings(retry=RetrySettings(max_attempts=max_attempts))
    cache = TTLCache(clock=clock or FakeClock())
    return KMBClient(settings=settings, cache=cache, session=session, sleep=sleep or MagicMock())


class TestKMBClientCaching(unittest.TestCase):
    """Test TTL caching of bulk resources."""

    def setUp(self):
        self.clock = FakeClock()
        self.session = MagicMock()
        self.session.get.return_value = make_response(data=[STOP])
        self.client = make_client(self.session, self.clock)

    def test_fetch_twice_within_ttl_issues_one_request(self):
        """Test that a fresh cache entry is served without a network call."""
        first = self.client.fetch(ALL_STOPS)
        second = self.client.fetch(ALL_STOPS)

        self.assertEqual(self.session.get.call_count, 1)
        self.assertEqual(first, second)
        self.assertEqual(first[0].stop_id, "18492910339410B1")
        self.assertAlmostEqual(first[0].lat, 22.345415)

    def test_fetch_after_ttl_refetches_and_updates_timestamp(self):
        """Test that an expired entry triggers a new request and is overwritten."""
        self.client.fetch(ALL_STOPS)
        fetched_at = self.client.cache.get_entry(ALL_STOPS).fetched_at_ms

        self.clock.advance(20 * 60 * 1000)
        self.client.fetch(ALL_STOPS)

        self.assertEqual(self.session.get.call_count, 2)
        entry = self.client.cache.get_entry(ALL_STOPS)
        self.assertEqual(entry.fetched_at_ms, self.clock.now_ms)
        self.assertGreater(entry.fetched_at_ms, fetched_at)

    def test_routes_use_shorter_ttl(self):
        """Test that the route table expires after five minutes."""
        self.session.get.return_value = make_response(data=[ROUTE])
        self.client.fetch(ALL_ROUTES)
        self.clock.advance(4 * 60 * 1000)
        self.client.fetch(ALL_ROUTES)
        self.assertEqual(self.session.get.call_count, 1)

        self.clock.advance(60 * 1000)
        self.client.fetch(ALL_ROUTES)
        self.assertEqual(self.session.get.call_count, 2)

    def test_failed_refresh_keeps_old_entry(self):
        """Test that a failed request does not touch the cache."""
        self.client.fetch(ALL_STOPS)
        fetched_at = self.client.cache.get_entry(ALL_STOPS).fetched_at_ms

        self.clock.advance(21 * 60 * 1000)
        self.session.get.return_value = make_response(status=500)
        with self.assertRaises(FetchError):
            self.client.fetch(ALL_STOPS)

        self.assertEqual(self.client.cache.get_entry(ALL_STOPS).fetched_at_ms, fetched_at)

    def test_unknown_resource(self):
        """Test that an unknown resource key is rejected."""
        with self.assertRaises(ValueError):
            self.client.fetch("all_trains")


class TestKMBClientErrors(unittest.TestCase):
    """Test status mapping and bounded retry."""

    def test_rate_limit_fails_after_max_attempts(self):
        """Test that a permanent rate limit stops after exactly N attempts."""
        session = MagicMock()
        session.get.return_value = make_response(status=429)
        sleep = MagicMock()
        client = make_client(session, max_attempts=4, sleep=sleep)

        with self.assertRaises(RateLimitError) as ctx:
            client.fetch(ALL_ROUTES)

        self.assertEqual(session.get.call_count, 4)
        self.assertEqual(sleep.call_count, 3)
        self.assertEqual(ctx.exception.attempts, 4)
        self.assertEqual(ctx.exception.status, 429)
        self.assertIsNone(client.cache.get_entry(ALL_ROUTES))

    def test_forbidden_is_rate_limit(self):
        """Test that HTTP 403 is treated as rate limiting."""
        session = MagicMock()
        session.get.return_value = make_response(status=403)
        client = make_client(session, max_attempts=1)

        with self.assertRaises(RateLimitError):
            client.fetch(ALL_ROUTES)

    def test_rate_limit_then_success(self):
        """Test that a transient rate limit is retried."""
        session = MagicMock()
        session.get.side_effect = [make_response(status=429), make_response(data=[ROUTE])]
        client = make_client(session)

        routes = client.fetch(ALL_ROUTES)

        self.assertEqual(session.get.call_count, 2)
        self.assertEqual(routes[0].dest_en, "SAU MAU PING (CENTRAL)")

    def test_server_error_not_retried(self):
        """Test that other HTTP errors fail immediately with FetchError."""
        session = MagicMock()
        session.get.return_value = make_response(status=500)
        client = make_client(session)

        with self.assertRaises(FetchError) as ctx:
            client.fetch(ALL_ROUTES)

        self.assertNotIsInstance(ctx.exception, RateLimitError)
        self.assertEqual(ctx.exception.status, 500)
        self.assertEqual(session.get.call_count, 1)

    def test_network_error(self):
        """Test that transport failures become NetworkError."""
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("connection reset")
        client = make_client(session, max_attempts=2)

        with self.assertRaises(NetworkError):
            client.fetch(ALL_STOPS)
        self.assertEqual(session.get.call_count, 2)

    def test_missing_data_member(self):
        """Test that a body without 'data' is rejected."""
        session = MagicMock()
        session.get.return_value = make_response(body={"type": "StopList"})
        client = make_client(session)

        with self.assertRaises(FetchError):
            client.fetch(ALL_STOPS)

    def test_try_fetch_wraps_errors(self):
        """Test that try_fetch returns failures instead of raising."""
        session = MagicMock()
        session.get.return_value = make_response(status=429)
        client = make_client(session, max_attempts=1)

        result = client.try_fetch(client.fetch_all_routes)

        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, RateLimitError)
        with self.assertRaises(RateLimitError):
            result.unwrap()


class TestKMBClientParsing(unittest.TestCase):
    """Test record validation and keyed lookups."""

    def test_malformed_records_are_skipped(self):
        """Test that bad records are left out of bulk results."""
        session = MagicMock()
        session.get.return_value = make_response(
            data=[STOP, {"stop": "BROKEN"}, dict(STOP, stop="X1", lat="not-a-number")]
        )
        client = make_client(session)

        stops = client.fetch_all_stops()

        self.assertEqual([s.stop_id for s in stops], ["18492910339410B1"])

    def test_route_stop_links_sorted_by_sequence(self):
        """Test that a route's stop list is ordered by seq."""
        session = MagicMock()
        session.get.return_value = make_response(
            data=[
                {"route": "1A", "bound": "O", "service_type": "1", "seq": "2", "stop": "B"},
                {"route": "1A", "bound": "O", "service_type": "1", "seq": "1", "stop": "A"},
                {"route": "1A", "bound": "O", "service_type": "1", "seq": "10", "stop": "C"},
            ]
        )
        client = make_client(session)

        links = client.fetch_route_stop_links("1A", "O", "1")

        self.assertEqual([link.stop_id for link in links], ["A", "B", "C"])
        url = session.get.call_args[0][0]
        self.assertTrue(url.endswith("/route-stop/1A/outbound/1"))

    def test_invalid_bound(self):
        """Test that only O and I are accepted as bounds."""
        client = make_client(MagicMock())
        with self.assertRaises(ValueError):
            client.fetch_route_stop_links("1A", "X", "1")

    def test_stop_detail_cached_per_id(self):
        """Test that stop details are cached by id."""
        session = MagicMock()
        session.get.return_value = make_response(data=STOP)
        client = make_client(session)

        client.fetch_stop_detail("18492910339410B1")
        stop = client.fetch_stop_detail("18492910339410B1")

        self.assertEqual(stop.name_tc, "竹園邨總站")
        self.assertEqual(session.get.call_count, 1)

    def test_missing_stop_detail(self):
        """Test that an empty stop payload is a resolution gap."""
        session = MagicMock()
        session.get.return_value = make_response(data={})
        client = make_client(session)

        with self.assertRaises(ResolutionGapError):
            client.fetch_stop_detail("NOPE")

    def test_route_eta_parsed(self):
        """Test parsing of the route ETA feed."""
        session = MagicMock()
        session.get.return_value = make_response(
            data=[
                {
                    "co": "KMB", "route": "1A", "dir": "O", "service_type": 1, "seq": 3,
                    "dest_en": "SAU MAU PING", "eta_seq": 1, "eta": "2024-01-01T12:05:00+08:00",
                    "rmk_en": "", "data_timestamp": "2024-01-01T12:00:00+08:00",
                },
                {
                    "co": "KMB", "route": "1A", "dir": "O", "service_type": 1, "seq": 3,
                    "eta_seq": 2, "eta": None, "rmk_en": "Final Bus",
                },
            ]
        )
        client = make_client(session)

        entries = client.fetch_route_eta("1A", "1")

        self.assertEqual(len(entries), 2)
        self.assertEqual(entries[0].service_type, "1")
        self.assertEqual(entries[0].seq, 3)
        self.assertIsNone(entries[1].eta)
        self.assertEqual(entries[1].rmk_en, "Final Bus")


class TestTTLCache(unittest.TestCase):
    """Test the cache service."""

    def test_concurrent_misses_share_one_load(self):
        """Test that identical in-flight loads are coalesced."""
        cache = TTLCache(clock=FakeClock())
        calls = []
        started = threading.Event()
        release = threading.Event()

        def loader():
            calls.append(1)
            started.set()
            release.wait(5)
            return ["payload"]

        with ThreadPoolExecutor(max_workers=2) as executor:
            first = executor.submit(cache.get_or_load, "key", loader)
            started.wait(5)
            second = executor.submit(cache.get_or_load, "key", loader)
            release.set()
            self.assertEqual(first.result(5), ["payload"])
            self.assertEqual(second.result(5), ["payload"])

        self.assertEqual(len(calls), 1)

    def test_failed_load_stores_nothing(self):
        """Test that a loader exception leaves the cache empty."""
        cache = TTLCache(clock=FakeClock())

        def loader():
            raise FetchError("boom")

        with self.assertRaises(FetchError):
            cache.get_or_load("key", loader)
        self.assertEqual(len(cache), 0)

    def test_stale_entry_kept_until_overwritten(self):
        """Test that expired entries stay stored and only the oldest is dropped when full."""
        clock = FakeClock()
        cache = TTLCache(clock=clock, default_ttl_ms=1000, max_entries=2)
        cache.put("old", 1)
        clock.advance(2000)

        self.assertIsNone(cache.get("old"))
        self.assertEqual(cache.get_entry("old").payload, 1)

        cache.put("new", 2)
        clock.advance(10)
        cache.put("newest", 3)

        self.assertIsNone(cache.get_entry("old"))
        self.assertEqual(cache.get("new"), 2)
        self.assertEqual(cache.get("newest"), 3)


class TestRetry(unittest.TestCase):
    """Test the bounded retry combinator."""

    def test_backoff_grows_and_is_capped(self):
        """Test exponential backoff without jitter."""
        policy = RetryPolicy(base_delay_s=1.0, max_delay_s=3.0, jitter_s=0.0)
        self.assertEqual(
            [policy.delay_for(n) for n in (1, 2, 3, 4)],
            [1.0, 2.0, 3.0, 3.0],
        )

    def test_non_retryable_error_raised_immediately(self):
        """Test that errors outside retry_on are not retried."""
        func = MagicMock(side_effect=KeyError("x"))
        with self.assertRaises(KeyError):
            call_with_retry(func, RetryPolicy(max_attempts=5), sleep=MagicMock())
        self.assertEqual(func.call_count, 1)


if __name__ == "__main__":
    unittest.main()
