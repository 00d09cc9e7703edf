"""Merging raw ETA feeds with route stop sequences."""

import logging
import math
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .exceptions import InvalidTimeError
from .models import EtaEntry, GroupEta, MergedRouteEta, RouteKey, RouteStopLink, StopRecord, opposite_bound
from .route_membership import route_sort_key

logger = logging.getLogger(__name__)

# Service type whose route-ETA feed labels directions the other way round
INVERTED_DIRECTION_SERVICE_TYPE = "2"

# A numeric ETA this close counts as "arriving"
IMMINENT_MINUTES = 1

ENGLISH = "english"
CHINESE = "chinese"

LABELS = {
    ENGLISH: {
        "expired": "Expired",
        "arriving": "Arriving",
        "invalid_time": "Invalid time",
        "min": "min",
        "hrs": "hrs",
        "no_eta": "No arrival information",
    },
    CHINESE: {
        "expired": "已開出",
        "arriving": "即將到達",
        "invalid_time": "無效時間",
        "min": "分鐘",
        "hrs": "小時",
        "no_eta": "沒有到達資訊",
    },
}


def _labels(language: str) -> Dict[str, str]:
    return LABELS.get(language, LABELS[ENGLISH])


def parse_eta(eta: Optional[str], reference: Optional[datetime] = None) -> datetime:
    """
    Parse an ISO-8601 ETA instant.

    A timestamp without an offset takes the timezone of ``reference``.

    Raises:
        InvalidTimeError: ``eta`` is empty or not ISO-8601.
    """
    if not eta or not isinstance(eta, str):
        raise InvalidTimeError(f"Invalid ETA timestamp: {eta!r}")
    text = eta.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise InvalidTimeError(f"Invalid ETA timestamp: {eta!r}")
    if parsed.tzinfo is None:
        tz = reference.tzinfo if reference is not None and reference.tzinfo else timezone.utc
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def _now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def remaining_minutes(eta: Optional[str], now: Optional[datetime] = None) -> int:
    """Whole minutes until ``eta``, floored; negative once the bus has left."""
    now = _now(now)
    target = parse_eta(eta, now)
    return math.floor((target - now).total_seconds() / 60)


def format_time_remaining(eta: Optional[str], now: Optional[datetime] = None, language: str = ENGLISH) -> str:
    """Render the time until ``eta`` as "1 hrs 5 min", "7 min", "Arriving" or "Expired"."""
    labels = _labels(language)
    if not eta:
        return labels["no_eta"]
    try:
        total = remaining_minutes(eta, now)
    except InvalidTimeError:
        return labels["invalid_time"]

    if total < 0:
        return labels["expired"]
    if total == 0:
        return labels["arriving"]

    hours, minutes = divmod(total, 60)
    parts = []
    if hours > 0:
        parts.append(f"{hours} {labels['hrs']}")
    if minutes > 0:
        parts.append(f"{minutes} {labels['min']}")
    return " ".join(parts)


def remark_for(entry: EtaEntry, language: str = ENGLISH) -> str:
    return entry.rmk_tc if language == CHINESE else entry.rmk_en


def select_direction(entries: Iterable[EtaEntry], bound: str, service_type: str) -> List[EtaEntry]:
    """
    Keep the ETA entries that belong to the requested direction.

    The route-ETA feed of service type "2" labels each entry with the opposite
    direction of the one it actually serves, so for that service type only the
    entries tagged with the opposite bound are kept. Feeds of every other
    service type are returned unfiltered.
    """
    if str(service_type) != INVERTED_DIRECTION_SERVICE_TYPE:
        return list(entries)
    wanted = opposite_bound(bound)
    return [entry for entry in entries if entry.direction == wanted]


def _arrival_sort_key(entry: EtaEntry) -> Tuple[int, float, int]:
    try:
        instant = parse_eta(entry.eta).timestamp()
    except InvalidTimeError:
        return (1, 0.0, entry.eta_seq)
    return (0, instant, entry.eta_seq)


def merge_route_eta(
    eta_entries: Iterable[EtaEntry],
    stop_links: Iterable[RouteStopLink],
    stop_details: Union[Mapping[str, StopRecord], Iterable[StopRecord]],
    bound: Optional[str] = None,
    service_type: Optional[str] = None,
) -> List[MergedRouteEta]:
    """
    Merge a route's raw ETA feed with its ordered stop list.

    Entries are grouped per (direction, seq); the first entry of a group
    provides its header fields. Entries whose sequence has no stop link, or
    whose stop has no details, are dropped. When ``bound`` and
    ``service_type`` are given the feed is first narrowed with
    ``select_direction``. Within a group entries are ordered by arrival time,
    with unparseable times last.
    """
    if isinstance(stop_details, Mapping):
        stops_by_id = dict(stop_details)
    else:
        stops_by_id = {stop.stop_id: stop for stop in stop_details}

    links_by_seq: Dict[int, RouteStopLink] = {}
    for link in stop_links:
        links_by_seq[link.seq] = link

    if bound is not None and service_type is not None:
        eta_entries = select_direction(eta_entries, bound, service_type)

    merged: Dict[Tuple[str, int], MergedRouteEta] = {}
    dropped = 0
    for entry in eta_entries:
        key = (entry.direction, entry.seq)
        item = merged.get(key)
        if item is None:
            link = links_by_seq.get(entry.seq)
            stop = stops_by_id.get(link.stop_id) if link is not None else None
            if stop is None:
                dropped += 1
                continue
            item = MergedRouteEta(
                route=entry.route,
                direction=entry.direction,
                service_type=entry.service_type,
                seq=entry.seq,
                dest_en=entry.dest_en,
                dest_tc=entry.dest_tc,
                dest_sc=entry.dest_sc,
                data_timestamp=entry.data_timestamp,
                route_stop=link,
                stop=stop,
            )
            merged[key] = item
        item.eta_entries.append(entry)

    if dropped:
        logger.debug(f"Dropped {dropped} ETA entries with no matching stop")

    for item in merged.values():
        item.eta_entries.sort(key=_arrival_sort_key)
    return sorted(merged.values(), key=lambda m: (m.direction, m.seq))


def _is_sooner(candidate: Optional[int], current: Optional[int]) -> bool:
    """
    Whether ``candidate`` minutes should replace ``current`` minutes.

    None stands for an entry without an estimate. It ranks level with an
    imminent numeric estimate and behind any later one; ties keep the entry
    seen first.
    """
    if candidate is not None and current is not None:
        return candidate < current
    return candidate is not None and candidate > IMMINENT_MINUTES


def aggregate_group_eta(
    etas_by_stop: Mapping[str, Iterable[EtaEntry]],
    now: Optional[datetime] = None,
) -> List[GroupEta]:
    """
    Soonest upcoming bus per route key across all stops of a group.

    ``etas_by_stop`` maps each physical stop id to its stop-ETA feed. Departed
    buses and entries with malformed times are ignored. The result is ordered
    by route number.
    """
    now = _now(now)
    best: Dict[RouteKey, GroupEta] = {}
    for stop_id, entries in etas_by_stop.items():
        for entry in entries:
            minutes: Optional[int] = None
            if entry.eta:
                try:
                    minutes = remaining_minutes(entry.eta, now)
                except InvalidTimeError:
                    logger.debug(f"Ignoring ETA with invalid time at stop {stop_id}: {entry.eta!r}")
                    continue
                if minutes < 0:
                    continue

            key = entry.route_key
            current = best.get(key)
            if current is None or _is_sooner(minutes, current.minutes):
                best[key] = GroupEta(route_key=key, stop_id=stop_id, entry=entry, minutes=minutes)

    return sorted(
        best.values(),
        key=lambda g: (route_sort_key(g.route_key.route), g.route_key.bound, g.route_key.service_type),
    )
