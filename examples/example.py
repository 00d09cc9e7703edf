"""Example usage of BusTracker."""

import logging
import sys
from pathlib import Path

# Add src to path so we can import bustrack
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from bustrack import BusTracker, FetchError, RouteKey
from bustrack.eta import format_time_remaining, remark_for
from bustrack.geo import format_distance

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def print_nearby(tracker: BusTracker, lat: float, lon: float):
    """
    Show stop groups and routes around a location.

    Args:
        tracker: Tracker instance.
        lat: Latitude (e.g., 22.3193)
        lon: Longitude (e.g., 114.1694)
    """
    print(f"\n{'='*70}")
    print(f"Nearby stops for: {lat}, {lon}")
    print(f"{'='*70}\n")

    view = tracker.load_nearby(lat, lon)
    for message in view.errors:
        print(f"! {message}")

    if not view.groups:
        print("  No bus stops found nearby")
        return

    for group in view.groups:
        print(f"{group.name} ({group.representative.name_tc}) - {format_distance(group.distance_m)}")
        routes = view.routes_by_group.get(group.representative.stop_id, [])
        for route in routes:
            print(f"  {route.route:>5} → {route.dest_en}")
        if not routes:
            print("  No routes available for this stop.")

    print(f"\nLast updated: {view.last_updated.strftime('%H:%M:%S')}")


def print_route_eta(tracker: BusTracker, route_id: str):
    """
    Show arrival estimates along a route.

    Args:
        tracker: Tracker instance.
        route_id: Route key such as "1A_O_1"
    """
    key = RouteKey.parse(route_id)
    merged = tracker.get_route_eta(key.route, key.bound, key.service_type)
    if not merged:
        print("No arrival information")
        return

    print(f"\nRoute {key.route} ({key.bound}, service type {key.service_type}):")
    for stop in merged:
        print(f"\n{stop.seq}. {stop.stop.name_en}")
        for entry in stop.eta_entries:
            print(f"    {format_time_remaining(entry.eta)} - {remark_for(entry)}")


def interactive_mode(tracker: BusTracker):
    """
    Run in interactive mode: enter "lat,lon" for nearby stops or a route key
    like "1A_O_1" for arrivals.
    """
    print("BusTrack - Interactive Mode")
    print("Enter 'lat,lon' for nearby stops or 'ROUTE_BOUND_SERVICETYPE' for arrivals")
    print("(Type 'quit' to exit)\n")

    while True:
        try:
            user_input = input("> ").strip()

            if user_input.lower() in ["quit", "q", "exit"]:
                print("Goodbye!")
                break

            if not user_input:
                continue

            try:
                if "," in user_input:
                    lat, lon = (float(part) for part in user_input.split(",", 1))
                    print_nearby(tracker, lat, lon)
                else:
                    print_route_eta(tracker, user_input)
            except ValueError as e:
                print(f"Invalid input: {e}")
            except FetchError as e:
                print(f"Could not reach the bus API: {e}")

        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break


if __name__ == "__main__":
    tracker = BusTracker()
    try:
        if len(sys.argv) == 3:
            print_nearby(tracker, float(sys.argv[1]), float(sys.argv[2]))
        elif len(sys.argv) == 2:
            print_route_eta(tracker, sys.argv[1])
        else:
            interactive_mode(tracker)
    except (ValueError, FetchError) as e:
        logger.error(f"Failed to fetch data: {e}", exc_info=True)
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        tracker.cleanup()
