"""Canonical output model and CSV writer.

The canonical feed is what the downstream application consumes: derived
integer IDs, normalized labels, resolved directions and ordered stop lists.
Each table is written as a UTF-8 CSV with a header row and a deterministic
row order, so two runs over the same feed produce byte-identical files.

Output files:
  routes.csv           route_id, short_name, long_name, route_type, color
  stops.csv            stop_id, stop_code, name
  trips.csv            trip_id, route_id, service_id, direction, headsign
  trip_stops.csv       trip_id, sequence, stop_id, arrival_seconds
  direction_stops.csv  route_id, direction, headsign, sequence, stop_id
"""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

logger: Final[logging.Logger] = logging.getLogger(__name__)

ROUTES_FILE: Final[str] = "routes.csv"
STOPS_FILE: Final[str] = "stops.csv"
TRIPS_FILE: Final[str] = "trips.csv"
TRIP_STOPS_FILE: Final[str] = "trip_stops.csv"
DIRECTION_STOPS_FILE: Final[str] = "direction_stops.csv"

_ROUTE_COLUMNS: Final[list[str]] = ["route_id", "short_name", "long_name", "route_type", "color"]
_STOP_COLUMNS: Final[list[str]] = ["stop_id", "stop_code", "name"]
_TRIP_COLUMNS: Final[list[str]] = ["trip_id", "route_id", "service_id", "direction", "headsign"]
_TRIP_STOP_COLUMNS: Final[list[str]] = ["trip_id", "sequence", "stop_id", "arrival_seconds"]
_DIRECTION_STOP_COLUMNS: Final[list[str]] = [
    "route_id",
    "direction",
    "headsign",
    "sequence",
    "stop_id",
]


# ---------------------------------------------------------------------------
# Output model
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CanonicalRoute:
    """A route as emitted.

    Attributes:
        route_id: Derived integer route ID.
        short_name: Published route number.
        long_name: Normalized long name.
        route_type: Agency route-type tag.
        color: Display color (hex, no leading #).
    """

    route_id: int
    short_name: str
    long_name: str
    route_type: str
    color: str


@dataclass(frozen=True, slots=True)
class CanonicalStopRecord:
    """A stop as emitted.

    Attributes:
        stop_id: Derived integer stop ID.
        stop_code: Rider-facing code, None when the feed has none.
        name: Normalized stop name.
    """

    stop_id: int
    stop_code: str | None
    name: str


@dataclass(frozen=True, slots=True)
class CanonicalTripStop:
    """One row of a trip's ordered stop sequence."""

    stop_id: int
    arrival_seconds: int | None


@dataclass(frozen=True, slots=True)
class CanonicalTrip:
    """A trip with its resolved direction and ordered stops.

    Attributes:
        trip_id: Feed trip_id.
        route_id: Derived integer route ID.
        service_id: Calendar service.
        direction: Direction label ("NORTH", or the GTFS flag "0"/"1" for
            routes without a canonical spec).
        headsign: Normalized, merged headsign.
        stops: Ordered stop sequence.
    """

    trip_id: str
    route_id: int
    service_id: str
    direction: str
    headsign: str
    stops: tuple[CanonicalTripStop, ...]


@dataclass(frozen=True, slots=True)
class DirectionStopList:
    """Rider-facing stop list of one route direction.

    Attributes:
        route_id: Derived integer route ID.
        direction: Direction label.
        headsign: Destination shown for the direction.
        stop_ids: Ordered stop IDs.
    """

    route_id: int
    direction: str
    headsign: str
    stop_ids: tuple[int, ...]


@dataclass(frozen=True, slots=True)
class CanonicalFeed:
    """Everything the downstream application receives."""

    routes: tuple[CanonicalRoute, ...]
    stops: tuple[CanonicalStopRecord, ...]
    trips: tuple[CanonicalTrip, ...]
    directions: tuple[DirectionStopList, ...]

    @property
    def trip_stop_count(self) -> int:
        return sum(len(trip.stops) for trip in self.trips)


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


def _write_table(path: Path, columns: Sequence[str], rows: Iterable[Sequence[object]]) -> int:
    count = 0
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f, quoting=csv.QUOTE_MINIMAL)
        writer.writerow(columns)
        for row in rows:
            writer.writerow(["" if value is None else value for value in row])
            count += 1
    logger.debug("Wrote %d rows to %s", count, path.name)
    return count


def write_canonical_feed(feed: CanonicalFeed, output_dir: Path) -> dict[str, Path]:
    """Write the canonical feed as CSV files.

    Args:
        feed: Canonicalized feed.
        output_dir: Destination directory; created if missing. Existing
            files are overwritten.

    Returns:
        Mapping of file name to written path.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    routes = sorted(feed.routes, key=lambda r: r.route_id)
    stops = sorted(feed.stops, key=lambda s: s.stop_id)
    trips = sorted(feed.trips, key=lambda t: (t.route_id, t.direction, t.trip_id))
    directions = sorted(feed.directions, key=lambda d: (d.route_id, d.direction))

    written: dict[str, Path] = {}
    counts: dict[str, int] = {}

    path = output_dir / ROUTES_FILE
    counts[ROUTES_FILE] = _write_table(
        path,
        _ROUTE_COLUMNS,
        ((r.route_id, r.short_name, r.long_name, r.route_type, r.color) for r in routes),
    )
    written[ROUTES_FILE] = path

    path = output_dir / STOPS_FILE
    counts[STOPS_FILE] = _write_table(
        path, _STOP_COLUMNS, ((s.stop_id, s.stop_code, s.name) for s in stops)
    )
    written[STOPS_FILE] = path

    path = output_dir / TRIPS_FILE
    counts[TRIPS_FILE] = _write_table(
        path,
        _TRIP_COLUMNS,
        ((t.trip_id, t.route_id, t.service_id, t.direction, t.headsign) for t in trips),
    )
    written[TRIPS_FILE] = path

    path = output_dir / TRIP_STOPS_FILE
    counts[TRIP_STOPS_FILE] = _write_table(
        path,
        _TRIP_STOP_COLUMNS,
        (
            (t.trip_id, sequence, stop.stop_id, stop.arrival_seconds)
            for t in trips
            for sequence, stop in enumerate(t.stops, start=1)
        ),
    )
    written[TRIP_STOPS_FILE] = path

    path = output_dir / DIRECTION_STOPS_FILE
    counts[DIRECTION_STOPS_FILE] = _write_table(
        path,
        _DIRECTION_STOP_COLUMNS,
        (
            (d.route_id, d.direction, d.headsign, sequence, stop_id)
            for d in directions
            for sequence, stop_id in enumerate(d.stop_ids, start=1)
        ),
    )
    written[DIRECTION_STOPS_FILE] = path

    logger.info(
        "Wrote canonical feed to %s (%s)",
        output_dir,
        ", ".join(f"{name}={count}" for name, count in counts.items()),
    )
    return written
