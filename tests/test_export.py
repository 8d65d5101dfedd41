"""Tests for the canonical CSV writer."""

from __future__ import annotations

import csv
from pathlib import Path

from cithsl_gtfs.export import (
    CanonicalFeed,
    CanonicalRoute,
    CanonicalStopRecord,
    CanonicalTrip,
    CanonicalTripStop,
    DirectionStopList,
    write_canonical_feed,
)


def _read(path: Path) -> list[list[str]]:
    with path.open(newline="", encoding="utf-8") as f:
        return list(csv.reader(f))


def _feed() -> CanonicalFeed:
    return CanonicalFeed(
        routes=(
            CanonicalRoute(140, "140", "Mercier & Châteauguay", "bus", "1F1F1F"),
            CanonicalRoute(1, "1", "St-Rémi - Érables", "bus", "1F1F1F"),
        ),
        stops=(
            CanonicalStopRecord(913345, None, "Hébert St-Jean-Baptiste"),
            CanonicalStopRecord(79132, "79132", "123 boul. St-Jean-Baptiste"),
        ),
        trips=(
            CanonicalTrip(
                "t140_s1",
                140,
                "WEEK",
                "SOUTH",
                "Mercier",
                (CanonicalTripStop(79132, 25_200), CanonicalTripStop(913345, None)),
            ),
            CanonicalTrip("t140_n1", 140, "WEEK", "NORTH", "Châteauguay", (CanonicalTripStop(79132, 25_200),)),
            CanonicalTrip("t1_a", 1, "WEEK", "0", "Ormstown", ()),
        ),
        directions=(
            DirectionStopList(140, "SOUTH", "Mercier", (79132, 913345)),
            DirectionStopList(140, "NORTH", "Châteauguay", (79132,)),
        ),
    )


class TestWriteCanonicalFeed:
    """CSV layout and deterministic ordering."""

    def test_writes_every_table(self, tmp_path: Path) -> None:
        written = write_canonical_feed(_feed(), tmp_path / "out")

        assert sorted(written) == [
            "direction_stops.csv",
            "routes.csv",
            "stops.csv",
            "trip_stops.csv",
            "trips.csv",
        ]
        assert all(path.exists() for path in written.values())

    def test_routes_sorted_by_id(self, tmp_path: Path) -> None:
        written = write_canonical_feed(_feed(), tmp_path)

        assert _read(written["routes.csv"]) == [
            ["route_id", "short_name", "long_name", "route_type", "color"],
            ["1", "1", "St-Rémi - Érables", "bus", "1F1F1F"],
            ["140", "140", "Mercier & Châteauguay", "bus", "1F1F1F"],
        ]

    def test_missing_stop_code_is_empty_cell(self, tmp_path: Path) -> None:
        written = write_canonical_feed(_feed(), tmp_path)

        assert _read(written["stops.csv"]) == [
            ["stop_id", "stop_code", "name"],
            ["79132", "79132", "123 boul. St-Jean-Baptiste"],
            ["913345", "", "Hébert St-Jean-Baptiste"],
        ]

    def test_trips_sorted_by_route_direction_trip(self, tmp_path: Path) -> None:
        written = write_canonical_feed(_feed(), tmp_path)

        rows = _read(written["trips.csv"])
        assert [row[0] for row in rows[1:]] == ["t1_a", "t140_n1", "t140_s1"]
        assert rows[2] == ["t140_n1", "140", "WEEK", "NORTH", "Châteauguay"]

    def test_trip_stops_one_based(self, tmp_path: Path) -> None:
        written = write_canonical_feed(_feed(), tmp_path)

        assert _read(written["trip_stops.csv"]) == [
            ["trip_id", "sequence", "stop_id", "arrival_seconds"],
            ["t140_n1", "1", "79132", "25200"],
            ["t140_s1", "1", "79132", "25200"],
            ["t140_s1", "2", "913345", ""],
        ]

    def test_direction_stops(self, tmp_path: Path) -> None:
        written = write_canonical_feed(_feed(), tmp_path)

        assert _read(written["direction_stops.csv"]) == [
            ["route_id", "direction", "headsign", "sequence", "stop_id"],
            ["140", "NORTH", "Châteauguay", "1", "79132"],
            ["140", "SOUTH", "Mercier", "1", "79132"],
            ["140", "SOUTH", "Mercier", "2", "913345"],
        ]

    def test_output_is_deterministic(self, tmp_path: Path) -> None:
        feed = _feed()
        reordered = CanonicalFeed(
            routes=feed.routes[::-1],
            stops=feed.stops[::-1],
            trips=feed.trips[::-1],
            directions=feed.directions[::-1],
        )

        first = write_canonical_feed(feed, tmp_path / "a")
        second = write_canonical_feed(reordered, tmp_path / "b")

        for name, path in first.items():
            assert path.read_bytes() == second[name].read_bytes()

    def test_trip_stop_count(self) -> None:
        assert _feed().trip_stop_count == 3
