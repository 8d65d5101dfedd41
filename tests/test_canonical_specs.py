"""Tests for the canonical route spec model, built-in table and TOML loader."""

from __future__ import annotations

from pathlib import Path

import pytest

from cithsl_gtfs.canonical_specs import (
    ROUTE_SPECS,
    CanonicalDirection,
    CanonicalRouteSpec,
    CanonicalSpecError,
    CanonicalStop,
    Direction,
    StopMarker,
    load_route_specs,
)
from cithsl_gtfs.config import DataConfigurationError

_VALID_TOML = """
[[routes]]
route_id = 7

[[routes.directions]]
direction = "east"
headsign = "Huntingdon"
stops = [
    { stop = 100, marker = "plain" },
    { stop = 101, marker = "shared" },
    102,
]

[[routes.directions]]
direction = "WEST"
headsign = "Ormstown"
stops = [
    { stop = 101, marker = "shared" },
    { stop = 103, marker = "boundary" },
    { stop = 100, marker = "alternate" },
]
"""


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "specs.toml"
    path.write_text(content, encoding="utf-8")
    return path


class TestBuiltInTable:
    """Route 140 as shipped."""

    def test_route_140_directions(self) -> None:
        spec = ROUTE_SPECS[140]

        north, south = spec.directions
        assert north.direction is Direction.NORTH
        assert north.headsign == "Châteauguay"
        assert south.direction is Direction.SOUTH
        assert south.headsign == "Mercier"
        assert len(north.stops) == 13
        assert len(south.stops) == 19

    def test_route_140_scoring_stops(self) -> None:
        spec = ROUTE_SPECS[140]

        assert spec.get_direction(Direction.NORTH).scoring_stops == (79132, 79023, 79024, 79174)
        assert spec.get_direction(Direction.SOUTH).scoring_stops == (
            79051,
            79178,
            79192,
            79193,
            79180,
            79049,
            79183,
            79057,
            79132,
        )

    def test_loop_stop_listed_twice(self) -> None:
        south = ROUTE_SPECS[140].get_direction(Direction.SOUTH)

        assert south.positions_of(79182) == (13, 16)
        assert south.stops[14] == CanonicalStop(79183, StopMarker.BOUNDARY)

    def test_first_non_shared_stop(self) -> None:
        spec = ROUTE_SPECS[140]

        assert spec.get_direction(Direction.NORTH).first_non_shared_stop == 79132
        assert spec.get_direction(Direction.SOUTH).first_non_shared_stop == 79185

    def test_table_is_read_only(self) -> None:
        with pytest.raises(TypeError):
            ROUTE_SPECS[1] = ROUTE_SPECS[140]  # type: ignore[index]

    def test_unknown_direction_lookup(self) -> None:
        with pytest.raises(KeyError):
            ROUTE_SPECS[140].get_direction(Direction.EAST)


class TestSpecValidation:
    """Structural invariants of a route spec."""

    def test_requires_two_directions(self) -> None:
        direction = CanonicalDirection(Direction.NORTH, "A", (CanonicalStop(1),))

        with pytest.raises(CanonicalSpecError, match="expected 2"):
            CanonicalRouteSpec(route_id=9, directions=(direction,))  # type: ignore[arg-type]

    def test_rejects_duplicate_direction(self) -> None:
        direction = CanonicalDirection(Direction.NORTH, "A", (CanonicalStop(1),))

        with pytest.raises(CanonicalSpecError, match="twice"):
            CanonicalRouteSpec(route_id=9, directions=(direction, direction))

    def test_rejects_direction_without_scoring_stop(self) -> None:
        north = CanonicalDirection(Direction.NORTH, "A", (CanonicalStop(1),))
        south = CanonicalDirection(
            Direction.SOUTH, "B", (CanonicalStop(1, StopMarker.SHARED),)
        )

        with pytest.raises(CanonicalSpecError, match="no plain or boundary"):
            CanonicalRouteSpec(route_id=9, directions=(north, south))

    def test_is_configuration_error(self) -> None:
        assert issubclass(CanonicalSpecError, DataConfigurationError)


class TestLoadRouteSpecs:
    """TOML spec files."""

    def test_loads_and_extends_built_in(self, tmp_path: Path) -> None:
        specs = load_route_specs(_write(tmp_path, _VALID_TOML))

        assert 140 in specs
        east, west = specs[7].directions
        assert east.direction is Direction.EAST
        assert east.stops == (
            CanonicalStop(100, StopMarker.PLAIN),
            CanonicalStop(101, StopMarker.SHARED),
            CanonicalStop(102, StopMarker.PLAIN),
        )
        assert west.direction is Direction.WEST
        assert west.scoring_stops == (103,)

    def test_replaces_same_route(self, tmp_path: Path) -> None:
        content = _VALID_TOML.replace("route_id = 7", "route_id = 140")

        specs = load_route_specs(_write(tmp_path, content))

        assert specs[140].directions[0].headsign == "Huntingdon"

    def test_custom_base(self, tmp_path: Path) -> None:
        specs = load_route_specs(_write(tmp_path, _VALID_TOML), base={})

        assert list(specs) == [7]

    def test_unknown_marker(self, tmp_path: Path) -> None:
        content = _VALID_TOML.replace('marker = "boundary"', 'marker = "loop"')

        with pytest.raises(CanonicalSpecError, match="unknown marker 'loop'") as exc_info:
            load_route_specs(_write(tmp_path, content))

        assert exc_info.value.source.endswith("specs.toml")

    def test_unknown_direction(self, tmp_path: Path) -> None:
        content = _VALID_TOML.replace('direction = "east"', 'direction = "up"')

        with pytest.raises(CanonicalSpecError, match="unknown direction 'up'"):
            load_route_specs(_write(tmp_path, content))

    def test_single_direction_rejected(self, tmp_path: Path) -> None:
        content = _VALID_TOML.split("[[routes.directions]]\ndirection = \"WEST\"")[0]

        with pytest.raises(CanonicalSpecError, match="expected 2") as exc_info:
            load_route_specs(_write(tmp_path, content))

        assert str(exc_info.value).startswith(str(tmp_path))

    def test_non_integer_stop(self, tmp_path: Path) -> None:
        content = _VALID_TOML.replace("{ stop = 100, marker = \"plain\" }", '"MER100"')

        with pytest.raises(CanonicalSpecError, match="not an integer"):
            load_route_specs(_write(tmp_path, content))

    def test_missing_headsign(self, tmp_path: Path) -> None:
        content = _VALID_TOML.replace('headsign = "Huntingdon"\n', "")

        with pytest.raises(CanonicalSpecError, match="missing headsign"):
            load_route_specs(_write(tmp_path, content))

    def test_invalid_toml(self, tmp_path: Path) -> None:
        with pytest.raises(CanonicalSpecError, match="invalid TOML"):
            load_route_specs(_write(tmp_path, "[[routes]\nroute_id = "))

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(CanonicalSpecError, match="cannot read"):
            load_route_specs(tmp_path / "absent.toml")

    def test_duplicate_route(self, tmp_path: Path) -> None:
        content = _VALID_TOML + _VALID_TOML

        with pytest.raises(CanonicalSpecError, match="declared twice"):
            load_route_specs(_write(tmp_path, content))

    def test_routes_array_required(self, tmp_path: Path) -> None:
        with pytest.raises(CanonicalSpecError, match=r"\[\[routes\]\]"):
            load_route_specs(_write(tmp_path, "title = 'specs'\n"))

    def test_route_entry_must_be_table(self, tmp_path: Path) -> None:
        with pytest.raises(CanonicalSpecError, match="not a table"):
            load_route_specs(_write(tmp_path, "routes = [1]\n"))

    def test_directions_must_be_array(self, tmp_path: Path) -> None:
        content = "[[routes]]\nroute_id = 7\ndirections = 3\n"

        with pytest.raises(CanonicalSpecError, match="'directions' must be an array"):
            load_route_specs(_write(tmp_path, content))

    def test_direction_entry_must_be_table(self, tmp_path: Path) -> None:
        content = "[[routes]]\nroute_id = 7\ndirections = [1, 2]\n"

        with pytest.raises(CanonicalSpecError, match="direction entry 1 is not a table"):
            load_route_specs(_write(tmp_path, content))

    def test_stops_must_be_array(self, tmp_path: Path) -> None:
        content = (
            "[[routes]]\nroute_id = 7\n\n"
            "[[routes.directions]]\ndirection = \"east\"\nheadsign = \"Huntingdon\"\nstops = 5\n"
        )

        with pytest.raises(CanonicalSpecError, match="'stops' must be an array"):
            load_route_specs(_write(tmp_path, content))
