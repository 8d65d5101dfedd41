"""Hand-authored canonical stop sequences for ambiguous routes.

Some CITHSL routes publish a single GTFS direction flag for trips that
physically run in both directions, or share stops between directions in a
way that makes the flag useless. For those routes a human maintains the
ordered stop list of each direction here, with every entry tagged by a
StopMarker telling the splitter how much weight the stop carries.

The built-in ROUTE_SPECS table covers the current feed. A versioned TOML
file with the same shape can replace or extend it at run time::

    [[routes]]
    route_id = 140

    [[routes.directions]]
    direction = "north"
    headsign = "Châteauguay"
    stops = [
        { stop = 79132, marker = "plain" },
        { stop = 79152, marker = "alternate" },
    ]

Stop references are derived integer stop IDs (see identifiers.py). The
table must be updated whenever the physical path of a route changes.
"""

from __future__ import annotations

import enum
import logging
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Final

from cithsl_gtfs.config import DataConfigurationError

logger: Final[logging.Logger] = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class CanonicalSpecError(DataConfigurationError):
    """Raised when a canonical route spec table or file is invalid.

    Attributes:
        source: Spec file path, or "built-in" for the in-code table.
    """

    def __init__(self, message: str, *, source: str = "built-in") -> None:
        self.source: Final[str] = source
        self.detail: Final[str] = message
        super().__init__(f"{source}: {message}")


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class StopMarker(enum.Enum):
    """Weight of one canonical stop entry during trip classification."""

    PLAIN = "plain"  # must appear, order significant
    SHARED = "shared"  # served by both directions, no disambiguating power
    ALTERNATE = "alternate"  # only on some trip variants
    BOUNDARY = "boundary"  # loop/return point


class Direction(enum.Enum):
    """Named direction of a canonical route."""

    NORTH = "north"
    SOUTH = "south"
    EAST = "east"
    WEST = "west"

    @property
    def label(self) -> str:
        """Return the upper-case label emitted in the output."""
        return self.name


_SCORING_MARKERS: Final[frozenset[StopMarker]] = frozenset(
    {StopMarker.PLAIN, StopMarker.BOUNDARY}
)


@dataclass(frozen=True, slots=True)
class CanonicalStop:
    """One entry of a canonical stop sequence.

    Attributes:
        stop_id: Derived integer stop ID.
        marker: Classification weight of this entry.
    """

    stop_id: int
    marker: StopMarker = StopMarker.PLAIN

    @property
    def is_scoring(self) -> bool:
        """Whether the entry counts toward the alignment score."""
        return self.marker in _SCORING_MARKERS


@dataclass(frozen=True, slots=True)
class CanonicalDirection:
    """Ordered canonical stop list of one direction.

    Attributes:
        direction: Direction name.
        headsign: Rider-facing destination emitted for every trip of
            this direction.
        stops: Ordered entries. A stop may repeat (loops); position in this
            tuple is the reference position used for ordering.
    """

    direction: Direction
    headsign: str
    stops: tuple[CanonicalStop, ...]

    @property
    def scoring_stops(self) -> tuple[int, ...]:
        """Return the plain and boundary stop IDs, in reference order."""
        return tuple(entry.stop_id for entry in self.stops if entry.is_scoring)

    @property
    def scoring_stop_ids(self) -> frozenset[int]:
        return frozenset(self.scoring_stops)

    @property
    def first_non_shared_stop(self) -> int | None:
        """Return the first stop not marked shared, used to break score ties."""
        for entry in self.stops:
            if entry.marker is not StopMarker.SHARED:
                return entry.stop_id
        return None

    def positions_of(self, stop_id: int) -> tuple[int, ...]:
        """Return every reference position listing a stop, ascending."""
        return tuple(i for i, entry in enumerate(self.stops) if entry.stop_id == stop_id)


@dataclass(frozen=True, slots=True)
class CanonicalRouteSpec:
    """Canonical ordering for one route: exactly two named directions.

    Attributes:
        route_id: Derived integer route ID.
        directions: The two directions, in declaration order.
    """

    route_id: int
    directions: tuple[CanonicalDirection, CanonicalDirection]

    def __post_init__(self) -> None:
        if len(self.directions) != 2:
            raise CanonicalSpecError(
                f"route {self.route_id} declares {len(self.directions)} directions, expected 2"
            )
        first, second = self.directions
        if first.direction is second.direction:
            raise CanonicalSpecError(
                f"route {self.route_id} declares direction {first.direction.label} twice"
            )
        for direction in self.directions:
            if not direction.scoring_stops:
                raise CanonicalSpecError(
                    f"route {self.route_id} direction {direction.direction.label} "
                    "has no plain or boundary stop"
                )

    @property
    def discriminating_stop_ids(self) -> frozenset[int]:
        """Stops marked plain or boundary in either direction."""
        return self.directions[0].scoring_stop_ids | self.directions[1].scoring_stop_ids

    def get_direction(self, direction: Direction) -> CanonicalDirection:
        """Return the canonical list for a direction name.

        Raises:
            KeyError: If the route does not declare that direction.
        """
        for candidate in self.directions:
            if candidate.direction is direction:
                return candidate
        raise KeyError(direction)


def _entries(*pairs: tuple[int, StopMarker]) -> tuple[CanonicalStop, ...]:
    return tuple(CanonicalStop(stop_id, marker) for stop_id, marker in pairs)


_P: Final = StopMarker.PLAIN
_S: Final = StopMarker.SHARED
_A: Final = StopMarker.ALTERNATE
_B: Final = StopMarker.BOUNDARY

# ---------------------------------------------------------------------------
# Route 140: Mercier <-> Châteauguay. Published with a single direction
# flag; the two directions overlap on the Châteauguay loop.
# ---------------------------------------------------------------------------
_ROUTE_140: Final[CanonicalRouteSpec] = CanonicalRouteSpec(
    route_id=140,
    directions=(
        CanonicalDirection(
            direction=Direction.NORTH,
            headsign="Châteauguay",
            stops=_entries(
                (79132, _P),
                (79152, _A),
                (79023, _P),
                (79182, _S),
                (79194, _S),
                (79024, _P),
                (79174, _P),
                (79184, _S),
                (79185, _A),
                (79186, _S),
                (79187, _S),
                (79191, _A),
                (79188, _S),
            ),
        ),
        CanonicalDirection(
            direction=Direction.SOUTH,
            headsign="Mercier",
            stops=_entries(
                (79184, _S),
                (79185, _A),
                (79186, _S),
                (79187, _S),
                (79191, _A),
                (79188, _S),
                (79051, _P),
                (79178, _P),
                (79192, _P),
                (79193, _P),
                (79180, _P),
                (79181, _A),
                (79049, _P),
                (79182, _S),
                (79183, _B),
                (79194, _S),
                (79182, _S),
                (79057, _P),
                (79132, _P),
            ),
        ),
    ),
)

ROUTE_SPECS: Final[Mapping[int, CanonicalRouteSpec]] = MappingProxyType(
    {
        _ROUTE_140.route_id: _ROUTE_140,
    }
)


# ---------------------------------------------------------------------------
# TOML loader
# ---------------------------------------------------------------------------


def _parse_enum(enum_cls: type[enum.Enum], raw: Any, what: str, source: str) -> Any:
    try:
        return enum_cls(str(raw).strip().lower())
    except ValueError as exc:
        known = ", ".join(member.value for member in enum_cls)
        raise CanonicalSpecError(
            f"unknown {what} '{raw}' (known: {known})", source=source
        ) from exc


def _parse_direction(raw: Any, route_id: int, source: str) -> CanonicalDirection:
    if not isinstance(raw, Mapping):
        raise CanonicalSpecError(
            f"route {route_id}: direction entry {raw!r} is not a table", source=source
        )
    if "direction" not in raw or "stops" not in raw:
        raise CanonicalSpecError(
            f"route {route_id}: each direction needs 'direction' and 'stops'", source=source
        )
    direction = _parse_enum(Direction, raw["direction"], "direction", source)
    headsign = str(raw.get("headsign", "")).strip()
    if not headsign:
        raise CanonicalSpecError(
            f"route {route_id} direction {direction.label}: missing headsign", source=source
        )
    if not isinstance(raw["stops"], list):
        raise CanonicalSpecError(
            f"route {route_id} direction {direction.label}: 'stops' must be an array",
            source=source,
        )

    entries: list[CanonicalStop] = []
    for item in raw["stops"]:
        if isinstance(item, Mapping):
            stop, marker = item.get("stop"), item.get("marker", StopMarker.PLAIN.value)
        else:
            stop, marker = item, StopMarker.PLAIN.value
        if isinstance(stop, bool) or not isinstance(stop, int):
            raise CanonicalSpecError(
                f"route {route_id} direction {direction.label}: stop reference "
                f"{stop!r} is not an integer",
                source=source,
            )
        entries.append(CanonicalStop(stop, _parse_enum(StopMarker, marker, "marker", source)))

    return CanonicalDirection(direction=direction, headsign=headsign, stops=tuple(entries))


def load_route_specs(
    path: Path,
    *,
    base: Mapping[int, CanonicalRouteSpec] | None = None,
) -> Mapping[int, CanonicalRouteSpec]:
    """Load canonical route specs from a TOML file.

    Routes in the file replace same-numbered routes of the base table.

    Args:
        path: TOML file with a [[routes]] array.
        base: Table to extend. Defaults to ROUTE_SPECS.

    Returns:
        Read-only mapping of route ID to spec.

    Raises:
        CanonicalSpecError: If the file cannot be read or parsed, or if any
            route is structurally invalid.
    """
    source = str(path)
    try:
        with path.open("rb") as fh:
            document = tomllib.load(fh)
    except OSError as exc:
        raise CanonicalSpecError(f"cannot read spec file: {exc}", source=source) from exc
    except tomllib.TOMLDecodeError as exc:
        raise CanonicalSpecError(f"invalid TOML: {exc}", source=source) from exc

    routes = document.get("routes")
    if not isinstance(routes, list):
        raise CanonicalSpecError("expected a [[routes]] array", source=source)

    specs: dict[int, CanonicalRouteSpec] = dict(ROUTE_SPECS if base is None else base)
    loaded: set[int] = set()
    for raw_route in routes:
        if not isinstance(raw_route, Mapping):
            raise CanonicalSpecError(
                f"route entry {raw_route!r} is not a table", source=source
            )
        route_id = raw_route.get("route_id")
        if isinstance(route_id, bool) or not isinstance(route_id, int):
            raise CanonicalSpecError(
                f"route_id {route_id!r} is not an integer", source=source
            )
        if route_id in loaded:
            raise CanonicalSpecError(f"route {route_id} declared twice", source=source)
        raw_directions = raw_route.get("directions", [])
        if not isinstance(raw_directions, list):
            raise CanonicalSpecError(
                f"route {route_id}: 'directions' must be an array of tables", source=source
            )
        directions = tuple(_parse_direction(raw, route_id, source) for raw in raw_directions)
        try:
            spec = CanonicalRouteSpec(route_id=route_id, directions=directions)  # type: ignore[arg-type]
        except CanonicalSpecError as exc:
            raise CanonicalSpecError(exc.detail, source=source) from exc
        specs[route_id] = spec
        loaded.add(route_id)

    logger.info("Loaded %d canonical route spec(s) from %s", len(loaded), path)
    return MappingProxyType(specs)
