"""Canonical sequence trip splitter and orderer.

Maps every trip of a route that has a CanonicalRouteSpec onto one of its two
named directions, then orders the trip's stop-time rows along that
direction's canonical list.

Classification scores the trip's visit sequence against each direction by
longest common subsequence, counting only plain and boundary entries. Shared
stops carry no weight and alternate stops never penalize. A trip that no
direction explains well enough aborts the run with StaleCanonicalSpecError:
the canonical table must be fixed by hand.

Ordering maps each row to a reference position with a forward cursor, so the
k-th visit of a loop stop lands on the k-th listed occurrence. Rows whose
stop is not in the chosen direction stay right after the preceding matched
row.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Final

from cithsl_gtfs import labels
from cithsl_gtfs.canonical_specs import (
    CanonicalDirection,
    CanonicalRouteSpec,
    Direction,
    StopMarker,
)
from cithsl_gtfs.config import DataConfigurationError, HeadsignEquivalence

logger: Final[logging.Logger] = logging.getLogger(__name__)

# Anchor of extra rows that precede every matched row
_NO_ANCHOR: Final[int] = -1


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class StaleCanonicalSpecError(DataConfigurationError):
    """Raised when a trip cannot be confidently assigned to a direction.

    Attributes:
        route_id: Route whose canonical spec no longer fits the feed.
        trip_id: Offending trip.
        scores: Alignment score per direction.
        discriminating_visits: Visits on plain/boundary stops of either
            direction.
    """

    def __init__(
        self,
        message: str,
        *,
        route_id: int,
        trip_id: str,
        scores: tuple[AlignmentScore, ...] = (),
        discriminating_visits: int = 0,
    ) -> None:
        self.route_id: Final[int] = route_id
        self.trip_id: Final[str] = trip_id
        self.scores: Final[tuple[AlignmentScore, ...]] = scores
        self.discriminating_visits: Final[int] = discriminating_visits
        summary = ", ".join(f"{s.direction.label} {s.score}/{s.possible}" for s in scores)
        suffix = f" (scores: {summary})" if summary else ""
        super().__init__(f"Route {route_id} trip '{trip_id}': {message}{suffix}")


class UnexpectedHeadsignMergeError(DataConfigurationError):
    """Raised when two headsigns to merge are not in a known equivalence set.

    Attributes:
        route_id: Route being merged.
        headsigns: The two disagreeing labels.
    """

    def __init__(self, route_id: int, first: str, second: str) -> None:
        self.route_id: Final[int] = route_id
        self.headsigns: Final[tuple[str, str]] = (first, second)
        super().__init__(
            f"Route {route_id}: cannot merge headsigns '{first}' and '{second}'; "
            "extend the headsign equivalence table"
        )


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AlignmentScore:
    """LCS score of one trip against one direction.

    Attributes:
        direction: Direction scored.
        score: Number of plain/boundary entries aligned in order.
        possible: Number of plain/boundary entries in the direction.
    """

    direction: Direction
    score: int
    possible: int


@dataclass(frozen=True, slots=True)
class TripClassification:
    """Outcome of classifying one trip.

    Attributes:
        direction: Winning canonical direction.
        scores: Score for each direction, in spec order.
        discriminating_visits: Visits on plain/boundary stops of either
            direction; the threshold denominator.
        tie_broken: True when the scores were equal and the first-stop rule
            decided.
    """

    direction: CanonicalDirection
    scores: tuple[AlignmentScore, ...]
    discriminating_visits: int
    tie_broken: bool = False

    @property
    def score(self) -> int:
        """Return the winning score."""
        return max(s.score for s in self.scores)


@dataclass(frozen=True, slots=True)
class StopVisit:
    """One stop-time row of a trip, with its stop identity already derived.

    Attributes:
        stop_id: Derived integer stop ID.
        stop_sequence: Feed stop_sequence.
        arrival_seconds: Arrival offset from service-day midnight, if known.
    """

    stop_id: int
    stop_sequence: int
    arrival_seconds: int | None = None


@dataclass(frozen=True, slots=True)
class OrderedStopTime:
    """A stop-time row placed along the chosen direction.

    Attributes:
        visit: The source row.
        position: Matched reference position, or None for an extra stop.
        anchor: Position used for ordering. Equals position for matched
            rows; for extra rows, the position of the preceding matched row.
        original_index: Index of the row in feed order.
    """

    visit: StopVisit
    position: int | None
    anchor: int
    original_index: int

    @property
    def stop_id(self) -> int:
        return self.visit.stop_id

    @property
    def is_extra(self) -> bool:
        return self.position is None

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return (self.anchor, int(self.is_extra), self.original_index)


@dataclass(frozen=True, slots=True)
class OrderedTrip:
    """A classified trip with its rows in canonical order.

    Attributes:
        trip_id: Feed trip_id.
        route_id: Derived route ID.
        classification: Direction decision and scores.
        stop_times: Rows sorted by sort key.
    """

    trip_id: str
    route_id: int
    classification: TripClassification
    stop_times: tuple[OrderedStopTime, ...]

    @property
    def direction(self) -> Direction:
        return self.classification.direction.direction

    @property
    def headsign(self) -> str:
        return self.classification.direction.headsign

    @property
    def stop_ids(self) -> tuple[int, ...]:
        return tuple(row.stop_id for row in self.stop_times)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def collapse_adjacent(stop_ids: Iterable[int]) -> list[int]:
    """Drop adjacent duplicate visits; true loop repeats are kept."""
    visits: list[int] = []
    for stop_id in stop_ids:
        if not visits or visits[-1] != stop_id:
            visits.append(stop_id)
    return visits


def lcs_length(left: Sequence[int], right: Sequence[int]) -> int:
    """Return the longest common subsequence length of two sequences."""
    if not left or not right:
        return 0
    previous = [0] * (len(right) + 1)
    for item in left:
        current = [0] * (len(right) + 1)
        for j, other in enumerate(right, start=1):
            if item == other:
                current[j] = previous[j - 1] + 1
            else:
                current[j] = max(previous[j], current[j - 1])
        previous = current
    return previous[-1]


def classify_trip(
    spec: CanonicalRouteSpec,
    stop_ids: Sequence[int],
    *,
    trip_id: str = "",
) -> TripClassification:
    """Assign a trip to one direction of its route's canonical spec.

    Args:
        spec: Canonical spec of the trip's route.
        stop_ids: Derived stop IDs of the trip, in feed order.
        trip_id: Feed trip_id, for error reporting.

    Returns:
        The winning direction with per-direction scores.

    Raises:
        StaleCanonicalSpecError: If the trip visits no discriminating stop,
            if the best score does not exceed half of the discriminating
            visits, or if the scores tie and the first-stop rule cannot
            break the tie.
    """
    visits = collapse_adjacent(stop_ids)
    discriminating = spec.discriminating_stop_ids
    discriminating_visits = sum(1 for stop_id in visits if stop_id in discriminating)

    scores = tuple(
        AlignmentScore(
            direction=direction.direction,
            score=lcs_length(visits, direction.scoring_stops),
            possible=len(direction.scoring_stops),
        )
        for direction in spec.directions
    )
    best = max(s.score for s in scores)

    if discriminating_visits == 0 or best * 2 <= discriminating_visits:
        raise StaleCanonicalSpecError(
            f"best alignment {best} does not cover more than half of "
            f"{discriminating_visits} discriminating visit(s)",
            route_id=spec.route_id,
            trip_id=trip_id,
            scores=scores,
            discriminating_visits=discriminating_visits,
        )

    leaders = [d for d, s in zip(spec.directions, scores) if s.score == best]
    tie_broken = False
    if len(leaders) > 1:
        first_stop = visits[0]
        leaders = [d for d in leaders if d.first_non_shared_stop == first_stop]
        if len(leaders) != 1:
            raise StaleCanonicalSpecError(
                f"directions tie at score {best} and first stop {first_stop} "
                "does not break the tie",
                route_id=spec.route_id,
                trip_id=trip_id,
                scores=scores,
                discriminating_visits=discriminating_visits,
            )
        tie_broken = True

    winner = leaders[0]
    logger.debug(
        "Route %d trip %s -> %s (scores %s, %d discriminating)",
        spec.route_id,
        trip_id,
        winner.direction.label,
        ", ".join(f"{s.direction.label}={s.score}" for s in scores),
        discriminating_visits,
    )
    return TripClassification(
        direction=winner,
        scores=scores,
        discriminating_visits=discriminating_visits,
        tie_broken=tie_broken,
    )


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


def _match_positions(direction: CanonicalDirection, visits: Sequence[StopVisit]) -> list[int | None]:
    """Map each row to a reference position, or None for an extra stop.

    The next unused occurrence after the cursor is preferred, then any
    unused occurrence. A matched boundary entry becomes a hard floor.
    """
    used: set[int] = set()
    cursor = _NO_ANCHOR
    floor = _NO_ANCHOR
    matched: list[int | None] = []

    for i, visit in enumerate(visits):
        # second row of an adjacent repeat is the same visit
        if i > 0 and visit.stop_id == visits[i - 1].stop_id and matched[-1] is not None:
            matched.append(matched[-1])
            continue

        candidates = [p for p in direction.positions_of(visit.stop_id) if p not in used and p > floor]
        position = next((p for p in candidates if p > cursor), None)
        if position is None and candidates:
            position = candidates[0]

        if position is not None:
            used.add(position)
            cursor = position
            if direction.stops[position].marker is StopMarker.BOUNDARY:
                floor = max(floor, position)
        matched.append(position)
    return matched


def order_trip(
    spec: CanonicalRouteSpec,
    stop_times: Iterable[StopVisit],
    *,
    trip_id: str = "",
) -> OrderedTrip:
    """Classify a trip and order its rows along the winning direction.

    Args:
        spec: Canonical spec of the trip's route.
        stop_times: The trip's rows, in any order; feed order is restored
            from stop_sequence.
        trip_id: Feed trip_id.

    Returns:
        The ordered trip.

    Raises:
        StaleCanonicalSpecError: If classification fails.
    """
    visits = sorted(stop_times, key=lambda v: v.stop_sequence)
    classification = classify_trip(spec, [v.stop_id for v in visits], trip_id=trip_id)
    positions = _match_positions(classification.direction, visits)

    rows: list[OrderedStopTime] = []
    anchor = _NO_ANCHOR
    for index, (visit, position) in enumerate(zip(visits, positions)):
        if position is not None:
            anchor = position
        rows.append(
            OrderedStopTime(visit=visit, position=position, anchor=anchor, original_index=index)
        )

    extras = sum(1 for row in rows if row.is_extra)
    if extras:
        logger.debug("Route %d trip %s: %d stop(s) outside canonical list", spec.route_id, trip_id, extras)

    return OrderedTrip(
        trip_id=trip_id,
        route_id=spec.route_id,
        classification=classification,
        stop_times=tuple(sorted(rows, key=lambda row: row.sort_key)),
    )


def compare_early(a: OrderedStopTime, b: OrderedStopTime) -> int:
    """Direction-early comparator for rows of the same direction.

    Orders by reference position (anchor for extra rows), extra rows after
    the matched row they follow, and falls back to arrival offset when both
    rows sit at the same place.

    Returns:
        Negative if a comes first, positive if b does, 0 if undecided.
    """
    if a.anchor != b.anchor:
        return -1 if a.anchor < b.anchor else 1
    if a.is_extra != b.is_extra:
        return 1 if a.is_extra else -1
    arrival_a, arrival_b = a.visit.arrival_seconds, b.visit.arrival_seconds
    if arrival_a is None or arrival_b is None or arrival_a == arrival_b:
        return 0
    return -1 if arrival_a < arrival_b else 1


def merge_direction_stops(trips: Iterable[OrderedTrip]) -> list[int]:
    """Build the rider-facing stop list of one direction from its trips.

    Matched rows are keyed by reference position, so a loop stop appears once
    per listed occurrence. Extra rows appear once per anchor.
    """
    rows = [row for trip in trips for row in trip.stop_times]
    rows.sort(key=functools.cmp_to_key(compare_early))

    seen: set[tuple[int, int, bool]] = set()
    stop_ids: list[int] = []
    for row in rows:
        key = (row.anchor, row.stop_id, row.is_extra)
        if key in seen:
            continue
        seen.add(key)
        stop_ids.append(row.stop_id)
    return stop_ids


# ---------------------------------------------------------------------------
# Headsign merge
# ---------------------------------------------------------------------------


def merge_headsigns(
    route_id: int,
    first: str,
    second: str,
    equivalences: Iterable[HeadsignEquivalence] | Mapping[int, Iterable[HeadsignEquivalence]],
) -> str:
    """Unify two headsigns displayed together for one direction.

    Args:
        route_id: Derived route ID.
        first: Headsign of the first trip.
        second: Headsign of the second trip.
        equivalences: Equivalence sets of the route, or the whole table
            keyed by route ID.

    Returns:
        The shared headsign (normalized when only the raw text differs), or
        the canonical label of the equivalence set containing both.

    Raises:
        UnexpectedHeadsignMergeError: If the headsigns differ and no
            equivalence set of the route contains both.
    """
    if first == second:
        return first

    if isinstance(equivalences, Mapping):
        candidates: Iterable[HeadsignEquivalence] = equivalences.get(route_id, ())
    else:
        candidates = equivalences

    kind = labels.LabelKind.TRIP_HEADSIGN
    wanted = {labels.normalize(kind, first), labels.normalize(kind, second)}
    if len(wanted) == 1:
        return wanted.pop()
    for equivalence in candidates:
        known = {labels.normalize(kind, label) for label in equivalence.labels}
        if wanted <= known:
            logger.debug(
                "Route %d: merged headsigns '%s' and '%s' into '%s'",
                route_id,
                first,
                second,
                equivalence.canonical,
            )
            return equivalence.canonical

    raise UnexpectedHeadsignMergeError(route_id, first, second)
