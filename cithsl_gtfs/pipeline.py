"""Pipeline orchestrator for the CITHSL GTFS canonicalization run.

Sequences download, load, service filter, canonicalization and export.
The run is fail-fast: the first feed or configuration error stops it and
nothing is written, so the output directory never holds a partial feed.

Usage:
    python -m cithsl_gtfs.pipeline --input input/gtfs.zip --output data/canonical
    python -m cithsl_gtfs.pipeline --download --output data/canonical
    python -m cithsl_gtfs.pipeline --input feed/ --output out/ --spec-file specs.toml

Exit codes:
    0  canonical feed written
    1  configuration error (identifier, canonical spec, headsign table)
    2  input error (download, archive, table, encoding)
"""

from __future__ import annotations

import argparse
import enum
import logging
import sys
import time
from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Final

import httpx

from cithsl_gtfs import labels
from cithsl_gtfs.canonical_specs import ROUTE_SPECS, CanonicalRouteSpec, load_route_specs
from cithsl_gtfs.config import (
    AGENCY,
    HEADSIGN_EQUIVALENCES,
    AgencyConfig,
    DataConfigurationError,
    HeadsignEquivalence,
)
from cithsl_gtfs.download import RECORD_NAME, DownloadError, download_feed
from cithsl_gtfs.export import (
    CanonicalFeed,
    CanonicalRoute,
    CanonicalStopRecord,
    CanonicalTrip,
    CanonicalTripStop,
    DirectionStopList,
    write_canonical_feed,
)
from cithsl_gtfs.feed import Feed, FeedError, GtfsRoute, GtfsStopTime, GtfsTrip, load_feed
from cithsl_gtfs.identifiers import (
    MalformedIdentifierError,
    derive_route_id,
    derive_stop_ids,
    stop_code_or_none,
)
from cithsl_gtfs.services import filter_feed, live_service_ids
from cithsl_gtfs.splitter import (
    OrderedTrip,
    StopVisit,
    merge_direction_stops,
    merge_headsigns,
    order_trip,
)

logger: Final[logging.Logger] = logging.getLogger(__name__)

_DEFAULT_GTFS_DIRECTION: Final[int] = 0


# ---- Enums ------------------------------------------------------------------


class PipelineStage(enum.Enum):
    """Pipeline execution stage identifier."""

    CONFIGURE = "CONFIGURE"
    DOWNLOAD = "DOWNLOAD"
    LOAD = "LOAD"
    FILTER = "FILTER"
    CANONICALIZE = "CANONICALIZE"
    EXPORT = "EXPORT"


class RunStatus(enum.Enum):
    """Outcome of a pipeline run, mapped one-to-one to exit codes."""

    SUCCESS = "SUCCESS"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INPUT_ERROR = "INPUT_ERROR"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES: Final[dict[RunStatus, int]] = {
    RunStatus.SUCCESS: 0,
    RunStatus.CONFIGURATION_ERROR: 1,
    RunStatus.INPUT_ERROR: 2,
}


# ---- Result dataclasses -----------------------------------------------------


@dataclass(frozen=True, slots=True)
class PipelineOptions:
    """Inputs of one run.

    Attributes:
        output_dir: Directory receiving the canonical CSV files.
        input_path: Feed directory or archive. Ignored when download is set.
        download: Fetch the archive from the agency URL first.
        spec_file: Optional TOML file extending the canonical spec table.
        service_date: Reference date for the service filter.
        agency: Agency constants.
    """

    output_dir: Path
    input_path: Path | None = None
    download: bool = False
    spec_file: Path | None = None
    service_date: date | None = None
    agency: AgencyConfig = AGENCY


@dataclass(frozen=True, slots=True)
class PipelineResult:
    """Aggregate outcome of a pipeline run.

    Attributes:
        status: Final outcome.
        stage: Last stage attempted.
        elapsed_seconds: Wall-clock time of the run.
        route_count: Routes written.
        stop_count: Stops written.
        trip_count: Trips written.
        trip_stop_count: Trip stop rows written.
        written: Output files, by name.
        error_message: Description of the failure, if any.
    """

    status: RunStatus
    stage: PipelineStage
    elapsed_seconds: float
    route_count: int = 0
    stop_count: int = 0
    trip_count: int = 0
    trip_stop_count: int = 0
    written: tuple[Path, ...] = ()
    error_message: str = ""

    @property
    def success(self) -> bool:
        return self.status is RunStatus.SUCCESS


# ---- Canonicalization ------------------------------------------------------


def _derive_routes(
    routes: Sequence[GtfsRoute], agency: AgencyConfig
) -> tuple[dict[str, int], list[CanonicalRoute]]:
    route_ids: dict[str, int] = {}
    owners: dict[int, str] = {}
    canonical: list[CanonicalRoute] = []
    for route in routes:
        route_int = derive_route_id(route.short_name)
        previous = owners.get(route_int)
        if previous is not None:
            raise MalformedIdentifierError(
                "route", route.short_name, f"derived ID {route_int} collides with '{previous}'"
            )
        owners[route_int] = route.short_name
        route_ids[route.route_id] = route_int
        canonical.append(
            CanonicalRoute(
                route_id=route_int,
                short_name=route.short_name,
                long_name=labels.normalize(labels.LabelKind.ROUTE_LONG_NAME, route.long_name),
                route_type=agency.route_type,
                color=agency.color,
            )
        )
    return route_ids, canonical


def _visits(trip: GtfsTrip, rows: Sequence[GtfsStopTime], stop_ids: Mapping[str, int]) -> list[StopVisit]:
    visits: list[StopVisit] = []
    for row in rows:
        stop_int = stop_ids.get(row.stop_id)
        if stop_int is None:
            raise FeedError(f"Trip '{trip.trip_id}' references unknown stop '{row.stop_id}'")
        visits.append(StopVisit(stop_int, row.stop_sequence, row.arrival_seconds))
    return visits


def _merge_route_headsign(
    route_id: int,
    headsigns: Sequence[str],
    equivalences: Mapping[int, Sequence[HeadsignEquivalence]],
) -> str:
    merged = ""
    for headsign in headsigns:
        if not headsign:
            continue
        merged = headsign if not merged else merge_headsigns(route_id, merged, headsign, equivalences)
    return merged


def _union_stop_order(sequences: Sequence[Sequence[int]]) -> tuple[int, ...]:
    """Stop list of a direction without a canonical spec.

    Starts from the longest trip (ties on first trip) and appends stops of
    the other trips in first-seen order.
    """
    if not sequences:
        return ()
    longest = max(sequences, key=len)
    result = list(longest)
    seen = set(result)
    for sequence in sequences:
        for stop_id in sequence:
            if stop_id not in seen:
                seen.add(stop_id)
                result.append(stop_id)
    return tuple(result)


def _canonicalize_spec_route(
    spec: CanonicalRouteSpec,
    trips: Sequence[GtfsTrip],
    visits_by_trip: Mapping[str, list[StopVisit]],
) -> tuple[list[CanonicalTrip], list[DirectionStopList]]:
    ordered_by_direction: dict[str, list[OrderedTrip]] = defaultdict(list)
    canonical_trips: list[CanonicalTrip] = []
    for trip in trips:
        ordered = order_trip(spec, visits_by_trip[trip.trip_id], trip_id=trip.trip_id)
        ordered_by_direction[ordered.direction.label].append(ordered)
        canonical_trips.append(
            CanonicalTrip(
                trip_id=trip.trip_id,
                route_id=spec.route_id,
                service_id=trip.service_id,
                direction=ordered.direction.label,
                headsign=ordered.headsign,
                stops=tuple(
                    CanonicalTripStop(row.stop_id, row.visit.arrival_seconds)
                    for row in ordered.stop_times
                ),
            )
        )

    directions: list[DirectionStopList] = []
    for canonical_direction in spec.directions:
        label = canonical_direction.direction.label
        ordered_trips = ordered_by_direction.get(label, [])
        if not ordered_trips:
            logger.warning("Route %d: no trip runs direction %s", spec.route_id, label)
            continue
        directions.append(
            DirectionStopList(
                route_id=spec.route_id,
                direction=label,
                headsign=canonical_direction.headsign,
                stop_ids=tuple(merge_direction_stops(ordered_trips)),
            )
        )
    return canonical_trips, directions


def _canonicalize_flagged_route(
    route_id: int,
    fallback_headsign: str,
    trips: Sequence[GtfsTrip],
    visits_by_trip: Mapping[str, list[StopVisit]],
    equivalences: Mapping[int, Sequence[HeadsignEquivalence]],
) -> tuple[list[CanonicalTrip], list[DirectionStopList]]:
    by_direction: dict[str, list[GtfsTrip]] = defaultdict(list)
    for trip in trips:
        flag = trip.direction_id if trip.direction_id is not None else _DEFAULT_GTFS_DIRECTION
        by_direction[str(flag)].append(trip)

    canonical_trips: list[CanonicalTrip] = []
    directions: list[DirectionStopList] = []
    for label in sorted(by_direction):
        direction_trips = by_direction[label]
        headsign = _merge_route_headsign(
            route_id,
            [labels.normalize(labels.LabelKind.TRIP_HEADSIGN, t.headsign) for t in direction_trips],
            equivalences,
        ) or fallback_headsign

        sequences: list[tuple[int, ...]] = []
        for trip in direction_trips:
            visits = sorted(visits_by_trip[trip.trip_id], key=lambda v: v.stop_sequence)
            sequences.append(tuple(v.stop_id for v in visits))
            canonical_trips.append(
                CanonicalTrip(
                    trip_id=trip.trip_id,
                    route_id=route_id,
                    service_id=trip.service_id,
                    direction=label,
                    headsign=headsign,
                    stops=tuple(CanonicalTripStop(v.stop_id, v.arrival_seconds) for v in visits),
                )
            )
        directions.append(
            DirectionStopList(
                route_id=route_id,
                direction=label,
                headsign=headsign,
                stop_ids=_union_stop_order(sequences),
            )
        )
    return canonical_trips, directions


def canonicalize_feed(
    feed: Feed,
    *,
    route_specs: Mapping[int, CanonicalRouteSpec] = ROUTE_SPECS,
    equivalences: Mapping[int, Sequence[HeadsignEquivalence]] = HEADSIGN_EQUIVALENCES,
    agency: AgencyConfig = AGENCY,
) -> CanonicalFeed:
    """Turn a loaded feed into its canonical form.

    Routes with a canonical spec are split with the sequence splitter; the
    other routes keep their GTFS direction flag and merge headsigns per
    direction.

    Args:
        feed: Loaded (and usually service-filtered) feed.
        route_specs: Canonical spec table keyed by derived route ID.
        equivalences: Headsign equivalence table keyed by derived route ID.
        agency: Agency constants emitted with each route.

    Returns:
        The canonical feed.

    Raises:
        MalformedIdentifierError: On an underivable or colliding identifier.
        StaleCanonicalSpecError: On a trip no direction explains.
        UnexpectedHeadsignMergeError: On unknown headsign variants.
        FeedError: On a trip referencing an unknown route or stop.
    """
    stop_ids = derive_stop_ids(feed.stops)
    route_ids, routes = _derive_routes(feed.routes, agency)
    long_names = {route.route_id: route.long_name for route in routes}

    stops = [
        CanonicalStopRecord(
            stop_id=stop_ids[stop.stop_id],
            stop_code=stop_code_or_none(stop.stop_code),
            name=labels.normalize(labels.LabelKind.STOP_NAME, stop.name),
        )
        for stop in feed.stops
    ]

    rows_by_trip = feed.stop_times_by_trip()
    trips_by_route: dict[int, list[GtfsTrip]] = defaultdict(list)
    visits_by_trip: dict[str, list[StopVisit]] = {}
    for trip in feed.trips:
        route_int = route_ids.get(trip.route_id)
        if route_int is None:
            raise FeedError(f"Trip '{trip.trip_id}' references unknown route '{trip.route_id}'")
        rows = rows_by_trip.get(trip.trip_id, [])
        if not rows:
            logger.debug("Trip %s has no stop times; skipped", trip.trip_id)
            continue
        visits_by_trip[trip.trip_id] = _visits(trip, rows, stop_ids)
        trips_by_route[route_int].append(trip)

    trips: list[CanonicalTrip] = []
    directions: list[DirectionStopList] = []
    for route_int in sorted(trips_by_route):
        route_trips = sorted(trips_by_route[route_int], key=lambda t: t.trip_id)
        spec = route_specs.get(route_int)
        if spec is not None:
            route_trip_rows, route_directions = _canonicalize_spec_route(
                spec, route_trips, visits_by_trip
            )
        else:
            route_trip_rows, route_directions = _canonicalize_flagged_route(
                route_int, long_names[route_int], route_trips, visits_by_trip, equivalences
            )
        trips.extend(route_trip_rows)
        directions.extend(route_directions)
        logger.debug(
            "Route %d: %d trip(s), %d direction(s)%s",
            route_int,
            len(route_trip_rows),
            len(route_directions),
            " [canonical spec]" if spec is not None else "",
        )

    canonical = CanonicalFeed(
        routes=tuple(sorted(routes, key=lambda r: r.route_id)),
        stops=tuple(sorted(stops, key=lambda s: s.stop_id)),
        trips=tuple(trips),
        directions=tuple(directions),
    )
    logger.info(
        "Canonicalized %d routes, %d stops, %d trips",
        len(canonical.routes),
        len(canonical.stops),
        len(canonical.trips),
    )
    return canonical


# ---- Orchestration ----------------------------------------------------------


def _acquire_feed(options: PipelineOptions) -> Path:
    if not options.download:
        if options.input_path is None:
            return options.agency.default_input
        return options.input_path
    dest = options.input_path or options.agency.default_input
    download_feed(options.agency.feed_url, dest, dest.parent / RECORD_NAME)
    return dest


def run_pipeline(options: PipelineOptions) -> PipelineResult:
    """Execute one canonicalization run.

    Args:
        options: Run inputs.

    Returns:
        PipelineResult. Errors are captured into the result; nothing is
        written unless every stage before export succeeds.
    """
    start = time.monotonic()
    stage = PipelineStage.CONFIGURE

    def _failed(status: RunStatus, exc: Exception) -> PipelineResult:
        logger.error("FAILED [%s] %s", stage.value, exc)
        return PipelineResult(
            status=status,
            stage=stage,
            elapsed_seconds=round(time.monotonic() - start, 3),
            error_message=str(exc),
        )

    try:
        route_specs: Mapping[int, CanonicalRouteSpec] = ROUTE_SPECS
        if options.spec_file is not None:
            route_specs = load_route_specs(options.spec_file)

        stage = PipelineStage.DOWNLOAD if options.download else PipelineStage.LOAD
        logger.info("Stage: %s", stage.value)
        source = _acquire_feed(options)

        stage = PipelineStage.LOAD
        logger.info("Stage: LOAD (%s)", source)
        feed = load_feed(source)

        stage = PipelineStage.FILTER
        if feed.calendars or feed.calendar_dates:
            service_date = options.service_date or date.today()
            logger.info("Stage: FILTER (service date %s)", service_date.isoformat())
            live = live_service_ids(feed.calendars, feed.calendar_dates, service_date)
            feed = filter_feed(feed, live)
        else:
            logger.info("Stage: FILTER skipped (feed has no calendar tables)")

        stage = PipelineStage.CANONICALIZE
        logger.info("Stage: CANONICALIZE")
        canonical = canonicalize_feed(feed, route_specs=route_specs, agency=options.agency)

        stage = PipelineStage.EXPORT
        logger.info("Stage: EXPORT")
        written = write_canonical_feed(canonical, options.output_dir)
    except DataConfigurationError as exc:
        return _failed(RunStatus.CONFIGURATION_ERROR, exc)
    except (FeedError, DownloadError, httpx.HTTPError, OSError) as exc:
        return _failed(RunStatus.INPUT_ERROR, exc)

    elapsed = time.monotonic() - start
    logger.info("SUCCESS in %.1fs", elapsed)
    return PipelineResult(
        status=RunStatus.SUCCESS,
        stage=stage,
        elapsed_seconds=round(elapsed, 3),
        route_count=len(canonical.routes),
        stop_count=len(canonical.stops),
        trip_count=len(canonical.trips),
        trip_stop_count=canonical.trip_stop_count,
        written=tuple(written.values()),
    )


# ---- CLI ---------------------------------------------------------------------


def _parse_service_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD") from exc


def _build_arg_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the canonicalization CLI."""
    parser = argparse.ArgumentParser(
        description=f"{AGENCY.name} GTFS canonicalization pipeline.",
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--input",
        type=Path,
        default=None,
        help=f"Feed directory or ZIP archive (default: {AGENCY.default_input}).",
    )
    source.add_argument(
        "--download",
        action="store_true",
        help="Download the agency archive before processing.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=AGENCY.default_output,
        help=f"Output directory (default: {AGENCY.default_output}).",
    )
    parser.add_argument(
        "--spec-file",
        type=Path,
        default=None,
        help="TOML file with additional canonical route specs.",
    )
    parser.add_argument(
        "--service-date",
        type=_parse_service_date,
        default=None,
        help="Reference date for the service filter, YYYY-MM-DD (default: today).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug-level logging.",
    )
    return parser


def _print_summary(result: PipelineResult) -> None:
    """Print structured execution summary to stdout."""
    print(f"\n{'=' * 60}")
    print("Canonicalization Summary")
    print(f"{'=' * 60}")
    print(f"{'Routes':<20} {result.route_count}")
    print(f"{'Stops':<20} {result.stop_count}")
    print(f"{'Trips':<20} {result.trip_count}")
    print(f"{'Trip stops':<20} {result.trip_stop_count}")
    print("-" * 60)
    print(
        f"Stage: {result.stage.value}  "
        f"Elapsed: {result.elapsed_seconds:.1f}s  "
        f"Result: {result.status.value}"
    )
    if result.error_message:
        print(f"Error: {result.error_message}")
    print(f"{'=' * 60}\n")


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for the canonicalization pipeline.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code: 0 on success, 1 on configuration error, 2 on input error.
    """
    parser = _build_arg_parser()
    args: argparse.Namespace = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stderr,
    )

    result = run_pipeline(
        PipelineOptions(
            output_dir=args.output,
            input_path=args.input,
            download=args.download,
            spec_file=args.spec_file,
            service_date=args.service_date,
        )
    )

    _print_summary(result)
    return result.status.exit_code


if __name__ == "__main__":
    sys.exit(main())
