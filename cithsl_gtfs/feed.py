"""GTFS feed object model and loader.

Loads the CITHSL static GTFS feed from a directory of .txt tables or from
the published ZIP archive into immutable row dataclasses. Loading happens
once, before any canonicalization; every later stage receives the Feed
explicitly.

Steps:
1. ZIP archives are integrity-tested and their .txt members extracted flat.
2. Each table is transcoded to UTF-8 with any BOM stripped
   (charset-normalizer).
3. Tables are read with pandas as strings only, so identifiers such as
   stop_code "0" and zero-padded dates survive untouched.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import zipfile
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path, PurePosixPath
from typing import Final

import pandas as pd
from charset_normalizer import from_path

logger: Final[logging.Logger] = logging.getLogger(__name__)

_ENCODING_CONFIDENCE_THRESHOLD: Final[float] = 0.7

# BOM byte sequences to strip from file start
_UTF8_BOM: Final[bytes] = b"\xef\xbb\xbf"
_UTF16_LE_BOM: Final[bytes] = b"\xff\xfe"
_UTF16_BE_BOM: Final[bytes] = b"\xfe\xff"

_WEEKDAY_COLUMNS: Final[tuple[str, ...]] = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

# table name -> columns that must be present
REQUIRED_TABLES: Final[dict[str, tuple[str, ...]]] = {
    "routes": ("route_id", "route_short_name", "route_long_name"),
    "trips": ("route_id", "service_id", "trip_id"),
    "stops": ("stop_id", "stop_name"),
    "stop_times": ("trip_id", "stop_id", "stop_sequence"),
}

OPTIONAL_TABLES: Final[dict[str, tuple[str, ...]]] = {
    "calendar": ("service_id", *_WEEKDAY_COLUMNS, "start_date", "end_date"),
    "calendar_dates": ("service_id", "date", "exception_type"),
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class FeedError(Exception):
    """Raised when the feed cannot be read or is missing required data.

    Attributes:
        path: File or archive involved, if applicable.
    """

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        self.path: Final[Path | None] = path
        super().__init__(message)


class EncodingError(FeedError):
    """Raised when encoding detection confidence is below threshold."""


# ---------------------------------------------------------------------------
# Object model
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class GtfsRoute:
    """A routes.txt row.

    Attributes:
        route_id: Feed route_id (opaque, unstable between revisions).
        short_name: Published route number ("140", "T12").
        long_name: Raw long name.
    """

    route_id: str
    short_name: str
    long_name: str


@dataclass(frozen=True, slots=True)
class GtfsStop:
    """A stops.txt row.

    Attributes:
        stop_id: Feed stop_id, e.g. "MER79132A".
        stop_code: Rider-facing code; "" or "0" when absent.
        name: Raw stop name.
    """

    stop_id: str
    stop_code: str
    name: str


@dataclass(frozen=True, slots=True)
class GtfsTrip:
    """A trips.txt row.

    Attributes:
        trip_id: Feed trip_id.
        route_id: Feed route_id of the owning route.
        service_id: Calendar service the trip runs on.
        headsign: Raw headsign; may be empty.
        direction_id: GTFS direction flag (0/1), None when missing.
    """

    trip_id: str
    route_id: str
    service_id: str
    headsign: str
    direction_id: int | None


@dataclass(frozen=True, slots=True)
class GtfsStopTime:
    """A stop_times.txt row.

    Attributes:
        trip_id: Owning trip.
        stop_id: Feed stop_id visited.
        stop_sequence: Order within the trip as published.
        arrival_seconds: Arrival offset from service-day midnight; hours may
            exceed 24. None when the row has no time.
        departure_seconds: Departure offset, same convention.
    """

    trip_id: str
    stop_id: str
    stop_sequence: int
    arrival_seconds: int | None
    departure_seconds: int | None


@dataclass(frozen=True, slots=True)
class GtfsCalendar:
    """A calendar.txt row.

    Attributes:
        service_id: Service identifier.
        weekdays: Monday..Sunday service flags.
        start_date: First service date.
        end_date: Last service date (inclusive).
    """

    service_id: str
    weekdays: tuple[bool, bool, bool, bool, bool, bool, bool]
    start_date: date
    end_date: date

    @property
    def has_any_weekday(self) -> bool:
        return any(self.weekdays)


@dataclass(frozen=True, slots=True)
class GtfsCalendarDate:
    """A calendar_dates.txt row.

    Attributes:
        service_id: Service identifier.
        date: Exception date.
        exception_type: 1 = service added, 2 = service removed.
    """

    service_id: str
    date: date
    exception_type: int


@dataclass(frozen=True, slots=True)
class Feed:
    """The whole static feed, one tuple per table."""

    routes: tuple[GtfsRoute, ...]
    stops: tuple[GtfsStop, ...]
    trips: tuple[GtfsTrip, ...]
    stop_times: tuple[GtfsStopTime, ...]
    calendars: tuple[GtfsCalendar, ...] = ()
    calendar_dates: tuple[GtfsCalendarDate, ...] = ()

    def stop_times_by_trip(self) -> dict[str, list[GtfsStopTime]]:
        """Group stop-time rows by trip, each group sorted by stop_sequence."""
        grouped: dict[str, list[GtfsStopTime]] = defaultdict(list)
        for row in self.stop_times:
            grouped[row.trip_id].append(row)
        for rows in grouped.values():
            rows.sort(key=lambda r: r.stop_sequence)
        return dict(grouped)


# ---------------------------------------------------------------------------
# Field parsing
# ---------------------------------------------------------------------------


def parse_gtfs_time(value: str) -> int | None:
    """Convert HH:MM:SS (hours may exceed 24) to seconds past midnight.

    Returns:
        Seconds, or None for an empty value.

    Raises:
        FeedError: If the value is not a valid GTFS time.
    """
    text = value.strip()
    if not text:
        return None
    parts = text.split(":")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise FeedError(f"Invalid GTFS time '{value}'")
    hours, minutes, seconds = (int(p) for p in parts)
    if minutes > 59 or seconds > 59:
        raise FeedError(f"Invalid GTFS time '{value}'")
    return hours * 3600 + minutes * 60 + seconds


def parse_gtfs_date(value: str) -> date:
    """Convert a YYYYMMDD GTFS date.

    Raises:
        FeedError: If the value is not a valid date.
    """
    try:
        return datetime.strptime(value.strip(), "%Y%m%d").date()
    except ValueError as exc:
        raise FeedError(f"Invalid GTFS date '{value}'") from exc


def _parse_int(value: str, field: str, table: str) -> int:
    try:
        return int(value.strip())
    except ValueError as exc:
        raise FeedError(f"{table}: invalid integer '{value}' in column '{field}'") from exc


def _parse_flag(value: str) -> bool:
    return value.strip() == "1"


# ---------------------------------------------------------------------------
# Encoding normalization
# ---------------------------------------------------------------------------


def _strip_bom(data: bytes) -> tuple[bytes, bool]:
    for bom in (_UTF8_BOM, _UTF16_LE_BOM, _UTF16_BE_BOM):
        if data.startswith(bom):
            return data[len(bom) :], True
    return data, False


def normalize_encoding(input_path: Path, output_path: Path) -> str:
    """Detect a table's encoding and write it to output_path as BOM-less UTF-8.

    Args:
        input_path: Source .txt table.
        output_path: Destination; may equal input_path.

    Returns:
        The detected encoding name.

    Raises:
        EncodingError: If detection fails or confidence is below 0.7.
    """
    raw_bytes = input_path.read_bytes()
    if not raw_bytes:
        output_path.write_bytes(b"")
        return "ascii"

    detection = from_path(input_path)
    best = detection.best()
    if best is None:
        raise EncodingError(
            f"Cannot detect encoding for '{input_path}': no candidates returned",
            path=input_path,
        )

    detected_encoding = str(best.encoding)
    # charset-normalizer uses chaos (0=perfect). Invert to confidence.
    confidence = 1.0 - best.chaos
    if confidence < _ENCODING_CONFIDENCE_THRESHOLD:
        top_candidates = [f"{r.encoding} ({1.0 - r.chaos:.2f})" for r in list(detection)[:3]]
        raise EncodingError(
            f"Low confidence ({confidence:.2f}) detecting encoding for "
            f"'{input_path}'. Top candidates: {', '.join(top_candidates)}",
            path=input_path,
        )

    is_utf16 = raw_bytes.startswith((_UTF16_LE_BOM, _UTF16_BE_BOM))
    if is_utf16:
        # the BOM selects the byte order; let the codec consume it
        text = raw_bytes.decode("utf-16")
        had_bom = True
    else:
        body, had_bom = _strip_bom(raw_bytes)
        text = body.decode(detected_encoding)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(text, encoding="utf-8")
    logger.debug(
        "Normalized %s: %s (%.2f) -> UTF-8%s",
        input_path.name,
        detected_encoding,
        confidence,
        " [BOM stripped]" if had_bom else "",
    )
    return detected_encoding


# ---------------------------------------------------------------------------
# Archive extraction
# ---------------------------------------------------------------------------


def extract_feed_archive(zip_path: Path, output_dir: Path) -> list[Path]:
    """Extract the .txt tables of a GTFS archive into a flat directory.

    Raises:
        FeedError: If the archive is unreadable or corrupt.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    extracted: list[Path] = []
    try:
        with zipfile.ZipFile(zip_path, "r") as zf:
            corrupt_member = zf.testzip()
            if corrupt_member is not None:
                raise FeedError(
                    f"Corrupt ZIP archive '{zip_path}': bad member '{corrupt_member}'",
                    path=zip_path,
                )
            for info in zf.infolist():
                if (
                    info.is_dir()
                    or "__MACOSX" in info.filename
                    or not info.filename.lower().endswith(".txt")
                ):
                    continue
                target = output_dir / PurePosixPath(info.filename).name
                with zf.open(info.filename) as src, target.open("wb") as dst:
                    shutil.copyfileobj(src, dst)
                extracted.append(target)
    except zipfile.BadZipFile as exc:
        raise FeedError(f"Unreadable ZIP archive '{zip_path}': {exc}", path=zip_path) from exc

    logger.info("Extracted %d table(s) from %s", len(extracted), zip_path.name)
    return extracted


# ---------------------------------------------------------------------------
# Table reading
# ---------------------------------------------------------------------------


def _read_table(path: Path, required_columns: tuple[str, ...]) -> pd.DataFrame:
    try:
        frame = pd.read_csv(path, dtype=str, keep_default_na=False, encoding="utf-8")
    except pd.errors.EmptyDataError as exc:
        raise FeedError(f"{path.name}: table is empty", path=path) from exc
    frame.columns = [str(c).strip() for c in frame.columns]
    missing = [c for c in required_columns if c not in frame.columns]
    if missing:
        raise FeedError(
            f"{path.name}: missing required column(s) {', '.join(missing)}", path=path
        )
    return frame


def _column(frame: pd.DataFrame, name: str) -> list[str]:
    if name not in frame.columns:
        return [""] * len(frame)
    return [str(v).strip() for v in frame[name]]


def _build_routes(frame: pd.DataFrame) -> tuple[GtfsRoute, ...]:
    return tuple(
        GtfsRoute(route_id=r, short_name=s, long_name=n)
        for r, s, n in zip(
            _column(frame, "route_id"),
            _column(frame, "route_short_name"),
            _column(frame, "route_long_name"),
        )
    )


def _build_stops(frame: pd.DataFrame) -> tuple[GtfsStop, ...]:
    return tuple(
        GtfsStop(stop_id=i, stop_code=c, name=n)
        for i, c, n in zip(
            _column(frame, "stop_id"),
            _column(frame, "stop_code"),
            _column(frame, "stop_name"),
        )
    )


def _build_trips(frame: pd.DataFrame) -> tuple[GtfsTrip, ...]:
    trips: list[GtfsTrip] = []
    for trip_id, route_id, service_id, headsign, direction in zip(
        _column(frame, "trip_id"),
        _column(frame, "route_id"),
        _column(frame, "service_id"),
        _column(frame, "trip_headsign"),
        _column(frame, "direction_id"),
    ):
        trips.append(
            GtfsTrip(
                trip_id=trip_id,
                route_id=route_id,
                service_id=service_id,
                headsign=headsign,
                direction_id=_parse_int(direction, "direction_id", "trips") if direction else None,
            )
        )
    return tuple(trips)


def _build_stop_times(frame: pd.DataFrame) -> tuple[GtfsStopTime, ...]:
    return tuple(
        GtfsStopTime(
            trip_id=trip_id,
            stop_id=stop_id,
            stop_sequence=_parse_int(sequence, "stop_sequence", "stop_times"),
            arrival_seconds=parse_gtfs_time(arrival),
            departure_seconds=parse_gtfs_time(departure),
        )
        for trip_id, stop_id, sequence, arrival, departure in zip(
            _column(frame, "trip_id"),
            _column(frame, "stop_id"),
            _column(frame, "stop_sequence"),
            _column(frame, "arrival_time"),
            _column(frame, "departure_time"),
        )
    )


def _build_calendars(frame: pd.DataFrame) -> tuple[GtfsCalendar, ...]:
    flags = [_column(frame, day) for day in _WEEKDAY_COLUMNS]
    calendars: list[GtfsCalendar] = []
    for i, (service_id, start, end) in enumerate(
        zip(_column(frame, "service_id"), _column(frame, "start_date"), _column(frame, "end_date"))
    ):
        weekdays = tuple(_parse_flag(column[i]) for column in flags)
        calendars.append(
            GtfsCalendar(
                service_id=service_id,
                weekdays=weekdays,  # type: ignore[arg-type]
                start_date=parse_gtfs_date(start),
                end_date=parse_gtfs_date(end),
            )
        )
    return tuple(calendars)


def _build_calendar_dates(frame: pd.DataFrame) -> tuple[GtfsCalendarDate, ...]:
    return tuple(
        GtfsCalendarDate(
            service_id=service_id,
            date=parse_gtfs_date(day),
            exception_type=_parse_int(exception, "exception_type", "calendar_dates"),
        )
        for service_id, day, exception in zip(
            _column(frame, "service_id"),
            _column(frame, "date"),
            _column(frame, "exception_type"),
        )
    )


def _load_directory(directory: Path, work_dir: Path) -> Feed:
    frames: dict[str, pd.DataFrame] = {}
    tables = {**REQUIRED_TABLES, **OPTIONAL_TABLES}
    for name, columns in tables.items():
        source = directory / f"{name}.txt"
        if not source.exists():
            if name in REQUIRED_TABLES:
                raise FeedError(f"Missing required table {name}.txt in {directory}", path=directory)
            logger.debug("Optional table %s.txt not present", name)
            continue
        normalized = work_dir / source.name
        normalize_encoding(source, normalized)
        frames[name] = _read_table(normalized, columns)

    feed = Feed(
        routes=_build_routes(frames["routes"]),
        stops=_build_stops(frames["stops"]),
        trips=_build_trips(frames["trips"]),
        stop_times=_build_stop_times(frames["stop_times"]),
        calendars=_build_calendars(frames["calendar"]) if "calendar" in frames else (),
        calendar_dates=(
            _build_calendar_dates(frames["calendar_dates"]) if "calendar_dates" in frames else ()
        ),
    )
    logger.info(
        "Loaded feed: %d routes, %d stops, %d trips, %d stop times",
        len(feed.routes),
        len(feed.stops),
        len(feed.trips),
        len(feed.stop_times),
    )
    return feed


def load_feed(source: Path) -> Feed:
    """Load a GTFS feed from a directory or a .zip archive.

    The source is never modified; extraction and transcoding happen in a
    temporary directory.

    Args:
        source: Directory containing the .txt tables, or a GTFS .zip.

    Returns:
        The loaded Feed.

    Raises:
        FeedError: If the source is missing, unreadable, or lacks a required
            table or column.
        EncodingError: If a table's encoding cannot be detected reliably.
    """
    if not source.exists():
        raise FeedError(f"Feed source not found: {source}", path=source)

    with tempfile.TemporaryDirectory(prefix="cithsl_gtfs_") as tmp:
        work_dir = Path(tmp)
        if source.is_dir():
            return _load_directory(source, work_dir)
        if not zipfile.is_zipfile(source):
            raise FeedError(f"Feed source is neither a directory nor a ZIP archive: {source}", path=source)
        extracted = work_dir / "extracted"
        extract_feed_archive(source, extracted)
        normalized = work_dir / "normalized"
        normalized.mkdir()
        return _load_directory(extracted, normalized)
