"""Stable integer identifiers for routes and stops.

Source identifiers in the CITHSL feed are strings that change shape between
feed revisions. The downstream application needs integers that are stable
across runs and never collide, so every identifier is derived by a pure
function of immutable source fields.

Route ID:
  "140"  -> 140
  "T12"  -> ROUTE_LETTER_OFFSETS["T"] + 12 = 20012

Stop ID:
  stop_code present (not empty, not "0") -> int(stop_code)
  otherwise synthesized from stop_id = <zone><digits>[A-D]:
  zone band (100 000 wide) + suffix offset (A=1000 .. D=4000) + digits
  "MER79132A" -> 700000 + 1000 + 79132 = 780132

Anything that does not fit these patterns aborts the run with
MalformedIdentifierError. Guessing an ID risks silent collisions.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import TYPE_CHECKING, Final

from cithsl_gtfs.config import (
    ABSENT_STOP_CODE,
    ROUTE_BAND_WIDTH,
    ROUTE_LETTER_OFFSETS,
    STOP_SUFFIX_OFFSETS,
    ZONE_PREFIX_OFFSETS,
    DataConfigurationError,
)

if TYPE_CHECKING:
    from cithsl_gtfs.feed import GtfsStop

logger: Final[logging.Logger] = logging.getLogger(__name__)

_NUMERIC_ROUTE: Final[re.Pattern[str]] = re.compile(r"^\d+$")
_PREFIXED_ROUTE: Final[re.Pattern[str]] = re.compile(r"^([A-Za-z])(\d+)$")
_STOP_ID: Final[re.Pattern[str]] = re.compile(r"^([A-Za-z]{3})(\d+)([A-Za-z])?$")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class MalformedIdentifierError(DataConfigurationError):
    """Raised when a route or stop identifier matches no recognized pattern.

    Attributes:
        kind: "route" or "stop".
        value: The offending source identifier.
        reason: Which part of the pattern failed.
    """

    def __init__(self, kind: str, value: str, reason: str) -> None:
        self.kind = kind
        self.value = value
        self.reason = reason
        super().__init__(f"Malformed {kind} identifier '{value}': {reason}")


# ---------------------------------------------------------------------------
# Route identifiers
# ---------------------------------------------------------------------------


def derive_route_id(short_name: str) -> int:
    """Derive the stable integer route ID from a route short name.

    Args:
        short_name: Route short name as published ("140", "T12").

    Returns:
        Integer route ID.

    Raises:
        MalformedIdentifierError: If the short name is neither all digits
            nor a known letter prefix followed by digits, or if the number
            would leave its ID band.
    """
    value = short_name.strip()
    lowest_band = min(ROUTE_LETTER_OFFSETS.values(), default=ROUTE_BAND_WIDTH)

    if _NUMERIC_ROUTE.match(value):
        route_id = int(value)
        if route_id >= lowest_band:
            raise MalformedIdentifierError(
                "route", short_name, f"numeric ID {route_id} overlaps letter bands"
            )
        return route_id

    match = _PREFIXED_ROUTE.match(value)
    if match is None:
        raise MalformedIdentifierError(
            "route", short_name, "expected digits or one letter followed by digits"
        )

    letter = match.group(1).upper()
    offset = ROUTE_LETTER_OFFSETS.get(letter)
    if offset is None:
        known = ", ".join(sorted(ROUTE_LETTER_OFFSETS))
        raise MalformedIdentifierError(
            "route", short_name, f"unknown prefix '{letter}' (known: {known})"
        )
    number = int(match.group(2))
    if number >= ROUTE_BAND_WIDTH:
        raise MalformedIdentifierError(
            "route", short_name, f"number {number} exceeds band width {ROUTE_BAND_WIDTH}"
        )
    return offset + number


# ---------------------------------------------------------------------------
# Stop identifiers
# ---------------------------------------------------------------------------


def stop_code_or_none(stop_code: str | None) -> str | None:
    """Return the rider-facing stop code, or None when the feed marks it absent."""
    if stop_code is None:
        return None
    code = stop_code.strip()
    if not code or code == ABSENT_STOP_CODE:
        return None
    return code


def synthesize_stop_id(stop_id: str) -> int:
    """Build an integer ID from a <zone><digits>[A-D] source stop_id.

    Raises:
        MalformedIdentifierError: On unknown zone prefix, missing digits, or
            a suffix letter outside A-D.
    """
    match = _STOP_ID.match(stop_id.strip())
    if match is None:
        raise MalformedIdentifierError(
            "stop", stop_id, "expected 3-letter zone, digits, optional suffix letter"
        )

    zone, digits, suffix = match.group(1).upper(), match.group(2), match.group(3)
    zone_offset = ZONE_PREFIX_OFFSETS.get(zone)
    if zone_offset is None:
        raise MalformedIdentifierError("stop", stop_id, f"unknown zone prefix '{zone}'")

    suffix_offset = 0
    if suffix is not None:
        letter = suffix.upper()
        if letter not in STOP_SUFFIX_OFFSETS:
            raise MalformedIdentifierError(
                "stop", stop_id, f"suffix '{letter}' is not one of A, B, C, D"
            )
        suffix_offset = STOP_SUFFIX_OFFSETS[letter]

    return zone_offset + suffix_offset + int(digits)


def derive_stop_id(stop_id: str, stop_code: str | None = None) -> int:
    """Derive the stable integer stop ID.

    The rider-facing stop code is preferred when present; codes are unique
    within the feed. Otherwise the ID is synthesized from the source stop_id.

    Args:
        stop_id: Source stop_id ("MER79132A").
        stop_code: Source stop_code; empty or "0" means absent.

    Returns:
        Integer stop ID.

    Raises:
        MalformedIdentifierError: If the code is not numeric or the stop_id
            cannot be synthesized.
    """
    code = stop_code_or_none(stop_code)
    if code is not None:
        if not code.isdigit():
            raise MalformedIdentifierError("stop", stop_id, f"stop_code '{code}' is not numeric")
        return int(code)
    return synthesize_stop_id(stop_id)


def derive_stop_ids(stops: Iterable[GtfsStop]) -> dict[str, int]:
    """Derive IDs for a whole stop table.

    Args:
        stops: Feed stops.

    Returns:
        Mapping of source stop_id to derived integer ID.

    Raises:
        MalformedIdentifierError: If any stop is malformed, or if two source
            stops derive the same integer ID.
    """
    derived: dict[str, int] = {}
    owners: dict[int, str] = {}
    for stop in stops:
        stop_int = derive_stop_id(stop.stop_id, stop.stop_code)
        previous = owners.get(stop_int)
        if previous is not None and previous != stop.stop_id:
            raise MalformedIdentifierError(
                "stop", stop.stop_id, f"derived ID {stop_int} collides with '{previous}'"
            )
        owners[stop_int] = stop.stop_id
        derived[stop.stop_id] = stop_int
    logger.debug("Derived %d stop IDs", len(derived))
    return derived
