"""Agency configuration registry for the CITHSL GTFS canonicalization pipeline.

Defines typed, immutable configuration for the Haut-Saint-Laurent (CITHSL)
bus feed: the agency constants emitted with every route, the closed offset
tables used to derive stable integer identifiers, and the hand-maintained
headsign equivalence table. Every table here is operational data: when the
source feed changes shape, a human extends these tables rather than letting
the engine guess.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Final


class DataConfigurationError(Exception):
    """Base class for fatal feed/configuration mismatches.

    Raised when the deterministic input cannot be processed without a human
    fixing either the feed or one of the canonical tables. Never retried.
    """


@dataclass(frozen=True, slots=True)
class AgencyConfig:
    """Immutable configuration for the agency being processed.

    Attributes:
        name: Short agency identifier used in logs and output file names.
        feed_url: Public URL of the GTFS archive.
        route_type: Route type tag emitted with every route.
        color: Agency display color (hex, no leading #).
        default_input: Default location of the downloaded archive.
        default_output: Default directory for the canonical CSV output.
    """

    name: str
    feed_url: str
    route_type: str
    color: str
    default_input: Path
    default_output: Path


AGENCY: Final[AgencyConfig] = AgencyConfig(
    name="CITHSL",
    feed_url="https://exo.quebec/xdata/cithsl/google_transit.zip",
    route_type="bus",
    color="1F1F1F",
    default_input=Path("input/gtfs.zip"),
    default_output=Path("data/canonical"),
)

# ---------------------------------------------------------------------------
# Route identifiers: letter prefix bands. Each letter owns a disjoint
# band of ROUTE_BAND_WIDTH ids starting at its offset.
# ---------------------------------------------------------------------------
ROUTE_BAND_WIDTH: Final[int] = 10_000

ROUTE_LETTER_OFFSETS: Final[Mapping[str, int]] = MappingProxyType(
    {
        "T": 20_000,
    }
)

# ---------------------------------------------------------------------------
# Stop identifiers: zone prefix bands (100 000 wide, table order) and
# trailing suffix letter offsets.
# ---------------------------------------------------------------------------
ZONE_BAND_WIDTH: Final[int] = 100_000

ZONE_PREFIXES: Final[tuple[str, ...]] = (
    "LSL",
    "CHT",
    "GOD",
    "HOW",
    "HUN",
    "KAH",
    "MER",
    "MTL",
    "ORM",
    "SMN",
    "SPC",
    "TSS",
)

ZONE_PREFIX_OFFSETS: Final[Mapping[str, int]] = MappingProxyType(
    {prefix: (i + 1) * ZONE_BAND_WIDTH for i, prefix in enumerate(ZONE_PREFIXES)}
)

STOP_SUFFIX_OFFSETS: Final[Mapping[str, int]] = MappingProxyType(
    {
        "A": 1_000,
        "B": 2_000,
        "C": 3_000,
        "D": 4_000,
    }
)

# stop_code value meaning "no rider-facing code"
ABSENT_STOP_CODE: Final[str] = "0"


# ---------------------------------------------------------------------------
# Headsign equivalences: per route, sets of destination labels that are
# valid partial/through labels for one physical direction. Keys are derived
# route ids; the canonical label is the longer-route destination.
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class HeadsignEquivalence:
    """One set of interchangeable destination labels for a route.

    Attributes:
        labels: Every accepted label, as published in the feed.
        canonical: Label kept when two labels of the set are merged.
    """

    labels: frozenset[str]
    canonical: str


HEADSIGN_EQUIVALENCES: Final[Mapping[int, tuple[HeadsignEquivalence, ...]]] = (
    MappingProxyType(
        {
            1: (
                HeadsignEquivalence(
                    labels=frozenset({"Ste-Martine", "Ormstown"}),
                    canonical="Ormstown",
                ),
            ),
            111: (
                HeadsignEquivalence(
                    labels=frozenset(
                        {
                            "Mercier-Ste-Martine",
                            "Ste-Martine",
                            "Mercier-Ste-Martine-Howick-Ormstown",
                            "Ormstown",
                        }
                    ),
                    canonical="Ormstown",
                ),
            ),
        }
    )
)
