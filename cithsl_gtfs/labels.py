"""Text normalization cascade for rider-facing labels.

Route long names, trip headsigns and stop names are published by the agency
as free French text with inconsistent abbreviations, qualifiers and casing.
Each label kind runs through a fixed, ordered list of rewrite rules followed
by a shared final clean-up. Order matters: later rules assume earlier ones
already ran (Saint abbreviation before street types before casing).

The cascade is pure and never rejects input. Unmatched text passes through
unchanged. A rule can expose text for a rule that already ran, so the
cascade repeats until its output is stable; running normalize on its own
output therefore returns the same text.

Rule order per kind:
  route_long_name: saint, point, conjunction, metro_parenthesis, secteur,
                   dash_des, final clean-up
  trip_headsign:   direction, secteur, saint, point, street types,
                   via_ste_dash, via_segments, via_ste_restore, final clean-up
  stop_name:       station_de_metro, saint, street types, face, dash_des,
                   final clean-up
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Final


class LabelKind(Enum):
    """Free-text field a label originates from."""

    ROUTE_LONG_NAME = "route_long_name"
    TRIP_HEADSIGN = "trip_headsign"
    STOP_NAME = "stop_name"


@dataclass(frozen=True, slots=True)
class Rule:
    """Single named regex rewrite step of the cascade.

    Attributes:
        name: Stable rule identifier, used to document cascade order.
        pattern: Compiled pattern (case-insensitive unless noted).
        replacement: Replacement string or match callback.
    """

    name: str
    pattern: re.Pattern[str]
    replacement: str | Callable[[re.Match[str]], str]

    def apply(self, text: str) -> str:
        """Return text with every non-overlapping match rewritten."""
        return self.pattern.sub(self.replacement, text)


def _saint_replacement(match: re.Match[str]) -> str:
    return "Ste" if match.group(1) else "St"


# ---------------------------------------------------------------------------
# Qualifier and phrasing rules
# ---------------------------------------------------------------------------
_DIRECTION: Final = Rule("direction", re.compile(r"^(?:direction\s+)+", re.IGNORECASE), "")
_SECTEUR: Final = Rule("secteur", re.compile(r"\bsecteurs?\s+", re.IGNORECASE), "")
_SAINT: Final = Rule("saint", re.compile(r"\bsaint(e)?\b", re.IGNORECASE), _saint_replacement)
_POINT: Final = Rule("point", re.compile(r"(?<=[^\W\d_])\.(?=[^\W\d_])"), ". ")
_CONJUNCTION: Final = Rule(
    "conjunction", re.compile(r"\s*(?:\bet\b|&)\s*", re.IGNORECASE), " & "
)
_METRO_PARENTHESIS: Final = Rule(
    "metro_parenthesis", re.compile(r"\(\s*métro\s+", re.IGNORECASE), "("
)
_STATION_DE_METRO: Final = Rule(
    "station_de_metro",
    re.compile(r"\bstation\s+de\s+métro\s+", re.IGNORECASE),
    "station ",
)
_FACE: Final = Rule(
    "face", re.compile(r"(?:^|(?<=\s))face(?:\s+(?:à|au))?\s+", re.IGNORECASE), ""
)
_DASH_DES: Final = Rule("dash_des", re.compile(r"-\s+des?\s+", re.IGNORECASE), "- ")

# Multi-leg headsigns ("Mercier-Ste-Martine-Ormstown") keep only the final
# destination. St-/Ste- dashes are folded to spaces first so a saint place
# name is never split, then restored on the surviving segment. Only unspaced
# dash joins at the start of the label collapse; " - " separators and
# parenthesized text are kept.
_VIA_STE_DASH: Final = Rule("via_ste_dash", re.compile(r"\b(ste?)-", re.IGNORECASE), r"\1 ")
_VIA_SEGMENTS: Final = Rule(
    "via_segments", re.compile(r"^(?:[^\s()-]+(?: [^\s()-]+)*-)+(?=[^\s()-])"), ""
)
_VIA_STE_RESTORE: Final = Rule(
    "via_ste_restore", re.compile(r"\b(ste?)\s+(?=\w)", re.IGNORECASE), r"\1-"
)

# ---------------------------------------------------------------------------
# Street types (French Canadian), abbreviation -> display form
# ---------------------------------------------------------------------------
STREET_TYPES: Final[dict[str, str]] = {
    "avenue": "av.",
    "boulevard": "boul.",
    "chemin": "ch.",
    "croissant": "crois.",
    "montée": "mtée",
    "place": "pl.",
    "rang": "rg",
    "terrasse": "terr.",
}

_STREET_TYPE_RULES: Final[tuple[Rule, ...]] = tuple(
    Rule(f"street_type_{word}", re.compile(rf"\b{word}\b", re.IGNORECASE), abbreviation)
    for word, abbreviation in STREET_TYPES.items()
)

_CASCADES: Final[dict[LabelKind, tuple[Rule, ...]]] = {
    LabelKind.ROUTE_LONG_NAME: (
        _SAINT,
        _POINT,
        _CONJUNCTION,
        _METRO_PARENTHESIS,
        _SECTEUR,
        _DASH_DES,
    ),
    LabelKind.TRIP_HEADSIGN: (
        _DIRECTION,
        _SECTEUR,
        _SAINT,
        _POINT,
        *_STREET_TYPE_RULES,
        _VIA_STE_DASH,
        _VIA_SEGMENTS,
        _VIA_STE_RESTORE,
    ),
    LabelKind.STOP_NAME: (
        _STATION_DE_METRO,
        _SAINT,
        *_STREET_TYPE_RULES,
        _FACE,
        _DASH_DES,
    ),
}

# ---------------------------------------------------------------------------
# Final clean-up
# ---------------------------------------------------------------------------
_WHITESPACE: Final[re.Pattern[str]] = re.compile(r"\s+")
_PAREN_OPEN_SPACE: Final[re.Pattern[str]] = re.compile(r"\(\s+")
_PAREN_CLOSE_SPACE: Final[re.Pattern[str]] = re.compile(r"\s+\)")
_SPACE_BEFORE_PUNCT: Final[re.Pattern[str]] = re.compile(r"\s+([,.])")
_REPEATED_PUNCT: Final[re.Pattern[str]] = re.compile(r"([,.])\1+")
_STRAY_EDGE_CHARS: Final[str] = " -,/"

# Lower-cased unless first in the label
_LOWERCASE_WORDS: Final[frozenset[str]] = frozenset(
    {"de", "des", "du", "la", "le", "les", "à", "au", "aux", "en", "sur", "et"}
    | set(STREET_TYPES.values())
)
_ELISIONS: Final[tuple[str, ...]] = ("d'", "l'", "d’", "l’")

# Extra cascade passes allowed before normalize() gives up on a fixed point
_MAX_PASSES: Final[int] = 10


def _upper_first_alpha(text: str) -> str:
    for i, char in enumerate(text):
        if char.isalpha():
            return text[:i] + char.upper() + text[i + 1 :]
    return text


def _capitalize_part(part: str, is_first: bool) -> str:
    """Apply the display casing convention to one word or hyphen sub-word."""
    lead = 0
    while lead < len(part) and not part[lead].isalnum():
        lead += 1
    body = part[lead:]
    if not body or not body[0].isalpha():
        # numbers ("138", "1re") keep their casing
        return part

    lowered = body.lower()
    if not is_first and lowered.rstrip(")],;:") in _LOWERCASE_WORDS:
        return part[:lead] + lowered
    for elision in _ELISIONS:
        if lowered.startswith(elision) and len(body) > len(elision):
            prefix = elision if not is_first else elision.capitalize()
            return part[:lead] + prefix + _upper_first_alpha(body[len(elision) :])
    return part[:lead] + _upper_first_alpha(body)


def _capitalize_words(text: str) -> str:
    words: list[str] = []
    is_first = True
    for word in text.split(" "):
        parts: list[str] = []
        for part in word.split("-"):
            parts.append(_capitalize_part(part, is_first))
            if any(char.isalnum() for char in part):
                is_first = False
        words.append("-".join(parts))
    return " ".join(words)


def clean_label(text: str) -> str:
    """Generic clean-up shared by every label kind.

    Collapses whitespace, tightens parentheses, removes stray punctuation
    and spacing, then applies the agency casing convention.
    """
    result = _WHITESPACE.sub(" ", text).strip()
    result = _PAREN_OPEN_SPACE.sub("(", result)
    result = _PAREN_CLOSE_SPACE.sub(")", result)
    result = _SPACE_BEFORE_PUNCT.sub(r"\1", result)
    result = _POINT.apply(result)
    result = _REPEATED_PUNCT.sub(r"\1", result)
    result = result.strip(_STRAY_EDGE_CHARS)
    return _capitalize_words(result)


def rule_names(kind: LabelKind | str) -> tuple[str, ...]:
    """Return the ordered rule names applied for a label kind."""
    return tuple(rule.name for rule in _CASCADES[LabelKind(kind)]) + ("clean_label",)


def _run_cascade(rules: tuple[Rule, ...], text: str) -> str:
    for rule in rules:
        text = rule.apply(text)
    return clean_label(text)


def normalize(kind: LabelKind | str, text: str) -> str:
    """Normalize a free-text label through the cascade for its kind.

    Args:
        kind: Label kind, as enum or its string value.
        text: Raw label from the feed.

    Returns:
        Normalized label. Idempotent: normalize(k, normalize(k, x)) equals
        normalize(k, x).

    Raises:
        ValueError: If kind is not a known label kind.
    """
    rules = _CASCADES[LabelKind(kind)]
    result = _run_cascade(rules, unicodedata.normalize("NFC", text))
    # a rule can expose a match for an earlier one (e.g. "secteur direction X")
    for _ in range(_MAX_PASSES):
        again = _run_cascade(rules, result)
        if again == result:
            break
        result = again
    return result
