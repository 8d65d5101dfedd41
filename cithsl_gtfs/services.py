"""Service filter: keep only calendar services still running.

The published feed carries expired calendars alongside the current ones.
Trips on expired services would pollute the canonical stop lists, so they
are dropped before canonicalization.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from datetime import date
from typing import Final

from cithsl_gtfs.feed import Feed, GtfsCalendar, GtfsCalendarDate

logger: Final[logging.Logger] = logging.getLogger(__name__)

_SERVICE_ADDED: Final[int] = 1


def live_service_ids(
    calendars: Iterable[GtfsCalendar],
    calendar_dates: Iterable[GtfsCalendarDate],
    today: date,
) -> frozenset[str]:
    """Return the service IDs with service on or after today.

    A service is live when a calendar row ends on or after today and runs on
    at least one weekday, or when a calendar_dates row adds service
    (exception_type 1) on or after today.
    """
    live: set[str] = set()
    for calendar in calendars:
        if calendar.end_date >= today and calendar.has_any_weekday:
            live.add(calendar.service_id)
    for exception in calendar_dates:
        if exception.exception_type == _SERVICE_ADDED and exception.date >= today:
            live.add(exception.service_id)
    return frozenset(live)


def filter_feed(feed: Feed, service_ids: frozenset[str]) -> Feed:
    """Drop calendar, calendar_dates and trip rows of non-live services.

    Stop-time rows of dropped trips go with them. Routes and stops are kept
    as published.

    Args:
        feed: Loaded feed.
        service_ids: Live service IDs.

    Returns:
        A new Feed restricted to the live services.
    """
    if not service_ids:
        logger.warning("No live service found; every trip is excluded")

    trips = tuple(t for t in feed.trips if t.service_id in service_ids)
    kept_trip_ids = {t.trip_id for t in trips}
    filtered = dataclasses.replace(
        feed,
        trips=trips,
        stop_times=tuple(st for st in feed.stop_times if st.trip_id in kept_trip_ids),
        calendars=tuple(c for c in feed.calendars if c.service_id in service_ids),
        calendar_dates=tuple(d for d in feed.calendar_dates if d.service_id in service_ids),
    )
    logger.info(
        "Service filter: %d live service(s), kept %d of %d trips",
        len(service_ids),
        len(trips),
        len(feed.trips),
    )
    return filtered
