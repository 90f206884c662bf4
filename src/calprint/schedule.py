from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, List
from zoneinfo import ZoneInfo

from .models import CalendarEvent

logger = logging.getLogger(__name__)


def events_for_day(events: Iterable[CalendarEvent], day: date, tz: ZoneInfo) -> List[CalendarEvent]:
    """Return the events starting on `day` (local to `tz`), ordered by start.

    sorted() is stable, so events sharing a start keep their feed order.
    Events without a usable start are dropped.
    """
    selected = [e for e in events if e.start is not None and e.start.astimezone(tz).date() == day]
    selected = sorted(selected, key=lambda e: e.start)

    for e in selected:
        when = "All Day" if e.all_day else e.start.astimezone(tz).strftime("%-I:%M %p")
        logger.debug("  - %s: %s (source: %s)", when, e.title, e.source_origin or "unknown")
    return selected
