from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import vDuration
from icalendar.timezone.windows_to_olson import WINDOWS_TO_OLSON

from .errors import MalformedDate

logger = logging.getLogger(__name__)

_DATE_ONLY_RE = re.compile(r"^\d{8}$")
_UTC_RE = re.compile(r"^\d{8}T\d{6}Z$")
_LOCAL_RE = re.compile(r"^(\d{8}T\d{6})")


class ParsedDate(NamedTuple):
    value: datetime     # aware, in the target zone
    date_only: bool


def is_date_only(token: str) -> bool:
    return bool(_DATE_ONLY_RE.match(token.strip()))


def is_utc(token: str) -> bool:
    return bool(_UTC_RE.match(token.strip()))


def resolve_zone(name: Optional[str], fallback: ZoneInfo) -> ZoneInfo:
    """Map a TZID parameter to a ZoneInfo, falling back to the target zone for names we cannot resolve."""
    if not name:
        return fallback
    name = name.strip().strip('"')
    try:
        return ZoneInfo(WINDOWS_TO_OLSON.get(name, name))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown TZID %r; interpreting times in %s", name, fallback.key)
        return fallback


def localize(naive: datetime, source_zone: ZoneInfo, target_zone: ZoneInfo) -> datetime:
    return naive.replace(tzinfo=source_zone).astimezone(target_zone)


def parse_wall_time(token: str) -> datetime:
    """Parse a date or date-time token into a naive wall-clock datetime (UTC for Z tokens)."""
    raw = token.strip()
    try:
        if _DATE_ONLY_RE.match(raw):
            return datetime.strptime(raw, "%Y%m%d")
        if len(raw) >= 16 and _UTC_RE.match(raw):
            return datetime.strptime(raw, "%Y%m%dT%H%M%SZ")
        m = _LOCAL_RE.match(raw)
        if len(raw) >= 15 and m:
            return datetime.strptime(m.group(1), "%Y%m%dT%H%M%S")
    except ValueError:
        raise MalformedDate(token) from None
    raise MalformedDate(token)


def normalize_ical_date(
    token: str,
    target_zone: ZoneInfo,
    source_zone: Optional[ZoneInfo] = None,
) -> ParsedDate:
    raw = token.strip()
    wall = parse_wall_time(raw)

    try:
        if _DATE_ONLY_RE.match(raw):
            return ParsedDate(wall.replace(tzinfo=target_zone), True)
        if is_utc(raw):
            return ParsedDate(wall.replace(tzinfo=timezone.utc).astimezone(target_zone), False)
        return ParsedDate(localize(wall, source_zone or target_zone, target_zone), False)
    except OverflowError:
        # Year 1 or 9999 values can fall off the calendar once shifted into the target zone.
        raise MalformedDate(token) from None


def parse_duration(value: str) -> timedelta:
    """Parse a DURATION value; raises ValueError for anything that is not one."""
    return vDuration.from_ical(value.strip())
