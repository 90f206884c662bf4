from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta
from dateutil.rrule import rruleset, rrulestr
from icalendar.parser import Contentline, Contentlines

from .dates import ParsedDate, is_date_only, is_utc, localize, normalize_ical_date, parse_duration, parse_wall_time, resolve_zone
from .errors import MalformedBlock, MalformedDate
from .models import UNTITLED_EVENT, CalendarEvent

logger = logging.getLogger(__name__)

MAX_OCCURRENCES = 5000
UTC = ZoneInfo("UTC")


class FieldKind(Enum):
    TITLE = "title"
    START = "start"
    END = "end"
    DURATION = "duration"
    DESCRIPTION = "description"
    RRULE = "rrule"
    RDATE = "rdate"
    EXDATE = "exdate"
    RECURRENCE_ID = "recurrence_id"
    UID = "uid"
    STATUS = "status"
    IGNORED = "ignored"


_FIELD_KINDS: Dict[str, FieldKind] = {
    "SUMMARY": FieldKind.TITLE,
    "DTSTART": FieldKind.START,
    "DTEND": FieldKind.END,
    "DURATION": FieldKind.DURATION,
    "DESCRIPTION": FieldKind.DESCRIPTION,
    "RRULE": FieldKind.RRULE,
    "RDATE": FieldKind.RDATE,
    "EXDATE": FieldKind.EXDATE,
    "RECURRENCE-ID": FieldKind.RECURRENCE_ID,
    "UID": FieldKind.UID,
    "STATUS": FieldKind.STATUS,
}


def classify_property(name: str) -> FieldKind:
    return _FIELD_KINDS.get(name.strip().upper(), FieldKind.IGNORED)


@dataclass(frozen=True)
class ContentLine:
    name: str
    params: Dict[str, str]
    value: str

    @property
    def kind(self) -> FieldKind:
        return classify_property(self.name)

    @property
    def is_date_value(self) -> bool:
        return self.params.get("VALUE", "").upper() == "DATE"


def unfold_lines(payload: str) -> Iterator[str]:
    """Yield logical content lines, joining RFC 5545 folded continuations."""
    text = payload.replace("\r\n", "\n").replace("\r", "\n")
    for line in Contentlines.from_ical(text):
        if line:
            yield line


def _param_text(value) -> str:
    return ",".join(value) if isinstance(value, list) else str(value)


def parse_content_line(line: str) -> Optional[ContentLine]:
    """Split a content line into name, parameters and (unescaped) value.

    Quoted parameter values may hold ':' and ';'; only the first colon outside
    quotes separates the value. Lines that are not content lines give None.
    """
    try:
        name, params, value = Contentline(line).parts()
    except ValueError as exc:
        logger.debug("Skipping unparseable content line %r: %s", line, exc)
        return None
    return ContentLine(
        name=name.upper(),
        params={key.upper(): _param_text(val) for key, val in params.items()},
        value=value.strip(),
    )


def _display(origin: str, limit: int = 50) -> str:
    if not origin:
        return "feed"
    return origin if len(origin) <= limit else origin[:limit] + "..."


def iter_event_blocks(payload: str, origin: str = "") -> Iterator[List[ContentLine]]:
    """Yield the top-level properties of each complete VEVENT block.

    Properties of nested components (VALARM) are dropped. Blocks that never
    close are logged as malformed and discarded.
    """
    current: Optional[List[ContentLine]] = None
    nested = 0
    for line in unfold_lines(payload):
        marker = line.strip().upper()
        if marker == "BEGIN:VEVENT":
            if current is not None:
                logger.warning("Discarding VEVENT in %s: opened before the previous one ended", _display(origin))
            current, nested = [], 0
            continue
        if current is None:
            continue
        if marker == "END:VEVENT":
            yield current
            current = None
            continue
        if marker.startswith("BEGIN:"):
            nested += 1
            continue
        if marker.startswith("END:"):
            nested = max(0, nested - 1)
            continue
        if nested:
            continue
        prop = parse_content_line(line.strip())
        if prop is not None:
            current.append(prop)
    if current is not None:
        logger.warning("Discarding unterminated VEVENT at end of %s", _display(origin))


@dataclass
class EventDefinition:
    title: Optional[str] = None
    description: Optional[str] = None
    start: Optional[ContentLine] = None
    end: Optional[ContentLine] = None
    duration: Optional[str] = None
    rrules: List[str] = field(default_factory=list)
    rdates: List[ContentLine] = field(default_factory=list)
    exdates: List[ContentLine] = field(default_factory=list)
    recurrence_id: Optional[ContentLine] = None
    uid: str = ""
    status: str = ""

    @property
    def is_recurring(self) -> bool:
        return bool(self.rrules or self.rdates) and self.recurrence_id is None

    @property
    def is_cancelled(self) -> bool:
        return self.status.upper() == "CANCELLED"


def decode_block(block: List[ContentLine]) -> EventDefinition:
    defn = EventDefinition()
    recognized = False
    for prop in block:
        kind = prop.kind
        if kind is FieldKind.IGNORED:
            continue
        recognized = True
        if kind is FieldKind.TITLE:
            defn.title = prop.value
        elif kind is FieldKind.DESCRIPTION:
            defn.description = prop.value
        elif kind is FieldKind.START:
            defn.start = prop
        elif kind is FieldKind.END:
            defn.end = prop
        elif kind is FieldKind.DURATION:
            defn.duration = prop.value
        elif kind is FieldKind.RRULE:
            defn.rrules.append(prop.value)
        elif kind is FieldKind.RDATE:
            defn.rdates.append(prop)
        elif kind is FieldKind.EXDATE:
            defn.exdates.append(prop)
        elif kind is FieldKind.RECURRENCE_ID:
            defn.recurrence_id = prop
        elif kind is FieldKind.UID:
            defn.uid = prop.value
        elif kind is FieldKind.STATUS:
            defn.status = prop.value
    if not recognized:
        raise MalformedBlock("VEVENT has no recognized fields")
    return defn


def _resolve_date(prop: ContentLine, tz: ZoneInfo, origin: str) -> Optional[ParsedDate]:
    source_zone = resolve_zone(prop.params.get("TZID"), tz)
    try:
        return normalize_ical_date(prop.value, tz, source_zone)
    except MalformedDate as exc:
        logger.warning("Ignoring %s in %s: %s", prop.name, _display(origin), exc)
        return None


def _add_wall_time(start: datetime, delta: timedelta, tz: ZoneInfo) -> datetime:
    return localize(start.astimezone(tz).replace(tzinfo=None) + delta, tz, tz)


def _resolve_end(defn: EventDefinition, start: Optional[ParsedDate], tz: ZoneInfo, origin: str) -> Optional[datetime]:
    if defn.end is not None:
        end = _resolve_date(defn.end, tz, origin)
        return end.value if end else None
    if defn.duration and start is not None:
        try:
            return _add_wall_time(start.value, parse_duration(defn.duration), tz)
        except (ValueError, OverflowError) as exc:
            logger.warning("Ignoring DURATION in %s: %s", _display(origin), exc)
    return None


def _event_from_definition(defn: EventDefinition, tz: ZoneInfo, origin: str, structural_all_day: bool) -> CalendarEvent:
    start = _resolve_date(defn.start, tz, origin) if defn.start is not None else None
    end = _resolve_end(defn, start, tz, origin)
    if structural_all_day:
        all_day = bool(start and (start.date_only or _spans_whole_days(start.value, end)))
    else:
        all_day = bool(defn.start is not None and (defn.start.is_date_value or (start and start.date_only)))
    return CalendarEvent(
        title=defn.title or UNTITLED_EVENT,
        start=start.value if start else None,
        end=end,
        description=defn.description or "",
        all_day=all_day,
        source_origin=origin,
    )


def _spans_whole_days(start: datetime, end: Optional[datetime]) -> bool:
    """Midnight-to-midnight spans of one or more local days count as all-day."""
    if start.timetz().replace(tzinfo=None) != time(0, 0) or end is None:
        return False
    return end.timetz().replace(tzinfo=None) == time(0, 0) and end.date() > start.date()


def extract_flat_events(payload: str, tz: ZoneInfo, origin: str = "") -> List[CalendarEvent]:
    """Map each VEVENT block to a single event, ignoring recurrence rules."""
    events: List[CalendarEvent] = []
    for block in iter_event_blocks(payload, origin):
        try:
            defn = decode_block(block)
        except MalformedBlock as exc:
            logger.warning("Skipping block in %s: %s", _display(origin), exc)
            continue
        events.append(_event_from_definition(defn, tz, origin, structural_all_day=False))
    return events


@dataclass(frozen=True)
class RecurrenceDefinition:
    """A recurring event reduced to wall-clock times in its own zone."""

    start: datetime                     # naive, wall-clock in `zone`
    zone: ZoneInfo
    duration: Optional[timedelta] = None
    rules: Tuple[str, ...] = ()
    rdates: Tuple[datetime, ...] = ()
    exdates: Tuple[datetime, ...] = ()
    date_only: bool = False


def _localize_until(rule: str, definition: RecurrenceDefinition) -> str:
    parts = []
    for part in rule.split(";"):
        key, _, value = part.partition("=")
        if key.strip().upper() == "UNTIL" and value:
            wall = parse_wall_time(value)
            if is_utc(value):
                wall = localize(wall, UTC, definition.zone).replace(tzinfo=None)
            elif is_date_only(value) and not definition.date_only:
                wall = datetime.combine(wall.date(), time(23, 59, 59))
            part = "UNTIL=" + wall.strftime("%Y%m%dT%H%M%S")
        parts.append(part)
    return ";".join(parts)


def expand_occurrences(
    definition: RecurrenceDefinition,
    window_start: datetime,
    window_end: datetime,
    target_zone: ZoneInfo,
    limit: int = MAX_OCCURRENCES,
) -> Iterator[Tuple[datetime, Optional[datetime]]]:
    """Yield (start, end) instants in `target_zone` for occurrences inside the window.

    Expansion runs on wall-clock time in the event's own zone so that a weekly
    9:00 meeting stays at 9:00 across DST changes. Pure: calling it again
    yields the same sequence.
    """
    rules = rruleset()
    rules.rdate(definition.start)
    for rule in definition.rules:
        rules.rrule(rrulestr(_localize_until(rule, definition), dtstart=definition.start))
    for extra in definition.rdates:
        rules.rdate(extra)
    for excluded in definition.exdates:
        rules.exdate(excluded)

    lo = window_start.astimezone(definition.zone).replace(tzinfo=None)
    hi = window_end.astimezone(definition.zone).replace(tzinfo=None)
    for occurrence in rules.xafter(lo, count=limit, inc=True):
        if occurrence > hi:
            break
        start = localize(occurrence, definition.zone, target_zone)
        end = None
        if definition.duration is not None:
            end = localize(occurrence + definition.duration, definition.zone, target_zone)
        yield start, end


def _wall_time_in(prop: ContentLine, zone: ZoneInfo, tz: ZoneInfo) -> datetime:
    parsed = normalize_ical_date(prop.value, tz, resolve_zone(prop.params.get("TZID"), tz))
    if parsed.date_only:
        return parsed.value.replace(tzinfo=None)
    return parsed.value.astimezone(zone).replace(tzinfo=None)


def _date_list(props: List[ContentLine], zone: ZoneInfo, tz: ZoneInfo) -> Tuple[datetime, ...]:
    values = []
    for prop in props:
        for token in prop.value.split(","):
            if token.strip():
                values.append(_wall_time_in(ContentLine(prop.name, prop.params, token), zone, tz))
    return tuple(values)


def build_recurrence(defn: EventDefinition, tz: ZoneInfo) -> RecurrenceDefinition:
    if defn.start is None:
        raise MalformedBlock("recurring VEVENT has no DTSTART")
    token = defn.start.value.strip()
    if is_date_only(token):
        zone = tz
        start = parse_wall_time(token)
    elif is_utc(token):
        zone = UTC
        start = parse_wall_time(token)
    else:
        zone = resolve_zone(defn.start.params.get("TZID"), tz)
        start = parse_wall_time(token)

    duration: Optional[timedelta] = None
    if defn.end is not None:
        duration = _wall_time_in(defn.end, zone, tz) - start
    elif defn.duration:
        duration = parse_duration(defn.duration)
    elif is_date_only(token):
        duration = timedelta(days=1)

    return RecurrenceDefinition(
        start=start,
        zone=zone,
        duration=duration,
        rules=tuple(defn.rrules),
        rdates=_date_list(defn.rdates, zone, tz),
        exdates=_date_list(defn.exdates, zone, tz),
        date_only=is_date_only(token),
    )


def extract_recurring_events(
    payload: str,
    tz: ZoneInfo,
    window_start: datetime,
    window_end: datetime,
    origin: str = "",
) -> List[CalendarEvent]:
    """Extract events, expanding RRULE/RDATE definitions across the window."""
    definitions: List[EventDefinition] = []
    for block in iter_event_blocks(payload, origin):
        try:
            definitions.append(decode_block(block))
        except MalformedBlock as exc:
            logger.warning("Skipping block in %s: %s", _display(origin), exc)

    # Modified or cancelled instances, keyed by (UID, original start instant).
    overridden: Set[Tuple[str, datetime]] = set()
    for defn in definitions:
        if defn.recurrence_id is not None:
            rid = _resolve_date(defn.recurrence_id, tz, origin)
            if rid is not None:
                overridden.add((defn.uid, rid.value))

    events: List[CalendarEvent] = []
    for defn in definitions:
        if defn.is_cancelled:
            continue
        if not defn.is_recurring:
            events.append(_event_from_definition(defn, tz, origin, structural_all_day=True))
            continue
        try:
            recurrence = build_recurrence(defn, tz)
            occurrences = list(expand_occurrences(recurrence, window_start, window_end, tz))
        except (MalformedBlock, MalformedDate, ValueError, OverflowError) as exc:
            logger.warning("Skipping recurring event %r in %s: %s", defn.title or UNTITLED_EVENT, _display(origin), exc)
            continue
        for start, end in occurrences:
            if (defn.uid, start) in overridden:
                continue
            events.append(
                CalendarEvent(
                    title=defn.title or UNTITLED_EVENT,
                    start=start,
                    end=end,
                    description=defn.description or "",
                    all_day=recurrence.date_only or _spans_whole_days(start, end),
                    source_origin=origin,
                )
            )
    return events


class EventExtractor:
    """Turns one feed payload into events using the configured parsing strategy."""

    def __init__(self, timezone: str, strategy: str = "recurring", lookahead_years: int = 2):
        self.tz = ZoneInfo(timezone)
        self.strategy = strategy
        self.lookahead_years = lookahead_years

    def window_for(self, today: date) -> Tuple[datetime, datetime]:
        window_start = datetime.combine(today, time(0, 0), tzinfo=self.tz)
        return window_start, window_start + relativedelta(years=self.lookahead_years)

    def extract(self, payload: str, origin: str, today: date) -> List[CalendarEvent]:
        if self.strategy == "flat":
            return extract_flat_events(payload, self.tz, origin)
        window_start, window_end = self.window_for(today)
        return extract_recurring_events(payload, self.tz, window_start, window_end, origin)
