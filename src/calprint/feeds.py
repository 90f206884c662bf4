from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Callable, List, Optional

import requests

from .config import AppConfig
from .errors import FeedUnavailable
from .ical import EventExtractor
from .models import CalendarEvent

logger = logging.getLogger(__name__)

Fetcher = Callable[[str, float], str]


def display_feed(url: str, limit: int = 50) -> str:
    return url if len(url) <= limit else url[:limit] + "..."


def fetch_feed(url: str, timeout: float, session: Optional[requests.Session] = None) -> str:
    """GET one calendar feed and return its body as text."""
    target = url
    if target.lower().startswith("webcal://"):
        target = "https://" + target[len("webcal://"):]
    http = session or requests.Session()
    try:
        resp = http.get(target, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise FeedUnavailable(url, str(exc)) from exc
    finally:
        if session is None:
            http.close()
    return resp.content.decode("utf-8", errors="replace")


class FeedAggregator:
    """Fetches every configured feed and concatenates their events in feed order."""

    def __init__(self, config: AppConfig, fetcher: Optional[Fetcher] = None) -> None:
        self.config = config
        self.extractor = EventExtractor(
            config.timezone,
            strategy=config.parser.strategy,
            lookahead_years=config.parser.lookahead_years,
        )
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": config.fetch.user_agent})
        self._fetcher = fetcher or (lambda url, timeout: fetch_feed(url, timeout, self._session))

    def close(self) -> None:
        self._session.close()

    def _collect_one(self, index: int, total: int, url: str, today: date) -> List[CalendarEvent]:
        logger.info("Fetching calendar %d of %d: %s", index + 1, total, display_feed(url))
        try:
            payload = self._fetcher(url, self.config.fetch.timeout_seconds)
        except FeedUnavailable as exc:
            logger.warning("Failed to fetch calendar from %s: %s", display_feed(url), exc.reason or exc)
            return []
        events = self.extractor.extract(payload, url, today)
        logger.info("  Found %d events (including recurring instances)", len(events))
        return events

    def collect(self, urls: List[str], today: date) -> List[CalendarEvent]:
        feeds = list(urls)
        total = len(feeds)
        if self.config.fetch.max_workers > 1 and len(feeds) > 1:
            # Each task returns its own list; results are joined here, in feed order.
            with ThreadPoolExecutor(max_workers=min(self.config.fetch.max_workers, len(feeds))) as executor:
                per_feed = list(executor.map(lambda item: self._collect_one(item[0], total, item[1], today), enumerate(feeds)))
        else:
            per_feed = [self._collect_one(i, total, url, today) for i, url in enumerate(feeds)]

        events: List[CalendarEvent] = []
        for feed_events in per_feed:
            events.extend(feed_events)
        return events
