from datetime import date
from zoneinfo import ZoneInfo

import pytest
import requests

from calprint.config import AppConfig, FetchConfig
from calprint.errors import FeedUnavailable
from calprint.feeds import FeedAggregator, display_feed, fetch_feed
from calprint.schedule import events_for_day

DENVER = ZoneInfo("America/Denver")
TODAY = date(2025, 3, 15)

FEED_ONE = "https://calendar.example.com/one.ics"
FEED_TWO = "https://calendar.example.com/private/0123456789abcdef0123456789abcdef/basic.ics"
FEED_THREE = "https://calendar.example.com/three.ics"


def _payload(title: str, start: str) -> str:
    return f"BEGIN:VCALENDAR\nBEGIN:VEVENT\nSUMMARY:{title}\nDTSTART:{start}\nEND:VEVENT\nEND:VCALENDAR\n"


PAYLOADS = {
    FEED_ONE: _payload("One", "20250315T100000"),
    FEED_THREE: _payload("Three", "20250315T100000"),
}


def _fake_fetcher(url, timeout):
    if url not in PAYLOADS:
        raise FeedUnavailable(url, "503 Server Error")
    return PAYLOADS[url]


def _config(max_workers: int = 1) -> AppConfig:
    return AppConfig(
        timezone="America/Denver",
        title="Daily Calendar",
        feeds=[FEED_ONE, FEED_TWO, FEED_THREE],
        fetch=FetchConfig(max_workers=max_workers),
    )


@pytest.mark.parametrize("max_workers", [1, 3])
def test_failed_feed_contributes_nothing_and_run_continues(caplog, max_workers):
    cfg = _config(max_workers)

    events = FeedAggregator(cfg, fetcher=_fake_fetcher).collect(cfg.feeds, TODAY)

    assert [e.title for e in events] == ["One", "Three"]
    assert [e.source_origin for e in events] == [FEED_ONE, FEED_THREE]
    warnings = [r for r in caplog.records if r.levelname == "WARNING"]
    assert len(warnings) == 1
    assert display_feed(FEED_TWO) in warnings[0].getMessage()
    assert FEED_TWO not in caplog.text


def test_same_event_in_two_feeds_is_not_deduplicated():
    cfg = _config()
    fetcher = lambda url, timeout: _payload("Shared", "20250315T100000")

    events = FeedAggregator(cfg, fetcher=fetcher).collect(cfg.feeds, TODAY)
    today = events_for_day(events, TODAY, DENVER)

    assert [e.title for e in today] == ["Shared", "Shared", "Shared"]
    assert [e.source_origin for e in today] == [FEED_ONE, FEED_TWO, FEED_THREE]


def test_unparseable_payload_yields_no_events():
    cfg = _config()

    events = FeedAggregator(cfg, fetcher=lambda url, timeout: "<html>not a calendar</html>").collect([FEED_ONE], TODAY)

    assert events == []


def test_display_feed_truncates_long_urls():
    assert display_feed(FEED_ONE) == FEED_ONE
    assert display_feed(FEED_TWO) == FEED_TWO[:50] + "..."


class _FakeResponse:
    def __init__(self, status: int, body: bytes = b""):
        self.status_code = status
        self.content = body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")


class _FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []
        self.closed = False

    def close(self):
        self.closed = True

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        if self.error:
            raise self.error
        return self.response


def test_fetch_feed_returns_decoded_body_and_rewrites_webcal():
    session = _FakeSession(_FakeResponse(200, "SUMMARY:Café".encode("utf-8")))

    body = fetch_feed("webcal://calendar.example.com/one.ics", 12, session=session)

    assert body == "SUMMARY:Café"
    assert session.calls == [("https://calendar.example.com/one.ics", 12)]


def test_fetch_feed_maps_http_errors_to_feed_unavailable():
    session = _FakeSession(_FakeResponse(404))

    with pytest.raises(FeedUnavailable) as excinfo:
        fetch_feed(FEED_ONE, 5, session=session)

    assert excinfo.value.feed == FEED_ONE
    assert "404" in excinfo.value.reason


def test_fetch_feed_maps_network_errors_to_feed_unavailable():
    session = _FakeSession(error=requests.ConnectionError("unreachable host"))

    with pytest.raises(FeedUnavailable):
        fetch_feed(FEED_ONE, 5, session=session)


def test_fetch_feed_reports_configured_webcal_url_on_failure():
    session = _FakeSession(_FakeResponse(503))

    with pytest.raises(FeedUnavailable) as excinfo:
        fetch_feed("webcal://calendar.example.com/one.ics", 5, session=session)

    assert excinfo.value.feed == "webcal://calendar.example.com/one.ics"
    assert session.calls == [("https://calendar.example.com/one.ics", 5)]


def test_fetch_feed_closes_the_session_it_opens(monkeypatch):
    session = _FakeSession(_FakeResponse(200, b"BEGIN:VCALENDAR"))
    monkeypatch.setattr("calprint.feeds.requests.Session", lambda: session)

    assert fetch_feed(FEED_ONE, 5) == "BEGIN:VCALENDAR"
    assert session.closed is True


def test_fetch_feed_leaves_a_caller_session_open():
    session = _FakeSession(_FakeResponse(200, b"BEGIN:VCALENDAR"))

    fetch_feed(FEED_ONE, 5, session=session)

    assert session.closed is False


def test_aggregator_close_releases_its_session():
    aggregator = FeedAggregator(_config(), fetcher=_fake_fetcher)
    closed = []
    aggregator._session.close = lambda: closed.append(True)

    aggregator.close()

    assert closed == [True]


def test_start_shifted_past_year_9999_keeps_the_rest_of_the_feed(caplog):
    cfg = AppConfig(timezone="Asia/Tokyo", title="Daily Calendar", feeds=[FEED_ONE])
    payload = (
        "BEGIN:VCALENDAR\n"
        "BEGIN:VEVENT\nSUMMARY:Edge\nDTSTART:99991231T235959Z\nEND:VEVENT\n"
        "BEGIN:VEVENT\nSUMMARY:Lunch\nDTSTART:20250315T120000\nEND:VEVENT\n"
        "END:VCALENDAR\n"
    )

    events = FeedAggregator(cfg, fetcher=lambda url, timeout: payload).collect(cfg.feeds, TODAY)

    assert [(e.title, e.start is None) for e in events] == [("Edge", True), ("Lunch", False)]
    assert "Unrecognized iCal date value: '99991231T235959Z'" in caplog.text
