from __future__ import annotations


class CalendarPrinterError(Exception):
    """Base class for every failure the printer job knows how to report."""


class ConfigurationMissing(CalendarPrinterError):
    pass


class FeedUnavailable(CalendarPrinterError):
    def __init__(self, feed: str, reason: str = ""):
        self.feed = feed
        self.reason = reason
        super().__init__(f"Failed to fetch calendar from {feed}: {reason}" if reason else f"Failed to fetch calendar from {feed}")


class MalformedDate(CalendarPrinterError):
    def __init__(self, token: str):
        self.token = token
        super().__init__(f"Unrecognized iCal date value: {token!r}")


class MalformedBlock(CalendarPrinterError):
    pass


class RenderFailure(CalendarPrinterError):
    pass


class DeliveryFailure(CalendarPrinterError):
    pass
