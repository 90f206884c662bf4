from __future__ import annotations

import logging
import sys
from datetime import datetime
from typing import List, Optional

from dotenv import load_dotenv

from .config import load_config
from .delivery import email_document, save_document
from .errors import CalendarPrinterError, ConfigurationMissing
from .feeds import FeedAggregator
from .render import render_daily_calendar
from .schedule import events_for_day

CONFIG_PATH_DEFAULT = "config.yaml"
ENV_PATH_DEFAULT = ".env"

logger = logging.getLogger("calprint")


def _setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    logging.getLogger().setLevel(getattr(logging, level.upper(), logging.INFO))


def run_once(
    config_path: str = CONFIG_PATH_DEFAULT,
    env_path: Optional[str] = ENV_PATH_DEFAULT,
    output: Optional[str] = None,
    test: bool = False,
    now: Optional[datetime] = None,
    aggregator_factory=None,
) -> int:
    """Run the whole job once and return the process exit code."""
    try:
        if env_path:
            load_dotenv(env_path)
        cfg = load_config(config_path)
        _setup_logging(cfg.log_level)
        tz = cfg.tz
        now = now.astimezone(tz) if now else datetime.now(tz=tz)
        today = now.date()
        if test and output is None:
            output = f"calendar-test-{today.isoformat()}.pdf"

        if output is None:
            missing = cfg.email.missing_fields()
            if missing:
                raise ConfigurationMissing("Email delivery needs " + ", ".join(missing))
        else:
            logger.info("Running in TEST mode - PDF will be saved to file")

        logger.info("Fetching calendar events from %d calendar(s)...", len(cfg.feeds))
        aggregator = (aggregator_factory or FeedAggregator)(cfg)
        try:
            events = aggregator.collect(cfg.feeds, today)
        finally:
            aggregator.close()
        logger.info("Total events fetched: %d", len(events))

        logger.info("Filtering today's events...")
        today_events = events_for_day(events, today, tz)
        logger.info("Found %d events for today.", len(today_events))

        logger.info("Creating PDF...")
        pdf = render_daily_calendar(today_events, cfg.title, today, tz, cfg.render)

        if output is not None:
            path = save_document(pdf, output)
            logger.info("Daily calendar saved to %s", path)
        else:
            logger.info("Sending to printer...")
            email_document(pdf, cfg.email, today)
            logger.info("Daily calendar printed successfully!")
        return 0
    except CalendarPrinterError as exc:
        logger.error("Calendar printer failed: %s", exc)
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    import argparse

    _setup_logging()
    ap = argparse.ArgumentParser(description="Print today's calendar events.")
    ap.add_argument("--config", default=CONFIG_PATH_DEFAULT)
    ap.add_argument("--env", default=ENV_PATH_DEFAULT)
    ap.add_argument("--test", action="store_true", help="save the PDF to calendar-test-YYYY-MM-DD.pdf instead of emailing it")
    ap.add_argument("--output", help="save the PDF to this path instead of emailing it")
    args = ap.parse_args(argv)

    return run_once(config_path=args.config, env_path=args.env, output=args.output, test=args.test)


if __name__ == "__main__":
    sys.exit(main())
