from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import os
import yaml

from .errors import ConfigurationMissing

DEFAULT_TIMEZONE = "America/Denver"
DEFAULT_TITLE = "Daily Calendar"

@dataclass
class ParserConfig:
    strategy: str = "recurring"     # "recurring" or "flat"
    lookahead_years: int = 2

@dataclass
class FetchConfig:
    timeout_seconds: float = 30.0
    max_workers: int = 1
    user_agent: str = "calprint/1.0"

@dataclass
class RenderConfig:
    width: int = 1275               # US letter at 150 dpi
    height: int = 1650
    resolution: float = 150.0

@dataclass
class EmailConfig:
    printer_email: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    from_email: str = ""
    from_name: str = "Calendar Printer"

    def missing_fields(self) -> List[str]:
        required = {
            "PRINTER_EMAIL": self.printer_email,
            "SMTP_HOST": self.smtp_host,
            "SMTP_USERNAME": self.smtp_username,
            "SMTP_PASSWORD": self.smtp_password,
            "FROM_EMAIL": self.from_email,
        }
        return [name for name, value in required.items() if not value]

@dataclass
class AppConfig:
    timezone: str
    title: str
    feeds: List[str]
    parser: ParserConfig = field(default_factory=ParserConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    render: RenderConfig = field(default_factory=RenderConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    log_level: str = "INFO"

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

def _split_feeds(value: str) -> List[str]:
    return [url.strip() for url in value.split(",") if url.strip()]

def _section(data: Mapping[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationMissing(f"Config section '{name}' must be a mapping")
    return value

def _number(section: Mapping[str, Any], key: str, default, cast, where: str, minimum=None):
    raw = section.get(key, default)
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        raise ConfigurationMissing(f"{where}.{key} must be a number, got {raw!r}") from None
    if minimum is not None and value < minimum:
        raise ConfigurationMissing(f"{where}.{key} must be at least {minimum}, got {raw!r}")
    return value

def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Build the run configuration from an optional YAML file plus environment values.

    The YAML file holds settings; feed URLs may also come from CALENDAR_ICAL_URL
    (comma-separated) and SMTP credentials only come from the environment.
    """
    env = os.environ if environ is None else environ
    data: Dict[str, Any] = {}
    if path:
        p = Path(path)
        if p.exists():
            try:
                data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationMissing(f"Could not parse {p}: {exc}") from exc
            if not isinstance(data, dict):
                raise ConfigurationMissing(f"{p} must contain a mapping of settings")

    parser = _section(data, "parser")
    fetch = _section(data, "fetch")
    render = _section(data, "render")
    logging_cfg = _section(data, "logging")

    feeds = [str(url).strip() for url in (data.get("feeds") or []) if str(url).strip()]
    feeds.extend(_split_feeds(env.get("CALENDAR_ICAL_URL", "")))
    if not feeds:
        raise ConfigurationMissing("No calendar feeds configured; set CALENDAR_ICAL_URL or 'feeds' in the config file")

    timezone = env.get("TIMEZONE") or str(data.get("timezone", DEFAULT_TIMEZONE))
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationMissing(f"Unknown timezone: {timezone!r}") from None

    strategy = str(parser.get("strategy", "recurring")).lower()
    if strategy not in {"recurring", "flat"}:
        raise ConfigurationMissing(f"Unknown parser strategy: {strategy!r}")

    try:
        smtp_port = int(env.get("SMTP_PORT") or 587)
    except ValueError:
        raise ConfigurationMissing(f"SMTP_PORT must be a number, got {env.get('SMTP_PORT')!r}") from None

    return AppConfig(
        timezone=timezone,
        title=env.get("CALENDAR_TITLE") or str(data.get("title", DEFAULT_TITLE)),
        feeds=feeds,
        parser=ParserConfig(
            strategy=strategy,
            lookahead_years=_number(parser, "lookahead_years", 2, int, "parser", minimum=0),
        ),
        fetch=FetchConfig(
            timeout_seconds=_number(fetch, "timeout_seconds", 30, float, "fetch", minimum=0),
            max_workers=max(1, _number(fetch, "max_workers", 1, int, "fetch")),
            user_agent=str(fetch.get("user_agent", "calprint/1.0")),
        ),
        render=RenderConfig(
            width=_number(render, "width", 1275, int, "render", minimum=1),
            height=_number(render, "height", 1650, int, "render", minimum=1),
            resolution=_number(render, "resolution", 150.0, float, "render", minimum=1),
        ),
        email=EmailConfig(
            printer_email=env.get("PRINTER_EMAIL", ""),
            smtp_host=env.get("SMTP_HOST", ""),
            smtp_port=smtp_port,
            smtp_username=env.get("SMTP_USERNAME", ""),
            smtp_password=env.get("SMTP_PASSWORD", ""),
            from_email=env.get("FROM_EMAIL", ""),
            from_name=env.get("FROM_NAME") or "Calendar Printer",
        ),
        log_level=str(logging_cfg.get("level", "INFO")).upper(),
    )
