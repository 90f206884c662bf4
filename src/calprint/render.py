from __future__ import annotations
from datetime import date, datetime
from io import BytesIO
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo
from PIL import Image, ImageDraw, ImageFont

from .config import RenderConfig
from .errors import RenderFailure
from .models import UNTITLED_EVENT, CalendarEvent

DESCRIPTION_LIMIT = 200
TITLE_COLOR = (0, 51, 102)

_FONT_PATHS = {
    False: "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    True: "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
}

def _load_font(size: int, bold: bool = False) -> ImageFont.ImageFont:
    # DejaVu ships with most Linux distros; Pillow's bundled font covers the rest.
    try:
        return ImageFont.truetype(_FONT_PATHS[bold], size)
    except OSError:
        return ImageFont.load_default(size=size)

def _fmt_time(dt: datetime) -> str:
    return dt.strftime("%-I:%M %p")

def format_event_time(e: CalendarEvent, tz: ZoneInfo) -> str:
    if e.all_day:
        return "All Day"
    text = _fmt_time(e.start.astimezone(tz))
    if e.end is not None and e.end != e.start:
        text += " - " + _fmt_time(e.end.astimezone(tz))
    return text

def truncate_description(text: str, limit: int = DESCRIPTION_LIMIT) -> str:
    return text[:limit]

def _wrap_text(
    draw: ImageDraw.ImageDraw,
    text: str,
    font: ImageFont.ImageFont,
    max_width: float,
) -> List[str]:
    lines: List[str] = []
    for paragraph in text.split("\n"):
        cur = ""
        for w in paragraph.split():
            test = (cur + " " + w).strip()
            if draw.textlength(test, font=font) <= max_width:
                cur = test
            else:
                if cur:
                    lines.append(cur)
                cur = w
        if cur:
            lines.append(cur)
    return lines

class _PageWriter:
    """Draws lines top to bottom, starting a fresh page when one fills up."""

    def __init__(self, config: RenderConfig, padding: int):
        self.config = config
        self.padding = padding
        self.pages: List[Image.Image] = []
        self.new_page()

    def new_page(self) -> None:
        img = Image.new("RGB", (self.config.width, self.config.height), "white")
        self.pages.append(img)
        self.draw = ImageDraw.Draw(img)
        self.y = self.padding

    @property
    def remaining(self) -> int:
        return self.config.height - self.padding - self.y

    def text(self, text: str, font: ImageFont.ImageFont, line_h: int, fill=(0, 0, 0), centered: bool = False) -> None:
        x = self.padding
        if centered:
            x = (self.config.width - self.draw.textlength(text, font=font)) / 2
        self.draw.text((x, self.y), text, fill=fill, font=font)
        self.y += line_h

def _event_block(
    draw: ImageDraw.ImageDraw,
    e: CalendarEvent,
    tz: ZoneInfo,
    max_width: float,
    fonts: dict,
) -> List[Tuple[str, ImageFont.ImageFont, int, tuple]]:
    rows = [(format_event_time(e, tz), fonts["time"], 50, (0, 0, 0))]
    for line in _wrap_text(draw, e.title or UNTITLED_EVENT, fonts["title"], max_width):
        rows.append((line, fonts["title"], 46, TITLE_COLOR))
    if e.description:
        for line in _wrap_text(draw, truncate_description(e.description), fonts["description"], max_width):
            rows.append((line, fonts["description"], 36, (0, 0, 0)))
    return rows

def render_daily_calendar(
    events: List[CalendarEvent],
    title: str,
    day: date,
    tz: ZoneInfo,
    config: Optional[RenderConfig] = None,
) -> bytes:
    """Render the day's events as a PDF and return its bytes.

    `events` must already be filtered to `day` and sorted.
    """
    config = config or RenderConfig()
    try:
        fonts = {
            "header": _load_font(72, bold=True),
            "date": _load_font(56),
            "section": _load_font(44, bold=True),
            "empty": _load_font(44),
            "time": _load_font(40, bold=True),
            "title": _load_font(38, bold=True),
            "description": _load_font(30),
        }
        padding = 80
        page = _PageWriter(config, padding)
        max_width = config.width - 2 * padding

        page.text(title, fonts["header"], 100, centered=True)
        page.text(day.strftime("%A, %B %-d, %Y"), fonts["date"], 80, centered=True)
        page.y += 40

        if not events:
            page.text("No events scheduled for today", fonts["empty"], 60, centered=True)
        else:
            page.text("Today's Events:", fonts["section"], 60)
            page.y += 20
            for e in events:
                rows = _event_block(page.draw, e, tz, max_width, fonts)
                block_h = sum(row[2] for row in rows)
                if block_h > page.remaining and page.y > padding:
                    page.new_page()
                for text, font, line_h, fill in rows:
                    page.text(text, font, line_h, fill=fill)
                page.y += 30

        buf = BytesIO()
        first, *rest = page.pages
        first.save(buf, format="PDF", save_all=True, append_images=rest, resolution=config.resolution)
        return buf.getvalue()
    except Exception as exc:
        raise RenderFailure(f"Could not render calendar PDF: {exc}") from exc
