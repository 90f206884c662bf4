from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

UNTITLED_EVENT = "Untitled Event"

@dataclass(frozen=True)
class CalendarEvent:
    title: str = UNTITLED_EVENT
    start: Optional[datetime] = None    # timezone-aware, already in the target zone
    end: Optional[datetime] = None
    description: str = ""               # full text; the renderer truncates
    all_day: bool = False
    source_origin: str = ""             # feed URL, diagnostics only
