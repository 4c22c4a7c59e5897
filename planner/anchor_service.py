"""
Anchor providers: turn calendar events (or manual input) into Anchors.

Calendar trouble never blocks planning: a failing source yields no anchors
and the caller falls back to manual anchors.
"""
import json
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional

from planner.config_manager import SchedulerConfig, config as default_config
from planner.exceptions import CalendarUnavailableError
from planner.logger import get_logger
from planner.models import Anchor, AnchorType, ManualAnchorInput, parse_datetime

logger = get_logger("anchor_service")

# 关键词匹配顺序，workshop 优先于 class ("lab class" 是 workshop)
TYPE_PRIORITY = [AnchorType.WORKSHOP, AnchorType.CLASS, AnchorType.SEMINAR, AnchorType.APPOINTMENT]


@dataclass
class CalendarEvent:
    id: str
    title: str
    start: datetime
    end: datetime
    location: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "CalendarEvent":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            start=parse_datetime(data["start"]),
            end=parse_datetime(data["end"]),
            location=data.get("location"),
            description=data.get("description"),
        )


class CalendarSource(ABC):
    @abstractmethod
    def list_events(self, plan_date: date, user_id: str) -> List[CalendarEvent]:
        ...


class JsonFileCalendarSource(CalendarSource):
    """Reads events from a JSON list: [{"id", "title", "start", "end", "location"?}, ...]"""

    def __init__(self, path: Path):
        self.path = Path(path)

    def list_events(self, plan_date: date, user_id: str) -> List[CalendarEvent]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CalendarUnavailableError(f"Cannot read calendar file {self.path}: {e}") from e
        events = [CalendarEvent.from_dict(item) for item in raw]
        return [event for event in events if event.start.date() == plan_date]


def classify_anchor_type(
    title: str,
    description: Optional[str] = None,
    keywords: Optional[Dict[str, List[str]]] = None
) -> AnchorType:
    keywords = keywords if keywords is not None else default_config.ANCHOR_TYPE_KEYWORDS
    text = f"{title or ''} {description or ''}".lower()
    words = set(re.findall(r"[a-z0-9]+", text))
    for anchor_type in TYPE_PRIORITY:
        for keyword in keywords.get(anchor_type.value, []):
            keyword = keyword.lower()
            if (" " in keyword and keyword in text) or keyword in words:
                return anchor_type
    return AnchorType.OTHER


def anchor_from_manual(manual: ManualAnchorInput) -> Anchor:
    seed = f"{manual.title}|{manual.start_time.isoformat()}|{manual.end_time.isoformat()}"
    return Anchor(
        id=f"anchor-manual-{uuid.uuid5(uuid.NAMESPACE_URL, seed).hex[:12]}",
        title=manual.title,
        start=manual.start_time,
        end=manual.end_time,
        type=manual.anchor_type,
        location=manual.location,
        must_attend=manual.must_attend,
    )


class AnchorProvider(ABC):
    @abstractmethod
    def get_anchors_for_date(self, plan_date: date, user_id: str) -> List[Anchor]:
        ...


class StaticAnchorProvider(AnchorProvider):
    def __init__(self, anchors: Optional[List[Anchor]] = None):
        self.anchors = list(anchors or [])

    def get_anchors_for_date(self, plan_date: date, user_id: str) -> List[Anchor]:
        return sorted(
            (a for a in self.anchors if a.start.date() == plan_date),
            key=lambda a: a.start,
        )


class CalendarAnchorProvider(AnchorProvider):
    def __init__(self, source: CalendarSource, cfg: Optional[SchedulerConfig] = None):
        self.source = source
        self.cfg = cfg or default_config

    def to_anchor(self, event: CalendarEvent) -> Anchor:
        location = (event.location or "").strip() or None
        return Anchor(
            id=f"anchor-{event.id}",
            title=event.title,
            start=event.start,
            end=event.end,
            type=classify_anchor_type(event.title, event.description, self.cfg.ANCHOR_TYPE_KEYWORDS),
            location=location,
            must_attend=location is not None,
            calendar_event_id=event.id,
        )

    def get_anchors_for_date(self, plan_date: date, user_id: str) -> List[Anchor]:
        try:
            events = self.source.list_events(plan_date, user_id)
            anchors = [self.to_anchor(event) for event in events if event.end > event.start]
        except Exception as e:
            logger.warning("Calendar unavailable for %s on %s: %s", user_id, plan_date, e, exc_info=True)
            return []
        return sorted(anchors, key=lambda a: a.start)
