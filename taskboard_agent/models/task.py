"""
Task module - Task board data structures
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, List, Dict, Any, Set
import uuid

from .enums import ColumnId


def new_id(prefix: str = "") -> str:
    """Generate a globally unique identifier."""
    return f"{prefix}{uuid.uuid4().hex[:12]}"


def now_iso() -> str:
    return datetime.now().isoformat()


@dataclass
class Subtask:
    """A checklist item on a task"""
    id: str
    text: str
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text, "completed": self.completed}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subtask":
        return cls(
            id=data.get("id") or new_id("st_"),
            text=data["text"],
            completed=bool(data.get("completed", False)),
        )


@dataclass
class CalendarItem:
    """
    Calendar placement of a task.

    Attributes:
        start: ISO 8601 start datetime
        end: ISO 8601 end datetime
        gcal_event_id: Identifier of the synced calendar event, when one exists
    """
    start: str
    end: str
    gcal_event_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"start": self.start, "end": self.end}
        if self.gcal_event_id:
            data["gcalEventId"] = self.gcal_event_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalendarItem":
        return cls(
            start=data["start"],
            end=data["end"],
            gcal_event_id=data.get("gcalEventId") or data.get("gcal_event_id"),
        )


@dataclass
class Task:
    """
    A task on the board.

    ``id`` is stable across column moves. ``order`` is the per-column display
    position; values need not be unique but relative order is preserved.
    """
    id: str
    title: str
    column_id: ColumnId
    description: Optional[str] = None
    subtasks: List[Subtask] = field(default_factory=list)
    tags: Set[str] = field(default_factory=set)
    calendar_item: Optional[CalendarItem] = None
    duration_minutes: Optional[int] = None
    urgency: Optional[str] = None
    importance: Optional[str] = None
    completed: bool = False
    order: int = 0
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def __post_init__(self):
        if not isinstance(self.column_id, ColumnId):
            self.column_id = ColumnId(self.column_id)
        if not isinstance(self.tags, set):
            self.tags = set(self.tags or ())

    def copy(self, **changes) -> "Task":
        """Deep-enough copy: subtasks, tags and calendar item are not shared."""
        clone = replace(
            self,
            subtasks=[replace(s) for s in self.subtasks],
            tags=set(self.tags),
            calendar_item=replace(self.calendar_item) if self.calendar_item else None,
        )
        for key, value in changes.items():
            setattr(clone, key, value)
        return clone

    def find_subtask(self, subtask_id: str) -> Optional[Subtask]:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None

    def content_equals(self, other: "Task") -> bool:
        """Equality ignoring server-assigned timestamps."""
        return self.copy(created_at="", updated_at="") == other.copy(created_at="", updated_at="")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "subtasks": [s.to_dict() for s in self.subtasks],
            "tags": sorted(self.tags),
            "calendarItem": self.calendar_item.to_dict() if self.calendar_item else None,
            "durationMinutes": self.duration_minutes,
            "urgency": self.urgency,
            "importance": self.importance,
            "completed": self.completed,
            "columnId": self.column_id.value,
            "order": self.order,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        calendar_item = data.get("calendarItem") or data.get("calendar_item")
        kwargs = dict(
            id=data.get("id") or new_id("task_"),
            title=data["title"],
            column_id=ColumnId(data.get("columnId") or data.get("column_id") or ColumnId.BACKLOG.value),
            description=data.get("description"),
            subtasks=[Subtask.from_dict(s) for s in data.get("subtasks") or []],
            tags=set(data.get("tags") or []),
            calendar_item=CalendarItem.from_dict(calendar_item) if calendar_item else None,
            duration_minutes=data.get("durationMinutes", data.get("duration_minutes")),
            urgency=data.get("urgency"),
            importance=data.get("importance"),
            completed=bool(data.get("completed", False)),
            order=int(data.get("order", 0)),
        )
        created_at = data.get("createdAt") or data.get("created_at")
        updated_at = data.get("updatedAt") or data.get("updated_at")
        if created_at:
            kwargs["created_at"] = created_at
        if updated_at:
            kwargs["updated_at"] = updated_at
        return cls(**kwargs)
