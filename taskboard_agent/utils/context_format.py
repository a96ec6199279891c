"""
Board context formatting for model prompts

Tasks are shown to the model with short numeric references (``#1``, ``#2``)
instead of their real ids; ``TaskIdMapping`` resolves those references back.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from taskboard_agent.models.enums import ColumnId
from taskboard_agent.models.task import Task

COLUMN_TITLES = {
    ColumnId.CALENDAR: "Calendar",
    ColumnId.TODAY: "Today",
    ColumnId.FUTURE: "Upcoming",
    ColumnId.INCOMPLETE: "Incomplete (overdue)",
    ColumnId.BACKLOG: "Backlog",
}


class TaskIdMapping:
    """Bidirectional map between real task ids and short numeric references."""

    def __init__(self, task_ids: Iterable[str] = ()):
        self._short: Dict[str, int] = {}
        self._real: Dict[int, str] = {}
        for task_id in task_ids:
            self.add(task_id)

    def add(self, task_id: str) -> int:
        if task_id not in self._short:
            short = len(self._short) + 1
            self._short[task_id] = short
            self._real[short] = task_id
        return self._short[task_id]

    def short_id(self, task_id: str) -> Optional[int]:
        return self._short.get(task_id)

    def resolve(self, reference) -> str:
        """
        Resolve ``"#3"``, ``"3"`` or ``3`` to the real id.

        Unknown references are returned unchanged so real ids pass through.
        """
        text = str(reference).strip()
        candidate = text[1:] if text.startswith("#") else text
        if candidate.isdigit() and int(candidate) in self._real:
            return self._real[int(candidate)]
        return text

    def __len__(self) -> int:
        return len(self._short)

    def to_dict(self) -> Dict[str, str]:
        return {str(k): v for k, v in self._real.items()}


def _format_time(value: str) -> str:
    try:
        return datetime.fromisoformat(value).strftime("%I:%M %p").lstrip("0")
    except ValueError:
        return value


def format_task(task: Task, mapping: TaskIdMapping) -> str:
    metadata = []
    if task.urgency:
        metadata.append(f"Urgency: {task.urgency}")
    if task.importance:
        metadata.append(f"Importance: {task.importance}")
    if task.duration_minutes:
        metadata.append(f"Duration: {task.duration_minutes}m")
    if task.tags:
        metadata.append(f"Tags: {', '.join(sorted(task.tags))}")
    if task.calendar_item:
        start = task.calendar_item.start
        metadata.append(
            f"Time: {start[:10]} {_format_time(start)} - {_format_time(task.calendar_item.end)}"
        )

    line = f"  - [{'x' if task.completed else ' '}] #{mapping.add(task.id)} {task.title}"
    if task.description:
        line += f"\n    Description: {task.description}"
    if metadata:
        line += f"\n    ({' | '.join(metadata)})"
    if task.subtasks:
        line += "\n    Subtasks:"
        for subtask in task.subtasks:
            line += f"\n    - [{'x' if subtask.completed else ' '}] ({subtask.id}) {subtask.text}"
    return line


def format_tasks(title: str, tasks: List[Task], mapping: TaskIdMapping) -> str:
    if not tasks:
        return ""
    body = "\n".join(format_task(t, mapping) for t in tasks)
    return f"{title}:\n{body}\n"


def format_board_context(
    columns: Mapping[ColumnId, List[Task]],
    mapping: Optional[TaskIdMapping] = None,
    today: Optional[str] = None,
) -> str:
    """
    Render the board as prompt text.

    Args:
        columns: Tasks per column in display order
        mapping: Mapping to extend (a fresh one is used when omitted)
        today: ISO date shown as the current date

    Returns:
        Prompt text; empty columns are skipped
    """
    mapping = mapping if mapping is not None else TaskIdMapping()
    sections = []
    if today:
        sections.append(f"Today is {today}.\n")
    for column in COLUMN_TITLES:
        section = format_tasks(COLUMN_TITLES[column], list(columns.get(column, [])), mapping)
        if section:
            sections.append(section)
    if len(sections) == (1 if today else 0):
        sections.append("The board is empty.\n")
    return "\n".join(sections)
