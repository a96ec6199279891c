"""
Default capability catalogue

Gather capabilities only read the board; execute capabilities mutate it.
The two sets are disjoint, so a gather-stage turn can never change state.
Every handler has the signature ``handler(args, context) -> result`` where
``context`` is a ToolContext.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List

from taskboard_agent.core.registry import CapabilityRegistry
from taskboard_agent.models.capability import CapabilityDefinition
from taskboard_agent.models.enums import ColumnId, Importance, StageTag, Urgency
from taskboard_agent.models.task import CalendarItem, Subtask, Task, new_id, now_iso
from taskboard_agent.utils.exceptions import DomainError, InvalidColumnError, SubtaskNotFoundError

GATHER = frozenset({StageTag.GATHER})
EXECUTE = frozenset({StageTag.EXECUTE})

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"

_TASK_REF = {
    "type": ["string", "integer"],
    "description": "Task reference: the #number shown in the board context, or the task id",
}


def _object(properties: Dict[str, Any], required: List[str] = ()) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": list(required),
        "additionalProperties": False,
    }


def summarize(task: Task, context) -> Dict[str, Any]:
    """Compact task view returned to the model."""
    return {
        "ref": f"#{context.id_mapping.add(task.id)}",
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "column": task.column_id.value,
        "completed": task.completed,
        "calendarItem": task.calendar_item.to_dict() if task.calendar_item else None,
        "durationMinutes": task.duration_minutes,
        "urgency": task.urgency,
        "importance": task.importance,
        "tags": sorted(task.tags),
        "subtasks": [s.to_dict() for s in task.subtasks],
    }


def _slot(day: str, time_of_day: str = "00:00") -> datetime:
    try:
        return datetime.fromisoformat(f"{day}T{time_of_day}:00")
    except ValueError as e:
        raise DomainError(f"'{day} {time_of_day}' is not a valid date and time: {e}",
                          error_code="INVALID_DATE") from None


def _calendar_block(day: str, start_time: str, minutes: int) -> CalendarItem:
    start = _slot(day, start_time)
    return CalendarItem(start=start.isoformat(), end=(start + timedelta(minutes=minutes)).isoformat())


# ============================================================================
# GATHER HANDLERS
# ============================================================================

def get_calendar_for_date_range(args, context):
    _slot(args["start_date"])
    _slot(args["end_date"])
    if args["end_date"] < args["start_date"]:
        raise DomainError("end_date must not be before start_date", error_code="INVALID_RANGE")
    tasks = context.board.tasks_in_range(args["start_date"], args["end_date"])
    return {
        "start_date": args["start_date"],
        "end_date": args["end_date"],
        "events": [summarize(t, context) for t in tasks],
    }


def _column_lister(column: ColumnId):
    def handler(args, context):
        return {"column": column.value,
                "tasks": [summarize(t, context) for t in context.board.list_column(column)]}
    handler.__name__ = f"get_{column.value}_tasks"
    return handler


# ============================================================================
# EXECUTE HANDLERS
# ============================================================================

def _build_task(args, context, column: ColumnId, calendar_item=None) -> Task:
    return Task(
        id=new_id("task_"),
        title=args["title"],
        column_id=column,
        description=args.get("description"),
        subtasks=[Subtask(id=new_id("st_"), text=text) for text in args.get("subtasks", [])],
        tags=set(args.get("tags", [])),
        calendar_item=calendar_item,
        duration_minutes=args.get("duration_minutes"),
        urgency=args.get("urgency"),
        importance=args.get("importance"),
        order=context.board.next_order(column),
    )


def create_task(args, context):
    due_date = args.get("due_date")
    due_time = args.get("due_time")
    if due_time and not due_date:
        raise DomainError("due_time requires due_date", error_code="INVALID_DUE")
    if due_date:
        _slot(due_date, due_time or "00:00")

    column = context.board.column_for_date(due_date, has_time=bool(due_time), today=context.today)
    calendar_item = None
    if column == ColumnId.CALENDAR:
        minutes = args.get("duration_minutes") or context.board.default_duration_minutes
        calendar_item = _calendar_block(due_date, due_time, minutes)

    task = _build_task(args, context, column, calendar_item)
    snapshot = context.board.upsert_task(task)
    return summarize(snapshot.get(task.id), context)


def create_backlog_task(args, context):
    task = _build_task(args, context, ColumnId.BACKLOG)
    snapshot = context.board.upsert_task(task)
    return summarize(snapshot.get(task.id), context)


def move_task(args, context):
    """Reschedule a task into the calendar."""
    task_id = context.resolve(args["task_id"])
    task = context.board.get_task(task_id)

    start = _slot(args["new_date"], args["new_start_time"])
    end = _slot(args["new_date"], args["new_end_time"])
    if end <= start:
        raise InvalidColumnError(ColumnId.CALENDAR.value, "end time must be after start time")

    item = CalendarItem(
        start=start.isoformat(),
        end=end.isoformat(),
        gcal_event_id=task.calendar_item.gcal_event_id if task.calendar_item else None,
    )
    snapshot = context.board.move_task(task_id, task.column_id, ColumnId.CALENDAR, calendar_item=item)
    return summarize(snapshot.get(task_id), context)


def move_task_to_column(args, context):
    task_id = context.resolve(args["task_id"])
    source = context.board.column_of(task_id)
    snapshot = context.board.move_task(task_id, source, args["column"], args.get("position"))
    return summarize(snapshot.get(task_id), context)


def mark_tasks_completed(args, context):
    task_ids = [context.resolve(ref) for ref in args["task_ids"]]
    # Fail before touching anything if one reference is unknown
    for task_id in task_ids:
        context.board.get_task(task_id)
    completed = []
    for task_id in task_ids:
        snapshot = context.board.mark_task_completed(task_id)
        completed.append(summarize(snapshot.get(task_id), context))
    return {"completed": completed}


def mark_subtask_completed(args, context):
    task_id = context.resolve(args["task_id"])
    task = context.board.get_task(task_id)

    reference = str(args["subtask_id"])
    subtask = task.find_subtask(reference)
    if subtask is None and reference.isdigit() and 1 <= int(reference) <= len(task.subtasks):
        subtask = task.subtasks[int(reference) - 1]
    if subtask is None:
        raise SubtaskNotFoundError(task_id, reference)

    snapshot = context.board.mark_subtask_completed(task_id, subtask.id)
    return summarize(snapshot.get(task_id), context)


def set_callback(args, context):
    try:
        when = datetime.fromisoformat(args["callback_datetime"])
    except ValueError:
        raise DomainError(
            f"callback_datetime '{args['callback_datetime']}' is not an ISO 8601 datetime",
            error_code="INVALID_DATETIME",
        ) from None
    note = {"type": "callback", "callback_datetime": when.isoformat(), "context": args["context"],
            "recorded_at": now_iso()}
    context.notes.append(note)
    return note


def add_user_notes(args, context):
    if not args.get("explicit_instructions") and not args.get("interaction_notes"):
        raise DomainError("Provide explicit_instructions or interaction_notes", error_code="EMPTY_NOTES")
    note = {"type": "user_notes", **args, "recorded_at": now_iso()}
    context.notes.append(note)
    return note


def update_plan(args, context):
    context.plan[:] = list(args["todo_list"])
    return {"todo_list": list(context.plan)}


# ============================================================================
# REGISTRY
# ============================================================================

_TASK_FIELDS = {
    "title": {"type": "string", "minLength": 1, "description": "The title of the task"},
    "description": {"type": "string", "description": "Optional details or notes about the task"},
    "subtasks": {"type": "array", "items": {"type": "string"},
                 "description": "List of subtasks associated with this task"},
    "tags": {"type": "array", "items": {"type": "string"}},
    "duration_minutes": {"type": "integer", "minimum": 1, "description": "Expected duration in minutes"},
    "urgency": {"type": "string", "enum": [u.value for u in Urgency]},
    "importance": {"type": "string", "enum": [i.value for i in Importance]},
}


def default_capabilities() -> List[CapabilityDefinition]:
    """Definitions for every built-in capability, handlers bound."""
    return [
        CapabilityDefinition(
            name="get_calendar_for_date_range",
            description="Retrieves tasks and events within a specified date range from the calendar",
            parameter_schema=_object({
                "start_date": {"type": "string", "pattern": DATE_PATTERN,
                               "description": "Start date in YYYY-MM-DD format"},
                "end_date": {"type": "string", "pattern": DATE_PATTERN,
                             "description": "End date in YYYY-MM-DD format"},
            }, ["start_date", "end_date"]),
            stage_tags=GATHER,
            handler=get_calendar_for_date_range,
        ),
        CapabilityDefinition(
            name="get_backlog_tasks",
            description="Lists the tasks in the backlog (no date yet)",
            parameter_schema=_object({}),
            stage_tags=GATHER,
            handler=_column_lister(ColumnId.BACKLOG),
        ),
        CapabilityDefinition(
            name="get_incomplete_tasks",
            description="Lists overdue tasks that were not completed on their day",
            parameter_schema=_object({}),
            stage_tags=GATHER,
            handler=_column_lister(ColumnId.INCOMPLETE),
        ),
        CapabilityDefinition(
            name="get_future_tasks",
            description="Lists tasks planned for days after today",
            parameter_schema=_object({}),
            stage_tags=GATHER,
            handler=_column_lister(ColumnId.FUTURE),
        ),
        CapabilityDefinition(
            name="get_today_tasks",
            description="Lists tasks planned for today without a fixed time",
            parameter_schema=_object({}),
            stage_tags=GATHER,
            handler=_column_lister(ColumnId.TODAY),
        ),
        CapabilityDefinition(
            name="create_task",
            description=(
                "Creates a new task in the user's to-do list or calendar. With a due date and time "
                "the task is placed on the calendar; with only a date it goes to that day."
            ),
            parameter_schema=_object({
                **_TASK_FIELDS,
                "due_date": {"type": "string", "pattern": DATE_PATTERN,
                             "description": "Due date for the task in YYYY-MM-DD format (optional)"},
                "due_time": {"type": "string", "pattern": TIME_PATTERN,
                             "description": "Due time for the task in HH:MM (24-hour) format (optional)"},
            }, ["title"]),
            stage_tags=EXECUTE,
            handler=create_task,
        ),
        CapabilityDefinition(
            name="create_backlog_task",
            description="Creates a new task in the backlog, without a date",
            parameter_schema=_object(dict(_TASK_FIELDS), ["title"]),
            stage_tags=EXECUTE,
            handler=create_backlog_task,
        ),
        CapabilityDefinition(
            name="move_task",
            description="Moves or reschedules an existing task on the calendar",
            parameter_schema=_object({
                "task_id": _TASK_REF,
                "new_date": {"type": "string", "pattern": DATE_PATTERN,
                             "description": "New date for the task in YYYY-MM-DD format"},
                "new_start_time": {"type": "string", "pattern": TIME_PATTERN,
                                   "description": "New start time in HH:MM (24-hour) format"},
                "new_end_time": {"type": "string", "pattern": TIME_PATTERN,
                                 "description": "New end time in HH:MM (24-hour) format"},
            }, ["task_id", "new_date", "new_start_time", "new_end_time"]),
            stage_tags=EXECUTE,
            handler=move_task,
        ),
        CapabilityDefinition(
            name="move_task_to_column",
            description=(
                "Moves a task to another board column (backlog, incomplete, today, future). "
                "Use move_task to put a task on the calendar."
            ),
            parameter_schema=_object({
                "task_id": _TASK_REF,
                "column": {"type": "string", "enum": [c.value for c in ColumnId]},
                "position": {"type": "integer", "minimum": 0,
                             "description": "Zero-based position in the column (end when omitted)"},
            }, ["task_id", "column"]),
            stage_tags=EXECUTE,
            handler=move_task_to_column,
        ),
        CapabilityDefinition(
            name="mark_tasks_completed",
            description="Marks one or more tasks as completed",
            parameter_schema=_object({
                "task_ids": {"type": "array", "items": _TASK_REF, "minItems": 1},
            }, ["task_ids"]),
            stage_tags=EXECUTE,
            handler=mark_tasks_completed,
        ),
        CapabilityDefinition(
            name="mark_subtask_completed",
            description="Marks a specific subtask as completed within a given parent task",
            parameter_schema=_object({
                "task_id": _TASK_REF,
                "subtask_id": {"type": ["string", "integer"],
                               "description": "Subtask id, or its 1-based position in the list"},
            }, ["task_id", "subtask_id"]),
            stage_tags=EXECUTE,
            handler=mark_subtask_completed,
        ),
        CapabilityDefinition(
            name="set_callback",
            description="Schedules a callback time for future interaction or reminders",
            parameter_schema=_object({
                "callback_datetime": {"type": "string",
                                      "description": "Date and time in ISO 8601 format (e.g. '2025-01-15T14:30:00')"},
                "context": {"type": "string",
                            "description": "A note describing the purpose of the callback"},
            }, ["callback_datetime", "context"]),
            stage_tags=EXECUTE,
            handler=set_callback,
        ),
        CapabilityDefinition(
            name="add_user_notes",
            description=(
                "Store user instructions or relevant notes about how to interact best with the user. "
                "This data is for private reference, not for external display."
            ),
            parameter_schema=_object({
                "explicit_instructions": {"type": "string"},
                "interaction_notes": {"type": "string"},
            }),
            stage_tags=EXECUTE,
            handler=add_user_notes,
        ),
        CapabilityDefinition(
            name="update_plan",
            description=(
                "Note down the things that need to be completed after the call. It overwrites "
                "the previous plan, so always send the complete list."
            ),
            parameter_schema=_object({
                "todo_list": {"type": "array", "items": {"type": "string"},
                              "description": "Actions to complete after the call"},
            }, ["todo_list"]),
            stage_tags=EXECUTE,
            handler=update_plan,
        ),
    ]


def build_default_registry(freeze: bool = True) -> CapabilityRegistry:
    """Registry holding the built-in capabilities, frozen unless asked otherwise."""
    registry = CapabilityRegistry()
    for definition in default_capabilities():
        registry.register(definition)
    return registry.freeze() if freeze else registry
