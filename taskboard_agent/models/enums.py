"""
Enums module - Stage, column and session state enumeration types
"""

from enum import Enum


class Stage(str, Enum):
    """Pipeline stages in the order a session passes through them"""
    PLAN = "plan"
    GATHER = "gather"
    EXECUTE = "execute"
    VERIFY = "verify"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETED, Stage.ERROR)


# Monotonic ordering of the non-error stages
STAGE_ORDER = {
    Stage.PLAN: 0,
    Stage.GATHER: 1,
    Stage.EXECUTE: 2,
    Stage.VERIFY: 3,
    Stage.COMPLETED: 4,
}


class StageTag(str, Enum):
    """Stages a capability may be dispatched in"""
    GATHER = "gather"
    EXECUTE = "execute"


class ColumnId(str, Enum):
    """Task board columns"""
    BACKLOG = "backlog"
    INCOMPLETE = "incomplete"
    TODAY = "today"
    FUTURE = "future"
    CALENDAR = "calendar"


# Drag-and-drop targets permitted from each source column
ALLOWED_DROPS = {
    ColumnId.BACKLOG: (ColumnId.TODAY, ColumnId.CALENDAR, ColumnId.BACKLOG),
    ColumnId.INCOMPLETE: (ColumnId.BACKLOG, ColumnId.TODAY, ColumnId.CALENDAR),
    ColumnId.TODAY: (ColumnId.BACKLOG, ColumnId.CALENDAR, ColumnId.TODAY),
    ColumnId.FUTURE: (ColumnId.BACKLOG, ColumnId.CALENDAR, ColumnId.TODAY),
    ColumnId.CALENDAR: (ColumnId.BACKLOG, ColumnId.TODAY, ColumnId.CALENDAR),
}


class TranscriptKind(str, Enum):
    """Entries recorded in an agent session transcript"""
    TEXT = "text"
    TOOL_CALL = "toolCall"
    TOOL_RESULT = "toolResult"


class ConnectionState(str, Enum):
    """Voice session connection states"""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class TurnState(str, Enum):
    """Voice session turn-taking sub-states"""
    IDLE = "idle"
    USER_SPEAKING = "userSpeaking"
    SERVER_PROCESSING = "serverProcessing"


class ApprovalDecision(str, Enum):
    """Outcome of the voice confirmation gate"""
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"


class Urgency(str, Enum):
    IMMEDIATE = "immediate"
    SOON = "soon"
    LATER = "later"
    SOMEDAY = "someday"


class Importance(str, Enum):
    CRITICAL = "critical"
    SIGNIFICANT = "significant"
    VALUABLE = "valuable"
    OPTIONAL = "optional"
