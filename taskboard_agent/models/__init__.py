"""
Models module - Data structures and types
"""

from .enums import (
    Stage,
    StageTag,
    ColumnId,
    ALLOWED_DROPS,
    TranscriptKind,
    ConnectionState,
    TurnState,
    ApprovalDecision,
    Urgency,
    Importance,
)
from .task import Task, Subtask, CalendarItem
from .capability import CapabilityDefinition, ToolCallRequest, ToolOutcome
from .session import AgentSession, TranscriptEntry, TodoResult, VerificationReport
from .voice import VoiceSessionState, VoiceTranscript, ToolCallEvent
from .messages import SystemEvent, StreamChunk, create_system_event

__all__ = [
    'Stage',
    'StageTag',
    'ColumnId',
    'ALLOWED_DROPS',
    'TranscriptKind',
    'ConnectionState',
    'TurnState',
    'ApprovalDecision',
    'Urgency',
    'Importance',
    'Task',
    'Subtask',
    'CalendarItem',
    'CapabilityDefinition',
    'ToolCallRequest',
    'ToolOutcome',
    'AgentSession',
    'TranscriptEntry',
    'TodoResult',
    'VerificationReport',
    'VoiceSessionState',
    'VoiceTranscript',
    'ToolCallEvent',
    'SystemEvent',
    'StreamChunk',
    'create_system_event',
]
