"""
Standardized Message Formats for the task board agent

This module defines the wire shapes exchanged at the service boundary and
the event envelope published on the event bus.

Key Principles:
- Type safety via TypedDict
- Field names follow the browser client's camelCase convention
- Event-driven architecture support
"""

from typing import TypedDict, Optional, Any, Literal, NotRequired
from datetime import datetime
import uuid


# ============================================================================
# STAGE REQUESTS AND RESPONSES
# ============================================================================

class GatherRequest(TypedDict):
    """Inbound request that starts the gather stage."""
    todoList: list[str]
    context: NotRequired[Optional[str]]


class ExecuteRequest(TypedDict):
    """Inbound request that starts the execute stage."""
    todoList: list[str]
    queryResults: dict[str, Any]
    context: NotRequired[Optional[str]]


class StageResponse(TypedDict):
    """Non-streaming stage response: the final model turn plus what happened."""
    message: dict[str, Any]
    queryResults: NotRequired[dict[str, Any]]
    outcomes: NotRequired[list[dict[str, Any]]]
    error: NotRequired[Optional[str]]


class VerifyRequest(TypedDict):
    todoList: list[str]
    results: str


class VerifyResponse(TypedDict):
    results: list[dict[str, Any]]
    success: bool
    message: str


class StreamChunk(TypedDict):
    """
    One NDJSON line of a streamed stage.

    type: "text" carries ``delta``; "toolCall"/"toolResult" carry ``payload``;
    "stage" carries ``stage`` and optionally ``error``.
    """
    type: Literal["text", "toolCall", "toolResult", "stage"]
    stage: NotRequired[Optional[str]]
    delta: NotRequired[str]
    payload: NotRequired[dict[str, Any]]
    error: NotRequired[Optional[str]]


class VoiceBootstrapRequest(TypedDict):
    instructions: NotRequired[Optional[str]]
    selectedCapabilities: list[str]
    voice: str
    turnDetection: NotRequired[dict[str, Any]]


class VoiceBootstrapResponse(TypedDict):
    sessionId: str
    clientSecret: str
    expiresAt: NotRequired[Optional[int]]
    model: str
    url: str


# ============================================================================
# SYSTEM EVENTS
# ============================================================================

class SystemEvent(TypedDict):
    """
    Standard event format for event-driven architecture.

    Published by: board store, stage pipeline, voice sessions
    Consumed by: Event subscribers (registered via EventBus)
    """
    # Event Identity
    event_id: str
    event_type: str              # e.g., "task_moved", "stage_started"
    event_category: Literal[
        "board",
        "pipeline",
        "voice",
        "system_state"
    ]

    # Event Source
    source: str
    session_id: NotRequired[Optional[str]]

    # Event Payload
    payload: dict[str, Any]

    # Event Metadata
    timestamp: str
    severity: Literal["debug", "info", "warning", "error", "critical"]

    # Event Propagation
    propagate: bool


def create_system_event(
    event_type: str,
    event_category: Literal["board", "pipeline", "voice", "system_state"],
    source: str,
    payload: dict[str, Any],
    session_id: Optional[str] = None,
    severity: Literal["debug", "info", "warning", "error", "critical"] = "info",
    propagate: bool = True
) -> SystemEvent:
    """
    Helper function to create system events.

    Args:
        event_type: Type of event (e.g., "task_moved")
        event_category: Category of event
        source: Component that generated the event
        payload: Event data
        session_id: Optional agent or voice session id
        severity: Event severity level
        propagate: Whether to deliver to subscribers

    Returns:
        SystemEvent instance
    """
    return SystemEvent(
        event_id=str(uuid.uuid4()),
        event_type=event_type,
        event_category=event_category,
        source=source,
        session_id=session_id,
        payload=payload,
        timestamp=datetime.now().isoformat(),
        severity=severity,
        propagate=propagate,
    )
