"""
Voice module - Realtime voice session state records
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .enums import ConnectionState, TurnState
from .task import now_iso


@dataclass
class VoiceTranscript:
    """A transcribed utterance"""
    role: str  # "user" | "assistant"
    text: str
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "transcript", "role": self.role, "text": self.text, "timestamp": self.timestamp}


@dataclass
class ToolCallEvent:
    """A tool call issued during a voice session and what happened to it"""
    call_id: str
    name: str
    arguments: Union[str, Dict[str, Any], None]
    status: str = "pending"  # pending | dispatched | denied | failed
    outcome: Optional[Dict[str, Any]] = None
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "toolCall",
            "callId": self.call_id,
            "name": self.name,
            "arguments": self.arguments,
            "status": self.status,
            "outcome": self.outcome,
            "timestamp": self.timestamp,
        }


@dataclass
class VoiceSessionState:
    """Observable state of a voice session"""
    session_id: str
    user_id: Optional[str] = None
    connection_state: ConnectionState = ConnectionState.IDLE
    turn_state: TurnState = TurnState.IDLE
    immediate_execution: bool = True
    transcript: List[Union[VoiceTranscript, ToolCallEvent]] = field(default_factory=list)
    close_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "connectionState": self.connection_state.value,
            "turnState": self.turn_state.value,
            "immediateExecution": self.immediate_execution,
            "transcript": [t.to_dict() for t in self.transcript],
            "closeReason": self.close_reason,
        }
