"""
Session module - Agent session state machine and transcript records
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .enums import Stage, STAGE_ORDER, TranscriptKind
from .task import new_id, now_iso
from taskboard_agent.utils.exceptions import InvalidStateTransitionError


@dataclass
class TranscriptEntry:
    """One entry of a session transcript"""
    kind: TranscriptKind
    payload: Dict[str, Any]
    stage: Optional[Stage] = None
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "stage": self.stage.value if self.stage else None,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


@dataclass
class TodoResult:
    """Verifier verdict for one todo item"""
    task: str
    reason: str
    result: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"task": self.task, "reason": self.reason, "result": self.result}


@dataclass
class VerificationReport:
    """Advisory completion report produced by the verify stage"""
    results: List[TodoResult]
    success: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "success": self.success,
            "message": self.message,
        }


@dataclass
class AgentSession:
    """
    Per-request pipeline state.

    Stages only move forward; ``error`` is reachable from any non-terminal
    stage and absorbs every later transition.
    """
    request: Optional[str] = None
    user_id: Optional[str] = None
    session_id: str = field(default_factory=lambda: new_id("sess_"))
    stage: Stage = Stage.PLAN
    todo_list: List[str] = field(default_factory=list)
    gathered_results: Dict[str, Any] = field(default_factory=dict)
    transcript: List[TranscriptEntry] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None
    verification: Optional[VerificationReport] = None
    cancel_requested: bool = False
    created_at: str = field(default_factory=now_iso)
    observer: Optional[Callable[["AgentSession", Any], None]] = field(
        default=None, repr=False, compare=False
    )

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    def advance(self, stage: Stage) -> None:
        """Move to a later stage. Revisiting or leaving a terminal stage is illegal."""
        if self.is_terminal:
            raise InvalidStateTransitionError("session", self.stage.value, stage.value)
        if stage == Stage.ERROR or STAGE_ORDER[stage] <= STAGE_ORDER[self.stage]:
            raise InvalidStateTransitionError("session", self.stage.value, stage.value)
        self.stage = stage
        self._notify({"type": "stage", "stage": stage.value})

    def fail(self, message: str, error_code: Optional[str] = None) -> None:
        """Transition to ``error``. Repeated failures keep the first message."""
        if self.stage == Stage.ERROR:
            return
        if self.stage == Stage.COMPLETED:
            raise InvalidStateTransitionError("session", self.stage.value, Stage.ERROR.value)
        self.stage = Stage.ERROR
        self.error = message
        self.error_code = error_code
        self._notify({"type": "stage", "stage": Stage.ERROR.value, "error": message})

    def record(self, kind: TranscriptKind, payload: Dict[str, Any]) -> TranscriptEntry:
        entry = TranscriptEntry(kind=kind, payload=payload, stage=self.stage)
        self.transcript.append(entry)
        self._notify(entry)
        return entry

    def transcript_for(self, stage: Stage) -> List[TranscriptEntry]:
        return [e for e in self.transcript if e.stage == stage]

    def _notify(self, item: Any) -> None:
        if self.observer is not None:
            self.observer(self, item)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "request": self.request,
            "stage": self.stage.value,
            "todoList": list(self.todo_list),
            "gatheredResults": self.gathered_results,
            "transcript": [e.to_dict() for e in self.transcript],
            "error": self.error,
            "errorCode": self.error_code,
            "verification": self.verification.to_dict() if self.verification else None,
            "createdAt": self.created_at,
        }
