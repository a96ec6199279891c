"""
Core module - registry, dispatcher, board store, stage pipeline and voice sessions
"""

from .event_bus import EventBus, get_event_bus
from .registry import CapabilityRegistry
from .capabilities import build_default_registry, default_capabilities
from .persistence import InMemoryTaskRepository, StaticSessionVerifier, TaskRepository, SessionVerifier
from .board import BoardSnapshot, TaskBoardStore
from .drag import DragController, DragState, DropResult
from .dispatcher import ToolContext, ToolDispatcher
from .model_channel import LangChainModelChannel, ModelChannel, ModelTurn
from .verifier import ResultVerifier
from .workflow import WorkflowBuilder
from .pipeline import StagePipeline
from .sessions import SessionArena
from .realtime import RealtimeSessionClient, WebSocketRealtimeTransport, bootstrap_voice_session
from .voice import ApprovalGate, VoiceActivityDetector, VoiceSession

__all__ = [
    'EventBus',
    'get_event_bus',
    'CapabilityRegistry',
    'build_default_registry',
    'default_capabilities',
    'InMemoryTaskRepository',
    'StaticSessionVerifier',
    'TaskRepository',
    'SessionVerifier',
    'BoardSnapshot',
    'TaskBoardStore',
    'DragController',
    'DragState',
    'DropResult',
    'ToolContext',
    'ToolDispatcher',
    'LangChainModelChannel',
    'ModelChannel',
    'ModelTurn',
    'ResultVerifier',
    'WorkflowBuilder',
    'StagePipeline',
    'SessionArena',
    'RealtimeSessionClient',
    'WebSocketRealtimeTransport',
    'bootstrap_voice_session',
    'ApprovalGate',
    'VoiceActivityDetector',
    'VoiceSession',
]
