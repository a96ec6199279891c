"""
Tool Dispatcher - validates model-issued tool calls and runs their handlers

dispatch(stage, request):
    1. registry lookup            -> UnknownCapabilityError
    2. stage allowlist check      -> StageViolationError
    3. argument parse + schema    -> InvalidArgumentsError
    4. handler inside the per-task critical section of every task id it names
    5. ToolOutcome; handler DomainErrors come back as ``ok=False`` outcomes
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Union

from taskboard_agent.core.board import TaskBoardStore
from taskboard_agent.core.event_bus import EventBus
from taskboard_agent.core.registry import CapabilityRegistry
from taskboard_agent.models.capability import CapabilityDefinition, ToolCallRequest, ToolOutcome
from taskboard_agent.models.enums import StageTag
from taskboard_agent.models.messages import create_system_event
from taskboard_agent.utils.context_format import TaskIdMapping, format_board_context
from taskboard_agent.utils.exceptions import DomainError, StageViolationError
from taskboard_agent.utils.logger import get_logger
from taskboard_agent.utils.validation import validate_arguments

logger = get_logger(__name__)

# Argument names that carry task references
TASK_REFERENCE_KEYS = ("task_id", "task_ids")


@dataclass
class ToolContext:
    """
    Everything a handler may touch.

    Attributes:
        board: Canonical task board
        id_mapping: Short (#n) references shown to the model
        today: ISO date used to place dated tasks
        session_id: Owning agent or voice session
        notes: Notes recorded by add_user_notes / set_callback
        plan: Latest todo list recorded by update_plan
    """
    board: TaskBoardStore
    id_mapping: TaskIdMapping = field(default_factory=TaskIdMapping)
    today: str = field(default_factory=lambda: date.today().isoformat())
    session_id: Optional[str] = None
    notes: List[Dict[str, Any]] = field(default_factory=list)
    plan: List[str] = field(default_factory=list)

    def resolve(self, reference: Any) -> str:
        return self.id_mapping.resolve(reference)

    def board_context(self) -> str:
        """Board text for prompts; extends ``id_mapping`` with every visible task."""
        snapshot = self.board.snapshot()
        return format_board_context(snapshot.columns, self.id_mapping, today=self.today)


@dataclass
class PreparedCall:
    """A tool call that passed lookup, stage and argument checks."""
    capability: CapabilityDefinition
    arguments: Dict[str, Any]
    request: ToolCallRequest
    stage: StageTag


class ToolDispatcher:
    """Routes tool calls through the capability allowlist for a stage."""

    def __init__(self, registry: CapabilityRegistry, event_bus: Optional[EventBus] = None):
        self.registry = registry
        self.event_bus = event_bus

    def prepare(self, stage: Union[str, StageTag], request: ToolCallRequest) -> PreparedCall:
        """
        Steps 1-3 of dispatch. No handler runs and no state changes.

        Raises:
            UnknownCapabilityError, StageViolationError, InvalidArgumentsError
        """
        capability = self.registry.get(request.name)

        stage_value = stage.value if isinstance(stage, StageTag) else str(stage)
        if not capability.allows(stage_value):
            logger.warning(f"[DISPATCH] {request.name} rejected in stage {stage_value}")
            raise StageViolationError(
                request.name, stage_value, [t.value for t in capability.stage_tags]
            )

        arguments = validate_arguments(request.name, capability.parameter_schema, request.raw_arguments)
        return PreparedCall(capability, arguments, request, StageTag(stage_value))

    def execute(self, prepared: PreparedCall, context: ToolContext) -> ToolOutcome:
        """
        Step 4-5: run the bound handler.

        Domain errors become ``ok=False`` outcomes; anything else propagates.
        """
        name = prepared.capability.name
        task_ids = self._task_ids(prepared.arguments, context)

        try:
            with context.board.task_lock(*task_ids):
                result = prepared.capability.handler(prepared.arguments, context)
        except DomainError as e:
            logger.info(f"[DISPATCH] {name} domain error: {e.message}")
            outcome = ToolOutcome(name=name, ok=False, error=e.to_dict(), call_id=prepared.request.call_id)
        else:
            logger.info(f"[DISPATCH] ✓ {name} ({prepared.stage.value})")
            outcome = ToolOutcome(name=name, result=result, call_id=prepared.request.call_id)

        if self.event_bus is not None:
            self.event_bus.publish(create_system_event(
                event_type="tool_call_dispatched",
                event_category="pipeline",
                source="tool_dispatcher",
                session_id=context.session_id,
                payload={"name": name, "stage": prepared.stage.value, "ok": outcome.ok},
            ))
        return outcome

    def dispatch(
        self,
        stage: Union[str, StageTag],
        request: ToolCallRequest,
        context: ToolContext,
    ) -> ToolOutcome:
        """Validate and run one tool call."""
        return self.execute(self.prepare(stage, request), context)

    def catalogue(self, stage: Union[str, StageTag]) -> List[Dict[str, Any]]:
        """``{name, description, parameterSchema}`` entries exposed for ``stage``."""
        return [c.to_catalogue_entry() for c in self.registry.list_by_stage(stage)]

    @staticmethod
    def _task_ids(arguments: Dict[str, Any], context: ToolContext) -> List[str]:
        ids: List[str] = []
        for key in TASK_REFERENCE_KEYS:
            value = arguments.get(key)
            if isinstance(value, list):
                ids.extend(context.resolve(v) for v in value)
            elif value is not None:
                ids.append(context.resolve(value))
        return ids
