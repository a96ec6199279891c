"""
Workflow module - LangGraph workflow construction for the stage pipeline
"""

from typing import Any, Callable, Optional, TypedDict

from langgraph.graph import StateGraph, END

from taskboard_agent.models.enums import Stage
from taskboard_agent.models.session import AgentSession
from taskboard_agent.utils.logger import get_logger

logger = get_logger(__name__)


class PipelineState(TypedDict):
    """Graph state. The session object is updated in place by each node."""
    session: AgentSession
    tool_context: Any
    context: Optional[str]
    timeout: float
    on_text: Optional[Callable[[str], None]]


class WorkflowBuilder:
    """
    Builds the LangGraph workflow for the plan -> gather -> execute -> verify pipeline.

    Node implementations live on the pipeline; this class only wires them.
    """

    def __init__(self, pipeline):
        """
        Args:
            pipeline: The StagePipeline instance providing node callables
        """
        self.pipeline = pipeline

    def build(self) -> StateGraph:
        """
        Build the graph.

        Workflow:
        1. Plan -> decompose the request into a todo list (no tool calls)
        2. Gather -> read-only capabilities, results collected per capability
        3. Execute -> mutating capabilities, applied in emission order
        4. Verify -> advisory completion report (skipped when disabled)
        5. Complete, or Handle Error from any stage

        Returns:
            Configured StateGraph instance
        """
        workflow = StateGraph(PipelineState)

        workflow.add_node("plan", self.pipeline._plan_node)
        workflow.add_node("gather", self.pipeline._gather_node)
        workflow.add_node("execute", self.pipeline._execute_node)
        workflow.add_node("verify", self.pipeline._verify_node)
        workflow.add_node("complete", self.pipeline._complete_node)
        workflow.add_node("handle_error", self.pipeline._error_node)

        workflow.set_entry_point("plan")

        workflow.add_conditional_edges(
            "plan",
            self._route_to("gather"),
            {"gather": "gather", "handle_error": "handle_error"}
        )
        workflow.add_conditional_edges(
            "gather",
            self._route_to("execute"),
            {"execute": "execute", "handle_error": "handle_error"}
        )
        workflow.add_conditional_edges(
            "execute",
            self._route_after_execute,
            {"verify": "verify", "complete": "complete", "handle_error": "handle_error"}
        )
        workflow.add_conditional_edges(
            "verify",
            self._route_to("complete"),
            {"complete": "complete", "handle_error": "handle_error"}
        )

        workflow.add_edge("complete", END)
        workflow.add_edge("handle_error", END)

        return workflow

    def compile(self):
        # No checkpointer: sessions live in the SessionArena, not in graph memory
        return self.build().compile()

    @staticmethod
    def _failed(state: PipelineState) -> bool:
        return state["session"].stage == Stage.ERROR

    def _route_to(self, next_node: str):
        def route(state: PipelineState) -> str:
            return "handle_error" if self._failed(state) else next_node
        route.__name__ = f"route_to_{next_node}"
        return route

    def _route_after_execute(self, state: PipelineState) -> str:
        if self._failed(state):
            return "handle_error"
        return "verify" if self.pipeline.config.verify_enabled else "complete"
