"""
Result Verifier - asks the model to mark each todo item done or not done

Purely advisory: it never touches the task board. ``success`` reports
whether the model produced a usable verdict, not whether every item passed.
"""

from typing import List, Optional

from langchain_core.messages import HumanMessage, SystemMessage

from taskboard_agent.core.model_channel import ModelChannel
from taskboard_agent.models.session import TodoResult, VerificationReport
from taskboard_agent.utils.logger import get_logger
from taskboard_agent.utils.prompt_builder import PromptBuilder
from taskboard_agent.utils.validation import parse_arguments, validate_schema
from taskboard_agent.utils.exceptions import InvalidArgumentsError

logger = get_logger(__name__)

MARK_RESULTS_TOOL = {
    "type": "function",
    "function": {
        "name": "mark_results",
        "description": "Mark the results of the execution",
        "parameters": {
            "type": "object",
            "properties": {
                "todo_list": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "task": {"type": "string"},
                            "reason": {"type": "string"},
                            "result": {"type": "boolean"},
                        },
                        "additionalProperties": False,
                        "required": ["task", "reason", "result"],
                    },
                }
            },
            "required": ["todo_list"],
            "additionalProperties": False,
        },
    },
}


class ResultVerifier:
    """Runs the mark_results turn against a model channel."""

    def __init__(self, channel: ModelChannel, default_timeout: float = 60.0):
        self.channel = channel
        self.default_timeout = default_timeout

    def verify(self, todo_list: List[str], results: str, timeout: Optional[float] = None) -> VerificationReport:
        """
        Mark every todo item ``{task, reason, result}``.

        Raises:
            TransportError, ModelTimeoutError: model channel failures
        """
        system, user = PromptBuilder.build_verify_prompt(todo_list, results)
        turn = self.channel.invoke(
            [SystemMessage(content=system), HumanMessage(content=user)],
            [MARK_RESULTS_TOOL],
            timeout=timeout or self.default_timeout,
            tool_choice="mark_results",
        )

        call = next((c for c in turn.tool_calls if c.name == "mark_results"), None)
        if call is None:
            logger.warning("[VERIFY] Model returned no mark_results call")
            return VerificationReport(results=[], success=False, message="No results were processed")

        schema = MARK_RESULTS_TOOL["function"]["parameters"]
        try:
            args = parse_arguments("mark_results", call.raw_arguments)
        except InvalidArgumentsError as e:
            logger.warning(f"[VERIFY] Unparseable mark_results arguments: {e.message}")
            return VerificationReport(results=[], success=False, message="Failed to process results")

        check = validate_schema(schema, args)
        if not check:
            logger.warning(f"[VERIFY] Invalid mark_results arguments: {check}")
            return VerificationReport(results=[], success=False, message="Failed to process results")

        verdicts = [TodoResult(task=r["task"], reason=r["reason"], result=r["result"]) for r in args["todo_list"]]
        done = sum(1 for v in verdicts if v.result)
        logger.info(f"[VERIFY] {done}/{len(verdicts)} items marked done")
        return VerificationReport(results=verdicts, success=True, message="Results processed successfully")
