"""
Prompt builder module - Constructs prompts for LLM interactions
"""

import json
from typing import Dict, Any, List, Optional


def _bullets(items: List[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


class PromptBuilder:
    """
    Utility class for building the per-stage prompts of the pipeline.

    This centralizes all prompt construction logic, making it easier to
    maintain and test LLM interactions. Every builder returns a
    ``(system_prompt, user_prompt)`` pair.
    """

    @staticmethod
    def build_plan_prompt(request: str, board_context: Optional[str] = None, today: Optional[str] = None):
        """
        Build the prompt that turns a natural-language request into a todo list.

        Args:
            request: What the user asked for
            board_context: Formatted board (tasks referenced as #n)
            today: ISO date used to resolve relative dates

        Returns:
            (system_prompt, user_prompt)
        """
        system = f"""You are a planning assistant for a personal task board.

Break the user's request into an ordered todo list of atomic, verifiable statements,
for example "move task #3 to today" or "create backlog task for renewing the passport".

IMPORTANT INSTRUCTIONS:
1. Do not perform any changes yourself; only plan
2. Each item must be checkable on its own after execution
3. Refer to existing tasks by their #number from the board below
4. Resolve relative dates (tomorrow, next Monday) against today's date: {today or "unknown"}
5. Record the list with the record_todo_list function"""

        if board_context:
            system += "\n\nCurrent board:\n" + board_context

        return system, f"Request: {request}"

    @staticmethod
    def build_gather_prompt(todo_list: List[str], context: Optional[str] = None):
        """
        Build the gather-stage prompt (read-only capabilities only).

        Args:
            todo_list: Planned items
            context: Additional context (board text, user notes)

        Returns:
            (system_prompt, user_prompt)
        """
        system = f"""You are an information gathering assistant. Your role is to gather all necessary information before executing the plan.

IMPORTANT INSTRUCTIONS:
1. You have been given a todo list that needs to be completed:
{_bullets(todo_list)}

2. Your first job is to gather ALL necessary information using the available query functions
3. Use get_calendar_for_date_range to check relevant dates for conflicts
4. Use the task listing functions to understand the current task state
5. Make ALL necessary information gathering calls in this single turn
6. Explain briefly what information you're gathering and why
7. You will receive the results of these queries in the next stage"""

        if context:
            system += "\n\nAdditional Context:\n" + context

        return system, "Please gather all necessary information to execute this plan."

    @staticmethod
    def build_execute_prompt(
        todo_list: List[str],
        gathered_results: Dict[str, Any],
        context: Optional[str] = None
    ):
        """
        Build the execute-stage prompt embedding the gathered results.

        Args:
            todo_list: Planned items
            gathered_results: Capability name -> last result from the gather stage
            context: Additional context

        Returns:
            (system_prompt, user_prompt)
        """
        system = f"""You are a task execution assistant. Your role is to execute the plan using the gathered information.

IMPORTANT INSTRUCTIONS:
1. You have been provided with the results of your information gathering queries:
{json.dumps(gathered_results, indent=2, default=str)}

2. Using this information, you MUST now use the available functions to complete ALL items in the todo list:
{_bullets(todo_list)}

3. For each item, determine which function(s) would best accomplish it based on the gathered information
4. Make ALL necessary function calls immediately - do not wait for user confirmation
5. Calls in one response are applied in order, so later calls see the effect of earlier ones
6. If a call fails you will see the error and may correct it in your next response
7. If you cannot complete an item with the available functions, explain why"""

        if context:
            system += "\n\nAdditional Context:\n" + context

        return system, "Please execute all items in the plan using the gathered information."

    @staticmethod
    def build_verify_prompt(todo_list: List[str], results: str):
        """
        Build the verification prompt for the mark_results function.

        Args:
            todo_list: Planned items
            results: Serialized execution transcript

        Returns:
            (system_prompt, user_prompt)
        """
        system = f"""You are an assistant that marks the results of the execution.

IMPORTANT INSTRUCTIONS:
1. You have been given a todo list that needs to be marked as done or not done based on the results of the execution.
List Items:
{_bullets(todo_list)}

Results:
{results}

Consider whether the execution has completed each item and mark the todo list accordingly by using the mark_results function.
Give one entry per item, in the same order, with a short reason."""

        return system, "Please mark the results of the execution."

    @staticmethod
    def build_voice_instructions(
        base_instructions: Optional[str] = None,
        board_context: Optional[str] = None,
        today: Optional[str] = None,
        immediate_execution: bool = True
    ) -> str:
        """
        Build the realtime session instructions.

        Args:
            base_instructions: Caller-supplied instructions (replace the default persona)
            board_context: Formatted board
            today: ISO date
            immediate_execution: When False the user confirms every change

        Returns:
            Instruction text
        """
        instructions = base_instructions or (
            "You are a friendly, efficient planning assistant talking with the user by voice. "
            "Keep replies short. Use the available functions to change the task board, "
            "keep the plan up to date with update_plan, and call hang_up when the user is done."
        )
        if not immediate_execution:
            instructions += "\nEvery change is confirmed by the user before it is applied; tell them what you are about to do."
        if today:
            instructions += f"\nToday is {today}."
        if board_context:
            instructions += "\n\nCurrent board:\n" + board_context
        return instructions
