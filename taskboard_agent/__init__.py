"""
Task Board Agent - staged tool-calling agent for a personal task board

A natural-language request is planned into a todo list, the gather stage
reads the board through read-only capabilities, the execute stage changes
it through mutating ones, and a verifier marks what got done. A realtime
voice session can drive the same capabilities.

Configuration:
    Create a .env file with your LLM provider configuration:

    ANTHROPIC_API_KEY=sk-ant-...
    AGENT_LLM_PROVIDER=anthropic
    AGENT_LLM_MODEL=claude-sonnet-4-20250514
    OPENAI_API_KEY=sk-...          # voice sessions

Example:
    >>> from taskboard_agent import AgentConfig, TaskBoardStore, build_default_registry
    >>> from taskboard_agent import AgentSession, ToolDispatcher, ToolContext, StagePipeline, LangChainModelChannel
    >>>
    >>> config = AgentConfig.from_env(prefix="AGENT_")
    >>> dispatcher = ToolDispatcher(build_default_registry())
    >>> pipeline = StagePipeline(dispatcher, LangChainModelChannel(config.llm), config.pipeline)
    >>> session = pipeline.run(AgentSession(request="move the dentist task to today"),
    ...                        ToolContext(board=TaskBoardStore()))
"""

__version__ = "1.0.0"
__all__ = [
    'AgentConfig',
    'LLMConfig',
    'EnvConfig',
    'AgentSession',
    'Task',
    'TaskBoardStore',
    'ToolContext',
    'ToolDispatcher',
    'StagePipeline',
    'LangChainModelChannel',
    'build_default_registry',
]

from taskboard_agent.config import AgentConfig, LLMConfig, EnvConfig
from taskboard_agent.models import AgentSession, Task
from taskboard_agent.core import (
    TaskBoardStore,
    ToolContext,
    ToolDispatcher,
    StagePipeline,
    LangChainModelChannel,
    build_default_registry,
)
