"""
Configuration module - Settings and configuration management
"""

from .agent_config import (
    AgentConfig,
    LLMConfig,
    LLMProvider,
    PipelineConfig,
    VoiceConfig,
    TurnDetectionConfig,
    TurnDetectionMode,
    BoardConfig,
)
from .env_config import EnvConfig

__all__ = [
    'AgentConfig',
    'LLMConfig',
    'LLMProvider',
    'PipelineConfig',
    'VoiceConfig',
    'TurnDetectionConfig',
    'TurnDetectionMode',
    'BoardConfig',
    'EnvConfig',
]
