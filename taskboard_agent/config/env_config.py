"""
Environment configuration - Load settings from .env files
"""

import os
import json
from pathlib import Path
from typing import Optional, Dict, Any, List

from dotenv import load_dotenv


class EnvConfig:
    """
    Load and manage configuration from environment variables and .env files.

    Supports multiple sources with priority:
    1. Environment variables (highest priority)
    2. .env file in current/specified directory or up to three parents
    """

    _loaded_from: Optional[Path] = None

    @staticmethod
    def load_env_file(path: Optional[str] = None) -> bool:
        """
        Load environment variables from .env file.

        Args:
            path: Path to .env file (default: search current dir and parents)

        Returns:
            True if file was loaded, False otherwise
        """
        if path:
            env_path = Path(path)
        else:
            env_path = None
            current = Path.cwd()
            for _ in range(4):  # Current dir + 3 parent levels
                potential_path = current / ".env"
                if potential_path.exists():
                    env_path = potential_path
                    break
                if current.parent == current:
                    break
                current = current.parent

        if env_path and env_path.exists():
            # Existing environment variables win over the file
            load_dotenv(env_path, override=False)
            EnvConfig._loaded_from = env_path
            return True

        return False

    @staticmethod
    def get(key: str, default: Optional[str] = None) -> Optional[str]:
        """Get environment variable with optional default."""
        return os.getenv(key, default)

    @staticmethod
    def get_bool(key: str, default: bool = False) -> bool:
        """Get boolean environment variable."""
        value = os.getenv(key, str(default)).lower()
        return value in ('true', '1', 'yes', 'on')

    @staticmethod
    def get_int(key: str, default: int = 0) -> int:
        """Get integer environment variable."""
        try:
            return int(os.getenv(key, str(default)))
        except ValueError:
            return default

    @staticmethod
    def get_float(key: str, default: float = 0.0) -> float:
        """Get float environment variable."""
        try:
            return float(os.getenv(key, str(default)))
        except ValueError:
            return default

    @staticmethod
    def get_json(key: str, default: Optional[Dict] = None) -> Optional[Dict]:
        """Get JSON environment variable."""
        value = os.getenv(key)
        if not value:
            return default
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default

    @staticmethod
    def get_list(key: str, default: Optional[List[str]] = None, separator: str = ",") -> List[str]:
        """Get a separator-delimited list environment variable."""
        value = os.getenv(key)
        if not value:
            return list(default or [])
        return [item.strip() for item in value.split(separator) if item.strip()]

    @staticmethod
    def check_required(*keys: str) -> List[str]:
        """
        Check if required environment variables are set.

        Args:
            *keys: Environment variable names to check

        Returns:
            Names of the variables that are missing (empty when all are set)
        """
        return [key for key in keys if not os.getenv(key)]

    @staticmethod
    def show_config_template(llm_provider: str = "anthropic") -> str:
        """
        Show .env template for configuration.

        Args:
            llm_provider: LLM provider to show config for

        Returns:
            Template as string
        """
        common = """
AGENT_LOG_LEVEL=INFO
AGENT_LOG_FOLDER=./logs
AGENT_MAX_GATHER_ROUNDS=1
AGENT_MAX_EXECUTE_TURNS=2
AGENT_MODEL_TIMEOUT=60

# Realtime voice
OPENAI_API_KEY=sk-...
AGENT_VOICE_MODEL=gpt-4o-realtime-preview
AGENT_VOICE=alloy
AGENT_VOICE_IMMEDIATE_EXECUTION=true
AGENT_VOICE_APPROVAL_TIMEOUT=30
AGENT_VAD_MODE=server
AGENT_VAD_THRESHOLD=0.5
AGENT_VAD_PREFIX_PADDING_MS=300
AGENT_VAD_SILENCE_DURATION_MS=500

# Service auth (token:user pairs)
AGENT_SESSION_TOKENS={"dev-token": "dev-user"}
"""
        templates = {
            "anthropic": """
# Anthropic Configuration
ANTHROPIC_API_KEY=sk-ant-...
AGENT_LLM_PROVIDER=anthropic
AGENT_LLM_MODEL=claude-sonnet-4-20250514
""" + common,
            "openai": """
# OpenAI Configuration
OPENAI_API_KEY=sk-...
AGENT_LLM_PROVIDER=openai
AGENT_LLM_MODEL=gpt-4o
""" + common,
        }

        return templates.get(llm_provider, templates["anthropic"])
