"""
API module - HTTP and WebSocket service for the task board agent
"""

from .server import create_app, AgentService

__all__ = ['create_app', 'AgentService']
