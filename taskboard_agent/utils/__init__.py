"""
Utils module - Helper functions and utilities
"""

from .logger import get_logger
from .exceptions import (
    TaskBoardError,
    ConfigurationError,
    MissingDependencyError,
    DispatchError,
    UnknownCapabilityError,
    StageViolationError,
    InvalidArgumentsError,
    DomainError,
    NotFoundError,
    TaskNotFoundError,
    SubtaskNotFoundError,
    InvalidColumnError,
    StorageError,
    TransportError,
    ModelTimeoutError,
    UnauthorizedError,
    InvalidStateTransitionError,
    SessionClosedError,
)

__all__ = [
    'get_logger',
    'TaskBoardError',
    'ConfigurationError',
    'MissingDependencyError',
    'DispatchError',
    'UnknownCapabilityError',
    'StageViolationError',
    'InvalidArgumentsError',
    'DomainError',
    'NotFoundError',
    'TaskNotFoundError',
    'SubtaskNotFoundError',
    'InvalidColumnError',
    'StorageError',
    'TransportError',
    'ModelTimeoutError',
    'UnauthorizedError',
    'InvalidStateTransitionError',
    'SessionClosedError',
]
