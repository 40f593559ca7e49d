"""
mysqlindocker - disposable MySQL servers in Docker for test suites
"""

__version__ = "0.1.0"

from .core import MySqlContainer
from .errors import (
    AlreadyRunningError,
    CommandTimeoutError,
    ConfigurationError,
    ContainerRuntimeError,
    MySqlInDockerError,
    NotStartedError,
    PortAllocationError,
    ReadinessTimeoutError,
    ScriptNotFoundError,
    StateError,
)
from .services.registry import cleanup

__all__ = [
    "AlreadyRunningError",
    "CommandTimeoutError",
    "ConfigurationError",
    "ContainerRuntimeError",
    "MySqlContainer",
    "MySqlInDockerError",
    "NotStartedError",
    "PortAllocationError",
    "ReadinessTimeoutError",
    "ScriptNotFoundError",
    "StateError",
    "cleanup",
]
