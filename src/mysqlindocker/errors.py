"""Domain errors for mysqlindocker."""

from typing import List, Optional


class MySqlInDockerError(RuntimeError):
    """Base class for every error raised by mysqlindocker."""


class ConfigurationError(MySqlInDockerError):
    """Raised when options or build inputs are invalid."""


class ContainerRuntimeError(MySqlInDockerError):
    """Raised when a docker invocation fails or cannot be spawned."""

    def __init__(
        self,
        message: str,
        cmd: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        output: str = "",
        retryable: bool = False,
    ):
        super().__init__(message)
        self.cmd = list(cmd or [])
        self.returncode = returncode
        self.output = output
        self.retryable = retryable


class CommandTimeoutError(ContainerRuntimeError):
    """Raised when a docker invocation is killed for running past its timeout."""


class PortAllocationError(MySqlInDockerError):
    """Raised when no free local port could be found."""


class ReadinessTimeoutError(MySqlInDockerError):
    """Raised when MySQL does not accept connections within the startup bound."""


class StateError(MySqlInDockerError):
    """Raised when an operation is invoked in the wrong lifecycle state."""


class AlreadyRunningError(StateError):
    """Raised by ``start()`` on a handle that is not idle."""


class NotStartedError(StateError):
    """Raised when the handle must be running but is not."""


class ScriptNotFoundError(MySqlInDockerError):
    """Raised when a ``.sql`` script reference cannot be resolved."""
