"""Shared domain models for mysqlindocker."""

import enum
from dataclasses import dataclass
from typing import Any, Optional, Tuple


class InstanceState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class InstanceConfig:
    """Caller options with credentials already resolved."""

    database: str
    user: str
    password: str
    mysql8: bool = False
    legacy_orm: bool = False
    storage: Optional[str] = None
    model_sources: Tuple[str, ...] = ()
    scripts_dir: Optional[str] = None
    verbose: bool = False
    startup_timeout: float = 180.0
    port_attempts: int = 50
    start_attempts: int = 3
    pool_size: int = 10
    docker_binary: str = "docker"


@dataclass
class RuntimeState:
    """Live connection parameters of a running instance."""

    port: int
    host: str
    database: str
    user: str
    password: str
    pool: Any = None
    models: Any = None
