import logging
import os
import secrets
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from packaging import version
from rich.console import Console

from .errors import (
    AlreadyRunningError,
    ConfigurationError,
    ContainerRuntimeError,
    MySqlInDockerError,
    NotStartedError,
)
from .errors_catalog import actionable_error
from .models import InstanceConfig, InstanceState, RuntimeState
from .services.command_runner import CommandRunner
from .services.database import DatabaseService
from .services.docker_runtime import DockerRuntimeService
from .services.image_identity import ImageIdentity, recipe_path
from .services.model_loader import ModelLoader
from .services.port_allocator import PortAllocator
from .services.readiness import ReadinessWaiter
from .services.registry import cleanup as cleanup_registry
from .services.registry import get_registry

logger = logging.getLogger("mysqlindocker")


def _random_token() -> str:
    return secrets.token_hex(16)


class MySqlContainer:
    """A disposable MySQL server running in a Docker container.

    Credentials that are not supplied are generated once, here, so they stay
    the same across ``stop()``/``start()`` cycles of one handle and can be
    replayed into a new handle pointed at the same ``storage`` directory.

    Typical use::

        async with MySqlContainer(mysql8=True) as db:
            rows = await db.execute_query("SELECT 1 AS value")
    """

    HOST = "127.0.0.1"

    def __init__(
        self,
        database: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        mysql8: bool = False,
        legacy_orm: bool = False,
        models: Union[str, Sequence[str], None] = None,
        scripts_dir: Optional[str] = None,
        verbose: bool = False,
        storage: Optional[str] = None,
        startup_timeout: float = 180.0,
        port_attempts: int = 50,
        start_attempts: int = 3,
        pool_size: int = 10,
        docker_binary: str = "docker",
    ):
        self.config = InstanceConfig(
            database=database or _random_token(),
            user=user or _random_token(),
            password=password or _random_token(),
            mysql8=bool(mysql8),
            legacy_orm=bool(legacy_orm),
            storage=storage,
            model_sources=self._normalize_sources(models),
            scripts_dir=scripts_dir,
            verbose=bool(verbose),
            startup_timeout=float(startup_timeout),
            port_attempts=int(port_attempts),
            start_attempts=int(start_attempts),
            pool_size=int(pool_size),
            docker_binary=docker_binary,
        )
        self._validate_options()

        self.image = ImageIdentity.from_recipe(recipe_path(self.config.mysql8))
        self.container_name = self.image.container_name()

        self.console = Console(stderr=True, quiet=not self.config.verbose)
        self.command_runner = CommandRunner(logger=logger, verbose=self.config.verbose)
        self.runtime_service = DockerRuntimeService(
            logger=logger,
            console=self.console,
            command_runner=self.command_runner,
            docker_binary=self.config.docker_binary,
        )
        self.port_allocator = PortAllocator(logger=logger, max_attempts=self.config.port_attempts)
        self.readiness_waiter = ReadinessWaiter(
            logger=logger,
            console=self.console,
            runtime_service=self.runtime_service,
            timeout=self.config.startup_timeout,
        )
        self.database_service = DatabaseService(
            logger=logger,
            console=self.console,
            scripts_dir=self.config.scripts_dir,
            verbose=self.config.verbose,
        )
        self.model_loader = ModelLoader(
            logger=logger,
            legacy_orm=self.config.legacy_orm,
            verbose=self.config.verbose,
        )
        self.registry = get_registry()

        self._state = InstanceState.IDLE
        self._runtime: Optional[RuntimeState] = None

    @staticmethod
    def cleanup():
        """Force-stop every container this process still tracks."""
        cleanup_registry()

    @staticmethod
    def _normalize_sources(models: Union[str, Sequence[str], None]) -> Tuple[str, ...]:
        if not models:
            return ()
        if isinstance(models, (str, os.PathLike)):
            return (os.fspath(models),)
        return tuple(os.fspath(item) for item in models)

    def _validate_options(self):
        positive = {
            "startup_timeout": self.config.startup_timeout,
            "port_attempts": self.config.port_attempts,
            "start_attempts": self.config.start_attempts,
            "pool_size": self.config.pool_size,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"`{name}` must be greater than zero, got {value}.")

        if self.config.scripts_dir and not os.path.isdir(self.config.scripts_dir):
            raise ConfigurationError(f"Scripts directory not found: {self.config.scripts_dir}")

    def _storage_mounts(self) -> List[Tuple[str, str]]:
        storage = self.config.storage
        if not storage:
            return []
        if not os.path.exists(storage):
            raise ConfigurationError(actionable_error("storage_not_found", path=storage))
        if not os.path.isdir(storage):
            raise ConfigurationError(actionable_error("storage_not_directory", path=storage))
        return [(os.path.abspath(os.path.normpath(storage)), DockerRuntimeService.DATA_DIR)]

    def _container_env(self) -> Dict[str, str]:
        return {
            "MYSQL_ROOT_PASSWORD": _random_token(),
            "MYSQL_DATABASE": self.config.database,
            "MYSQL_USER": self.config.user,
            "MYSQL_PASSWORD": self.config.password,
        }

    async def _start_container(self, mounts: List[Tuple[str, str]]) -> int:
        attempts = self.config.start_attempts
        for attempt in range(1, attempts + 1):
            port = await self.port_allocator.allocate()
            try:
                await self.runtime_service.run(
                    self.container_name,
                    self.image.tag,
                    self._container_env(),
                    port,
                    mounts,
                )
            except ContainerRuntimeError as exc:
                if not exc.retryable or attempt >= attempts:
                    raise
                logger.warning(
                    "Port %s was taken on attempt %s/%s. Retrying with another port.",
                    port,
                    attempt,
                    attempts,
                )
                await self.runtime_service.teardown(self.container_name)
                continue

            self.registry.register(self.container_name, self.config.docker_binary)
            return port

        raise ContainerRuntimeError(f"Could not start container {self.container_name}.")

    async def start(self):
        if self._state is not InstanceState.IDLE:
            raise AlreadyRunningError("Already running")
        self._state = InstanceState.STARTING
        # A container left behind by a failed teardown may still hold the old name.
        self.container_name = self.image.container_name()

        run_attempted = False
        pool = None
        models = None
        try:
            mounts = self._storage_mounts()
            await self.runtime_service.ensure_image(
                self.image.tag, self.image.recipe, self.image.context_dir
            )

            run_attempted = True
            port = await self._start_container(mounts)
            await self.readiness_waiter.wait(self.container_name, DockerRuntimeService.INTERNAL_PORT)

            pool = await self.database_service.create_pool(
                host=self.HOST,
                port=port,
                user=self.config.user,
                password=self.config.password,
                database=self.config.database,
                pool_size=self.config.pool_size,
            )
            if self.config.model_sources:
                models = await self.model_loader.load(
                    self.config.model_sources,
                    host=self.HOST,
                    port=port,
                    user=self.config.user,
                    password=self.config.password,
                    database=self.config.database,
                    pool_size=self.config.pool_size,
                )
        except BaseException as exc:
            # Cancellation unwinds the same way as a failure.
            logger.error("Failed to start %s: %r", self.container_name, exc)
            try:
                await self._release(run_attempted, pool, models)
            finally:
                self._state = InstanceState.IDLE
            raise

        self._runtime = RuntimeState(
            port=port,
            host=self.HOST,
            database=self.config.database,
            user=self.config.user,
            password=self.config.password,
            pool=pool,
            models=models,
        )
        self._state = InstanceState.RUNNING
        logger.info("MySQL container %s is listening on %s:%s", self.container_name, self.HOST, port)

    async def stop(self):
        if self._state is not InstanceState.RUNNING:
            logger.debug("stop() ignored in state %s", self._state.value)
            return

        self._state = InstanceState.STOPPING
        runtime = self._runtime
        try:
            errors = await self._release(True, runtime.pool, runtime.models)
        finally:
            self._runtime = None
            self._state = InstanceState.IDLE

        if errors:
            logger.warning(
                "Stopped %s with %s teardown error(s); see previous messages.",
                self.container_name,
                len(errors),
            )

    async def _release(self, teardown: bool, pool, models) -> List[Exception]:
        """Undo whatever part of ``start()`` has happened. Never raises."""
        errors: List[Exception] = []

        if teardown:
            teardown_errors = await self.runtime_service.teardown(self.container_name)
            errors.extend(teardown_errors.values())
            if self.runtime_service.is_gone_after(teardown_errors):
                self.registry.unregister(self.container_name)
            else:
                logger.warning(
                    "Container %s may still be running; it stays registered for exit cleanup.",
                    self.container_name,
                )
        else:
            self.registry.unregister(self.container_name)

        if models is not None:
            try:
                await models.close()
            except Exception as exc:
                errors.append(exc)
                logger.warning("Could not dispose model engine: %s", exc)

        if pool is not None:
            try:
                await self.database_service.close_pool(pool)
            except Exception as exc:
                errors.append(exc)
                logger.warning("Could not close connection pool: %s", exc)

        return errors

    def _require_running(self) -> RuntimeState:
        if self._state is not InstanceState.RUNNING or self._runtime is None:
            raise NotStartedError("Not started")
        return self._runtime

    async def execute_query(self, statement: str, *params: Any) -> List[Any]:
        """Run inline SQL, or the ``scripts_dir`` script named like ``setup.sql``."""
        runtime = self._require_running()
        return await self.database_service.execute(runtime.pool, statement, params)

    def model(self, name: str) -> Optional[type]:
        runtime = self._require_running()
        if runtime.models is None:
            return None
        return runtime.models.get(name)

    def session(self):
        runtime = self._require_running()
        if runtime.models is None:
            raise MySqlInDockerError("No models loaded. Pass `models=` to use ORM sessions.")
        return runtime.models.session()

    async def server_version(self) -> version.Version:
        runtime = self._require_running()
        return await self.database_service.get_server_version(runtime.pool)

    @property
    def state(self) -> InstanceState:
        return self._state

    @property
    def image_tag(self) -> str:
        return self.image.tag

    @property
    def models(self):
        return self._runtime.models if self._runtime else None

    @property
    def port(self) -> Optional[int]:
        return self._runtime.port if self._runtime else None

    @property
    def host(self) -> Optional[str]:
        return self._runtime.host if self._runtime else None

    @property
    def database(self) -> Optional[str]:
        return self._runtime.database if self._runtime else None

    @property
    def user(self) -> Optional[str]:
        return self._runtime.user if self._runtime else None

    @property
    def password(self) -> Optional[str]:
        return self._runtime.password if self._runtime else None

    async def __aenter__(self) -> "MySqlContainer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
        return False

    def __repr__(self) -> str:
        return f"<MySqlContainer {self.container_name} state={self._state.value} port={self.port}>"
