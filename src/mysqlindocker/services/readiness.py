"""Readiness polling for containerized MySQL."""

import asyncio
import time

from mysqlindocker.errors import (
    CommandTimeoutError,
    ContainerRuntimeError,
    ReadinessTimeoutError,
)
from mysqlindocker.errors_catalog import actionable_error


class ReadinessWaiter:
    """Polls the service port from inside the container until it answers.

    The probe runs through ``docker exec`` so it observes the port the server
    binds in its own namespace. The temporary server started by the image
    entrypoint during initialization runs with networking disabled, so a
    successful TCP probe means the final server is accepting clients.
    """

    PROBE_SCRIPT = "(echo > /dev/tcp/127.0.0.1/{port}) >/dev/null 2>&1"
    MIN_PROBE_TIMEOUT = 1.0

    def __init__(
        self,
        logger,
        console,
        runtime_service,
        timeout: float = 180.0,
        interval: float = 1.0,
        probe_timeout: float = 30.0,
        clock=time.monotonic,
    ):
        self.logger = logger
        self.console = console
        self.runtime_service = runtime_service
        self.timeout = timeout
        self.interval = interval
        self.probe_timeout = probe_timeout
        self.clock = clock

    async def wait(self, name: str, port: int = 3306):
        self.console.print("[yellow]Waiting for database to be ready...[/yellow]")
        self.logger.debug("Waiting for %s to accept connections on %s", name, port)

        deadline = self.clock() + self.timeout
        argv = ["bash", "-c", self.PROBE_SCRIPT.format(port=port)]
        attempts = 0

        while True:
            attempts += 1
            # Bounded by the time left, but never below MIN_PROBE_TIMEOUT.
            remaining = deadline - self.clock()
            probe_timeout = max(min(self.probe_timeout, remaining), self.MIN_PROBE_TIMEOUT)
            try:
                result = await self.runtime_service.exec(name, argv, timeout=probe_timeout)
            except CommandTimeoutError:
                self.logger.debug("Probe %s for %s timed out after %ss", attempts, name, probe_timeout)
                result = None

            if result is not None:
                if result.returncode == 0:
                    self.console.print("[green]Database is ready.[/green]")
                    self.logger.debug("%s ready after %s probe(s)", name, attempts)
                    return

                if self.runtime_service.is_missing_container(result.stdout):
                    raise ContainerRuntimeError(
                        actionable_error("container_died", name=name),
                        cmd=list(result.args),
                        returncode=result.returncode,
                        output=result.stdout or "",
                    )

            if self.clock() >= deadline:
                raise ReadinessTimeoutError(
                    actionable_error("not_ready", name=name, timeout=self.timeout)
                )

            await asyncio.sleep(self.interval)
