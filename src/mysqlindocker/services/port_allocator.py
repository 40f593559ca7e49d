"""Ephemeral host port selection for mysqlindocker."""

import asyncio
import random
from typing import Optional

from mysqlindocker.errors import PortAllocationError
from mysqlindocker.errors_catalog import actionable_error


class PortAllocator:
    """Picks a random high port that nothing is listening on.

    This is a best-effort check, not a reservation: another process may bind
    the same port between the probe and ``docker run``. Callers must treat a
    bind failure at container start as retryable.
    """

    LOW = 45000
    HIGH = 65000
    HOST = "127.0.0.1"

    def __init__(
        self,
        logger,
        max_attempts: int = 50,
        probe_timeout: float = 0.5,
        rng: Optional[random.Random] = None,
    ):
        self.logger = logger
        self.max_attempts = max(1, max_attempts)
        self.probe_timeout = probe_timeout
        self.rng = rng or random.Random()

    async def allocate(self) -> int:
        for attempt in range(1, self.max_attempts + 1):
            port = self.rng.randint(self.LOW, self.HIGH)
            if not await self.is_listening(port):
                self.logger.debug("Allocated port %s on attempt %s", port, attempt)
                return port
            self.logger.debug("Port %s is in use, sampling another one", port)

        raise PortAllocationError(actionable_error("no_free_port", attempts=self.max_attempts))

    async def is_listening(self, port: int) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.HOST, port), timeout=self.probe_timeout
            )
        except (OSError, asyncio.TimeoutError):
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True
