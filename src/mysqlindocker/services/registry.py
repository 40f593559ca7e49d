"""Process-wide tracking of running containers for emergency cleanup."""

import atexit
import logging
import os
import signal
import threading
from typing import Dict, List, Optional

from mysqlindocker.services.command_runner import CommandRunner

HANDLED_SIGNALS = ("SIGTERM", "SIGINT", "SIGHUP")


class LifecycleRegistry:
    """Remembers every running container so a dying process can stop them.

    Entries are added once a container has started and removed once it has
    been stopped. ``stop_all`` is installed as an ``atexit`` callback and
    chained in front of the previous handlers of the termination signals.
    """

    STOP_TIMEOUT = 30.0

    def __init__(self, logger, command_runner):
        self.logger = logger
        self.command_runner = command_runner
        # Reentrant: a signal handler may fire while the main thread holds it.
        self._lock = threading.RLock()
        self._containers: Dict[str, str] = {}
        self._installed = False

    def register(self, name: str, docker_binary: str = "docker"):
        with self._lock:
            self._containers[name] = docker_binary

    def unregister(self, name: str):
        with self._lock:
            self._containers.pop(name, None)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._containers)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._containers

    def stop_all(self):
        """Stop every registered container. Safe to call repeatedly; never raises."""
        with self._lock:
            pending = dict(self._containers)
            self._containers.clear()

        for name, docker_binary in pending.items():
            try:
                self.command_runner.run_blocking(
                    [docker_binary, "stop", name], check=True, timeout=self.STOP_TIMEOUT
                )
                self.logger.debug("Stopped leftover container %s", name)
            except Exception as exc:
                self.logger.warning("Could not stop container %s during cleanup: %s", name, exc)

    def install(self):
        with self._lock:
            if self._installed:
                return
            self._installed = True

        atexit.register(self.stop_all)

        for signal_name in HANDLED_SIGNALS:
            signum = getattr(signal, signal_name, None)
            if signum is None:
                continue
            try:
                previous = signal.getsignal(signum)
                signal.signal(signum, self._chain_handler(previous))
            except (ValueError, OSError) as exc:
                # signal.signal only works from the main thread.
                self.logger.debug("Could not install %s handler: %s", signal_name, exc)

    def _chain_handler(self, previous):
        def _handler(signum, frame):
            self.stop_all()
            if callable(previous):
                previous(signum, frame)
                return
            if previous == signal.SIG_IGN:
                return
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)

        return _handler


_registry: Optional[LifecycleRegistry] = None
_registry_lock = threading.Lock()


def get_registry() -> LifecycleRegistry:
    """Return the process-wide registry, installing its hooks on first use."""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                logger = logging.getLogger("mysqlindocker")
                registry = LifecycleRegistry(logger=logger, command_runner=CommandRunner(logger))
                registry.install()
                _registry = registry
    return _registry


def cleanup():
    """Force-stop every container started by this process."""
    get_registry().stop_all()
