"""Docker runtime services for mysqlindocker."""

import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from mysqlindocker.errors import ContainerRuntimeError
from mysqlindocker.errors_catalog import actionable_error


class DockerRuntimeService:
    """Builds images and runs, probes, stops and removes containers."""

    INTERNAL_PORT = 3306
    DATA_DIR = "/var/lib/mysql"
    BIND_HOST = "127.0.0.1"
    PORT_COLLISION_PATTERNS = (
        "port is already allocated",
        "address already in use",
        "ports are not available",
    )
    MISSING_CONTAINER_PATTERNS = (
        "no such container",
        "is not running",
    )

    def __init__(self, logger, console, command_runner, docker_binary: str = "docker"):
        self.logger = logger
        self.console = console
        self.command_runner = command_runner
        self.docker_binary = docker_binary

    def _docker(self, *args: str) -> List[str]:
        return [self.docker_binary, *args]

    async def image_exists(self, tag: str) -> bool:
        result = await self.command_runner.run(
            self._docker("image", "inspect", tag), check=False, stream=False
        )
        return result.returncode == 0

    async def build(self, tag: str, recipe: Path, context_dir: Path):
        self.console.print(f"[blue]Building image {tag}...[/blue]")
        self.logger.info("Building image %s from %s", tag, recipe)
        await self.command_runner.run(
            self._docker("build", "-f", str(recipe), "-t", tag, str(context_dir))
        )

    async def ensure_image(self, tag: str, recipe: Path, context_dir: Path) -> bool:
        """Build ``tag`` unless docker already knows it. Returns True if built."""
        if await self.image_exists(tag):
            self.logger.debug("Reusing cached image %s", tag)
            return False
        await self.build(tag, recipe, context_dir)
        return True

    def build_run_command(
        self,
        name: str,
        tag: str,
        env: Dict[str, str],
        host_port: int,
        mounts: Sequence[Tuple[str, str]] = (),
    ) -> List[str]:
        cmd = self._docker("run", "-d", "--rm", "--name", name)
        for key, value in env.items():
            cmd += ["-e", f"{key}={value}"]
        cmd += ["-p", f"{self.BIND_HOST}:{host_port}:{self.INTERNAL_PORT}/tcp"]
        for source, target in mounts:
            cmd += ["--mount", f"type=bind,source={source},target={target}"]
        cmd.append(tag)
        return cmd

    async def run(
        self,
        name: str,
        tag: str,
        env: Dict[str, str],
        host_port: int,
        mounts: Sequence[Tuple[str, str]] = (),
    ):
        self.console.print(f"[blue]Starting container {name} on port {host_port}...[/blue]")
        cmd = self.build_run_command(name, tag, env, host_port, mounts)
        try:
            await self.command_runner.run(cmd)
        except ContainerRuntimeError as exc:
            if self.is_port_collision(exc.output):
                raise ContainerRuntimeError(
                    actionable_error("port_collision", port=host_port),
                    cmd=exc.cmd,
                    returncode=exc.returncode,
                    output=exc.output,
                    retryable=True,
                ) from exc
            raise

    async def exec(
        self,
        name: str,
        argv: Sequence[str],
        check: bool = False,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        return await self.command_runner.run(
            self._docker("exec", name, *argv), check=check, timeout=timeout, stream=False
        )

    async def stop(self, name: str):
        await self.command_runner.run(self._docker("stop", name), stream=False)

    async def remove(self, name: str):
        await self.command_runner.run(self._docker("rm", name), stream=False)

    async def teardown(self, name: str) -> Dict[str, Exception]:
        """Stop then remove ``name``, each attempted independently.

        Errors are collected per step, logged and returned, never raised, so
        a failed stop does not prevent the removal attempt and vice versa.
        """
        errors: Dict[str, Exception] = {}
        for label, step in (("stop", self.stop), ("remove", self.remove)):
            try:
                await step(name)
            except Exception as exc:
                errors[label] = exc
                self._log_teardown_error(label, name, exc)
        return errors

    def is_gone_after(self, errors: Dict[str, Exception]) -> bool:
        """True when a teardown result proves the container no longer runs."""
        stop_error = errors.get("stop")
        if stop_error is None:
            return True
        return self.is_missing_container(getattr(stop_error, "output", "") or str(stop_error))

    def _log_teardown_error(self, label: str, name: str, exc: Exception):
        # Containers run with --rm, so "rm" after a successful "stop" usually
        # reports that the container is already gone.
        if self.is_missing_container(getattr(exc, "output", "") or str(exc)):
            self.logger.debug("Container %s already gone during %s", name, label)
            return
        self.logger.warning("Could not %s container %s: %s", label, name, exc)

    async def list_containers(self, prefix: str) -> List[str]:
        result = await self.command_runner.run(
            self._docker("ps", "-a", "--filter", f"name=^{prefix}", "--format", "{{.Names}}"),
            stream=False,
        )
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    async def force_remove(self, name: str):
        await self.command_runner.run(self._docker("rm", "-f", name), stream=False)

    @classmethod
    def is_port_collision(cls, output: str) -> bool:
        lowered = (output or "").lower()
        return any(pattern in lowered for pattern in cls.PORT_COLLISION_PATTERNS)

    @classmethod
    def is_missing_container(cls, output: str) -> bool:
        lowered = (output or "").lower()
        return any(pattern in lowered for pattern in cls.MISSING_CONTAINER_PATTERNS)
