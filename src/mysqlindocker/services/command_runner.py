"""Subprocess execution service for mysqlindocker."""

import asyncio
import codecs
import subprocess
import sys
from typing import List, Optional

from mysqlindocker.errors import CommandTimeoutError, ContainerRuntimeError
from mysqlindocker.errors_catalog import actionable_error


class CommandRunner:
    """Runs external commands with consistent error handling.

    ``run`` is the asynchronous path used by the instance lifecycle. Output of
    stdout and stderr is merged into one buffer in arrival order and, when
    streaming is enabled, echoed live to the caller's standard streams.
    ``run_blocking`` exists for contexts without an event loop, such as
    interpreter shutdown hooks.
    """

    READ_CHUNK_SIZE = 4096

    def __init__(self, logger, verbose: bool = False, default_timeout: Optional[float] = None):
        self.logger = logger
        self.verbose = verbose
        self.default_timeout = default_timeout

    async def run(
        self,
        cmd: List[str],
        check: bool = True,
        timeout: Optional[float] = None,
        stream: Optional[bool] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout
        should_stream = self.verbose if stream is None else stream

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ContainerRuntimeError(
                actionable_error("docker_not_found", binary=cmd[0]), cmd=cmd
            ) from exc
        except OSError as exc:
            raise ContainerRuntimeError(
                f"Failed to execute command: {cmd_str}. {exc}", cmd=cmd
            ) from exc

        chunks: List[str] = []
        pumps = asyncio.gather(
            self._pump(process.stdout, chunks, sys.stdout if should_stream else None),
            self._pump(process.stderr, chunks, sys.stderr if should_stream else None),
            process.wait(),
        )
        try:
            await asyncio.wait_for(pumps, timeout=effective_timeout)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise CommandTimeoutError(
                f"Command timed out after {effective_timeout}s: {cmd_str}",
                cmd=cmd,
                output="".join(chunks),
            ) from exc

        output = "".join(chunks)
        if output.strip():
            self.logger.debug("Command output: %s", output.strip())

        result = subprocess.CompletedProcess(cmd, process.returncode, stdout=output, stderr="")
        if result.returncode == 0:
            return result

        message = f"Command failed ({result.returncode}): {cmd_str}"
        if output.strip():
            message = f"{message}\n{output.strip()}"

        if check:
            raise ContainerRuntimeError(
                message, cmd=cmd, returncode=result.returncode, output=output
            )

        self.logger.debug(message)
        return result

    def run_blocking(
        self,
        cmd: List[str],
        check: bool = True,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout
        try:
            result = subprocess.run(
                cmd,
                text=True,
                capture_output=True,
                timeout=effective_timeout,
            )
        except FileNotFoundError as exc:
            raise ContainerRuntimeError(
                actionable_error("docker_not_found", binary=cmd[0]), cmd=cmd
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeoutError(
                f"Command timed out after {effective_timeout}s: {cmd_str}", cmd=cmd
            ) from exc
        except OSError as exc:
            raise ContainerRuntimeError(
                f"Failed to execute command: {cmd_str}. {exc}", cmd=cmd
            ) from exc

        if result.returncode == 0 or not check:
            return result

        output = ((result.stdout or "") + (result.stderr or "")).strip()
        message = f"Command failed ({result.returncode}): {cmd_str}"
        if output:
            message = f"{message}\n{output}"
        raise ContainerRuntimeError(message, cmd=cmd, returncode=result.returncode, output=output)

    async def _pump(self, reader, chunks: List[str], sink):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await reader.read(self.READ_CHUNK_SIZE)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    chunks.append(tail)
                return
            text = decoder.decode(data)
            chunks.append(text)
            if sink is not None:
                sink.write(text)
                sink.flush()
