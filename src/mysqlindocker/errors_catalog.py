"""Actionable error catalog for mysqlindocker."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "docker_not_found": {
        "what": "Required command not found: {binary}.",
        "next": "Install Docker and make sure `{binary}` is on PATH.",
    },
    "recipe_unreadable": {
        "what": "Could not read image recipe {path}: {reason}",
        "next": "Reinstall mysqlindocker; the packaged Dockerfiles seem to be missing.",
    },
    "storage_not_found": {
        "what": "Storage path not found: {path}",
        "next": "Create the directory before starting the instance.",
    },
    "storage_not_directory": {
        "what": "{path} is not directory",
        "next": "Point `storage` at a directory, not a file.",
    },
    "no_free_port": {
        "what": "Could not find a free local port after {attempts} attempts.",
        "next": "Close services listening on ports 45000-65000 or raise `port_attempts`.",
    },
    "port_collision": {
        "what": "Port {port} was taken before the container could bind it.",
        "next": "Retry `start()`; another process grabbed the port first.",
    },
    "not_ready": {
        "what": "MySQL in container {name} did not become ready within {timeout}s.",
        "next": "Inspect `docker logs {name}` or raise `startup_timeout` on slow hosts.",
    },
    "container_died": {
        "what": "Container {name} stopped before MySQL became ready.",
        "next": "Run with `verbose=True` to see the build/run output, then check the image.",
    },
    "script_not_found": {
        "what": "{script} not found",
        "next": "Pass `scripts_dir` and make sure the script exists inside it.",
    },
}


def actionable_error(code: str, **kwargs) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
