import asyncio
import json
import logging
import os

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .core import MySqlContainer
from .errors import MySqlInDockerError
from .services.command_runner import CommandRunner
from .services.config_loader import ConfigLoader
from .services.docker_runtime import DockerRuntimeService
from .services.image_identity import IMAGE_PREFIX

DEFAULT_CONFIG_FILE = ".mysqlindocker.yml"

console = Console()


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def _configure_logging(verbose: bool, log_file):
    logger = logging.getLogger("mysqlindocker")
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)


def _load_config(config):
    resolved_config = config
    if resolved_config is None:
        default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
        if os.path.exists(default_config_path):
            resolved_config = default_config_path
    try:
        return ConfigLoader().load(resolved_config)
    except MySqlInDockerError as exc:
        raise click.ClickException(str(exc)) from exc


def _connection_table(container) -> Table:
    table = Table(title="MySQL connection", show_header=False)
    table.add_column("key", style="bold")
    table.add_column("value")
    table.add_row("host", str(container.host))
    table.add_row("port", str(container.port))
    table.add_row("database", str(container.database))
    table.add_row("user", str(container.user))
    table.add_row("password", str(container.password))
    table.add_row("container", container.container_name)
    return table


async def _serve(container, statements, wait: bool):
    await container.start()
    try:
        console.print(_connection_table(container))
        for statement in statements:
            rows = await container.execute_query(statement)
            console.print_json(json.dumps(rows, default=str))
        if wait:
            console.print("[dim]Press Ctrl+C to stop the container.[/dim]")
            await asyncio.Event().wait()
    finally:
        await container.stop()


@click.group()
@click.version_option(__version__, prog_name="mysqlindocker")
def main():
    """Disposable MySQL servers in Docker for test suites."""


@main.command()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option("--database", required=False, help="Database name (random if omitted).")
@click.option("--user", required=False, help="Database user (random if omitted).")
@click.option("--password", required=False, help="Database password (random if omitted).")
@click.option("--mysql8/--mysql5", default=None, help="MySQL major version (default: 5.7).")
@click.option("--legacy-orm", is_flag=True, default=None, help="Use the classic declarative base.")
@click.option(
    "--storage",
    required=False,
    type=click.Path(),
    help="Directory bind-mounted as the MySQL data directory.",
)
@click.option("--models", multiple=True, help="Model file or directory. Repeatable.")
@click.option("--scripts-dir", required=False, type=click.Path(), help="Directory of .sql scripts.")
@click.option("--execute", "statements", multiple=True, help="SQL or script to run after start.")
@click.option(
    "--startup-timeout",
    required=False,
    type=float,
    default=None,
    help="Seconds to wait for MySQL to accept connections (default: 180).",
)
@click.option(
    "--pool-size",
    required=False,
    type=int,
    default=None,
    help="Maximum simultaneous connections (default: 10).",
)
@click.option("--once", is_flag=True, default=False, help="Stop right after --execute statements.")
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
def run(
    config,
    database,
    user,
    password,
    mysql8,
    legacy_orm,
    storage,
    models,
    scripts_dir,
    statements,
    startup_timeout,
    pool_size,
    once,
    verbose,
    log_file,
):
    """Start a MySQL container and keep it running until interrupted."""
    config_values = _load_config(config)

    verbose = _resolve_option(verbose, config_values, "verbose", default=False)
    log_file = _resolve_option(log_file, config_values, "log_file")
    _configure_logging(verbose, log_file)

    model_sources = list(models) or config_values.get("models") or None

    try:
        container = MySqlContainer(
            database=_resolve_option(database, config_values, "database"),
            user=_resolve_option(user, config_values, "user"),
            password=_resolve_option(password, config_values, "password"),
            mysql8=_resolve_option(mysql8, config_values, "mysql8", default=False),
            legacy_orm=_resolve_option(legacy_orm, config_values, "legacy_orm", default=False),
            models=model_sources,
            scripts_dir=_resolve_option(scripts_dir, config_values, "scripts_dir"),
            verbose=verbose,
            storage=_resolve_option(storage, config_values, "storage"),
            startup_timeout=_resolve_option(
                startup_timeout, config_values, "startup_timeout", default=180.0
            ),
            port_attempts=config_values.get("port_attempts", 50),
            start_attempts=config_values.get("start_attempts", 3),
            pool_size=_resolve_option(pool_size, config_values, "pool_size", default=10),
            docker_binary=config_values.get("docker_binary", "docker"),
        )
    except MySqlInDockerError as exc:
        raise click.ClickException(str(exc)) from exc

    try:
        asyncio.run(_serve(container, statements, wait=not once))
    except KeyboardInterrupt:
        console.print("[bold red]Interrupted, container stopped.[/bold red]")
    except MySqlInDockerError as exc:
        raise click.ClickException(str(exc)) from exc


async def _prune(runtime_service, assume_yes: bool) -> int:
    names = await runtime_service.list_containers(IMAGE_PREFIX)
    if not names:
        console.print("[green]No leftover containers.[/green]")
        return 0

    for name in names:
        console.print(f"  {name}")
    if not assume_yes and not click.confirm(f"Remove {len(names)} container(s)?", default=True):
        return 0

    removed = 0
    for name in names:
        try:
            await runtime_service.force_remove(name)
            removed += 1
        except MySqlInDockerError as exc:
            logging.getLogger("mysqlindocker").warning("Could not remove %s: %s", name, exc)
    console.print(f"[green]Removed {removed} container(s).[/green]")
    return removed


@main.command()
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Do not ask for confirmation.")
@click.option("--docker-binary", default="docker", show_default=True, help="Docker CLI to use.")
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose logging")
def prune(assume_yes, docker_binary, verbose):
    """Remove containers left behind by crashed test runs."""
    _configure_logging(verbose, None)
    logger = logging.getLogger("mysqlindocker")
    runtime_service = DockerRuntimeService(
        logger=logger,
        console=console,
        command_runner=CommandRunner(logger=logger, verbose=verbose),
        docker_binary=docker_binary,
    )
    try:
        asyncio.run(_prune(runtime_service, assume_yes))
    except MySqlInDockerError as exc:
        raise click.ClickException(str(exc)) from exc


if __name__ == "__main__":
    main()
