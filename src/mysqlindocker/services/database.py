"""Query execution services for mysqlindocker."""

import json
import os
import re
from typing import Any, List, Optional, Sequence, Tuple

import aiomysql
from packaging import version
from pymysql.constants import CLIENT

from mysqlindocker.errors import MySqlInDockerError, ScriptNotFoundError
from mysqlindocker.errors_catalog import actionable_error


class DatabaseService:
    """Handles script resolution, SQL text cleanup and pooled execution."""

    SCRIPT_PATTERN = re.compile(r".+\.sql")
    SELECT_PATTERN = re.compile(r"^SELECT\s+", re.IGNORECASE)
    VERSION_PATTERN = re.compile(r"\d+(?:\.\d+)*")

    # Order matters: comments are stripped before transaction markers, and
    # blank lines are collapsed before "$$" delimiter lines are rewritten.
    NORMALIZATIONS: Tuple[Tuple["re.Pattern[str]", str], ...] = (
        (re.compile(r"DELIMITER.+?\n", re.IGNORECASE), ""),
        (re.compile(r"/\*.+?\*/\s*;?", re.IGNORECASE), ""),
        (re.compile(r"--.*?\n", re.IGNORECASE), "\n"),
        (re.compile(r"START\s+TRANSACTION;", re.IGNORECASE), "\n"),
        (re.compile(r"COMMIT;", re.IGNORECASE), "\n"),
        (re.compile(r"\n\n+"), "\n"),
        (re.compile(r"\n\$\$\n"), ";\n"),
    )

    def __init__(self, logger, console, scripts_dir: Optional[str] = None, verbose: bool = False):
        self.logger = logger
        self.console = console
        self.scripts_dir = scripts_dir
        self.verbose = verbose

    @classmethod
    def is_script_reference(cls, statement: str) -> bool:
        return cls.SCRIPT_PATTERN.fullmatch(statement) is not None

    @classmethod
    def normalize(cls, sql: str) -> str:
        for pattern, replacement in cls.NORMALIZATIONS:
            sql = pattern.sub(replacement, sql)
        return sql

    def resolve_statement(self, statement: str) -> Tuple[str, bool]:
        """Return the SQL text for ``statement`` and whether it came from a script."""
        if not self.is_script_reference(statement):
            return statement, False

        if not self.scripts_dir:
            raise ScriptNotFoundError(actionable_error("script_not_found", script=statement))

        script_path = os.path.join(self.scripts_dir, statement)
        try:
            with open(script_path, "r", encoding="utf-8") as file_obj:
                return file_obj.read(), True
        except OSError as exc:
            raise ScriptNotFoundError(
                actionable_error("script_not_found", script=script_path)
            ) from exc

    async def create_pool(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        pool_size: int,
    ):
        return await aiomysql.create_pool(
            host=host,
            port=port,
            user=user,
            password=password,
            db=database,
            minsize=0,
            maxsize=pool_size,
            autocommit=True,
            charset="utf8mb4",
            client_flag=CLIENT.MULTI_STATEMENTS,
            init_command="SET time_zone = '+00:00'",
            cursorclass=aiomysql.DictCursor,
        )

    async def close_pool(self, pool):
        pool.close()
        await pool.wait_closed()

    async def execute(self, pool, statement: str, params: Sequence[Any] = ()) -> List[Any]:
        sql, from_script = self.resolve_statement(statement)
        sql = self.normalize(sql)
        log = self.verbose and not from_script

        if log:
            self.console.print(f"SQL: {sql}", markup=False, highlight=False)
        self.logger.debug("SQL: %s", sql)

        async with pool.acquire() as conn:
            async with conn.cursor() as cursor:
                await cursor.execute(sql, tuple(params) if params else None)
                result_sets = [list(await cursor.fetchall())]
                while await cursor.nextset():
                    result_sets.append(list(await cursor.fetchall()))

        rows: List[Any] = result_sets[0] if len(result_sets) == 1 else result_sets

        if log and self.SELECT_PATTERN.match(sql):
            self.console.print(
                f"RESULT: {json.dumps(rows, indent=2, default=str)}", markup=False, highlight=False
            )
        return rows

    async def get_server_version(self, pool) -> version.Version:
        rows = await self.execute(pool, "SELECT VERSION() AS version")
        return self.parse_server_version(str(rows[0]["version"]))

    @classmethod
    def parse_server_version(cls, raw: str) -> version.Version:
        match = cls.VERSION_PATTERN.match(raw.strip())
        if not match:
            raise MySqlInDockerError(f"Unrecognized MySQL server version: {raw!r}")
        return version.parse(match.group(0))
