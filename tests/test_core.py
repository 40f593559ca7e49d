import asyncio
import os
import subprocess

import pytest

import mysqlindocker.core as core_module
from mysqlindocker.core import MySqlContainer
from mysqlindocker.errors import (
    AlreadyRunningError,
    ConfigurationError,
    ContainerRuntimeError,
    NotStartedError,
    ReadinessTimeoutError,
)
from mysqlindocker.models import InstanceState
from mysqlindocker.services.registry import LifecycleRegistry


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class FakeBlockingRunner:
    def __init__(self):
        self.calls = []

    def run_blocking(self, cmd, check=True, timeout=None):
        self.calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")


class FakeRuntime:
    def __init__(self, run_failures=(), stop_error=None):
        self.calls = []
        self.run_failures = list(run_failures)
        self.stop_error = stop_error

    async def ensure_image(self, tag, recipe, context_dir):
        self.calls.append(("ensure_image", tag))
        return False

    async def run(self, name, tag, env, host_port, mounts=()):
        self.calls.append(("run", name, host_port, list(mounts), dict(env)))
        if self.run_failures:
            raise self.run_failures.pop(0)

    async def teardown(self, name):
        self.calls.append(("teardown", name))
        return {"stop": self.stop_error} if self.stop_error else {}

    def is_gone_after(self, errors):
        return "stop" not in errors

    def names(self):
        return [call[0] for call in self.calls]


class FakeAllocator:
    def __init__(self, ports=(50001, 50002, 50003)):
        self.ports = list(ports)

    async def allocate(self):
        return self.ports.pop(0)


class FakeReadiness:
    def __init__(self, runtime, error=None, delay=0):
        self.runtime = runtime
        self.error = error
        self.delay = delay

    async def wait(self, name, port=3306):
        self.runtime.calls.append(("wait", name, port))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error


class FakePool:
    def __init__(self):
        self.closed = False


class FakeDatabase:
    def __init__(self):
        self.pools = []
        self.queries = []

    async def create_pool(self, host, port, user, password, database, pool_size):
        pool = FakePool()
        pool.params = dict(host=host, port=port, user=user, database=database, size=pool_size)
        self.pools.append(pool)
        return pool

    async def close_pool(self, pool):
        pool.closed = True

    async def execute(self, pool, statement, params=()):
        self.queries.append((statement, tuple(params)))
        await asyncio.sleep(0)
        return [{"statement": statement, "params": list(params)}]


class FakeModels(dict):
    closed = False

    async def close(self):
        self.closed = True

    def session(self):
        return "session"


class FakeModelLoader:
    def __init__(self):
        self.loaded = []

    async def load(self, sources, **kwargs):
        self.loaded.append((tuple(sources), kwargs))
        return FakeModels(User="UserModel")


@pytest.fixture
def registry(monkeypatch):
    fresh = LifecycleRegistry(logger=DummyLogger(), command_runner=FakeBlockingRunner())
    monkeypatch.setattr(core_module, "get_registry", lambda: fresh)
    return fresh


@pytest.fixture
def make_container(registry):
    def factory(runtime=None, readiness_error=None, **kwargs):
        container = MySqlContainer(**kwargs)
        container.runtime_service = runtime or FakeRuntime()
        container.port_allocator = FakeAllocator()
        container.readiness_waiter = FakeReadiness(container.runtime_service, readiness_error)
        container.database_service = FakeDatabase()
        container.model_loader = FakeModelLoader()
        return container

    return factory


def test_accessors_follow_the_lifecycle(make_container, registry):
    container = make_container()

    assert container.state is InstanceState.IDLE
    assert (container.port, container.host, container.database) == (None, None, None)
    assert (container.user, container.password) == (None, None)

    asyncio.run(container.start())

    assert container.state is InstanceState.RUNNING
    assert isinstance(container.port, int) and container.port > 0
    assert container.host == "127.0.0.1"
    assert container.database and container.user and container.password
    assert container.container_name in registry

    pool = container.database_service.pools[0]
    asyncio.run(container.stop())

    assert container.state is InstanceState.IDLE
    assert (container.port, container.host, container.database) == (None, None, None)
    assert (container.user, container.password) == (None, None)
    assert container.container_name not in registry
    assert pool.closed is True


def test_start_runs_steps_in_order(make_container):
    container = make_container()

    asyncio.run(container.start())

    assert container.runtime_service.names() == ["ensure_image", "run", "wait"]
    _, name, port, mounts, env = container.runtime_service.calls[1]
    assert name == container.container_name
    assert port == 50001
    assert mounts == []
    assert env["MYSQL_DATABASE"] == container.config.database
    assert env["MYSQL_USER"] == container.config.user
    assert env["MYSQL_PASSWORD"] == container.config.password
    assert env["MYSQL_ROOT_PASSWORD"] not in (container.config.password, "")
    assert container.database_service.pools[0].params["port"] == 50001


def test_credentials_are_generated_once_at_construction(make_container):
    container = make_container()
    generated = (container.config.database, container.config.user, container.config.password)

    asyncio.run(container.start())
    first = (container.database, container.user, container.password)
    asyncio.run(container.stop())
    asyncio.run(container.start())
    second = (container.database, container.user, container.password)
    asyncio.run(container.stop())

    assert first == second == generated
    assert all(len(value) == 32 for value in generated)


def test_supplied_credentials_are_kept(make_container):
    container = make_container(database="app", user="tester", password="secret")

    asyncio.run(container.start())

    assert (container.database, container.user, container.password) == ("app", "tester", "secret")


def test_double_start_fails_without_second_container(make_container):
    container = make_container()
    asyncio.run(container.start())

    with pytest.raises(AlreadyRunningError, match="Already running"):
        asyncio.run(container.start())

    assert container.runtime_service.names().count("run") == 1


def test_concurrent_start_is_rejected(make_container):
    container = make_container()

    async def scenario():
        return await asyncio.gather(container.start(), container.start(), return_exceptions=True)

    results = asyncio.run(scenario())

    assert sum(isinstance(result, AlreadyRunningError) for result in results) == 1
    assert container.runtime_service.names().count("run") == 1


def test_stop_on_idle_handle_is_a_noop(make_container):
    container = make_container()

    asyncio.run(container.stop())
    asyncio.run(container.stop())

    assert container.runtime_service.calls == []
    assert container.state is InstanceState.IDLE


def test_queries_and_models_require_a_running_handle(make_container):
    container = make_container()

    with pytest.raises(NotStartedError):
        asyncio.run(container.execute_query("SELECT 1"))
    with pytest.raises(NotStartedError):
        container.model("User")


def test_execute_query_delegates_to_the_shared_pool(make_container):
    container = make_container()
    asyncio.run(container.start())

    rows = asyncio.run(container.execute_query("SELECT %s", 1))

    assert rows == [{"statement": "SELECT %s", "params": [1]}]
    assert container.database_service.queries == [("SELECT %s", (1,))]


def test_concurrent_queries_each_get_their_own_result(make_container):
    container = make_container()

    async def scenario():
        await container.start()
        try:
            return await asyncio.gather(
                *(container.execute_query(f"SELECT {index}") for index in range(50))
            )
        finally:
            await container.stop()

    results = asyncio.run(scenario())

    assert [rows[0]["statement"] for rows in results] == [f"SELECT {i}" for i in range(50)]


def test_readiness_failure_rolls_back_and_handle_is_reusable(make_container, registry):
    runtime = FakeRuntime()
    container = make_container(runtime=runtime, readiness_error=ReadinessTimeoutError("slow"))

    with pytest.raises(ReadinessTimeoutError):
        asyncio.run(container.start())

    assert runtime.names() == ["ensure_image", "run", "wait", "teardown"]
    assert container.state is InstanceState.IDLE
    assert container.port is None
    assert registry.names() == []

    container.readiness_waiter.error = None
    asyncio.run(container.start())
    assert container.state is InstanceState.RUNNING


def test_cancelled_start_rolls_back_and_handle_is_reusable(make_container, registry):
    container = make_container()
    container.readiness_waiter.delay = 10

    async def scenario():
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(container.start(), 0.05)

    asyncio.run(scenario())

    assert container.state is InstanceState.IDLE
    assert registry.names() == []
    assert container.runtime_service.names().count("teardown") == 1

    container.readiness_waiter.delay = 0
    asyncio.run(container.start())
    assert container.state is InstanceState.RUNNING


def test_port_collision_retries_with_a_new_port(make_container, registry):
    collision = ContainerRuntimeError("port is already allocated", retryable=True)
    runtime = FakeRuntime(run_failures=[collision])
    container = make_container(runtime=runtime)

    asyncio.run(container.start())

    run_ports = [call[2] for call in runtime.calls if call[0] == "run"]
    assert run_ports == [50001, 50002]
    assert container.port == 50002
    assert registry.names() == [container.container_name]


def test_port_collision_gives_up_after_start_attempts(make_container, registry):
    collisions = [ContainerRuntimeError("taken", retryable=True) for _ in range(2)]
    container = make_container(runtime=FakeRuntime(run_failures=collisions), start_attempts=2)

    with pytest.raises(ContainerRuntimeError, match="taken"):
        asyncio.run(container.start())

    assert container.state is InstanceState.IDLE
    assert registry.names() == []


def test_non_retryable_run_failure_propagates(make_container):
    runtime = FakeRuntime(run_failures=[ContainerRuntimeError("bad image")])
    container = make_container(runtime=runtime)

    with pytest.raises(ContainerRuntimeError, match="bad image"):
        asyncio.run(container.start())

    assert runtime.names() == ["ensure_image", "run", "teardown"]
    assert container.state is InstanceState.IDLE


def test_storage_must_be_a_directory(make_container, tmp_path):
    not_a_dir = tmp_path / "file.txt"
    not_a_dir.write_text("x", encoding="utf-8")
    container = make_container(storage=str(not_a_dir))

    with pytest.raises(ConfigurationError, match="is not directory"):
        asyncio.run(container.start())

    assert container.runtime_service.calls == []
    assert container.state is InstanceState.IDLE


def test_storage_directory_is_bind_mounted(make_container, tmp_path):
    container = make_container(storage=str(tmp_path))

    asyncio.run(container.start())

    mounts = container.runtime_service.calls[1][3]
    assert mounts == [(os.path.abspath(str(tmp_path)), "/var/lib/mysql")]


def test_models_are_loaded_and_closed(make_container, tmp_path):
    container = make_container(models=str(tmp_path))

    asyncio.run(container.start())
    models = container.models

    assert container.model("User") == "UserModel"
    assert container.model("Missing") is None
    assert container.session() == "session"
    assert container.model_loader.loaded[0][0] == (str(tmp_path),)

    asyncio.run(container.stop())

    assert models.closed is True


def test_model_lookup_without_models_returns_none(make_container):
    container = make_container()
    asyncio.run(container.start())

    assert container.model("User") is None


def test_stop_reaches_idle_even_when_teardown_fails(make_container, registry):
    runtime = FakeRuntime(stop_error=ContainerRuntimeError("daemon unreachable"))
    container = make_container(runtime=runtime)
    asyncio.run(container.start())

    asyncio.run(container.stop())

    assert container.state is InstanceState.IDLE
    assert container.port is None
    # Not confirmed gone, so the exit hook still gets a chance to stop it.
    assert registry.names() == [container.container_name]


def test_invalid_numeric_options_are_rejected(registry):
    with pytest.raises(ConfigurationError, match="pool_size"):
        MySqlContainer(pool_size=0)


def test_missing_scripts_dir_is_rejected(registry, tmp_path):
    with pytest.raises(ConfigurationError, match="Scripts directory not found"):
        MySqlContainer(scripts_dir=str(tmp_path / "absent"))


def test_handles_share_image_tag_but_not_container_name(make_container):
    first = make_container()
    second = make_container()
    mysql8 = make_container(mysql8=True)

    assert first.image_tag == second.image_tag
    assert first.container_name != second.container_name
    assert mysql8.image_tag != first.image_tag


def test_async_context_manager_starts_and_stops(make_container):
    container = make_container()

    async def scenario():
        async with container as running:
            assert running.state is InstanceState.RUNNING
        return container.state

    assert asyncio.run(scenario()) is InstanceState.IDLE


def test_restart_after_failed_stop_uses_a_fresh_container_name(make_container, registry):
    runtime = FakeRuntime(stop_error=ContainerRuntimeError("daemon unreachable"))
    container = make_container(runtime=runtime)
    asyncio.run(container.start())
    first_name = container.container_name
    asyncio.run(container.stop())

    runtime.stop_error = None
    asyncio.run(container.start())

    run_names = [call[1] for call in runtime.calls if call[0] == "run"]
    assert run_names == [first_name, container.container_name]
    assert first_name != container.container_name
    assert registry.names() == sorted([first_name, container.container_name])
