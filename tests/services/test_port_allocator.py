import asyncio
import random

import pytest

from mysqlindocker.errors import PortAllocationError
from mysqlindocker.services.port_allocator import PortAllocator


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None


def test_allocate_skips_ports_with_listeners(monkeypatch):
    allocator = PortAllocator(logger=DummyLogger(), rng=random.Random(7))
    busy_checks = iter([True, True, False])
    probed = []

    async def fake_is_listening(port):
        probed.append(port)
        return next(busy_checks)

    monkeypatch.setattr(allocator, "is_listening", fake_is_listening)

    port = asyncio.run(allocator.allocate())

    assert port == probed[-1]
    assert len(probed) == 3
    assert all(PortAllocator.LOW <= value <= PortAllocator.HIGH for value in probed)


def test_allocate_gives_up_after_max_attempts(monkeypatch):
    allocator = PortAllocator(logger=DummyLogger(), max_attempts=4)
    probed = []

    async def always_busy(port):
        probed.append(port)
        return True

    monkeypatch.setattr(allocator, "is_listening", always_busy)

    with pytest.raises(PortAllocationError, match="after 4 attempts"):
        asyncio.run(allocator.allocate())

    assert len(probed) == 4


def test_is_listening_detects_open_and_closed_ports():
    allocator = PortAllocator(logger=DummyLogger())

    async def scenario():
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            open_result = await allocator.is_listening(port)
        finally:
            server.close()
            await server.wait_closed()
        closed_result = await allocator.is_listening(port)
        return open_result, closed_result

    open_result, closed_result = asyncio.run(scenario())

    assert open_result is True
    assert closed_result is False
