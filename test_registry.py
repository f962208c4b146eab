"""
会话注册表测试 - 在回环地址上绑定真实套接字
"""

import asyncio
import socket

import pytest

from relay import (
    Endpoint,
    InvalidInput,
    NoAvailablePort,
    NotFound,
    SessionBindError,
    SessionRegistry,
)
import relay.registry


@pytest.fixture
async def registry(port_range):
    registry = SessionRegistry(port_range[0], port_range[1], '127.0.0.1')
    yield registry
    registry.stop_all()


async def test_create_and_stop(registry):
    port = await registry.create('127.0.0.1', 9999)

    assert registry.min_port <= port <= registry.max_port
    assert port in registry
    assert registry.get(port).proxy_host == Endpoint('127.0.0.1', 9999)

    registry.stop(port)
    assert port not in registry

    with pytest.raises(NotFound) as excinfo:
        registry.stop(port)
    assert str(excinfo.value) == "Proxy not found."


async def test_stop_releases_port(registry):
    port = await registry.create('127.0.0.1', 9999)
    registry.stop(port)
    await asyncio.sleep(0.01)

    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.bind(('127.0.0.1', port))
    finally:
        sock.close()


async def test_stop_unknown_port(registry):
    with pytest.raises(NotFound):
        registry.stop(1)


@pytest.mark.parametrize("address, port", [
    ('', 9999),
    (None, 9999),
    ('127.0.0.1', 0),
    ('127.0.0.1', 65536),
    ('127.0.0.1', '9999'),
    ('127.0.0.1', True),
])
async def test_invalid_proxy_host(registry, address, port):
    with pytest.raises(InvalidInput) as excinfo:
        await registry.create(address, port)
    assert str(excinfo.value) == "Invalid proxyHostAddress or proxyHostPort."
    assert len(registry) == 0


async def test_list(registry):
    first = await registry.create('127.0.0.1', 9001)
    second = await registry.create('10.0.0.1', 9002)

    assert first != second
    assert sorted(registry.list()) == sorted([
        (first, Endpoint('127.0.0.1', 9001)),
        (second, Endpoint('10.0.0.1', 9002)),
    ])


async def test_concurrent_creates_get_distinct_ports(registry):
    ports = await asyncio.gather(*(registry.create('127.0.0.1', 9000 + i) for i in range(5)))
    assert len(set(ports)) == 5
    assert len(registry) == 5


async def test_range_exhausted(port_range):
    registry = SessionRegistry(port_range[0], port_range[0], '127.0.0.1')
    try:
        port = await registry.create('127.0.0.1', 9999)
        assert port == port_range[0]

        with pytest.raises(NoAvailablePort) as excinfo:
            await registry.create('127.0.0.1', 9999)
        assert str(excinfo.value) == "No available proxy ports."
        assert len(registry) == 1
    finally:
        registry.stop_all()


async def test_bind_race_reported(registry, monkeypatch):
    # 探测成功，但实际绑定时端口已被占用
    holder = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    holder.bind(('127.0.0.1', registry.min_port))
    monkeypatch.setattr(relay.registry, 'find_available_port', lambda *args: registry.min_port)
    try:
        with pytest.raises(SessionBindError):
            await registry.create('127.0.0.1', 9999)
    finally:
        holder.close()
    assert len(registry) == 0


async def test_socket_fault_removes_session(registry):
    port = await registry.create('127.0.0.1', 9999)
    session = registry.get(port)

    session.connection_lost(OSError("socket broken"))

    assert port not in registry
    session.close()


async def test_stale_fault_keeps_new_session(registry):
    port = await registry.create('127.0.0.1', 9999)
    old = registry.get(port)
    registry.stop(port)
    await asyncio.sleep(0.01)

    # 旧会话的端口被重新分配
    new_port = await registry.create('127.0.0.1', 9998)
    assert new_port == port
    old.connection_lost(OSError("late error"))

    assert registry.get(port) is not None
    assert registry.get(port) is not old


async def test_stats(registry):
    port = await registry.create('127.0.0.1', 9999)
    stats = registry.stats()
    assert len(stats) == 1
    assert stats[0]['proxyPort'] == port
    assert stats[0]['stats']['toTargetDatagrams'] == 0


async def test_stop_all(registry):
    for i in range(3):
        await registry.create('127.0.0.1', 9000 + i)

    assert registry.stop_all() == 3
    assert len(registry) == 0
    assert registry.stop_all() == 0
