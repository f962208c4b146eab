"""
测试公共工具: 假传输层、UDP 端点、端口范围
"""

import asyncio
import json
import socket

import pytest
from websockets.exceptions import ConnectionClosed


class FakeTransport:
    """记录 sendto 调用的假 DatagramTransport"""

    def __init__(self):
        self.sent = []
        self._closing = False

    def sendto(self, data, addr=None):
        self.sent.append((bytes(data), addr))

    def is_closing(self):
        return self._closing

    def close(self):
        self._closing = True


class FakeConnection:
    """
    假 WebSocket 连接

    push() 模拟客户端发来的消息，disconnect() 模拟客户端断开。
    服务端发送的响应解析为 JSON 后记录在 sent 中。
    """

    remote_address = ('127.0.0.1', 50000)

    def __init__(self):
        self.incoming = asyncio.Queue()
        self.sent = []
        self.close_code = None
        self.close_reason = None
        self._eof = False
        self._wakeup = asyncio.Event()

    def push(self, message):
        if not isinstance(message, (str, bytes)):
            message = json.dumps(message)
        self.incoming.put_nowait(message)
        self._wakeup.set()

    def disconnect(self):
        self._eof = True
        self._wakeup.set()

    def __aiter__(self):
        return self

    async def __anext__(self):
        while True:
            if not self.incoming.empty():
                return self.incoming.get_nowait()
            if self._eof or self.close_code is not None:
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()

    async def send(self, message):
        if self.close_code is not None:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(message))

    async def close(self, code=1000, reason=''):
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
        self._wakeup.set()


class QueueProtocol(asyncio.DatagramProtocol):
    """把收到的数据报放入队列的 UDP 端点"""

    def __init__(self):
        self.queue = asyncio.Queue()
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.queue.put_nowait((data, addr))

    @property
    def port(self):
        return self.transport.get_extra_info('sockname')[1]

    async def receive(self, timeout=2.0):
        return await asyncio.wait_for(self.queue.get(), timeout)

    def close(self):
        self.transport.close()


async def open_udp_endpoint(host='127.0.0.1'):
    loop = asyncio.get_running_loop()
    _, protocol = await loop.create_datagram_endpoint(
        QueueProtocol, local_addr=(host, 0), family=socket.AF_INET
    )
    return protocol


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
async def fake_connection():
    return FakeConnection()


@pytest.fixture
def port_range():
    """从系统分配的空闲端口开始的一段端口范围"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(('127.0.0.1', 0))
    start = sock.getsockname()[1]
    sock.close()
    start = min(start, 65535 - 20)
    return start, start + 20


@pytest.fixture
async def udp_endpoints():
    """按需创建 UDP 端点，测试结束时统一关闭"""
    endpoints = []

    async def factory():
        endpoint = await open_udp_endpoint()
        endpoints.append(endpoint)
        return endpoint

    yield factory

    for endpoint in endpoints:
        endpoint.close()
