"""
中继会话模块

本模块定义了 RelaySession 类。每个中继会话独占一个已绑定的 UDP 端口，
并固定绑定一个代理主机端点。对每个入站数据报，会话只做一次判断：

- 发送方是代理主机: 数据报是一个包装帧，解码后把负载发往帧中指定的目标
- 发送方是其他地址: 视为目标的回复，连同发送方地址编码为帧后发回代理主机

一个 UDP 端口借此复用任意多个下游目标，会话本身不需要记录目标。
目标身份完全由帧头携带。

注意: 代理主机只通过源地址和端口识别，没有共享密钥绑定。能够伪造
代理主机源地址的攻击者可以注入帧。
"""

import asyncio
import ipaddress
import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Set, Tuple

from framing import Frame, FrameError

logger = logging.getLogger(__name__)

# 每个会话同时进行的主机名解析上限
MAX_PENDING_RESOLUTIONS = 64


# ============================================================================
# 端点与统计
# ============================================================================

@dataclass(frozen=True)
class Endpoint:
    """
    UDP 端点（代理主机或目标）

    Attributes:
        address: IP 地址或主机名
        port: 端口号
    """
    address: str
    port: int

    def as_tuple(self) -> Tuple[str, int]:
        return self.address, self.port

    def to_dict(self) -> Dict[str, object]:
        return {'address': self.address, 'port': self.port}

    def __str__(self):
        return f"{self.address}:{self.port}"


@dataclass
class SessionStats:
    """单个中继会话的转发统计"""
    created_at: float = field(default_factory=time.time)
    to_target_datagrams: int = 0
    to_target_bytes: int = 0
    to_proxy_datagrams: int = 0
    to_proxy_bytes: int = 0
    dropped_frames: int = 0
    send_errors: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            'uptime': round(time.time() - self.created_at, 3),
            'toTargetDatagrams': self.to_target_datagrams,
            'toTargetBytes': self.to_target_bytes,
            'toProxyDatagrams': self.to_proxy_datagrams,
            'toProxyBytes': self.to_proxy_bytes,
            'droppedFrames': self.dropped_frames,
            'sendErrors': self.send_errors,
        }


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        return False


# ============================================================================
# 中继会话
# ============================================================================

class RelaySession(asyncio.DatagramProtocol):
    """
    中继会话 - 一个绑定的 UDP 端口及其代理主机

    会话由传输层驱动，没有"运行中"之外的生命周期状态，直到被停止
    或者套接字出错。

    Attributes:
        port: 本地分配的端口，同时作为会话 ID
        proxy_host: 代理主机端点
        transport: asyncio.DatagramTransport，连接建立后设置
        stats: SessionStats，转发统计
    """

    def __init__(
        self,
        port: int,
        proxy_host: Endpoint,
        on_fault: Optional[Callable[['RelaySession', Exception], None]] = None,
    ):
        self.port = port
        self.proxy_host = proxy_host
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.stats = SessionStats()
        self._on_fault = on_fault
        self._resolve_tasks: Set[asyncio.Task] = set()
        self.max_pending_resolutions = MAX_PENDING_RESOLUTIONS

    @classmethod
    async def open(
        cls,
        port: int,
        proxy_host: Endpoint,
        bind_address: str = '0.0.0.0',
        on_fault: Optional[Callable[['RelaySession', Exception], None]] = None,
    ) -> 'RelaySession':
        """
        绑定 UDP 端口并启动会话

        Raises:
            OSError: 端口绑定失败
        """
        loop = asyncio.get_running_loop()
        session = cls(port, proxy_host, on_fault)
        await loop.create_datagram_endpoint(
            lambda: session,
            local_addr=(bind_address, port),
            family=socket.AF_INET,
        )
        logger.info(f"中继已创建: 端口 {port}，代理主机 {proxy_host}")
        return session

    def __str__(self):
        return f"RelaySession(port={self.port}, proxy-host={self.proxy_host})"

    @property
    def closed(self) -> bool:
        return self.transport is None or self.transport.is_closing()

    def is_proxy_host(self, addr: Tuple) -> bool:
        return addr[0] == self.proxy_host.address and addr[1] == self.proxy_host.port

    # ------------------------------------------------------------------
    # asyncio.DatagramProtocol 回调
    # ------------------------------------------------------------------

    def connection_made(self, transport: asyncio.DatagramTransport):
        self.transport = transport

    def datagram_received(self, data: bytes, addr: Tuple):
        if self.is_proxy_host(addr):
            self._forward_to_target(data)
        else:
            self._return_to_proxy_host(data, addr[0], addr[1])

    def error_received(self, exc: Exception):
        # ICMP 不可达等发送错误，目标可能只是暂时不可达
        self.stats.send_errors += 1
        logger.warning(f"中继 {self.port}: 发送错误: {exc}")

    def connection_lost(self, exc: Optional[Exception]):
        for task in list(self._resolve_tasks):
            task.cancel()

        if exc is None:
            logger.info(f"中继 {self.port} 已停止")
            return

        logger.error(f"中继 {self.port} 套接字错误: {exc}")
        if self._on_fault:
            self._on_fault(self, exc)

    # ------------------------------------------------------------------
    # 转发
    # ------------------------------------------------------------------

    def _forward_to_target(self, data: bytes):
        """解码代理主机发来的帧，并把负载发往目标"""
        try:
            frame = Frame.deserialize(data)
        except FrameError as e:
            self.stats.dropped_frames += 1
            logger.warning(f"中继 {self.port}: 来自代理主机的无效帧: {e}")
            return

        if _is_ip_literal(frame.host):
            self._send_to_target(frame.payload, (frame.host, frame.port))
            return

        if len(self._resolve_tasks) >= self.max_pending_resolutions:
            self.stats.dropped_frames += 1
            logger.warning(f"中继 {self.port}: 待解析的主机名过多，丢弃发往 {frame.host}:{frame.port} 的帧")
            return

        # 主机名需要异步解析，避免阻塞事件循环
        task = asyncio.ensure_future(self._resolve_and_send(frame))
        self._resolve_tasks.add(task)
        task.add_done_callback(self._resolve_tasks.discard)

    async def _resolve_and_send(self, frame: Frame):
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(
                frame.host, frame.port, family=socket.AF_INET, type=socket.SOCK_DGRAM
            )
        except (OSError, ValueError) as e:
            # idna 编码失败（标签过长等）抛出 UnicodeError
            self.stats.send_errors += 1
            logger.error(f"中继 {self.port}: 无法解析 {frame.host}:{frame.port}: {e}")
            return

        if not infos:
            self.stats.send_errors += 1
            logger.error(f"中继 {self.port}: {frame.host} 没有可用的 IPv4 地址")
            return

        self._send_to_target(frame.payload, infos[0][4][:2])

    def _send_to_target(self, payload: bytes, addr: Tuple[str, int]):
        if self._sendto(payload, addr):
            self.stats.to_target_datagrams += 1
            self.stats.to_target_bytes += len(payload)
            logger.debug(f"中继 {self.port}: -> {addr[0]}:{addr[1]} {len(payload)} 字节")

    def _return_to_proxy_host(self, data: bytes, host: str, port: int):
        """把目标的回复编码为帧，发回代理主机"""
        try:
            packet = Frame(host, port, data).serialize()
        except FrameError as e:
            self.stats.dropped_frames += 1
            logger.warning(f"中继 {self.port}: 无法编码来自 {host}:{port} 的数据报: {e}")
            return

        if self._sendto(packet, self.proxy_host.as_tuple()):
            self.stats.to_proxy_datagrams += 1
            self.stats.to_proxy_bytes += len(data)
            logger.debug(f"中继 {self.port}: {host}:{port} -> 代理主机 {len(data)} 字节")

    def _sendto(self, data: bytes, addr: Tuple[str, int]) -> bool:
        if self.closed:
            logger.debug(f"中继 {self.port}: 套接字已关闭，丢弃 {len(data)} 字节")
            return False
        try:
            self.transport.sendto(data, addr)
            return True
        except (OSError, ValueError) as e:
            self.stats.send_errors += 1
            logger.error(f"中继 {self.port}: 发送到 {addr[0]}:{addr[1]} 失败: {e}")
            return False

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    def close(self):
        """关闭套接字，可重复调用"""
        if self.transport is not None and not self.transport.is_closing():
            self.transport.close()

    def to_dict(self) -> Dict[str, object]:
        return {
            'proxyPort': self.port,
            'proxyHost': self.proxy_host.to_dict(),
            'stats': self.stats.to_dict(),
        }
