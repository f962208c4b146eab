"""
会话注册表模块 - 管理端口到中继会话的映射

注册表由服务器持有，并以引用方式传给每个控制通道。所有修改都在
事件循环线程中进行；create 在整个"分配端口并注册"过程中持有锁，
两个并发的 create 不会拿到同一个端口。
"""

import asyncio
import logging
from typing import Dict, Iterator, List, Optional, Tuple

from framing import MAX_PORT, MIN_PORT

from .allocator import DEFAULT_BIND_ADDRESS, find_available_port
from .session import Endpoint, RelaySession

logger = logging.getLogger(__name__)


# ============================================================================
# 注册表错误
# ============================================================================

class RegistryError(Exception):
    """注册表操作失败，消息会原样返回给操作员"""


class InvalidInput(RegistryError):
    """命令参数无效"""


class NoAvailablePort(RegistryError):
    """端口范围已耗尽"""


class SessionBindError(NoAvailablePort):
    """探测成功后绑定端口失败（端口被其他进程抢占）"""


class NotFound(RegistryError):
    """指定端口上没有会话"""


# ============================================================================
# 会话注册表
# ============================================================================

class SessionRegistry:
    """
    端口 -> RelaySession 映射

    不变式:
    - 每个键都在 [min_port, max_port] 范围内
    - 每个键都对应一个当前已绑定的套接字

    Attributes:
        min_port: 代理端口范围下界（包含）
        max_port: 代理端口范围上界（包含）
        bind_address: 中继套接字的绑定地址
    """

    def __init__(self, min_port: int, max_port: int, bind_address: str = DEFAULT_BIND_ADDRESS):
        self.min_port = min_port
        self.max_port = max_port
        self.bind_address = bind_address
        self._sessions: Dict[int, RelaySession] = {}
        self._create_lock = asyncio.Lock()

    def __contains__(self, port) -> bool:
        return port in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._sessions))

    def get(self, port: int) -> Optional[RelaySession]:
        return self._sessions.get(port)

    @staticmethod
    def _validate_proxy_host(address, port) -> Endpoint:
        if not isinstance(address, str) or not address:
            raise InvalidInput("Invalid proxyHostAddress or proxyHostPort.")
        if isinstance(port, bool) or not isinstance(port, int) or not MIN_PORT <= port <= MAX_PORT:
            raise InvalidInput("Invalid proxyHostAddress or proxyHostPort.")
        return Endpoint(address, port)

    async def create(self, proxy_host_address: str, proxy_host_port: int) -> int:
        """
        创建中继会话

        Args:
            proxy_host_address: 代理主机地址
            proxy_host_port: 代理主机端口

        Returns:
            int: 分配到的本地端口

        Raises:
            InvalidInput: 地址为空或端口无效
            NoAvailablePort: 端口范围已耗尽
            SessionBindError: 端口绑定失败
        """
        proxy_host = self._validate_proxy_host(proxy_host_address, proxy_host_port)

        async with self._create_lock:
            port = find_available_port(self, self.min_port, self.max_port, self.bind_address)
            if port is None:
                raise NoAvailablePort("No available proxy ports.")

            try:
                session = await RelaySession.open(
                    port, proxy_host, bind_address=self.bind_address, on_fault=self._on_session_fault
                )
            except OSError as e:
                logger.error(f"绑定中继端口 {port} 失败: {e}")
                raise SessionBindError(f"Failed to bind proxy port {port}: {e}") from e

            self._sessions[port] = session

        logger.info(f"当前活动中继数: {len(self._sessions)}")
        return port

    def stop(self, port: int):
        """
        停止中继会话并释放端口

        Raises:
            NotFound: 端口上没有会话（包括已经停止的会话）
        """
        session = self._sessions.pop(port, None)
        if session is None:
            raise NotFound("Proxy not found.")
        session.close()
        logger.info(f"中继 {port} 已停止，当前活动中继数: {len(self._sessions)}")

    def list(self) -> List[Tuple[int, Endpoint]]:
        """返回 (端口, 代理主机) 快照"""
        return [(port, session.proxy_host) for port, session in self._sessions.items()]

    def stats(self) -> List[Dict[str, object]]:
        return [session.to_dict() for session in self._sessions.values()]

    def discard(self, port: int, session: RelaySession) -> bool:
        """仅当 port 仍映射到该会话时移除"""
        if self._sessions.get(port) is session:
            del self._sessions[port]
            return True
        return False

    def stop_all(self) -> int:
        """
        停止所有会话

        会话可能同时因套接字错误自行退出，重复关闭不会报错。

        Returns:
            int: 停止的会话数量
        """
        count = 0
        while self._sessions:
            port, session = self._sessions.popitem()
            session.close()
            logger.info(f"已关闭中继端口 {port}")
            count += 1
        return count

    def _on_session_fault(self, session: RelaySession, exc: Exception):
        if self.discard(session.port, session):
            logger.warning(f"中继 {session.port} 因套接字错误被移除: {exc}")
