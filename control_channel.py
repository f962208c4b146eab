"""
控制通道模块 - 处理单个操作员连接

每个 WebSocket 连接对应一个 ControlChannel 实例，状态机如下:

    AWAITING_AUTH --(有效 auth 消息)--> AUTHENTICATED --(断开)--> CLOSED
    AWAITING_AUTH --(认证超时 | token 错误 | 消息格式错误)--> CLOSED

连接建立时启动认证截止计时器（默认 5 秒）。未认证连接的三种关闭
原因使用不同的关闭码，便于观察:

    4001  认证超时
    4002  认证消息格式错误
    4003  token 无效

认证后，每条消息都是一条命令，命令错误以结构化响应返回，不会关闭连接。
"""

import asyncio
import hmac
import logging
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, Optional

from websockets.exceptions import ConnectionClosed

from commands import (
    CommandError,
    CreateCommand,
    ListCommand,
    MalformedMessage,
    StatsCommand,
    StopCommand,
    encode_response,
    error_response,
    load_message,
    parse_auth,
    parse_command,
    success_response,
)
from relay import RegistryError, SessionRegistry

logger = logging.getLogger(__name__)

DEFAULT_AUTH_TIMEOUT = 5.0


# ============================================================================
# 关闭码与认证错误
# ============================================================================

class AuthCloseCode(IntEnum):
    """未认证连接的关闭码"""
    TIMEOUT = 4001
    MALFORMED = 4002
    INVALID_TOKEN = 4003


CLOSE_REASONS = {
    AuthCloseCode.TIMEOUT: 'Authentication required',
    AuthCloseCode.MALFORMED: 'Malformed auth message',
    AuthCloseCode.INVALID_TOKEN: 'Invalid token',
}


class AuthFailure(Exception):
    """认证失败，对该连接是终结性的"""

    def __init__(self, code: AuthCloseCode):
        super().__init__(CLOSE_REASONS[code])
        self.code = code
        self.reason = CLOSE_REASONS[code]


class ChannelState(Enum):
    AWAITING_AUTH = 'awaiting-auth'
    AUTHENTICATED = 'authenticated'
    CLOSED = 'closed'


# ============================================================================
# 认证截止计时器
# ============================================================================

class AuthDeadline:
    """
    可取消的认证截止计时器

    arm() 之后，如果在 timeout 秒内未被 cancel()，则调用一次 callback。
    cancel() 与触发互斥：取消之后绝不会触发，触发之后取消返回 False。
    """

    def __init__(self, timeout: float, callback: Callable[[], Any]):
        self.timeout = timeout
        self.callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._cancelled = False
        self._fired = False

    def arm(self):
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout, self._fire)

    def _fire(self):
        if self._cancelled or self._fired:
            return
        self._fired = True
        self.callback()

    def cancel(self) -> bool:
        """
        取消计时器

        Returns:
            bool: 成功取消返回 True，计时器已经触发返回 False
        """
        if self._fired:
            return False
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
        return True

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def cancelled(self) -> bool:
        return self._cancelled


# ============================================================================
# 控制通道
# ============================================================================

class ControlChannel:
    """
    单个操作员连接的控制通道

    Attributes:
        connection: WebSocket 连接（支持 async for / send / close）
        registry: 服务器持有的会话注册表
        state: 当前状态
        close_code: 本端关闭连接时使用的关闭码
    """

    def __init__(
        self,
        connection,
        registry: SessionRegistry,
        access_token: str,
        auth_timeout: float = DEFAULT_AUTH_TIMEOUT,
        monitor=None,
    ):
        self.connection = connection
        self.registry = registry
        self.access_token = access_token
        self.auth_timeout = auth_timeout
        self.monitor = monitor
        self.state = ChannelState.AWAITING_AUTH
        self.close_code: Optional[int] = None
        self._deadline: Optional[AuthDeadline] = None
        self._closing_task: Optional[asyncio.Task] = None

        peer = getattr(connection, 'remote_address', None)
        self.peer_str = f"{peer[0]}:{peer[1]}" if peer else "unknown"

    @property
    def authenticated(self) -> bool:
        return self.state is ChannelState.AUTHENTICATED

    async def run(self):
        """处理连接的完整生命周期"""
        logger.info(f"控制连接: {self.peer_str}")
        self._deadline = AuthDeadline(self.auth_timeout, self._on_auth_timeout)
        self._deadline.arm()

        try:
            async for message in self.connection:
                if self.state is ChannelState.AWAITING_AUTH:
                    try:
                        self._authenticate(message)
                    except AuthFailure as e:
                        await self._reject(e)
                        break
                    await self._send(success_response(message='Authenticated'))
                elif self.state is ChannelState.AUTHENTICATED:
                    await self._handle_message(message)
                else:
                    break
        except ConnectionClosed as e:
            logger.debug(f"控制连接已断开: {self.peer_str} ({e})")
        finally:
            self._deadline.cancel()
            if self._closing_task is not None:
                await self._closing_task
            self.state = ChannelState.CLOSED
            logger.info(f"控制连接结束: {self.peer_str}")

    # ------------------------------------------------------------------
    # 认证
    # ------------------------------------------------------------------

    def _authenticate(self, message):
        """
        校验第一条消息

        Raises:
            AuthFailure: 消息不是 JSON 对象（MALFORMED），或者不是携带正确
                token 的 auth 消息（INVALID_TOKEN），或者截止时间已过（TIMEOUT）
        """
        # 截止时间已过时，无论消息内容如何都以超时关闭
        if self._deadline.fired:
            raise AuthFailure(AuthCloseCode.TIMEOUT)

        try:
            data = load_message(message)
        except MalformedMessage:
            raise AuthFailure(AuthCloseCode.MALFORMED) from None

        command = parse_auth(data)
        if command is None or not hmac.compare_digest(
            command.token.encode('utf-8'), self.access_token.encode('utf-8')
        ):
            raise AuthFailure(AuthCloseCode.INVALID_TOKEN)

        if not self._deadline.cancel():
            raise AuthFailure(AuthCloseCode.TIMEOUT)

        self.state = ChannelState.AUTHENTICATED
        logger.info(f"控制连接已认证: {self.peer_str}")

    def _on_auth_timeout(self):
        if self.state is not ChannelState.AWAITING_AUTH:
            return
        logger.warning(f"认证超时，关闭连接: {self.peer_str}")
        self._closing_task = asyncio.ensure_future(self._close(AuthCloseCode.TIMEOUT))

    async def _reject(self, failure: AuthFailure):
        if self._closing_task is not None:
            # 超时关闭已在进行中，由 run() 等待完成
            return
        logger.warning(f"认证失败 ({failure.reason})，关闭连接: {self.peer_str}")
        if failure.code is not AuthCloseCode.TIMEOUT:
            await self._send(error_response(failure.reason))
        await self._close(failure.code)

    async def _close(self, code: AuthCloseCode):
        self.state = ChannelState.CLOSED
        self.close_code = int(code)
        try:
            await self.connection.close(int(code), CLOSE_REASONS[code])
        except ConnectionClosed:
            pass

    # ------------------------------------------------------------------
    # 命令分发
    # ------------------------------------------------------------------

    async def _handle_message(self, message):
        try:
            command = parse_command(message)
        except CommandError as e:
            logger.debug(f"无效命令来自 {self.peer_str}: {e}")
            await self._send(error_response(str(e), action=e.action))
            return

        try:
            response = await self.dispatch(command)
        except Exception as e:
            logger.exception(f"处理命令失败: {command}")
            response = error_response(str(e))
        await self._send(response)

    async def dispatch(self, command) -> Dict[str, Any]:
        """执行一条已解析的命令并返回响应"""
        if isinstance(command, ListCommand):
            proxies = [
                {'proxyPort': port, 'proxyHost': proxy_host.to_dict()}
                for port, proxy_host in self.registry.list()
            ]
            return success_response('list', proxies=proxies)

        if isinstance(command, CreateCommand):
            try:
                port = await self.registry.create(command.proxy_host_address, command.proxy_host_port)
            except RegistryError as e:
                logger.warning(f"创建中继失败: {e}")
                return error_response(str(e), action='create')
            return success_response(
                'create', message=f"Proxy created on port {port}", proxyPort=port
            )

        if isinstance(command, StopCommand):
            try:
                self.registry.stop(command.proxy_port)
            except RegistryError as e:
                return error_response(str(e), action='stop')
            return success_response(
                'stop', message=f"Proxy on port {command.proxy_port} stopped."
            )

        if isinstance(command, StatsCommand):
            report = self.monitor.snapshot() if self.monitor else {}
            return success_response(
                'stats',
                sessions=self.registry.stats(),
                process=report.get('process', {}),
                warnings=report.get('warnings', []),
            )

        return error_response("Unknown action.")

    async def _send(self, response: Dict[str, Any]):
        try:
            await self.connection.send(encode_response(response))
        except ConnectionClosed:
            logger.debug(f"发送响应失败，连接已关闭: {self.peer_str}")
