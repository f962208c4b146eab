#!/usr/bin/env python3
"""
ProxBoard UDP 中继服务端

版本: 1.0.0

操作员通过 WebSocket 控制通道创建、列出和停止中继会话。
每个中继会话绑定一个独立的 UDP 端口，在代理主机与任意下游
UDP 目标之间转发数据报。

控制命令:
  { "action": "auth", "token": "..." }
  { "action": "list" }
  { "action": "create", "proxyHostAddress": "...", "proxyHostPort": ... }
  { "action": "stop", "proxyPort": ... }
  { "action": "stats" }
"""

import argparse
import asyncio
import logging
import signal
import ssl
from typing import Optional, Set

from websockets.asyncio.server import Server, ServerConnection, serve

from config import ConfigError, ServerConfig, build_server_config, load_config
from control_channel import ControlChannel
from logger import add_context, setup_logging
from relay import SessionRegistry
from resource_monitor import ResourceMonitor

logger = logging.getLogger(__name__)


class RelayServer:
    """
    中继服务端 - 管理控制通道监听和全部中继会话

    Attributes:
        config: ServerConfig，服务器配置
        registry: SessionRegistry，所有控制通道共享的会话注册表
        monitor: ResourceMonitor，资源监控器
        channels: 当前活动的控制通道
    """

    def __init__(self, config: ServerConfig):
        self.config = config
        self.registry = SessionRegistry(
            config.min_proxy_port, config.max_proxy_port, config.bind_address
        )
        self.monitor = ResourceMonitor(self.registry)
        self.ssl_context = self._create_ssl_context() if config.tls_enabled else None
        self.channels: Set[ControlChannel] = set()
        self._server: Optional[Server] = None
        self._stats_task: Optional[asyncio.Task] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    def _create_ssl_context(self) -> ssl.SSLContext:
        """创建 SSL 上下文"""
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2  # 最低 TLS 1.2
        ctx.load_cert_chain(self.config.cert_file, self.config.key_file)
        return ctx

    @property
    def port(self) -> Optional[int]:
        """控制通道实际监听的端口（配置端口为 0 时由系统分配）"""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def handle_client(self, connection: ServerConnection):
        """处理控制连接"""
        channel = ControlChannel(
            connection,
            self.registry,
            self.config.access_token,
            auth_timeout=self.config.auth_timeout,
            monitor=self.monitor,
        )
        self.channels.add(channel)
        try:
            await channel.run()
        finally:
            self.channels.discard(channel)

    async def start(self):
        """
        启动控制通道监听

        Raises:
            OSError: 监听端口绑定失败（进程级致命错误）
        """
        self._shutdown_event = asyncio.Event()
        self._server = await serve(
            self.handle_client,
            self.config.host,
            self.config.port,
            ssl=self.ssl_context,
        )

        scheme = 'wss' if self.ssl_context else 'ws'
        logger.info("ProxBoard 中继服务已启动")
        logger.info(f"WebSocket API: {scheme}://{self.config.host}:{self.port}")
        logger.info(f"可用 UDP 代理端口范围: {self.config.min_proxy_port}-{self.config.max_proxy_port}")

        if self.config.stats_interval:
            self._stats_task = asyncio.create_task(
                self.monitor.monitor_loop(self.config.stats_interval)
            )

    def request_shutdown(self):
        """请求关闭服务（信号处理器调用）"""
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def serve_forever(self):
        """启动服务并运行，直到收到 SIGINT/SIGTERM 或 request_shutdown()"""
        await self.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                # Windows 不支持 add_signal_handler，依赖 KeyboardInterrupt
                pass

        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def stop(self):
        """
        关闭服务: 停止所有中继会话，关闭所有控制连接和监听

        可以重复调用；会话同时因套接字错误退出也不影响关闭。
        """
        logger.info("正在关闭 ProxBoard 中继服务...")

        stopped = self.registry.stop_all()
        if stopped:
            logger.info(f"已关闭 {stopped} 个中继")

        if self._stats_task is not None:
            self._stats_task.cancel()
            try:
                await self._stats_task
            except asyncio.CancelledError:
                pass
            self._stats_task = None

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("WebSocket 服务已关闭")


def main():
    """主函数"""
    parser = argparse.ArgumentParser(description='ProxBoard UDP 中继服务端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--host', default=None, help='控制通道监听地址')
    parser.add_argument('--port', '-p', type=int, default=None, help='控制通道监听端口')
    parser.add_argument('--min-port', type=int, default=None, help='代理端口范围下界')
    parser.add_argument('--max-port', type=int, default=None, help='代理端口范围上界')
    parser.add_argument('--token', default=None, help='控制通道访问令牌')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    args = parser.parse_args()

    # 加载配置文件
    try:
        config_data = load_config(args.config)
    except FileNotFoundError:
        config_data = {}
    except ConfigError as e:
        print(f"配置错误: {e}")
        return 1

    setup_logging(config_data, debug=args.debug)

    try:
        config = build_server_config(config_data, overrides={
            'host': args.host,
            'port': args.port,
            'min_proxy_port': args.min_port,
            'max_proxy_port': args.max_port,
            'access_token': args.token,
        })
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        return 1

    add_context(listen=f"{config.host}:{config.port}")

    try:
        server = RelayServer(config)
    except (OSError, ssl.SSLError) as e:
        logger.error(f"加载 TLS 证书失败: {e}")
        return 1

    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("服务端已停止")
    except OSError as e:
        logger.error(f"无法监听控制端口 {config.host}:{config.port}: {e}")
        return 1

    return 0


if __name__ == '__main__':
    exit(main())
