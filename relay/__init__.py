"""
ProxBoard 中继模块

本包实现 UDP 中继的核心功能：
- 端口分配（在配置范围内探测可用的 UDP 端口）
- 中继会话（一个绑定端口 + 一个代理主机，按发送方决定转发方向）
- 会话注册表（端口到会话的映射，create/stop/list）

使用示例：
    from relay import SessionRegistry

    registry = SessionRegistry(10000, 10100)
    port = await registry.create('203.0.113.5', 9999)
    registry.stop(port)
"""

from .allocator import find_available_port, probe_udp_port
from .registry import (
    InvalidInput,
    NoAvailablePort,
    NotFound,
    RegistryError,
    SessionBindError,
    SessionRegistry,
)
from .session import Endpoint, RelaySession, SessionStats

__all__ = [
    'find_available_port',
    'probe_udp_port',
    'Endpoint',
    'RelaySession',
    'SessionStats',
    'SessionRegistry',
    'RegistryError',
    'InvalidInput',
    'NoAvailablePort',
    'SessionBindError',
    'NotFound',
]
