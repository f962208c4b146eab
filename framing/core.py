"""
ProxBoard UDP 中继 - 帧编解码模块
定义代理主机与中继之间交换的包装帧格式。

版本: 1.0.0

功能概述:
代理主机通过中继访问任意下游 UDP 目标时，需要在每个数据报前附加
目标主机名和端口。本模块提供该包装格式的编码与解码函数，不持有
任何状态，也不进行任何 I/O。

帧格式:
┌──────────────┬─────────────┬────────────┬─────────────┐
│ 主机名长度   │   主机名    │  目标端口  │    负载     │
│   1 字节     │ 1-255 字节  │   2 字节   │  剩余字节   │
└──────────────┴─────────────┴────────────┴─────────────┘

所有多字节字段使用大端序（网络字节序）。负载长度是隐含的，
即帧头之后的全部字节，可以为空。
"""

import struct
from dataclasses import dataclass
from typing import Tuple, Union


# ============================================================================
# 协议常量
# ============================================================================

MAX_HOSTNAME_LENGTH = 255
MIN_PORT = 1
MAX_PORT = 65535
PORT_FIELD_SIZE = 2
# 主机名长度(1) + 最短主机名(1) + 端口(2)
MIN_FRAME_SIZE = 4

BytesLike = Union[bytes, bytearray, memoryview]


# ============================================================================
# 编解码错误
# ============================================================================

class FrameError(ValueError):
    """帧编解码错误的基类"""


class MalformedFrame(FrameError):
    """收到的字节无法解析为合法的帧"""


class InvalidHostname(FrameError):
    """目标主机名无法编码进帧头"""


class InvalidPort(FrameError):
    """目标端口不在 1-65535 范围内"""


# ============================================================================
# 帧数据类
# ============================================================================

@dataclass(frozen=True)
class Frame:
    """
    单个包装帧

    每个数据报临时构造一次，从不持久化。

    Attributes:
        host: 目标主机名或 IP 地址
        port: 目标端口（1-65535）
        payload: 原始 UDP 负载
    """
    host: str
    port: int
    payload: bytes = b''

    def serialize(self) -> bytes:
        """将帧序列化为字节"""
        return encode(self.host, self.port, self.payload)

    @classmethod
    def deserialize(cls, data: BytesLike) -> 'Frame':
        """从字节解析帧"""
        return cls(*decode(data))


# ============================================================================
# 编码与解码
# ============================================================================

def _check_port(port: int) -> bool:
    return isinstance(port, int) and not isinstance(port, bool) and MIN_PORT <= port <= MAX_PORT


def encode(target_host: str, target_port: int, payload: BytesLike = b'') -> bytes:
    """
    将负载包装为帧

    Args:
        target_host: 目标主机名，UTF-8 编码后不得超过 255 字节
        target_port: 目标端口号
        payload: 原始负载

    Returns:
        bytes: 编码后的帧

    Raises:
        InvalidHostname: 主机名为空或编码后超过 255 字节
        InvalidPort: 端口不在 1-65535 范围内
    """
    host_bytes = target_host.encode('utf-8')
    if not host_bytes:
        raise InvalidHostname("主机名不能为空")
    if len(host_bytes) > MAX_HOSTNAME_LENGTH:
        raise InvalidHostname(
            f"主机名过长: {len(host_bytes)} 字节 (最大 {MAX_HOSTNAME_LENGTH} 字节)"
        )
    if not _check_port(target_port):
        raise InvalidPort(f"目标端口必须在 {MIN_PORT}-{MAX_PORT} 之间: {target_port!r}")

    return (
        struct.pack('>B', len(host_bytes))
        + host_bytes
        + struct.pack('>H', target_port)
        + bytes(payload)
    )


def decode(data: BytesLike) -> Tuple[str, int, bytes]:
    """
    从帧中解析目标地址和负载

    Args:
        data: 收到的原始数据报

    Returns:
        Tuple[str, int, bytes]: (目标主机, 目标端口, 负载)，负载为独立副本

    Raises:
        MalformedFrame: 数据过短、帧头不完整、主机名为空或非法、端口非法
    """
    if len(data) < MIN_FRAME_SIZE:
        raise MalformedFrame(f"帧过短: {len(data)} 字节")

    host_len = data[0]
    header_len = 1 + host_len + PORT_FIELD_SIZE
    if len(data) < header_len:
        raise MalformedFrame(f"帧头不完整: 需要 {header_len} 字节，实际 {len(data)} 字节")

    if host_len == 0:
        raise MalformedFrame("主机名为空")
    try:
        host = bytes(data[1:1 + host_len]).decode('utf-8')
    except UnicodeDecodeError as e:
        raise MalformedFrame(f"主机名不是合法的 UTF-8: {e}") from None

    port = struct.unpack('>H', bytes(data[1 + host_len:header_len]))[0]
    if port < MIN_PORT:
        raise MalformedFrame(f"无效的目标端口: {port}")

    payload = bytes(data[header_len:])
    return host, port, payload

