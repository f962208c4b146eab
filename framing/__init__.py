"""
ProxBoard 帧编解码包

本包提供代理主机与中继之间使用的包装帧格式：
- 协议常量
- 编解码错误类型
- 帧数据类及 encode/decode 函数

使用示例：
    from framing import encode, decode

    # 包装发往 8.8.8.8:53 的负载
    data = encode('8.8.8.8', 53, b'query')

    # 解包
    host, port, payload = decode(data)
"""

from .core import (
    # 协议常量
    MAX_HOSTNAME_LENGTH,
    MIN_PORT,
    MAX_PORT,
    MIN_FRAME_SIZE,

    # 错误类型
    FrameError,
    MalformedFrame,
    InvalidHostname,
    InvalidPort,

    # 帧
    Frame,
    encode,
    decode,
)

__all__ = [
    'MAX_HOSTNAME_LENGTH',
    'MIN_PORT',
    'MAX_PORT',
    'MIN_FRAME_SIZE',
    'FrameError',
    'MalformedFrame',
    'InvalidHostname',
    'InvalidPort',
    'Frame',
    'encode',
    'decode',
]
