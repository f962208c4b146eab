"""
端口分配模块 - 在配置的端口范围内查找可用的 UDP 端口

创建中继会话时按升序探测端口范围，跳过已注册的端口，
对其余端口尝试绑定 UDP 套接字并立即释放。第一个绑定成功
的端口即为分配结果。端口范围通常只有几百个端口，且每条
create 命令只探测一次，因此线性扫描即可满足需要。
"""

import errno
import logging
import socket
from typing import Container, Optional

logger = logging.getLogger(__name__)

DEFAULT_BIND_ADDRESS = '0.0.0.0'


def probe_udp_port(port: int, bind_address: str = DEFAULT_BIND_ADDRESS) -> bool:
    """
    尝试在指定端口绑定 UDP 套接字，随后立即释放

    Args:
        port: 要探测的端口
        bind_address: 绑定地址

    Returns:
        bool: 绑定成功返回 True
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.bind((bind_address, port))
        return True
    except OSError as e:
        if e.errno == errno.EADDRINUSE:
            logger.debug(f"端口 {port} 已被占用")
        else:
            logger.debug(f"端口 {port} 绑定失败: {e}")
        return False
    finally:
        sock.close()


def find_available_port(
    registry: Container[int],
    min_port: int,
    max_port: int,
    bind_address: str = DEFAULT_BIND_ADDRESS,
) -> Optional[int]:
    """
    查找第一个可用的 UDP 端口

    从不抛出异常：任何绑定失败都视为"尝试下一个端口"。

    Args:
        registry: 已注册的端口集合（支持 in 运算即可）
        min_port: 端口范围下界（包含）
        max_port: 端口范围上界（包含）
        bind_address: 探测时使用的绑定地址

    Returns:
        Optional[int]: 可用端口，范围耗尽时返回 None
    """
    for port in range(min_port, max_port + 1):
        if port in registry:
            continue
        if probe_udp_port(port, bind_address):
            logger.debug(f"分配端口: {port}")
            return port

    logger.warning(f"端口范围 {min_port}-{max_port} 内没有可用端口")
    return None
