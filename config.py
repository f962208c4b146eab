"""
ProxBoard UDP 中继 - 配置管理模块
加载 YAML 配置文件并应用环境变量覆盖。

版本: 1.0.0

配置来源（优先级从低到高）:
1. ServerConfig 默认值
2. 配置文件 config.yaml 的 server 节
3. 环境变量 WS_API_PORT / MIN_PROXY_PORT / MAX_PROXY_PORT / WS_ACCESS_TOKEN
4. 命令行参数

配置文件示例:

    server:
      host: 0.0.0.0
      port: 3000
      min_proxy_port: 10000
      max_proxy_port: 10100
      access_token: change-me
      auth_timeout: 5
    logging:
      level: INFO
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """配置无效"""


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class ServerConfig:
    """
    服务器配置数据类

    Attributes:
        host: 控制通道监听地址（默认: "0.0.0.0"）
        port: 控制通道监听端口（默认: 3000）
        min_proxy_port: 代理端口范围下界（默认: 10000）
        max_proxy_port: 代理端口范围上界（默认: 10100）
        access_token: 控制通道共享访问令牌
        bind_address: 中继 UDP 套接字绑定地址（默认: "0.0.0.0"）
        auth_timeout: 认证截止时间（秒，默认: 5）
        cert_file: TLS 证书文件路径（可选，设置后控制通道使用 wss）
        key_file: TLS 私钥文件路径（可选）
        stats_interval: 资源状态上报间隔（秒，0 表示关闭）
    """
    host: str = "0.0.0.0"
    port: int = 3000
    min_proxy_port: int = 10000
    max_proxy_port: int = 10100
    access_token: str = ""
    bind_address: str = "0.0.0.0"
    auth_timeout: float = 5.0
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    stats_interval: float = 60.0

    @property
    def tls_enabled(self) -> bool:
        return bool(self.cert_file and self.key_file)

    def validate(self):
        """
        校验配置

        Raises:
            ConfigError: 配置无效
        """
        for name in ('port', 'min_proxy_port', 'max_proxy_port'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 65535:
                raise ConfigError(f"{name} 必须是 1-65535 之间的整数: {value!r}")
        if self.min_proxy_port > self.max_proxy_port:
            raise ConfigError(
                f"min_proxy_port ({self.min_proxy_port}) 不能大于 max_proxy_port ({self.max_proxy_port})"
            )
        if not self.access_token:
            raise ConfigError("未配置 access_token")
        if not isinstance(self.access_token, str):
            raise ConfigError(f"access_token 必须是字符串（YAML 中请加引号）: {self.access_token!r}")
        if not isinstance(self.auth_timeout, (int, float)) or self.auth_timeout <= 0:
            raise ConfigError(f"auth_timeout 必须大于 0: {self.auth_timeout!r}")
        if not isinstance(self.stats_interval, (int, float)) or self.stats_interval < 0:
            raise ConfigError(f"stats_interval 不能为负数: {self.stats_interval!r}")
        if bool(self.cert_file) != bool(self.key_file):
            raise ConfigError("cert_file 和 key_file 必须同时配置")


# 环境变量 -> (字段名, 类型)
ENV_OVERRIDES = {
    'WS_API_PORT': ('port', int),
    'MIN_PROXY_PORT': ('min_proxy_port', int),
    'MAX_PROXY_PORT': ('max_proxy_port', int),
    'WS_ACCESS_TOKEN': ('access_token', str),
}


def load_config(path: str) -> dict:
    """
    从 YAML 文件加载配置

    参数:
        path: 配置文件路径

    返回:
        配置字典
    """
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"配置文件解析失败: {path}: {e}") from None
    if not isinstance(data, dict):
        raise ConfigError(f"配置文件格式错误: {path}")
    return data


def build_server_config(
    config_data: Dict[str, Any],
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ServerConfig:
    """
    合并配置文件、环境变量和命令行参数，生成服务器配置

    参数:
        config_data: load_config 返回的字典
        env: 环境变量映射（默认 os.environ）
        overrides: 命令行参数，值为 None 的项会被忽略

    返回:
        ServerConfig: 已校验的配置

    Raises:
        ConfigError: 配置无效
    """
    env = os.environ if env is None else env
    server_conf = config_data.get('server') or {}
    known = {f.name for f in fields(ServerConfig)}

    unknown = set(server_conf) - known
    if unknown:
        logger.warning(f"忽略未知的配置项: {', '.join(sorted(unknown))}")

    values = {k: v for k, v in server_conf.items() if k in known}

    for var, (name, cast) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw:
            try:
                values[name] = cast(raw)
            except ValueError:
                raise ConfigError(f"环境变量 {var} 的值无效: {raw!r}") from None

    for name, value in (overrides or {}).items():
        if value is not None:
            values[name] = value

    config = ServerConfig(**values)
    config.validate()
    return config
