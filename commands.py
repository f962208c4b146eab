"""
控制通道命令模块 - 定义操作员命令及响应格式

每条控制消息是一个 JSON 对象。消息在解析边界就被转换为封闭的命令
类型，每个 action 一个数据类，必需字段在解析时检查；未知的 action
在这里就被拒绝，不会进入分发逻辑。

命令:
    {"action": "auth", "token": "..."}
    {"action": "list"}
    {"action": "create", "proxyHostAddress": "...", "proxyHostPort": 9999}
    {"action": "stop", "proxyPort": 10000}
    {"action": "stats"}
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union


# ============================================================================
# 解析错误
# ============================================================================

class CommandError(Exception):
    """
    命令解析失败

    Attributes:
        action: 已识别出的 action（如果有），用于填充错误响应
    """

    def __init__(self, message: str, action: Optional[str] = None):
        super().__init__(message)
        self.action = action


class MalformedMessage(CommandError):
    """消息不是 JSON 对象"""


class UnknownAction(CommandError):
    """action 字段缺失或不受支持"""


class InvalidCommand(CommandError):
    """必需字段缺失或类型错误"""


# ============================================================================
# 命令类型
# ============================================================================

@dataclass(frozen=True)
class AuthCommand:
    token: str


@dataclass(frozen=True)
class ListCommand:
    pass


@dataclass(frozen=True)
class CreateCommand:
    proxy_host_address: str
    proxy_host_port: int


@dataclass(frozen=True)
class StopCommand:
    proxy_port: int


@dataclass(frozen=True)
class StatsCommand:
    pass


Command = Union[ListCommand, CreateCommand, StopCommand, StatsCommand]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def load_message(raw: Union[str, bytes]) -> Dict[str, Any]:
    """
    把原始消息解析为 JSON 对象

    Raises:
        MalformedMessage: 不是合法 JSON 或不是对象
    """
    try:
        data = json.loads(raw)
    except (ValueError, TypeError) as e:
        raise MalformedMessage(f"Malformed message: {e}") from None
    if not isinstance(data, dict):
        raise MalformedMessage("Malformed message: expected a JSON object.")
    return data


def parse_auth(data: Dict[str, Any]) -> Optional[AuthCommand]:
    """
    从已解析的对象中提取认证命令

    Returns:
        Optional[AuthCommand]: 不是带字符串 token 的 auth 消息时返回 None
    """
    if data.get('action') != 'auth' or not isinstance(data.get('token'), str):
        return None
    return AuthCommand(data['token'])


def _parse_create(data: Dict[str, Any]) -> CreateCommand:
    address = data.get('proxyHostAddress')
    port = data.get('proxyHostPort')
    if not isinstance(address, str) or not _is_int(port):
        raise InvalidCommand("Invalid proxyHostAddress or proxyHostPort.", action='create')
    return CreateCommand(address, port)


def _parse_stop(data: Dict[str, Any]) -> StopCommand:
    port = data.get('proxyPort')
    if not _is_int(port):
        raise InvalidCommand("Invalid proxyPort.", action='stop')
    return StopCommand(port)


_PARSERS = {
    'list': lambda data: ListCommand(),
    'create': _parse_create,
    'stop': _parse_stop,
    'stats': lambda data: StatsCommand(),
}


def parse_command(raw: Union[str, bytes]) -> Command:
    """
    解析已认证连接上的一条命令

    Raises:
        MalformedMessage: 消息不是 JSON 对象
        UnknownAction: action 不受支持
        InvalidCommand: 必需字段缺失或类型错误
    """
    data = load_message(raw)
    action = data.get('action')
    parser = _PARSERS.get(action) if isinstance(action, str) else None
    if parser is None:
        raise UnknownAction("Unknown action.")
    return parser(data)


# ============================================================================
# 响应
# ============================================================================

def success_response(action: Optional[str] = None, **fields) -> Dict[str, Any]:
    response: Dict[str, Any] = {'status': 'success'}
    if action:
        response['action'] = action
    response.update(fields)
    return response


def error_response(message: str, action: Optional[str] = None) -> Dict[str, Any]:
    response: Dict[str, Any] = {'status': 'error'}
    if action:
        response['action'] = action
    response['message'] = message
    return response


def encode_response(response: Dict[str, Any]) -> str:
    return json.dumps(response)
