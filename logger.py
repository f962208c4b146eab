"""
ProxBoard UDP 中继 - 日志管理模块

版本: 1.0.0

功能概述:
本模块负责初始化日志系统，包括：
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 控制台输出（终端下彩色显示）
3. 日志文件轮转（按大小或按日期）
4. 可选的 systemd journal 输出
5. 上下文信息（监听地址等）

配置来源为配置文件的 logging 节，环境变量 LOG_* 优先。
"""

import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        enable_file: 是否输出到文件
        enable_journal: 是否输出到系统日志
        context_fields: 上下文字段列表
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "proxboard.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    rotation_type: str = "size"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: List[str] = field(default_factory=lambda: ["listen"])


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    为日志记录添加上下文信息
    """

    def __init__(self, context_fields: Optional[List[str]] = None):
        super().__init__()
        self.context_fields = context_fields or []
        self.context_data: Dict[str, Any] = {}

    def add_context(self, **kwargs):
        self.context_data.update(kwargs)

    def clear_context(self):
        self.context_data.clear()

    def filter(self, record):
        record.context = " | ".join(
            f"{name}={self.context_data.get(name, '-')}" for name in self.context_fields
        ) or "-"
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持彩色输出
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        # 未经过 ContextFilter 的记录（例如第三方库直接挂在子 logger 上的处理器）
        if not hasattr(record, 'context'):
            record.context = "-"

        if not self.use_color or record.levelname not in self.COLORS:
            return super().format(record)

        levelname = record.levelname
        record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    日志管理器

    管理日志系统的初始化和上下文信息（单例）
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config: Optional[LogConfig] = None
            self.context_filter: Optional[ContextFilter] = None
            self._initialized = True

    @staticmethod
    def load_config(config_data: Optional[Dict[str, Any]] = None,
                    env: Optional[Mapping[str, str]] = None) -> LogConfig:
        """
        从配置字典的 logging 节和环境变量生成日志配置

        Args:
            config_data: load_config 返回的完整配置字典
            env: 环境变量映射（默认 os.environ）

        Returns:
            LogConfig: 日志配置对象
        """
        env = os.environ if env is None else env
        log_conf = (config_data or {}).get('logging') or {}
        defaults = LogConfig()

        return LogConfig(
            level=env.get('LOG_LEVEL', log_conf.get('level', defaults.level)),
            log_dir=env.get('LOG_DIR', log_conf.get('log_dir', defaults.log_dir)),
            log_file=env.get('LOG_FILE', log_conf.get('log_file', defaults.log_file)),
            max_bytes=int(env.get('LOG_MAX_BYTES', log_conf.get('max_bytes', defaults.max_bytes))),
            backup_count=int(env.get('LOG_BACKUP_COUNT', log_conf.get('backup_count', defaults.backup_count))),
            rotation_type=env.get('LOG_ROTATION_TYPE', log_conf.get('rotation_type', defaults.rotation_type)),
            format_string=env.get('LOG_FORMAT', log_conf.get('format_string', defaults.format_string)),
            enable_console=_as_bool(env.get('LOG_ENABLE_CONSOLE', log_conf.get('enable_console', defaults.enable_console))),
            enable_file=_as_bool(env.get('LOG_ENABLE_FILE', log_conf.get('enable_file', defaults.enable_file))),
            enable_journal=_as_bool(env.get('LOG_ENABLE_JOURNAL', log_conf.get('enable_journal', defaults.enable_journal))),
            context_fields=log_conf.get('context_fields', defaults.context_fields),
        )

    def initialize(self, config: Optional[LogConfig] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（默认从环境变量生成）
        """
        self.config = config or self.load_config()
        self._setup_root_logger()

    @property
    def level(self) -> int:
        return getattr(logging, self.config.level.upper(), logging.INFO)

    def set_level(self, level: int):
        """调整根日志记录器和所有处理器的级别"""
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        for handler in root_logger.handlers:
            handler.setLevel(level)

    def _setup_root_logger(self):
        root_logger = logging.getLogger()
        root_logger.setLevel(self.level)

        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        self.context_filter = ContextFilter(self.config.context_fields)

        if self.config.enable_console:
            self._add_handler(root_logger, self._console_handler())

        if self.config.enable_file:
            self._add_handler(root_logger, self._file_handler())

        if self.config.enable_journal and HAS_JOURNAL:
            self._add_handler(root_logger, JournalHandler())

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler):
        handler.setLevel(self.level)
        handler.addFilter(self.context_filter)
        logger.addHandler(handler)

    def _console_handler(self) -> logging.Handler:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=sys.stdout.isatty()
        ))
        return handler

    def _file_handler(self) -> logging.Handler:
        """添加文件处理器（支持轮转）"""
        log_dir = Path(self.config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file_path = log_dir / self.config.log_file

        if self.config.rotation_type == 'size':
            handler = logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        elif self.config.rotation_type == 'date':
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        else:
            handler = logging.FileHandler(filename=log_file_path, encoding='utf-8')

        handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=False
        ))
        return handler

    def add_context(self, **kwargs):
        if self.context_filter:
            self.context_filter.add_context(**kwargs)

    def clear_context(self):
        if self.context_filter:
            self.context_filter.clear_context()


def setup_logging(config_data: Optional[Dict[str, Any]] = None, debug: bool = False) -> LoggerManager:
    """
    初始化日志系统（便捷函数）

    Args:
        config_data: 完整配置字典，使用其中的 logging 节
        debug: 为 True 时强制使用 DEBUG 级别

    Returns:
        LoggerManager: 日志管理器
    """
    manager = LoggerManager()
    manager.initialize(LoggerManager.load_config(config_data))
    if debug:
        manager.set_level(logging.DEBUG)
    return manager


def add_context(**kwargs):
    """添加上下文信息（便捷函数）"""
    LoggerManager().add_context(**kwargs)
