"""
资源监控模块 - 监控中继进程的资源使用和会话状态

功能:
1. 采集本进程的内存、CPU、线程数和文件描述符数量
2. 汇总活动中继会话的转发统计
3. 超过阈值时记录告警
4. 供服务器定期上报，也供控制通道的 stats 命令使用
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)


class ResourceMonitor:
    """资源监控器"""

    def __init__(self, registry=None, thresholds: Optional[Dict[str, float]] = None):
        """
        初始化资源监控器

        参数:
            registry: SessionRegistry，为空时只采集进程信息
            thresholds: 告警阈值，覆盖默认值
        """
        self.registry = registry
        self.process = psutil.Process(os.getpid())

        # 告警阈值
        self.thresholds = {
            'memory_mb': 500,      # 内存阈值: 500MB
            'cpu_percent': 80,     # CPU 阈值: 80%
            'num_fds': 1000,       # 文件描述符阈值
            'sessions': 1000,      # 活动中继数阈值
        }
        if thresholds:
            self.thresholds.update(thresholds)

        # 首次调用 cpu_percent(None) 只建立基准
        self.process.cpu_percent(interval=None)

    def get_process_stats(self) -> Dict:
        """
        获取进程统计信息

        cpu_percent 使用非阻塞模式，返回距上次调用以来的平均值。

        返回:
            Dict: 统计信息，进程不可访问时为空字典
        """
        try:
            with self.process.oneshot():
                memory_info = self.process.memory_info()
                return {
                    'pid': self.process.pid,
                    'memory_mb': round(memory_info.rss / 1024 / 1024, 2),
                    'cpu_percent': self.process.cpu_percent(interval=None),
                    'num_threads': self.process.num_threads(),
                    'num_fds': self.process.num_fds() if hasattr(self.process, 'num_fds') else 0,
                }
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"无法读取进程信息: {e}")
            return {}

    def get_relay_stats(self) -> Dict:
        """汇总所有中继会话的转发统计"""
        if self.registry is None:
            return {'sessions': 0}

        totals = {
            'sessions': len(self.registry),
            'toTargetDatagrams': 0,
            'toProxyDatagrams': 0,
            'droppedFrames': 0,
            'sendErrors': 0,
        }
        for entry in self.registry.stats():
            stats = entry['stats']
            for key in ('toTargetDatagrams', 'toProxyDatagrams', 'droppedFrames', 'sendErrors'):
                totals[key] += stats[key]
        return totals

    def check_thresholds(self, process_stats: Dict, relay_stats: Dict) -> List[str]:
        """
        检查是否超过阈值

        返回:
            List[str]: 告警信息列表
        """
        warnings = []

        if process_stats.get('memory_mb', 0) > self.thresholds['memory_mb']:
            warnings.append(f"内存使用过高: {process_stats['memory_mb']:.2f} MB > {self.thresholds['memory_mb']} MB")

        if process_stats.get('cpu_percent', 0) > self.thresholds['cpu_percent']:
            warnings.append(f"CPU 使用过高: {process_stats['cpu_percent']:.2f}% > {self.thresholds['cpu_percent']}%")

        if process_stats.get('num_fds', 0) > self.thresholds['num_fds']:
            warnings.append(f"文件描述符过多: {process_stats['num_fds']} > {self.thresholds['num_fds']}")

        if relay_stats.get('sessions', 0) > self.thresholds['sessions']:
            warnings.append(f"活动中继过多: {relay_stats['sessions']} > {self.thresholds['sessions']}")

        return warnings

    def snapshot(self) -> Dict:
        """
        执行一次监控检查

        返回:
            Dict: 监控结果
        """
        process_stats = self.get_process_stats()
        relay_stats = self.get_relay_stats()
        return {
            'timestamp': datetime.now().isoformat(timespec='seconds'),
            'process': process_stats,
            'relay': relay_stats,
            'warnings': self.check_thresholds(process_stats, relay_stats),
        }

    def log_status(self) -> Dict:
        """记录一次监控状态到日志"""
        result = self.snapshot()
        process = result['process']
        relay = result['relay']

        logger.info(
            f"资源状态: 中继={relay['sessions']}, "
            f"内存={process.get('memory_mb', 0):.2f}MB, "
            f"CPU={process.get('cpu_percent', 0):.1f}%, "
            f"fds={process.get('num_fds', 0)}"
        )
        for warning in result['warnings']:
            logger.warning(f"告警: {warning}")
        return result

    async def monitor_loop(self, interval: float):
        """
        定期记录资源状态，直到被取消

        参数:
            interval: 检查间隔 (秒)
        """
        logger.debug(f"资源监控已启动，间隔 {interval} 秒")
        while True:
            await asyncio.sleep(interval)
            self.log_status()
