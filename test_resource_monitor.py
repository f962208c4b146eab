"""
资源监控测试
"""

import pytest

from relay import SessionRegistry
from resource_monitor import ResourceMonitor


@pytest.fixture
async def registry(port_range):
    registry = SessionRegistry(port_range[0], port_range[1], '127.0.0.1')
    yield registry
    registry.stop_all()


def test_process_stats():
    stats = ResourceMonitor().get_process_stats()
    assert stats['pid'] > 0
    assert stats['memory_mb'] > 0
    assert stats['num_threads'] >= 1


def test_relay_stats_without_registry():
    assert ResourceMonitor().get_relay_stats() == {'sessions': 0}


async def test_relay_stats_totals(registry):
    port = await registry.create('127.0.0.1', 9999)
    session = registry.get(port)
    session.stats.to_target_datagrams = 3
    session.stats.dropped_frames = 1

    totals = ResourceMonitor(registry).get_relay_stats()

    assert totals == {
        'sessions': 1,
        'toTargetDatagrams': 3,
        'toProxyDatagrams': 0,
        'droppedFrames': 1,
        'sendErrors': 0,
    }


def test_thresholds():
    monitor = ResourceMonitor(thresholds={'memory_mb': 1, 'sessions': 0})
    warnings = monitor.check_thresholds(
        {'memory_mb': 10.0, 'cpu_percent': 1.0, 'num_fds': 5},
        {'sessions': 1},
    )
    assert len(warnings) == 2
    assert any('内存' in w for w in warnings)
    assert any('中继' in w for w in warnings)


def test_no_warnings_below_thresholds():
    monitor = ResourceMonitor()
    assert monitor.check_thresholds({'memory_mb': 1.0}, {'sessions': 0}) == []


def test_log_status(caplog):
    monitor = ResourceMonitor(thresholds={'memory_mb': 0})
    with caplog.at_level('INFO', logger='resource_monitor'):
        result = monitor.log_status()

    assert set(result) == {'timestamp', 'process', 'relay', 'warnings'}
    assert '资源状态' in caplog.text
    assert '告警' in caplog.text
