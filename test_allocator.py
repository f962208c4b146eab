"""
端口分配测试
"""

import socket

import relay.allocator
from relay import find_available_port, probe_udp_port


def test_skips_registered_ports(monkeypatch):
    monkeypatch.setattr(relay.allocator, 'probe_udp_port', lambda port, bind_address: True)
    assert find_available_port({10000, 10001}, 10000, 10002) == 10002


def test_range_fully_registered(monkeypatch):
    probed = []

    def probe(port, bind_address):
        probed.append(port)
        return True

    monkeypatch.setattr(relay.allocator, 'probe_udp_port', probe)
    assert find_available_port({10000, 10001, 10002}, 10000, 10002) is None
    assert probed == []


def test_skips_ports_that_fail_to_bind(monkeypatch):
    monkeypatch.setattr(relay.allocator, 'probe_udp_port', lambda port, bind_address: port == 10003)
    assert find_available_port(set(), 10000, 10005) == 10003


def test_returns_lowest_free_port(monkeypatch):
    monkeypatch.setattr(relay.allocator, 'probe_udp_port', lambda port, bind_address: True)
    assert find_available_port({10001}, 10000, 10005) == 10000


def test_single_port_range(monkeypatch):
    monkeypatch.setattr(relay.allocator, 'probe_udp_port', lambda port, bind_address: True)
    assert find_available_port(set(), 10000, 10000) == 10000


def test_port_held_by_other_socket():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    try:
        assert probe_udp_port(port, '127.0.0.1') is False
        assert find_available_port(set(), port, port, '127.0.0.1') is None
    finally:
        sock.close()

    assert probe_udp_port(port, '127.0.0.1') is True
    assert find_available_port(set(), port, port, '127.0.0.1') == port


def test_probe_releases_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()

    assert probe_udp_port(port, '127.0.0.1') is True
    # 探测之后端口仍然可以绑定
    again = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        again.bind(('127.0.0.1', port))
    finally:
        again.close()
