"""
证书生成测试
"""

import ipaddress
import os
import stat
import sys

from cryptography import x509

import generate_certs


def load_cert(path):
    with open(path, 'rb') as f:
        return x509.load_pem_x509_certificate(f.read())


def test_generate_certificates(tmp_path):
    paths = generate_certs.generate_certificates(str(tmp_path), hostname='relay.example.com')

    assert set(paths) == {'ca_key', 'ca_cert', 'server_key', 'server_cert'}
    for path in paths.values():
        assert os.path.exists(path)

    ca = load_cert(paths['ca_cert'])
    server = load_cert(paths['server_cert'])
    assert server.issuer == ca.subject
    server.verify_directly_issued_by(ca)

    san = server.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.DNSName) == ['relay.example.com', 'localhost']
    assert san.get_values_for_type(x509.IPAddress) == [ipaddress.ip_address('127.0.0.1')]


def test_ip_hostname(tmp_path):
    paths = generate_certs.generate_certificates(str(tmp_path), hostname='203.0.113.5')
    san = load_cert(paths['server_cert']).extensions.get_extension_for_class(
        x509.SubjectAlternativeName
    ).value
    assert ipaddress.ip_address('203.0.113.5') in san.get_values_for_type(x509.IPAddress)


def test_private_key_permissions(tmp_path):
    paths = generate_certs.generate_certificates(str(tmp_path))
    if os.name == 'posix':
        assert stat.S_IMODE(os.stat(paths['server_key']).st_mode) == 0o600


def test_main_refuses_to_overwrite(tmp_path, monkeypatch, capsys):
    generate_certs.generate_certificates(str(tmp_path))
    monkeypatch.setattr(sys, 'argv', ['generate_certs', '--output-dir', str(tmp_path)])

    assert generate_certs.main() == 1
    assert '--force' in capsys.readouterr().out


def test_main_rejects_small_key(tmp_path, monkeypatch):
    monkeypatch.setattr(sys, 'argv', [
        'generate_certs', '--output-dir', str(tmp_path), '--key-size', '1024',
    ])
    assert generate_certs.main() == 1
