#!/usr/bin/env python3
"""
为 ProxBoard 控制通道生成自签名 TLS 证书

版本: 1.0.0

生成一个 CA 证书和一个由 CA 签名的服务器证书。服务器配置
cert_file/key_file 后，控制通道改用 wss://，操作员使用 ca.crt
验证服务器身份。
"""

import argparse
import ipaddress
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Dict

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

MIN_KEY_SIZE = 2048
MAX_KEY_SIZE = 8192


def generate_private_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """
    生成 RSA 私钥

    参数:
        key_size: RSA 密钥大小 (位数)，默认为 2048 位
    """
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def generate_ca_certificate(
    private_key: rsa.RSAPrivateKey,
    common_name: str = "ProxBoard CA",
    days_valid: int = 3650
) -> x509.Certificate:
    """
    生成自签名证书颁发机构 (CA) 证书

    参数:
        private_key: CA 的私钥
        common_name: CA 的通用名称 (CN)
        days_valid: 证书有效期 (天数)
    """
    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ProxBoard"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    now = datetime.now(timezone.utc)

    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=days_valid))
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=False,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )


def _subject_alt_names(hostname: str) -> x509.SubjectAlternativeName:
    names = []
    try:
        names.append(x509.IPAddress(ipaddress.ip_address(hostname)))
    except ValueError:
        names.append(x509.DNSName(hostname))
    # 本地访问
    if hostname != "localhost":
        names.append(x509.DNSName("localhost"))
    if hostname != "127.0.0.1":
        names.append(x509.IPAddress(ipaddress.ip_address("127.0.0.1")))
    return x509.SubjectAlternativeName(names)


def generate_server_certificate(
    ca_key: rsa.RSAPrivateKey,
    ca_cert: x509.Certificate,
    server_key: rsa.RSAPrivateKey,
    hostname: str = "localhost",
    days_valid: int = 1095
) -> x509.Certificate:
    """
    生成由 CA 签名的服务器证书

    参数:
        ca_key: CA 的私钥，用于签名
        ca_cert: CA 的证书，作为颁发者
        server_key: 服务器私钥
        hostname: 控制通道的主机名或 IP 地址，写入 CN 和 SAN
        days_valid: 证书有效期 (天数)
    """
    subject = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ProxBoard"),
        x509.NameAttribute(NameOID.COMMON_NAME, hostname),
    ])
    now = datetime.now(timezone.utc)

    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(ca_cert.subject)
        .public_key(server_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=days_valid))
        .add_extension(_subject_alt_names(hostname), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_cert.public_key()),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )


def save_private_key(key: rsa.RSAPrivateKey, path: str):
    """保存未加密的私钥到 PEM 文件，权限设为 0600"""
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    with open(path, 'wb') as f:
        f.write(pem)
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass  # Windows 不支持 chmod


def save_certificate(cert: x509.Certificate, path: str):
    """保存证书到 PEM 文件"""
    with open(path, 'wb') as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))


def generate_certificates(
    output_dir: str,
    hostname: str = "localhost",
    days_valid: int = 1095,
    key_size: int = 2048,
) -> Dict[str, str]:
    """
    生成 CA 和服务器证书并写入 output_dir

    返回:
        Dict[str, str]: 文件用途 -> 路径（ca_key, ca_cert, server_key, server_cert）
    """
    os.makedirs(output_dir, exist_ok=True)

    ca_key = generate_private_key(key_size)
    ca_cert = generate_ca_certificate(ca_key, days_valid=days_valid * 10)
    server_key = generate_private_key(key_size)
    server_cert = generate_server_certificate(
        ca_key, ca_cert, server_key, hostname=hostname, days_valid=days_valid
    )

    paths = {
        'ca_key': os.path.join(output_dir, 'ca.key'),
        'ca_cert': os.path.join(output_dir, 'ca.crt'),
        'server_key': os.path.join(output_dir, 'server.key'),
        'server_cert': os.path.join(output_dir, 'server.crt'),
    }
    save_private_key(ca_key, paths['ca_key'])
    save_certificate(ca_cert, paths['ca_cert'])
    save_private_key(server_key, paths['server_key'])
    save_certificate(server_cert, paths['server_cert'])
    return paths


def main():
    parser = argparse.ArgumentParser(description='为 ProxBoard 控制通道生成 TLS 证书')
    parser.add_argument('--hostname', default='localhost', help='控制通道主机名或 IP (默认: localhost)')
    parser.add_argument('--output-dir', default='.', help='证书输出目录 (默认: 当前目录)')
    parser.add_argument('--days', type=int, default=1095, help='证书有效期天数 (默认: 1095 = 3 年)')
    parser.add_argument('--key-size', type=int, default=2048, help='RSA 密钥大小 (位) (默认: 2048)')
    parser.add_argument('--force', action='store_true', help='覆盖已存在的证书文件')
    args = parser.parse_args()

    if len(args.hostname) > 253:
        print(f"错误: 主机名太长: {len(args.hostname)} 字符 (最大 253)")
        return 1
    if args.days < 1:
        print("错误: 有效期天数不能小于 1")
        return 1
    if not MIN_KEY_SIZE <= args.key_size <= MAX_KEY_SIZE:
        print(f"错误: 密钥大小必须在 {MIN_KEY_SIZE}-{MAX_KEY_SIZE} 位之间")
        return 1

    existing = [
        name for name in ('ca.key', 'ca.crt', 'server.key', 'server.crt')
        if os.path.exists(os.path.join(args.output_dir, name))
    ]
    if existing and not args.force:
        print(f"错误: 以下证书文件已存在: {', '.join(existing)}（使用 --force 覆盖）")
        return 1

    print(f"正在为以下主机名生成证书: {args.hostname}")
    paths = generate_certificates(args.output_dir, args.hostname, args.days, args.key_size)

    print()
    print("证书生成完成!")
    print(f"  CA 证书:     {paths['ca_cert']}")
    print(f"  服务器证书:  {paths['server_cert']}")
    print(f"  服务器私钥:  {paths['server_key']}")
    print()
    print("在 config.yaml 的 server 节中配置:")
    print(f"  cert_file: {paths['server_cert']}")
    print(f"  key_file: {paths['server_key']}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
