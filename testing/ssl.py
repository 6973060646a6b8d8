"""Self-signed certificates for testing `wss://` relay servers.

Warning:
    Only use these helpers for temporary test certificates.

Note:
    Based on the examples in the
    [Cryptography docs](https://cryptography.io/en/latest/x509/tutorial/#creating-a-self-signed-certificate).
"""
from __future__ import annotations

import datetime
import ssl
from typing import NamedTuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


class SSLContextFixture(NamedTuple):
    """SSL fixture return type."""

    certfile: str
    keyfile: str
    ssl_context: ssl.SSLContext


def create_self_signed_cert(
    hostname: str = 'localhost',
    days: int = 1,
) -> tuple[bytes, bytes]:
    """Create a PEM encoded self-signed certificate and private key."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(hostname)]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


@pytest.fixture(scope='session')
def ssl_context(tmp_path_factory: pytest.TempPathFactory) -> SSLContextFixture:
    """Create a server SSL context from a self-signed certificate."""
    tmp_path = tmp_path_factory.mktemp('ssl-context-fixture')
    certfile = tmp_path / 'cert.pem'
    keyfile = tmp_path / 'key.pem'
    cert_pem, key_pem = create_self_signed_cert()
    certfile.write_bytes(cert_pem)
    keyfile.write_bytes(key_pem)

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(certfile, keyfile=keyfile)

    return SSLContextFixture(str(certfile), str(keyfile), context)
