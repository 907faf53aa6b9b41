"""Local certificate authority and server certificate for TLS chats.

Writes the same file names the chat looks for in its certs directory:
``ca.crt`` (trust anchor for initiators), ``server.crt`` / ``server.key``
(presented by listeners) and, on request, ``dh2048.pem``.
"""
import datetime
import ipaddress
import logging
import os
from dataclasses import dataclass
from typing import Iterable, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import dh, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

logger = logging.getLogger(__name__)

CA_CERT = 'ca.crt'
CA_KEY = 'ca.key'
SERVER_CERT = 'server.crt'
SERVER_KEY = 'server.key'
DH_PARAMS = 'dh2048.pem'

DEFAULT_NAMES = ('localhost', '127.0.0.1')


@dataclass
class CertPaths:
    ca_cert: str
    ca_key: str
    server_cert: str
    server_key: str
    dh_params: Optional[str] = None


def generate_rsa_keypair():
    # Create a 2048-bit RSA private key (public exponent 65537)
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _write_key(path: str, key) -> None:
    with open(path, 'wb') as f:
        f.write(key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),  # local chat keys, unencrypted
        ))
    os.chmod(path, 0o600)


def _write_cert(path: str, cert: x509.Certificate) -> None:
    with open(path, 'wb') as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))


def _san_entries(names: Iterable[str]):
    entries = []
    for name in names:
        try:
            entries.append(x509.IPAddress(ipaddress.ip_address(name)))
        except ValueError:
            entries.append(x509.DNSName(name))
    return entries


def build_ca(common_name: str = 'MESH Chat Local CA', days: int = 365):
    """Self-signed CA certificate and its key."""
    key = generate_rsa_keypair()
    now = datetime.datetime.now(datetime.timezone.utc)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return cert, key


def build_server_cert(ca_cert: x509.Certificate, ca_key, common_name: str = 'localhost',
                      names: Iterable[str] = DEFAULT_NAMES, days: int = 365):
    """Leaf certificate for ``common_name`` signed by the CA.

    ``names`` become subjectAltName entries; literal addresses are stored as
    IP entries so initiators connecting by IP pass hostname verification.
    """
    key = generate_rsa_keypair()
    now = datetime.datetime.now(datetime.timezone.utc)
    alt_names = list(dict.fromkeys([common_name, *names]))
    cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.SubjectAlternativeName(_san_entries(alt_names)), critical=False)
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH,
                                   ExtendedKeyUsageOID.CLIENT_AUTH]),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )
    return cert, key


def write_dh_params(path: str, key_size: int = 2048) -> None:
    # Slow: generating 2048-bit DH parameters can take a minute
    params = dh.generate_parameters(generator=2, key_size=key_size)
    with open(path, 'wb') as f:
        f.write(params.parameter_bytes(serialization.Encoding.PEM, serialization.ParameterFormat.PKCS3))


def generate_certificates(out_dir: str, common_name: str = 'localhost', names: Iterable[str] = DEFAULT_NAMES,
                          with_dh: bool = False, days: int = 365) -> CertPaths:
    """Create a CA and a CA-signed server certificate under ``out_dir``."""
    os.makedirs(out_dir, exist_ok=True)
    paths = CertPaths(
        ca_cert=os.path.join(out_dir, CA_CERT),
        ca_key=os.path.join(out_dir, CA_KEY),
        server_cert=os.path.join(out_dir, SERVER_CERT),
        server_key=os.path.join(out_dir, SERVER_KEY),
    )
    ca_cert, ca_key = build_ca(days=days)
    server_cert, server_key = build_server_cert(ca_cert, ca_key, common_name, names, days)
    _write_cert(paths.ca_cert, ca_cert)
    _write_key(paths.ca_key, ca_key)
    _write_cert(paths.server_cert, server_cert)
    _write_key(paths.server_key, server_key)
    if with_dh:
        paths.dh_params = os.path.join(out_dir, DH_PARAMS)
        write_dh_params(paths.dh_params)
    logger.info('Generated certificates for CN=%s in %s', common_name, out_dir)
    return paths
