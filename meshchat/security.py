"""Optional TLS upgrade of an established PeerConnection.

The Listener runs the server side of the handshake with its certificate chain
and private key (plus optional DH parameters and, for mutual TLS, a client
trust anchor). The Initiator runs the client side and verifies the peer
against a CA file. Nothing is ever sent in plaintext if the handshake fails.
"""
import logging
import os
import socket
import ssl
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from .connection import PeerConnection, Role, safe_close
from .errors import HandshakeError, TlsConfigError

logger = logging.getLogger(__name__)

DEFAULT_HANDSHAKE_TIMEOUT = 30.0


def _require_file(path: Optional[str], what: str) -> str:
    if not path or not os.path.isfile(path):
        raise TlsConfigError(f'{what} not found: {path}')
    return path


def server_context(certfile: str, keyfile: str, dhfile: Optional[str] = None,
                   cafile: Optional[str] = None, require_client_cert: bool = False) -> ssl.SSLContext:
    """Build the Listener's TLS context.

    Args:
        certfile: PEM certificate chain presented to the peer.
        keyfile: PEM private key matching ``certfile``.
        dhfile: Optional PEM Diffie-Hellman parameters; skipped when the file
            does not exist.
        cafile: Trust anchor for client certificates.
        require_client_cert: Demand and verify a client certificate against
            ``cafile`` (mutual TLS).

    Raises:
        TlsConfigError: if any required file is missing or unreadable.
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    try:
        ctx.load_cert_chain(certfile=_require_file(certfile, 'Certificate'),
                            keyfile=_require_file(keyfile, 'Private key'))
        if dhfile and os.path.isfile(dhfile):
            ctx.load_dh_params(dhfile)
        if require_client_cert:
            ctx.load_verify_locations(cafile=_require_file(cafile, 'Client CA file'))
            ctx.verify_mode = ssl.CERT_REQUIRED
    except (ssl.SSLError, OSError) as exc:
        raise TlsConfigError(f'Error loading certificates: {exc}') from exc
    return ctx


def client_context(cafile: str, certfile: Optional[str] = None, keyfile: Optional[str] = None,
                   verify_hostname: bool = True) -> ssl.SSLContext:
    """Build the Initiator's TLS context; the peer must chain up to ``cafile``."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.check_hostname = verify_hostname
    ctx.verify_mode = ssl.CERT_REQUIRED
    try:
        ctx.load_verify_locations(cafile=_require_file(cafile, 'CA file'))
        # Client certificate for listeners that insist on mutual TLS
        if certfile and keyfile and os.path.isfile(certfile) and os.path.isfile(keyfile):
            ctx.load_cert_chain(certfile=certfile, keyfile=keyfile)
    except (ssl.SSLError, OSError) as exc:
        raise TlsConfigError(f'Error loading certificates: {exc}') from exc
    return ctx


def secure_connection(conn: PeerConnection, context: ssl.SSLContext, server_hostname: Optional[str] = None,
                      timeout: Optional[float] = DEFAULT_HANDSHAKE_TIMEOUT) -> PeerConnection:
    """Run the role-appropriate handshake and switch ``conn`` over to TLS.

    Raises:
        HandshakeError: negotiation failed, timed out, or the peer certificate
            was rejected. The caller still owns ``conn`` and must release it.
    """
    server_side = conn.role is Role.LISTENER
    raw = conn.socket
    conn.begin_handshake()
    raw.settimeout(timeout)
    tls = None
    done = False
    try:
        tls = context.wrap_socket(
            raw,
            server_side=server_side,
            server_hostname=None if server_side else server_hostname,
            do_handshake_on_connect=False,
        )
        tls.do_handshake()
        tls.settimeout(None)
        done = True
    except ssl.SSLCertVerificationError as exc:
        raise HandshakeError(f'Certificate of {conn.describe_peer()} rejected: {exc.verify_message}') from exc
    except socket.timeout as exc:
        raise HandshakeError(f'TLS handshake with {conn.describe_peer()} timed out') from exc
    except (ssl.SSLError, OSError, ValueError) as exc:
        raise HandshakeError(f'TLS handshake with {conn.describe_peer()} failed: {exc}') from exc
    finally:
        if not done:
            # wrap_socket() detaches the raw socket, so the TLS one owns the fd now
            safe_close(tls)
    conn.upgrade(tls)
    logger.info('TLS handshake with %s completed (%s)', conn.describe_peer(), tls.version())
    return conn


def peer_fingerprint(conn: PeerConnection) -> Optional[str]:
    """SHA-256 fingerprint of the peer certificate, ``AA:BB:...`` style.

    Returns ``None`` for plain connections and for clients that did not
    present a certificate.
    """
    getpeercert = getattr(conn.socket, 'getpeercert', None)
    if getpeercert is None:
        return None
    der = getpeercert(binary_form=True)
    if not der:
        return None
    cert = x509.load_der_x509_certificate(der)
    return cert.fingerprint(hashes.SHA256()).hex(':').upper()


def peer_subject(conn: PeerConnection) -> Optional[str]:
    getpeercert = getattr(conn.socket, 'getpeercert', None)
    der = getpeercert(binary_form=True) if getpeercert else None
    if not der:
        return None
    return x509.load_der_x509_certificate(der).subject.rfc4514_string()
