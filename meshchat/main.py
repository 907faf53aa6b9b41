"""Command-line entry point for MESH Chat."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Callable, Optional

from .certs import DEFAULT_NAMES, generate_certificates
from .config import ChatSettings, validate_port
from .connection import Listener, PeerConnection, Role, Security, connect_peer
from .console import Console, InputSource
from .errors import ChatError, ConfigValidationError
from .security import client_context, peer_fingerprint, peer_subject, secure_connection, server_context
from .session import ChatSession

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def configure_logging(level: str = 'WARNING') -> None:
    logging.basicConfig(
        level=level.upper(),
        format='[%(asctime)s] [%(levelname)s] %(name)s: %(message)s',
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='meshchat', description='Peer-to-peer chat over TCP or TLS')
    parser.add_argument('--config', type=Path, default=None, help='JSON settings file')
    parser.add_argument('--log-level', default=None, help='Logging level (DEBUG, INFO, WARNING, ...)')
    sub = parser.add_subparsers(dest='command')

    def add_chat_options(p: argparse.ArgumentParser) -> None:
        p.add_argument('--port', type=int, default=None, help='Port to listen on / connect to (1024-65535)')
        p.add_argument('--username', '-u', default=None, help='Label messages with this name and a timestamp')
        p.add_argument('--tls', action='store_true', help='Encrypt the chat with TLS')
        p.add_argument('--certs-dir', type=Path, default=None, help='Directory holding server.crt, server.key, ca.crt')

    listen = sub.add_parser('listen', help='Wait for a peer to connect')
    listen.add_argument('--host', default=None, help='Address to bind (default: all IPv4 interfaces)')
    listen.add_argument('--require-client-cert', action='store_true', help='Mutual TLS: demand a client certificate')
    add_chat_options(listen)

    connect = sub.add_parser('connect', help='Connect to a waiting peer')
    connect.add_argument('host', help='Peer host name or IP address')
    connect.add_argument('--no-verify-hostname', action='store_true',
                         help="Accept a trusted certificate even if it does not name the host")
    add_chat_options(connect)

    gen = sub.add_parser('gen-certs', help='Create a local CA and a server certificate')
    gen.add_argument('--out', type=Path, default=Path('certs'), help='Output directory')
    gen.add_argument('--cn', default='localhost', help='Server certificate common name')
    gen.add_argument('--name', action='append', default=[], help='Extra DNS name or IP for the certificate')
    gen.add_argument('--dh', action='store_true', help='Also generate 2048-bit DH parameters (slow)')
    return parser


def get_valid_port(ask: Callable[[str], str] = input, say: Callable[[str], None] = print) -> int:
    """Ask for a port until the answer is within 1024-65535."""
    while True:
        answer = ask('Enter a port number (1024-65535): ').strip()
        try:
            return validate_port(int(answer))
        except (ValueError, ConfigValidationError):
            say('Invalid port number. Please try again.')


def prompt_settings(settings: ChatSettings, ask: Callable[[str], str] = input,
                    say: Callable[[str], None] = print) -> ChatSettings:
    """Interactive flow used when no subcommand was given."""
    say('Do you want to:\n1. Wait for a connection\n2. Connect to a peer')
    while True:
        choice = ask('> ').strip()
        if choice in ('1', '2'):
            break
        say('Please enter 1 or 2.')
    if choice == '1':
        settings.role = Role.LISTENER
    else:
        settings.role = Role.INITIATOR
        host = ''
        while not host:
            host = ask('Enter peer IP: ').strip()
        settings.host = host
    settings.port = get_valid_port(ask, say)
    return settings


def settings_from_args(args: argparse.Namespace) -> ChatSettings:
    settings = ChatSettings.from_file(args.config)
    if args.log_level:
        settings.log_level = args.log_level.upper()
    if args.command == 'listen':
        settings.role = Role.LISTENER
        if args.host:
            settings.host = args.host
        if args.require_client_cert:
            settings.require_client_cert = True
    elif args.command == 'connect':
        settings.role = Role.INITIATOR
        settings.host = args.host
        if args.no_verify_hostname:
            settings.verify_hostname = False
    if args.command in ('listen', 'connect'):
        if args.port is not None:
            settings.port = args.port
        if args.username is not None:
            settings.username = args.username
        if args.tls:
            settings.security = Security.TLS
        if args.certs_dir is not None:
            settings.certs_dir = args.certs_dir
    return settings


class ChatApp:
    """Establishes the connection, runs one session and maps the outcome to an exit code."""

    def __init__(self, settings: ChatSettings, console: Optional[Console] = None,
                 input_source: Optional[InputSource] = None) -> None:
        self.settings = settings
        self.console = console or Console(prompt=settings.prompt)
        self.input_source = input_source
        self.session: Optional[ChatSession] = None
        # Connection accepted or dialed but not yet handed to a session
        self.pending: Optional[PeerConnection] = None

    def handle_signal(self, signum, frame) -> None:
        if self.session is None:
            # Still connecting or handshaking: abort the blocking call
            raise KeyboardInterrupt
        self.session.interrupt()

    def install_signal_handlers(self):
        previous = {}
        if threading.current_thread() is not threading.main_thread():
            # signal.signal() only works on the main thread
            return previous
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, self.handle_signal)
        return previous

    def establish(self) -> PeerConnection:
        s = self.settings
        if s.role is Role.LISTENER:
            with Listener(s.host, s.port) as listener:
                self.console.status(f'Listening for incoming connections on port {listener.address[1]}...')
                conn = self.pending = listener.accept()
            self.console.status(f'Connection accepted from: {conn.peer[0]}')
        else:
            conn = self.pending = connect_peer(s.host, s.port, timeout=s.connect_timeout)
            self.console.status(f'Connected to peer at {s.host}:{s.port}')
        if s.security is Security.TLS:
            self._secure(conn)
        return conn

    def _abandon_pending(self) -> None:
        conn, self.pending = self.pending, None
        if conn is not None:
            conn.release()
            conn.mark_closed()

    def _secure(self, conn: PeerConnection) -> None:
        s = self.settings
        if s.role is Role.LISTENER:
            ctx = server_context(
                certfile=s.cert_path(s.certfile),
                keyfile=s.cert_path(s.keyfile),
                dhfile=s.cert_path(s.dhfile),
                cafile=s.cert_path(s.cafile),
                require_client_cert=s.require_client_cert,
            )
        else:
            ctx = client_context(
                cafile=s.cert_path(s.cafile),
                verify_hostname=s.verify_hostname,
            )
        secure_connection(conn, ctx, server_hostname=s.host, timeout=s.handshake_timeout)
        self.console.status(f'SSL handshake completed successfully ({conn.socket.version()})')
        fingerprint = peer_fingerprint(conn)
        if fingerprint:
            self.console.status(f'Peer certificate: {peer_subject(conn)}')
            self.console.status(f'SHA-256 fingerprint: {fingerprint}')

    def run(self) -> int:
        previous = self.install_signal_handlers()
        reason = None
        try:
            try:
                conn = self.establish()
                self.console.status(f"Type messages and press Enter. Type '{self.settings.exit_command}' to quit.")
                self.session = ChatSession(conn, self.settings, self.console, self.input_source)
                self.pending = None
            except KeyboardInterrupt:
                self._abandon_pending()
                self.console.status('Interrupted before the chat started.')
                return EXIT_INTERRUPTED
            except ChatError as exc:
                self._abandon_pending()
                self.console.error(f'Error: {exc}')
                logger.debug('Establishment failed', exc_info=True)
                return EXIT_FAILURE
            reason = self.session.run()
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
        return EXIT_FAILURE if reason is not None and reason.is_error else EXIT_OK


def run_gen_certs(args: argparse.Namespace, console: Console) -> int:
    names = list(DEFAULT_NAMES) + list(args.name)
    try:
        paths = generate_certificates(str(args.out), common_name=args.cn, names=names, with_dh=args.dh)
    except OSError as exc:
        console.error(f'Failed to write certificates: {exc}')
        return EXIT_FAILURE
    console.status(f'CA certificate:     {paths.ca_cert}')
    console.status(f'Server certificate: {paths.server_cert}')
    console.status(f'Server key:         {paths.server_key}')
    if paths.dh_params:
        console.status(f'DH parameters:      {paths.dh_params}')
    return EXIT_OK


def main(argv=None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    console = Console()

    try:
        settings = settings_from_args(args)
    except ConfigValidationError as exc:
        console.error(f'Invalid configuration: {exc}')
        return EXIT_FAILURE
    configure_logging(settings.log_level)

    if args.command == 'gen-certs':
        return run_gen_certs(args, console)

    console.write_line('Welcome to MESH Chat!')
    if args.command is None:
        try:
            prompt_settings(settings)
        except (EOFError, KeyboardInterrupt):
            console.status('Exiting.')
            return EXIT_INTERRUPTED
    elif args.port is None:
        try:
            settings.port = get_valid_port()
        except (EOFError, KeyboardInterrupt):
            console.status('Exiting.')
            return EXIT_INTERRUPTED

    try:
        settings.validate()
    except ConfigValidationError as exc:
        console.error(f'Invalid configuration: {exc}')
        return EXIT_FAILURE

    console.prompt = settings.prompt
    logger.debug('Settings: %s', settings.to_dict())
    return ChatApp(settings, console).run()


if __name__ == '__main__':
    sys.exit(main())
