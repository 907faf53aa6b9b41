"""Tests for the command line: argument handling, prompts and whole-app runs."""
import os
import shutil
import signal
import socket
import tempfile
import threading
import time
import unittest
from pathlib import Path
from threading import Thread
from unittest.mock import patch

from helpers import PipeInput, free_port, make_console, wait_until

from meshchat.certs import generate_certificates
from meshchat.config import ChatSettings
from meshchat.connection import Role, Security
from meshchat.main import (EXIT_FAILURE, EXIT_INTERRUPTED, EXIT_OK, ChatApp, build_arg_parser, get_valid_port, main,
                           prompt_settings, settings_from_args)
from meshchat.session import ShutdownReason


def scripted(answers):
    """``input`` replacement that replays answers and records the prompts."""
    answers = list(answers)
    asked = []

    def ask(prompt):
        asked.append(prompt)
        return answers.pop(0)

    return ask, asked


class TestPrompts(unittest.TestCase):
    def test_port_is_asked_until_valid(self):
        ask, asked = scripted(['abc', '80', '70000', ' 9000 '])
        said = []
        self.assertEqual(get_valid_port(ask, said.append), 9000)
        self.assertEqual(len(asked), 4)
        self.assertEqual(said.count('Invalid port number. Please try again.'), 3)

    def test_interactive_listener(self):
        ask, _ = scripted(['1', '8080'])
        s = prompt_settings(ChatSettings(), ask, lambda _: None)
        self.assertEqual(s.role, Role.LISTENER)
        self.assertEqual(s.port, 8080)

    def test_interactive_initiator(self):
        ask, _ = scripted(['3', '2', '', '10.0.0.5', '9000'])
        said = []
        s = prompt_settings(ChatSettings(), ask, said.append)
        self.assertEqual(s.role, Role.INITIATOR)
        self.assertEqual(s.host, '10.0.0.5')
        self.assertEqual(s.port, 9000)
        self.assertIn('Please enter 1 or 2.', said)


class TestArguments(unittest.TestCase):
    def test_connect_arguments(self):
        args = build_arg_parser().parse_args(
            ['--log-level', 'debug', 'connect', 'peer.example', '--port', '9000', '--tls',
             '--no-verify-hostname', '-u', 'bob', '--certs-dir', 'keys'])
        s = settings_from_args(args)
        self.assertEqual(s.role, Role.INITIATOR)
        self.assertEqual(s.host, 'peer.example')
        self.assertEqual(s.port, 9000)
        self.assertEqual(s.security, Security.TLS)
        self.assertFalse(s.verify_hostname)
        self.assertEqual(s.username, 'bob')
        self.assertEqual(s.certs_dir, Path('keys'))
        self.assertEqual(s.log_level, 'DEBUG')

    def test_listen_arguments(self):
        args = build_arg_parser().parse_args(['listen', '--host', '127.0.0.1', '--require-client-cert'])
        s = settings_from_args(args)
        self.assertEqual(s.role, Role.LISTENER)
        self.assertEqual(s.host, '127.0.0.1')
        self.assertTrue(s.require_client_cert)
        self.assertEqual(s.security, Security.PLAIN)

    def test_gen_certs_command(self):
        out = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, out, True)
        with patch('sys.stdout'):
            code = main(['gen-certs', '--out', out, '--name', 'chat.lan'])
        self.assertEqual(code, EXIT_OK)
        for name in ('ca.crt', 'ca.key', 'server.crt', 'server.key'):
            self.assertTrue(os.path.isfile(os.path.join(out, name)))

    def test_bad_config_file(self):
        tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmp, True)
        path = os.path.join(tmp, 'bad.json')
        with open(path, 'w', encoding='utf-8') as f:
            f.write('{"port": 1}')
        with patch('sys.stdout'):
            code = main(['--config', path, 'listen', '--port', '9000'])
        self.assertEqual(code, EXIT_FAILURE)


class AppRun:
    """One ChatApp running on a background thread with scripted input."""

    def __init__(self, settings):
        self.pipe = PipeInput()
        self.console, self.out = make_console()
        self.app = ChatApp(settings, self.console, self.pipe.source)
        self.code = None
        self.thread = Thread(target=self._run, daemon=True)
        self.thread.start()

    def _run(self):
        self.code = self.app.run()

    def finish(self, timeout=10):
        self.thread.join(timeout)
        self.pipe.close()
        return self.code


class TestWholeApp(unittest.TestCase):
    def setUp(self):
        self.port = free_port()

    def _listener(self, **kwargs):
        run = AppRun(ChatSettings(role=Role.LISTENER, host='127.0.0.1', port=self.port, **kwargs))
        self.assertTrue(wait_until(lambda: 'Listening for incoming connections' in run.out.getvalue()))
        return run

    def _initiator(self, **kwargs):
        return AppRun(ChatSettings(role=Role.INITIATOR, host='127.0.0.1', port=self.port,
                                   connect_timeout=5, handshake_timeout=5, **kwargs))

    def test_plain_chat(self):
        listener = self._listener(username='alice')
        initiator = self._initiator(username='bob')
        self.assertTrue(wait_until(lambda: listener.app.session is not None and initiator.app.session is not None))

        initiator.pipe.type('hello alice')
        self.assertTrue(wait_until(lambda: 'Message: hello alice' in listener.out.getvalue()))
        listener.pipe.type('bye bob')
        self.assertTrue(wait_until(lambda: 'Message: bye bob' in initiator.out.getvalue()))
        initiator.pipe.type('exit')

        self.assertEqual(initiator.finish(), EXIT_OK)
        self.assertEqual(listener.finish(), EXIT_OK)
        self.assertIn('Connection accepted from: 127.0.0.1', listener.out.getvalue())
        self.assertIn('Peer ended the chat.', listener.out.getvalue())
        self.assertIn('You ended the chat.', initiator.out.getvalue())

    def test_tls_chat(self):
        certs = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, certs, True)
        generate_certificates(certs)

        listener = self._listener(security=Security.TLS, certs_dir=Path(certs))
        initiator = self._initiator(security=Security.TLS, certs_dir=Path(certs))
        self.assertTrue(wait_until(lambda: initiator.app.session is not None, timeout=10))

        initiator.pipe.type('secret')
        self.assertTrue(wait_until(lambda: 'Received: secret' in listener.out.getvalue()))
        listener.pipe.type('exit')

        self.assertEqual(listener.finish(), EXIT_OK)
        self.assertEqual(initiator.finish(), EXIT_OK)
        self.assertIn('SSL handshake completed successfully', listener.out.getvalue())
        self.assertIn('SHA-256 fingerprint', initiator.out.getvalue())

    def test_untrusted_peer_certificate(self):
        good = tempfile.mkdtemp()
        rogue = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, good, True)
        self.addCleanup(shutil.rmtree, rogue, True)
        generate_certificates(good)
        generate_certificates(rogue)

        listener = self._listener(security=Security.TLS, certs_dir=Path(good))
        initiator = self._initiator(security=Security.TLS, certs_dir=Path(rogue))

        self.assertEqual(initiator.finish(), EXIT_FAILURE)
        self.assertEqual(listener.finish(), EXIT_FAILURE)
        self.assertIn('Error:', initiator.out.getvalue())
        self.assertIsNone(initiator.app.session)
        self.assertIsNone(listener.app.session)

    def test_nobody_listening(self):
        initiator = self._initiator()
        self.assertEqual(initiator.finish(), EXIT_FAILURE)
        self.assertIn('Error:', initiator.out.getvalue())


class TestSignals(unittest.TestCase):
    """ChatApp on the main thread, so its SIGINT handler is really installed."""

    def setUp(self):
        if threading.current_thread() is not threading.main_thread():
            self.skipTest('signal handlers need the main thread')
        self.original = signal.getsignal(signal.SIGINT)
        self.pipe = PipeInput()
        self.addCleanup(self.pipe.close)
        self.console, self.out = make_console()

    def tearDown(self):
        signal.signal(signal.SIGINT, self.original)

    def _app(self, **kwargs):
        return ChatApp(ChatSettings(**kwargs), self.console, self.pipe.source)

    def _interrupt_when(self, condition):
        def _run():
            if wait_until(condition, timeout=10):
                os.kill(os.getpid(), signal.SIGINT)

        Thread(target=_run, daemon=True).start()

    def _peer_server(self):
        server = socket.create_server(('127.0.0.1', 0))
        self.addCleanup(server.close)
        accepted = {}

        def _accept():
            sock, _ = server.accept()
            sock.settimeout(5)
            accepted['sock'] = sock

        Thread(target=_accept, daemon=True).start()
        self.addCleanup(lambda: accepted.get('sock') and accepted['sock'].close())
        return server.getsockname()[1], accepted

    def test_interrupt_while_waiting_for_a_peer(self):
        app = self._app(role=Role.LISTENER, host='127.0.0.1', port=free_port())
        self._interrupt_when(lambda: 'Listening for incoming connections' in self.out.getvalue())
        self.assertEqual(app.run(), EXIT_INTERRUPTED)
        self.assertIn('Interrupted before the chat started.', self.out.getvalue())
        self.assertIsNone(app.session)
        self.assertIs(signal.getsignal(signal.SIGINT), self.original)

    def test_interrupt_during_tls_handshake(self):
        certs = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, certs, True)
        generate_certificates(certs)
        port = free_port()
        app = self._app(role=Role.LISTENER, host='127.0.0.1', port=port, security=Security.TLS,
                        certs_dir=Path(certs), handshake_timeout=10)
        silent = {}

        def _connect_and_say_nothing():
            if wait_until(lambda: 'Listening for' in self.out.getvalue()):
                silent['sock'] = socket.create_connection(('127.0.0.1', port), timeout=5)

        Thread(target=_connect_and_say_nothing, daemon=True).start()
        self._interrupt_when(lambda: 'Connection accepted from' in self.out.getvalue())

        self.assertEqual(app.run(), EXIT_INTERRUPTED)
        self.assertIsNone(app.pending)
        # The half-open connection was closed, not leaked
        self.assertEqual(silent['sock'].recv(1024), b'')
        silent['sock'].close()

    def test_interrupt_during_chat_reaches_the_session(self):
        port, accepted = self._peer_server()
        app = self._app(role=Role.INITIATOR, host='127.0.0.1', port=port, connect_timeout=5)
        self._interrupt_when(lambda: app.session is not None and app.session.state.is_running())

        self.assertEqual(app.run(), EXIT_OK)
        self.assertEqual(app.session.coordinator.reason, ShutdownReason.INTERRUPTED)
        self.assertIn('Received interrupt signal. Exiting chat...', self.out.getvalue())
        self.assertTrue(wait_until(lambda: 'sock' in accepted))
        self.assertEqual(accepted['sock'].recv(1024), b'Chat ended\n')
        self.assertIs(signal.getsignal(signal.SIGINT), self.original)

    def test_interrupt_before_the_session_takes_over(self):
        port, accepted = self._peer_server()
        app = self._app(role=Role.INITIATOR, host='127.0.0.1', port=port, connect_timeout=5)

        def _signal_arrives(*args, **kwargs):
            os.kill(os.getpid(), signal.SIGINT)
            time.sleep(5)
            self.fail('SIGINT handler did not run')

        with patch('meshchat.main.ChatSession', side_effect=_signal_arrives):
            self.assertEqual(app.run(), EXIT_INTERRUPTED)
        self.assertIsNone(app.session)
        self.assertIsNone(app.pending)
        self.assertTrue(wait_until(lambda: 'sock' in accepted))
        self.assertEqual(accepted['sock'].recv(1024), b'')


if __name__ == '__main__':
    unittest.main()
