"""
MESH Chat: one-to-one chat over a plain or TLS-secured TCP connection.

Modules:
- ``framing``     newline-delimited frames, optional "[time] user Message: " label.
- ``connection``  Listener / Initiator establishment and the PeerConnection.
- ``security``    optional TLS handshake on top of an established connection.
- ``session``     inbound/outbound threads, SessionState and shutdown coordination.
- ``console``     serialized console output and cancellable local input.
- ``certs``       local CA + server certificate generation.
- ``config``      ChatSettings and validation.
- ``main``        command-line entry point.
"""
__all__ = ["certs", "config", "connection", "console", "errors", "framing", "main", "security", "session"]

__version__ = "1.0.0"
