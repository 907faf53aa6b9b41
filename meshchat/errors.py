"""Error taxonomy shared by every layer of the chat."""


class ChatError(Exception):
    """Base class for every error the chat reports to the user."""


class ConfigValidationError(ChatError, ValueError):
    """A setting is missing or out of range."""


class ResolutionError(ChatError):
    """The peer host name could not be resolved."""


class ConnectError(ChatError):
    """Connecting, binding or accepting failed (refused, timeout, address in use)."""


class TlsConfigError(ChatError):
    """Certificate, key or trust-anchor material could not be loaded."""


class HandshakeError(ChatError):
    """TLS negotiation or certificate verification failed."""


class TransportError(ChatError):
    """A read or write on an established connection failed."""


class ProtocolViolation(TransportError):
    """The peer sent something that is not a valid frame."""
