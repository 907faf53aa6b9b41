"""Settings for a chat session.

Defaults: certificates under ``certs/``, the ``exit`` command, the
``Chat ended`` sentinel and a 15-column username.
Values can come from a JSON file and be overridden from the command line.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

from .connection import Role, Security
from .errors import ConfigValidationError
from .framing import TERMINATOR, USERNAME_WIDTH

MIN_PORT = 1024
MAX_PORT = 65535
MAX_USERNAME_LENGTH = 64
DEFAULT_PORT = 8000
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


def validate_port(port: int) -> int:
    """Port the user may pick (1024-65535)."""
    if not isinstance(port, int) or isinstance(port, bool):
        raise ConfigValidationError(f'port must be an integer, got {type(port).__name__}')
    if port < MIN_PORT or port > MAX_PORT:
        raise ConfigValidationError(f'port must be between {MIN_PORT} and {MAX_PORT}, got {port}')
    return port


def validate_username(username: Optional[str]) -> Optional[str]:
    if username is None or username == '':
        return username
    if not isinstance(username, str):
        raise ConfigValidationError(f'username must be a string, got {type(username).__name__}')
    if len(username) > MAX_USERNAME_LENGTH:
        raise ConfigValidationError(f'username exceeds {MAX_USERNAME_LENGTH} characters')
    if '\n' in username or '\r' in username:
        raise ConfigValidationError('username cannot contain line breaks')
    return username


@dataclass(slots=True)
class ChatSettings:
    """Everything a session needs besides the live connection."""

    role: Role = Role.LISTENER
    host: str = '0.0.0.0'
    port: int = DEFAULT_PORT
    username: Optional[str] = None
    security: Security = Security.PLAIN
    certs_dir: Path = Path('certs')
    certfile: str = 'server.crt'
    keyfile: str = 'server.key'
    dhfile: str = 'dh2048.pem'
    cafile: str = 'ca.crt'
    verify_hostname: bool = True
    require_client_cert: bool = False
    exit_command: str = 'exit'
    terminator: str = TERMINATOR
    username_width: int = USERNAME_WIDTH
    prompt: str = 'You: '
    connect_timeout: float = 10.0
    handshake_timeout: float = 30.0
    log_level: str = 'WARNING'
    config_file: Optional[Path] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def cert_path(self, name: str) -> str:
        """Resolve a certificate file name against ``certs_dir``."""
        return name if os.path.isabs(name) else str(Path(self.certs_dir) / name)

    def validate(self) -> None:
        """Raise ConfigValidationError for anything out of range."""
        if not isinstance(self.role, Role):
            raise ConfigValidationError(f'unknown role: {self.role!r}')
        if not isinstance(self.security, Security):
            raise ConfigValidationError(f'unknown security mode: {self.security!r}')
        validate_port(self.port)
        validate_username(self.username)
        if not self.host:
            raise ConfigValidationError('host cannot be empty')
        if not self.exit_command.strip():
            raise ConfigValidationError('exit_command cannot be empty')
        if not self.terminator.strip() or '\n' in self.terminator:
            raise ConfigValidationError('terminator must be a single non-empty line')
        if self.username_width < 1:
            raise ConfigValidationError('username_width must be positive')
        if self.connect_timeout <= 0 or self.handshake_timeout <= 0:
            raise ConfigValidationError('timeouts must be positive')
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigValidationError(f'unknown log level: {self.log_level}')

    @classmethod
    def from_file(cls, path: Optional[Path]) -> 'ChatSettings':
        """Load settings from a JSON file; a missing file yields the defaults."""
        if path is None or not path.exists():
            return cls(config_file=path)

        with path.open('r', encoding='utf-8') as fp:
            try:
                raw_data = json.load(fp)
            except json.JSONDecodeError as exc:
                raise ConfigValidationError(f'{path} is not valid JSON: {exc}') from exc

        known_fields = {f.name for f in fields(cls)} - {'config_file', 'extra'}
        init_kwargs: Dict[str, Any] = {key: value for key, value in raw_data.items() if key in known_fields}
        extra = {key: value for key, value in raw_data.items() if key not in known_fields}
        try:
            if 'role' in init_kwargs:
                init_kwargs['role'] = Role(init_kwargs['role'])
            if 'security' in init_kwargs:
                init_kwargs['security'] = Security(init_kwargs['security'])
        except ValueError as exc:
            raise ConfigValidationError(str(exc)) from exc
        if 'certs_dir' in init_kwargs:
            init_kwargs['certs_dir'] = Path(init_kwargs['certs_dir'])
        settings = cls(**init_kwargs, config_file=path)
        settings.extra.update(extra)
        settings.validate()
        return settings

    def to_dict(self) -> Dict[str, Any]:
        """Current settings as plain JSON-friendly values (for logs and debug)."""
        return {
            'role': self.role.value,
            'host': self.host,
            'port': self.port,
            'username': self.username,
            'security': self.security.value,
            'certs_dir': str(self.certs_dir),
            'verify_hostname': self.verify_hostname,
            'require_client_cert': self.require_client_cert,
            'exit_command': self.exit_command,
            'terminator': self.terminator,
            'username_width': self.username_width,
            'connect_timeout': self.connect_timeout,
            'handshake_timeout': self.handshake_timeout,
            'log_level': self.log_level,
            'extra': self.extra,
        }
