"""SSH dialer seam and its asyncssh implementation.

A dialer turns a ``DialRequest`` into an authenticated ``Connection``; a
connection opens one ``Session`` per command. The host key decision and the
authentication methods come in with the request, so the dialer only wires
them into the SSH library.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Protocol, Sequence

import asyncssh

from .credentials import (
    AuthMethod,
    KeyboardInteractiveAuth,
    PasswordAuth,
    PublicKeyAuth,
)
from .errors import (
    AuthenticationError,
    HostConnectionError,
    SessionError,
    TrustError,
)
from .known_hosts import HostKey
from .log import get_logger
from .results import MachineState

log = get_logger(__name__)


@dataclass
class DialRequest:
    """Everything needed to open one authenticated connection."""

    host: str
    port: int
    username: str
    timeout: float
    methods: Sequence[AuthMethod] = field(repr=False)
    verify_host_key: Callable[[HostKey], object] = field(repr=False)
    notify: Callable[[MachineState], None] = field(
        default=lambda state: None, repr=False
    )

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


class Session(Protocol):
    async def wait(self) -> tuple[str, int | None]:
        """Run to completion; return (combined output, exit status)."""

    def close(self) -> None: ...


class Connection(Protocol):
    async def open_session(self, command: str) -> Session: ...

    async def close(self) -> None: ...


class Dialer(Protocol):
    async def connect(self, request: DialRequest) -> Connection: ...


class _FleetClient(asyncssh.SSHClient):
    """Per-connection client: runs the host key check and answers auth prompts.

    Each method is offered at most once. Errors raised by our own checks are
    kept so the caller can report them instead of asyncssh's generic ones.
    """

    def __init__(self, request: DialRequest) -> None:
        self._request = request
        self._password: PasswordAuth | None = None
        self._kbdint: KeyboardInteractiveAuth | None = None
        for method in request.methods:
            if isinstance(method, PasswordAuth):
                self._password = method
            elif isinstance(method, KeyboardInteractiveAuth):
                self._kbdint = method
        self._password_sent = False
        self._kbdint_started = False
        self.trust_error: TrustError | None = None
        self.auth_error: AuthenticationError | None = None

    def validate_host_public_key(self, host, addr, port, key) -> bool:
        try:
            self._request.verify_host_key(HostKey.from_ssh_key(key))
        except TrustError as e:
            self.trust_error = e
            return False
        self._request.notify(MachineState.AUTHENTICATING)
        return True

    def password_auth_requested(self) -> str | None:
        if self._password is None or self._password_sent:
            return None
        self._password_sent = True
        return self._password.secret

    def kbdint_auth_requested(self) -> str | None:
        if self._kbdint is None or self._kbdint_started:
            return None
        self._kbdint_started = True
        return ""

    def kbdint_challenge_received(self, name, instructions, lang, prompts):
        try:
            return self._kbdint.respond(prompts)
        except AuthenticationError as e:
            self.auth_error = e
            return None


class AsyncSSHSession:
    def __init__(self, process: asyncssh.SSHClientProcess) -> None:
        self._process = process

    async def wait(self) -> tuple[str, int | None]:
        try:
            completed = await self._process.wait(check=False)
        except asyncssh.Error as e:
            raise SessionError(f"session failed: {e}") from e
        return completed.stdout or "", completed.exit_status

    def close(self) -> None:
        self._process.close()


class AsyncSSHConnection:
    def __init__(self, conn: asyncssh.SSHClientConnection) -> None:
        self._conn = conn

    async def open_session(self, command: str) -> AsyncSSHSession:
        try:
            process = await self._conn.create_process(
                command,
                stdin=asyncssh.DEVNULL,
                stderr=asyncssh.STDOUT,
                encoding="utf-8",
                errors="replace",
            )
        except asyncssh.Error as e:
            raise SessionError(f"failed to create SSH session: {e}") from e
        return AsyncSSHSession(process)

    async def close(self) -> None:
        self._conn.close()
        await self._conn.wait_closed()


class AsyncSSHDialer:
    """Dial machines with asyncssh, offering only the configured credential."""

    async def connect(self, request: DialRequest) -> AsyncSSHConnection:
        client = _FleetClient(request)
        keys = [m.key for m in request.methods if isinstance(m, PublicKeyAuth)]

        try:
            conn = await asyncssh.connect(
                request.host,
                port=request.port,
                username=request.username,
                client_factory=lambda: client,
                # Empty trusted set: every key goes through validate_host_public_key.
                known_hosts=([], [], []),
                client_keys=keys or None,
                agent_path=None,
                config=None,
                preferred_auth=[m.name for m in request.methods],
                connect_timeout=request.timeout,
            )
        except asyncssh.HostKeyNotVerifiable as e:
            raise client.trust_error or TrustError(f"host key not verifiable: {e}") from e
        except asyncssh.PermissionDenied as e:
            if client.auth_error is not None:
                raise client.auth_error from e
            raise AuthenticationError(
                f"authentication failed for {request.username}@{request.address}: "
                "all methods exhausted"
            ) from e
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            if client.trust_error is not None:
                raise client.trust_error from e
            raise HostConnectionError(
                f"failed to connect to {request.address}: {str(e) or type(e).__name__}"
            ) from e

        log.debug("transport.connected", address=request.address)
        return AsyncSSHConnection(conn)

