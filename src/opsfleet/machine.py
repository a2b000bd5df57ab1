"""A single remote machine and the one-command run state machine."""

from __future__ import annotations

import time
from pathlib import Path

from .credentials import Credential, Password, PrivateKey, auth_methods, load_key_file
from .errors import CommandError, ConfigurationError, FleetError, TrustError
from .known_hosts import KnownHosts, TrustPolicy, host_identity
from .log import get_logger
from .results import MachineState, Result, StatusCallback
from .transport import AsyncSSHDialer, Connection, Dialer, DialRequest, Session

log = get_logger(__name__)


def validate_target(name: str, username: str, host: str, port: int) -> None:
    """Raise ConfigurationError unless the fields describe a usable target."""
    for field_name, value in (("name", name), ("username", username), ("host", host)):
        if not isinstance(value, str) or not value.strip():
            raise ConfigurationError(f"{field_name} cannot be empty")
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise ConfigurationError(f"port must be between 1 and 65535, got {port!r}")


class Machine:
    """A connection target. Identity is fixed; the credential can be replaced.

    Nothing about a connection is stored on the machine: every ``run`` dials,
    authenticates and opens its own session, so concurrent runs of the same
    machine share no state.
    """

    def __init__(
        self,
        name: str,
        username: str,
        host: str,
        port: int,
        policy: TrustPolicy,
        credential: Credential | None = None,
    ) -> None:
        validate_target(name, username, host, port)
        self._name = name
        self._username = username
        self._host = host
        self._port = port
        self._policy = policy
        self.credential = credential

    @property
    def name(self) -> str:
        return self._name

    @property
    def username(self) -> str:
        return self._username

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def policy(self) -> TrustPolicy:
        return self._policy

    @property
    def address(self) -> str:
        return f"{self._host}:{self._port}"

    @property
    def identity(self) -> str:
        """Name used for this machine in the known_hosts file."""
        return host_identity(self._host, self._port)

    def __repr__(self) -> str:
        auth = type(self.credential).__name__ if self.credential else "unset"
        return (
            f"Machine(name={self._name!r}, target={self._username}@{self.address}, "
            f"auth={auth})"
        )

    # ── credentials ───────────────────────────────────────────────────

    def with_password(self, secret: str) -> Machine:
        self.credential = Password(secret)
        return self

    def with_private_key(self, data: bytes | str, passphrase: str | None = None) -> Machine:
        if isinstance(data, str):
            data = data.encode()
        self.credential = PrivateKey(data, passphrase)
        return self

    def with_key_file(self, path: str | Path, passphrase: str | None = None) -> Machine:
        return self.with_private_key(load_key_file(path), passphrase)

    def clear_credential(self) -> None:
        self.credential = None

    # ── execution ─────────────────────────────────────────────────────

    async def run(
        self,
        command: str,
        dialer: Dialer | None = None,
        on_status: StatusCallback | None = None,
    ) -> Result:
        """Run *command* once and return its Result. Never retries.

        Errors from any stage end up in the returned Result. The session and
        connection are released on every path before this returns.
        """
        dialer = dialer or AsyncSSHDialer()
        started = time.monotonic()
        trust_store = KnownHosts(self._policy.known_hosts_path)
        bound = log.bind(machine=self._name, address=self.address)

        def notify(state: MachineState) -> None:
            bound.debug("machine.state", state=state.value)
            if on_status:
                on_status(self._name, state)

        def verify_host_key(key) -> None:
            try:
                decision = trust_store.verify(
                    self.identity, key, auto_add=self._policy.auto_add
                )
            except OSError as e:
                raise TrustError(f"cannot use known_hosts file {trust_store.path}: {e}") from e
            bound.debug("machine.host_trusted", decision=decision.value)

        conn: Connection | None = None
        session: Session | None = None
        output = ""
        exit_status = None
        try:
            try:
                methods = auth_methods(self.credential, self._username, self._host)

                notify(MachineState.DIALING)
                conn = await dialer.connect(
                    DialRequest(
                        host=self._host,
                        port=self._port,
                        username=self._username,
                        timeout=self._policy.timeout,
                        methods=methods,
                        verify_host_key=verify_host_key,
                        notify=notify,
                    )
                )
                bound.info("machine.connected", user=self._username)

                session = await conn.open_session(command)
                notify(MachineState.SESSION_OPEN)
                notify(MachineState.EXECUTING)
                output, exit_status = await session.wait()

                if exit_status != 0:
                    raise CommandError(
                        f"command {command!r} failed with exit status {exit_status}",
                        exit_status=exit_status,
                        output=output,
                    )
            except FleetError as e:
                if e.machine is None:
                    e.machine = self._name
                bound.warning("machine.failed", kind=e.kind, error=e.message)
                notify(MachineState.FAILED)
                return Result.failed(
                    self._name,
                    e,
                    output=output,
                    exit_status=exit_status,
                    elapsed=time.monotonic() - started,
                )

            notify(MachineState.SUCCEEDED)
            elapsed = time.monotonic() - started
            bound.info("machine.succeeded", elapsed=round(elapsed, 3))
            return Result(
                machine=self._name,
                output=output,
                status=MachineState.SUCCEEDED,
                exit_status=exit_status,
                elapsed=elapsed,
            )
        finally:
            await _release(session, conn, bound)
            notify(MachineState.CLOSED)


async def _release(session: Session | None, conn: Connection | None, bound) -> None:
    if session is not None:
        try:
            session.close()
        except Exception as e:
            bound.debug("machine.session_close_failed", error=str(e))
    if conn is not None:
        try:
            await conn.close()
        except Exception as e:
            bound.debug("machine.connection_close_failed", error=str(e))
