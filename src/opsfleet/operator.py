"""Machine registry and the concurrent fleet runner."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from .credentials import Credential
from .errors import (
    ConfigurationError,
    DuplicateMachineError,
    FleetError,
    HostConnectionError,
    MachineNotFoundError,
)
from .inventory import InventoryRecord
from .known_hosts import TrustPolicy, default_known_hosts_path
from .log import get_logger
from .machine import Machine, validate_target
from .results import MachineState, Result, StatusCallback, TargetStatusCallback
from .transport import AsyncSSHDialer, Dialer

log = get_logger(__name__)


class Operator:
    """Registers uniquely named machines and runs commands across them.

    The trust policy (known_hosts path, auto-add, timeout) is resolved once
    here and handed to every machine registered afterwards.
    """

    def __init__(
        self,
        policy: TrustPolicy | None = None,
        *,
        known_hosts_path: str | Path | None = None,
        auto_add: bool = False,
        timeout: float = 10.0,
        dialer: Dialer | None = None,
    ) -> None:
        if policy is None:
            if timeout <= 0:
                raise ConfigurationError(f"timeout must be positive, got {timeout!r}")
            path = (
                Path(known_hosts_path).expanduser()
                if known_hosts_path
                else default_known_hosts_path()
            )
            policy = TrustPolicy(known_hosts_path=path, auto_add=auto_add, timeout=timeout)
        self.policy = policy
        self.dialer = dialer or AsyncSSHDialer()
        self._machines: dict[str, Machine] = {}

    # ── registry ──────────────────────────────────────────────────────

    def register(
        self,
        name: str,
        username: str,
        host: str,
        port: int = 22,
        credential: Credential | None = None,
    ) -> Machine:
        """Add a machine. Nothing changes if the name is taken or a field is invalid."""
        if name in self._machines:
            raise DuplicateMachineError(name)
        machine = Machine(name, username, host, port, self.policy, credential)
        self._machines[name] = machine
        log.debug("operator.registered", machine=name, address=machine.address)
        return machine

    def register_inventory(
        self,
        records: Sequence[InventoryRecord],
        username: str,
        credential: Credential | None = None,
        port: int = 22,
    ) -> list[Machine]:
        """Register every inventory record, or none of them if any is invalid."""
        seen = set(self._machines)
        for record in records:
            if record.name in seen:
                raise DuplicateMachineError(record.name)
            validate_target(record.name, username, record.ip, port)
            seen.add(record.name)

        return [
            self.register(record.name, username, record.ip, port, credential)
            for record in records
        ]

    def remove(self, name: str) -> Machine:
        try:
            return self._machines.pop(name)
        except KeyError:
            raise MachineNotFoundError(name) from None

    def get(self, name: str) -> Machine | None:
        return self._machines.get(name)

    def __getitem__(self, name: str) -> Machine:
        try:
            return self._machines[name]
        except KeyError:
            raise MachineNotFoundError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._machines

    def __len__(self) -> int:
        return len(self._machines)

    def __iter__(self) -> Iterator[Machine]:
        return iter(list(self._machines.values()))

    @property
    def machines(self) -> list[Machine]:
        return list(self._machines.values())

    @property
    def names(self) -> list[str]:
        return list(self._machines)

    # ── execution ─────────────────────────────────────────────────────

    async def run(
        self,
        command: str,
        targets: Iterable[str] | None = None,
        on_status: StatusCallback | None = None,
        on_target_status: TargetStatusCallback | None = None,
    ) -> list[Result]:
        """Run *command* on every target concurrently and wait for all of them.

        Result *i* belongs to target *i*: the whole registry in registration
        order when *targets* is None, otherwise the names in the given order.
        Unknown names get a failed "machine not found" result.
        *on_target_status* receives the target index instead of the name.
        """
        names = self.names if targets is None else list(targets)
        results: list[Result | None] = [None] * len(names)

        log.info("operator.run", command=command, targets=len(names))

        async def run_one(index: int, name: str) -> None:
            def notify(machine_name: str, state: MachineState) -> None:
                if on_status:
                    on_status(machine_name, state)
                if on_target_status:
                    on_target_status(index, state)

            machine = self._machines.get(name)
            if machine is None:
                notify(name, MachineState.FAILED)
                results[index] = Result.failed(name, MachineNotFoundError(name))
                return
            try:
                results[index] = await machine.run(command, self.dialer, notify)
            except Exception as e:
                log.exception("operator.unexpected_error", machine=name)
                results[index] = Result.failed(name, _unexpected(e, name))

        await asyncio.gather(
            *(run_one(i, name) for i, name in enumerate(names)),
            return_exceptions=True,
        )

        failed = sum(1 for r in results if r is not None and not r.success)
        log.info("operator.done", command=command, total=len(names), failed=failed)
        return results


def _unexpected(e: Exception, machine: str) -> FleetError:
    if isinstance(e, FleetError):
        return e
    return HostConnectionError(f"unexpected error: {type(e).__name__}: {e}", machine=machine)
