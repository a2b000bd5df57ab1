"""Error taxonomy for fleet operations.

Every failure that can happen while running a command on one machine is a
``FleetError`` subclass, so the fleet runner can scope it to that machine's
result instead of failing the whole run.
"""

from __future__ import annotations


class FleetError(Exception):
    """Base class for all opsfleet errors."""

    kind = "error"

    def __init__(self, message: str, machine: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.machine = machine

    def __str__(self) -> str:
        if self.machine:
            return f"machine '{self.machine}': {self.message}"
        return self.message


class ConfigurationError(FleetError):
    """Invalid registration, missing credential or bad fleet file."""

    kind = "configuration"


class DuplicateMachineError(ConfigurationError):
    def __init__(self, name: str) -> None:
        super().__init__("machine already exists", machine=name)


class MachineNotFoundError(ConfigurationError):
    def __init__(self, name: str) -> None:
        super().__init__("machine not found", machine=name)


class HostConnectionError(FleetError):
    """Dial failure, refusal or timeout."""

    kind = "connection"


class TrustError(FleetError):
    """The presented host key is unknown or does not match the stored one."""

    kind = "trust"


class AuthenticationError(FleetError):
    kind = "authentication"


class SessionError(FleetError):
    kind = "session"


class CommandError(FleetError):
    """The remote command exited non-zero. The captured output is kept."""

    kind = "command"

    def __init__(
        self,
        message: str,
        machine: str | None = None,
        exit_status: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message, machine=machine)
        self.exit_status = exit_status
        self.output = output


class InventoryError(FleetError):
    """The inventory endpoint could not be read or decoded."""

    kind = "inventory"
