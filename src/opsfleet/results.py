"""Per-machine run states and results."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .errors import FleetError


class MachineState(Enum):
    """Where a single run currently is."""

    IDLE = "idle"
    DIALING = "dialing"
    AUTHENTICATING = "authenticating"
    SESSION_OPEN = "session_open"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in (MachineState.SUCCEEDED, MachineState.FAILED)


# (machine_name, state) -> None
StatusCallback = Callable[[str, MachineState], None]

# (target_index, state) -> None; tells apart duplicate targets of one run
TargetStatusCallback = Callable[[int, MachineState], None]


@dataclass(frozen=True)
class Result:
    """Outcome of one command on one machine."""

    machine: str
    output: str = ""
    status: MachineState = MachineState.SUCCEEDED
    error: FleetError | None = None
    exit_status: int | None = None
    elapsed: float = 0.0

    @property
    def success(self) -> bool:
        return self.status is MachineState.SUCCEEDED

    @property
    def error_kind(self) -> str | None:
        return self.error.kind if self.error is not None else None

    @classmethod
    def failed(
        cls, machine: str, error: FleetError, output: str = "", **kwargs
    ) -> "Result":
        return cls(
            machine=machine,
            output=output,
            status=MachineState.FAILED,
            error=error,
            **kwargs,
        )
