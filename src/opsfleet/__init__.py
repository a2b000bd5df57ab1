"""opsfleet: Run shell commands on a fleet of SSH machines concurrently."""

from .credentials import Credential, Password, PrivateKey, load_key_file
from .errors import (
    AuthenticationError,
    CommandError,
    ConfigurationError,
    DuplicateMachineError,
    FleetError,
    HostConnectionError,
    InventoryError,
    MachineNotFoundError,
    SessionError,
    TrustError,
)
from .inventory import InventoryRecord, fetch_inventory
from .known_hosts import HostKey, KnownHosts, TrustDecision, TrustPolicy
from .machine import Machine
from .operator import Operator
from .results import MachineState, Result
from .transport import AsyncSSHDialer, DialRequest

__version__ = "0.1.0"

__all__ = [
    "AsyncSSHDialer",
    "AuthenticationError",
    "CommandError",
    "ConfigurationError",
    "Credential",
    "DialRequest",
    "DuplicateMachineError",
    "FleetError",
    "HostConnectionError",
    "HostKey",
    "InventoryError",
    "InventoryRecord",
    "KnownHosts",
    "Machine",
    "MachineNotFoundError",
    "MachineState",
    "Operator",
    "Password",
    "PrivateKey",
    "Result",
    "SessionError",
    "TrustDecision",
    "TrustError",
    "TrustPolicy",
    "fetch_inventory",
    "load_key_file",
]
