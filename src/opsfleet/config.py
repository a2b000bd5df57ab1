"""Fleet file loader for opsfleet."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .credentials import Credential, Password, PrivateKey, load_key_file
from .errors import ConfigurationError
from .known_hosts import TrustPolicy, default_known_hosts_path
from .operator import Operator
from .transport import Dialer


@dataclass
class Defaults:
    """Default values that can be overridden per machine."""

    user: str = "root"
    port: int = 22
    timeout: float = 10.0
    known_hosts: Path = field(default_factory=default_known_hosts_path)
    auto_add_hosts: bool = False
    ssh_key: Path | None = None
    password_env: str | None = None
    password: str | None = field(default=None, repr=False)


@dataclass
class MachineConfig:
    """Configuration for a single machine."""

    name: str
    host: str
    port: int = 22
    user: str = "root"
    ssh_key: Path | None = None
    password_env: str | None = None
    password: str | None = field(default=None, repr=False)

    def credential(self) -> Credential | None:
        """Resolve the credential: key file first, then password env var, then password."""
        if self.ssh_key is not None:
            return PrivateKey(load_key_file(self.ssh_key))
        if self.password_env:
            secret = os.environ.get(self.password_env)
            if secret is None:
                raise ConfigurationError(
                    f"environment variable {self.password_env} is not set",
                    machine=self.name,
                )
            return Password(secret)
        if self.password is not None:
            return Password(self.password)
        return None


@dataclass
class InventoryConfig:
    """Where to fetch additional machines from."""

    url: str
    timeout: float = 10.0


@dataclass
class Config:
    """Main configuration for a fleet."""

    machines: list[MachineConfig]
    defaults: Defaults = field(default_factory=Defaults)
    inventory: InventoryConfig | None = None
    source_path: Path | None = None  # Path to the original config file

    def trust_policy(self) -> TrustPolicy:
        return TrustPolicy(
            known_hosts_path=self.defaults.known_hosts,
            auto_add=self.defaults.auto_add_hosts,
            timeout=self.defaults.timeout,
        )

    def default_credential(self) -> Credential | None:
        """Credential of the defaults section, used for inventory machines."""
        return MachineConfig(
            name="defaults",
            host="",
            ssh_key=self.defaults.ssh_key,
            password_env=self.defaults.password_env,
            password=self.defaults.password,
        ).credential()

    def build_operator(self, dialer: Dialer | None = None) -> Operator:
        """Create an Operator with every configured machine registered."""
        operator = Operator(self.trust_policy(), dialer=dialer)
        for machine in self.machines:
            operator.register(
                machine.name,
                machine.user,
                machine.host,
                machine.port,
                machine.credential(),
            )
        return operator


def load_config(config_path: str | Path) -> Config:
    """Load and validate configuration from a YAML file."""
    config_path = Path(config_path).resolve()

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid YAML in {config_path}: {e}") from e

    config = parse_config(raw or {})
    config.source_path = config_path
    return config


def _optional_path(value: Any) -> Path | None:
    if value in (None, ""):
        return None
    return Path(str(value)).expanduser()


def _parse_defaults(raw: dict[str, Any]) -> Defaults:
    """Parse the defaults section."""
    defaults_raw = raw.get("defaults") or {}
    if not isinstance(defaults_raw, dict):
        raise ConfigurationError("'defaults' must be a mapping")

    known_hosts = _optional_path(defaults_raw.get("known_hosts")) or default_known_hosts_path()
    timeout = defaults_raw.get("timeout", 10.0)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigurationError(f"'timeout' must be a positive number, got {timeout!r}")

    return Defaults(
        user=defaults_raw.get("user", "root"),
        port=defaults_raw.get("port", 22),
        timeout=float(timeout),
        known_hosts=known_hosts,
        auto_add_hosts=bool(defaults_raw.get("auto_add_hosts", False)),
        ssh_key=_optional_path(defaults_raw.get("ssh_key")),
        password_env=defaults_raw.get("password_env"),
        password=defaults_raw.get("password"),
    )


def parse_config(raw: dict[str, Any]) -> Config:
    """Parse raw YAML data into a Config object."""
    if not isinstance(raw, dict):
        raise ConfigurationError("fleet file must be a mapping")

    defaults = _parse_defaults(raw)

    inventory = None
    inventory_raw = raw.get("inventory")
    if inventory_raw:
        if not isinstance(inventory_raw, dict) or not inventory_raw.get("url"):
            raise ConfigurationError("'inventory' must have a 'url' field")
        inventory = InventoryConfig(
            url=str(inventory_raw["url"]),
            timeout=float(inventory_raw.get("timeout", 10.0)),
        )

    machines_raw = raw.get("machines") or []
    if not isinstance(machines_raw, list):
        raise ConfigurationError("'machines' must be a list")
    if not machines_raw and inventory is None:
        raise ConfigurationError("No machines defined in configuration")

    machines = [_parse_machine(machine_raw, defaults) for machine_raw in machines_raw]

    names = [m.name for m in machines]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigurationError(f"duplicate machine names: {', '.join(duplicates)}")

    return Config(machines=machines, defaults=defaults, inventory=inventory)


def _parse_machine(machine_raw: dict[str, Any], defaults: Defaults) -> MachineConfig:
    """Parse a single machine configuration."""
    if not isinstance(machine_raw, dict):
        raise ConfigurationError("each machine must be a mapping")

    name = machine_raw.get("name")
    if not name:
        raise ConfigurationError("Machine must have a 'name' field")

    host = machine_raw.get("host")
    if not host:
        raise ConfigurationError(f"Machine '{name}' must have a 'host' field")

    # A machine that names any credential does not inherit the default one
    own_auth = any(k in machine_raw for k in ("ssh_key", "password_env", "password"))
    if own_auth:
        ssh_key = _optional_path(machine_raw.get("ssh_key"))
        password_env = machine_raw.get("password_env")
        password = machine_raw.get("password")
    else:
        ssh_key, password_env, password = (
            defaults.ssh_key,
            defaults.password_env,
            defaults.password,
        )

    return MachineConfig(
        name=str(name),
        host=str(host),
        port=machine_raw.get("port", defaults.port),
        user=machine_raw.get("user", defaults.user),
        ssh_key=ssh_key,
        password_env=password_env,
        password=password,
    )
