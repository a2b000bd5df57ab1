"""Tests for the machine registry and the concurrent fleet runner."""

from __future__ import annotations

import time

import pytest

from opsfleet.credentials import Password
from opsfleet.errors import (
    AuthenticationError,
    CommandError,
    ConfigurationError,
    DuplicateMachineError,
    HostConnectionError,
    MachineNotFoundError,
    TrustError,
)
from opsfleet.inventory import InventoryRecord
from opsfleet.known_hosts import TrustPolicy, default_known_hosts_path
from opsfleet.operator import Operator
from opsfleet.results import MachineState
from tests.mock_ssh import K1, K2, K3


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_returns_machine(self, fleet):
        machine = fleet.register("web1", "ops", "10.0.0.5", 22, Password("secret"))
        assert machine.name == "web1"
        assert machine.policy is fleet.policy
        assert fleet["web1"] is machine
        assert "web1" in fleet
        assert len(fleet) == 1

    def test_duplicate_name_rejected(self, fleet):
        fleet.register("a", "ops", "10.0.0.1")
        with pytest.raises(ConfigurationError, match="machine already exists"):
            fleet.register("a", "ops", "10.0.0.2")
        assert len(fleet) == 1
        assert fleet["a"].host == "10.0.0.1"

    def test_duplicate_is_distinct_error(self, fleet):
        fleet.register("a", "ops", "10.0.0.1")
        with pytest.raises(DuplicateMachineError):
            fleet.register("a", "ops", "10.0.0.1")

    @pytest.mark.parametrize(
        "args",
        [
            ("", "ops", "h", 22),
            ("m", "", "h", 22),
            ("m", "ops", "", 22),
            ("m", "ops", "h", 0),
            ("m", "ops", "h", 70000),
        ],
    )
    def test_invalid_registration_leaves_registry_unchanged(self, fleet, args):
        with pytest.raises(ConfigurationError):
            fleet.register(*args)
        assert len(fleet) == 0

    def test_registration_order_preserved(self, fleet):
        for name in ["c", "a", "b"]:
            fleet.register(name, "ops", f"{name}.example.org")
        assert fleet.names == ["c", "a", "b"]
        assert [m.name for m in fleet] == ["c", "a", "b"]

    def test_remove(self, fleet):
        fleet.register("a", "ops", "h")
        removed = fleet.remove("a")
        assert removed.name == "a"
        assert len(fleet) == 0
        with pytest.raises(MachineNotFoundError):
            fleet.remove("a")

    def test_default_policy(self):
        operator = Operator()
        assert operator.policy.known_hosts_path == default_known_hosts_path()
        assert operator.policy.auto_add is False

    def test_explicit_policy(self, tmp_path):
        policy = TrustPolicy(tmp_path / "kh", auto_add=True, timeout=3)
        assert Operator(policy).policy is policy

    def test_bad_timeout(self):
        with pytest.raises(ConfigurationError):
            Operator(timeout=0)


class TestRegisterInventory:
    def test_registers_all(self, fleet):
        records = [
            InventoryRecord(id="r1", ip="10.0.0.1", hostname="web1"),
            InventoryRecord(id="r2", ip="10.0.0.2"),
        ]
        machines = fleet.register_inventory(records, "ops", Password("pw"))
        assert [m.name for m in machines] == ["web1", "r2"]
        assert fleet["r2"].host == "10.0.0.2"

    def test_atomic_on_duplicate(self, fleet):
        fleet.register("web2", "ops", "10.0.0.9")
        records = [
            InventoryRecord(id="r1", ip="10.0.0.1", hostname="web1"),
            InventoryRecord(id="r2", ip="10.0.0.2", hostname="web2"),
        ]
        with pytest.raises(DuplicateMachineError):
            fleet.register_inventory(records, "ops")
        assert fleet.names == ["web2"]

    def test_atomic_on_invalid_record(self, fleet):
        records = [
            InventoryRecord(id="r1", ip="10.0.0.1", hostname="web1"),
            InventoryRecord(id="r2", ip="", hostname="web2"),
        ]
        with pytest.raises(ConfigurationError):
            fleet.register_inventory(records, "ops")
        assert len(fleet) == 0


# ---------------------------------------------------------------------------
# Fleet execution
# ---------------------------------------------------------------------------


class TestRun:
    @pytest.mark.asyncio
    async def test_single_machine(self, fleet, mock_dialer):
        mock_dialer.add_host("10.0.0.5", password="secret", responses={"id": ("linux\n", 0)})
        fleet.register("web1", "ops", "10.0.0.5", 22, Password("secret"))

        results = await fleet.run("id")

        assert len(results) == 1
        assert results[0].machine == "web1"
        assert results[0].output == "linux\n"
        assert results[0].success

    @pytest.mark.asyncio
    async def test_one_bad_password_isolated(self, fleet, mock_dialer):
        for name, ip in [("a", "10.0.0.1"), ("b", "10.0.0.2"), ("c", "10.0.0.3")]:
            mock_dialer.add_host(ip, password="good", responses={"id": (f"{name}\n", 0)})
        fleet.register("a", "ops", "10.0.0.1", credential=Password("good"))
        fleet.register("b", "ops", "10.0.0.2", credential=Password("wrong"))
        fleet.register("c", "ops", "10.0.0.3", credential=Password("good"))

        results = await fleet.run("id")

        assert [r.machine for r in results] == ["a", "b", "c"]
        assert [r.success for r in results] == [True, False, True]
        assert results[0].output == "a\n"
        assert results[2].output == "c\n"
        assert isinstance(results[1].error, AuthenticationError)

    @pytest.mark.asyncio
    async def test_command_error_does_not_block_others(self, fleet, mock_dialer):
        mock_dialer.add_host("10.0.0.1", password="pw", responses={"check": ("bad\n", 3)})
        mock_dialer.add_host("10.0.0.2", password="pw", responses={"check": ("ok\n", 0)})
        fleet.register("x", "ops", "10.0.0.1", credential=Password("pw"))
        fleet.register("y", "ops", "10.0.0.2", credential=Password("pw"))

        results = await fleet.run("check")

        assert isinstance(results[0].error, CommandError)
        assert results[0].output == "bad\n"
        assert results[1].success
        assert results[1].output == "ok\n"

    @pytest.mark.asyncio
    async def test_results_in_target_order_not_completion_order(self, fleet, mock_dialer):
        delays = {"slow": 0.3, "medium": 0.15, "fast": 0.0}
        for i, (name, delay) in enumerate(delays.items()):
            ip = f"10.0.1.{i}"
            mock_dialer.add_host(ip, password="pw", delay=delay, responses={"hostname": (name, 0)})
            fleet.register(name, "ops", ip, credential=Password("pw"))

        results = await fleet.run("hostname", targets=["fast", "slow", "medium"])

        assert [r.machine for r in results] == ["fast", "slow", "medium"]
        assert [r.output for r in results] == ["fast", "slow", "medium"]

    @pytest.mark.asyncio
    async def test_runs_concurrently(self, fleet, mock_dialer):
        for i in range(5):
            ip = f"10.0.2.{i}"
            mock_dialer.add_host(ip, password="pw", delay=0.3)
            fleet.register(f"m{i}", "ops", ip, credential=Password("pw"))

        started = time.monotonic()
        results = await fleet.run("true")
        elapsed = time.monotonic() - started

        assert len(results) == 5
        assert all(r.success for r in results)
        assert elapsed < 1.0

    @pytest.mark.asyncio
    async def test_unknown_target_gets_own_slot(self, fleet, mock_dialer):
        mock_dialer.add_host("10.0.0.1", password="pw", responses={"id": ("a\n", 0)})
        fleet.register("a", "ops", "10.0.0.1", credential=Password("pw"))

        results = await fleet.run("id", targets=["ghost", "a"])

        assert [r.machine for r in results] == ["ghost", "a"]
        assert isinstance(results[0].error, MachineNotFoundError)
        assert "machine not found" in str(results[0].error)
        assert results[1].success

    @pytest.mark.asyncio
    async def test_empty_registry(self, fleet):
        assert await fleet.run("id") == []

    @pytest.mark.asyncio
    async def test_every_error_kind_scoped_to_result(self, fleet, mock_dialer, known_hosts_path):
        known_hosts_path.parent.mkdir(parents=True)
        known_hosts_path.write_text(f"10.0.3.2 {K1.to_openssh()}\n")
        mock_dialer.add_host("10.0.3.2", host_key=K2, password="pw")
        mock_dialer.add_host("10.0.3.3", password="pw")
        fleet.register("unreachable", "ops", "10.0.3.1", credential=Password("pw"))
        fleet.register("spoofed", "ops", "10.0.3.2", credential=Password("pw"))
        fleet.register("nocred", "ops", "10.0.3.3")

        results = await fleet.run("id")

        assert [type(r.error) for r in results] == [
            HostConnectionError,
            TrustError,
            ConfigurationError,
        ]
        assert all(r.status is MachineState.FAILED for r in results)

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_failed_result(self, fleet, mock_dialer):
        class Exploding:
            async def connect(self, request):
                raise RuntimeError("boom")

        fleet.dialer = Exploding()
        fleet.register("a", "ops", "10.0.0.1", credential=Password("pw"))

        results = await fleet.run("id")

        assert not results[0].success
        assert "boom" in str(results[0].error)

    @pytest.mark.asyncio
    async def test_status_callback_per_machine(self, fleet, mock_dialer):
        mock_dialer.add_host("10.0.0.1", password="pw")
        fleet.register("a", "ops", "10.0.0.1", credential=Password("pw"))
        seen = []

        await fleet.run("true", targets=["a", "ghost"], on_status=lambda n, s: seen.append((n, s)))

        assert ("a", MachineState.SUCCEEDED) in seen
        assert ("ghost", MachineState.FAILED) in seen

    @pytest.mark.asyncio
    async def test_target_status_keyed_by_index(self, fleet, mock_dialer):
        mock_dialer.add_host("10.0.0.1", password="pw")
        fleet.register("a", "ops", "10.0.0.1", credential=Password("pw"))
        seen = []

        await fleet.run(
            "true",
            targets=["a", "a", "ghost"],
            on_target_status=lambda i, s: seen.append((i, s)),
        )

        assert (0, MachineState.SUCCEEDED) in seen
        assert (1, MachineState.SUCCEEDED) in seen
        assert (2, MachineState.FAILED) in seen
        assert [s for i, s in seen if i == 1][-1] is MachineState.CLOSED


# ---------------------------------------------------------------------------
# Trust on first use through the fleet runner
# ---------------------------------------------------------------------------


class TestTrustOnFirstUse:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("auto_add", [True, False])
    async def test_changed_host_key_rejected(self, mock_dialer, tmp_path, auto_add):
        path = tmp_path / "known_hosts"
        path.write_text(f"10.0.0.9 {K1.to_openssh()}\n")
        operator = Operator(known_hosts_path=path, auto_add=auto_add, dialer=mock_dialer)
        mock_dialer.add_host("10.0.0.9", host_key=K2, password="pw")
        operator.register("h", "ops", "10.0.0.9", credential=Password("pw"))

        [result] = await operator.run("id")

        assert isinstance(result.error, TrustError)
        assert "host identity changed" in str(result.error)
        assert path.read_text() == f"10.0.0.9 {K1.to_openssh()}\n"

    @pytest.mark.asyncio
    async def test_first_use_appends_once(self, mock_dialer, tmp_path):
        path = tmp_path / "known_hosts"
        operator = Operator(known_hosts_path=path, auto_add=True, dialer=mock_dialer)
        mock_dialer.add_host("10.0.0.9", host_key=K3, password="pw")
        operator.register("h", "ops", "10.0.0.9", credential=Password("pw"))

        [first] = await operator.run("id")
        assert first.success
        assert path.read_text() == f"10.0.0.9 ssh-ed25519 {K3.encoded}\n"

        [second] = await operator.run("id")
        assert second.success
        assert path.read_text() == f"10.0.0.9 ssh-ed25519 {K3.encoded}\n"

    @pytest.mark.asyncio
    async def test_unknown_host_without_auto_add(self, mock_dialer, tmp_path):
        path = tmp_path / "known_hosts"
        operator = Operator(known_hosts_path=path, auto_add=False, dialer=mock_dialer)
        mock_dialer.add_host("10.0.0.9", host_key=K3, password="pw")
        operator.register("h", "ops", "10.0.0.9", credential=Password("pw"))

        [result] = await operator.run("id")

        assert isinstance(result.error, TrustError)
        assert "host not trusted" in str(result.error)
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_concurrent_first_use_of_same_host(self, fleet, mock_dialer, known_hosts_path):
        mock_dialer.add_host("10.0.0.9", host_key=K3, password="pw", delay=0.05)
        fleet.register("alias1", "ops", "10.0.0.9", credential=Password("pw"))
        fleet.register("alias2", "ops", "10.0.0.9", credential=Password("pw"))

        results = await fleet.run("id")

        assert all(r.success for r in results)
        assert known_hosts_path.read_text().count("10.0.0.9 ") == 1
