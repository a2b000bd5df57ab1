"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from opsfleet.operator import Operator
from tests.mock_ssh import MockDialer


@pytest.fixture
def mock_dialer():
    """Provide a fresh MockDialer."""
    return MockDialer()


@pytest.fixture
def known_hosts_path(tmp_path):
    return tmp_path / "ssh" / "known_hosts"


@pytest.fixture
def fleet(mock_dialer, known_hosts_path):
    """Operator that trusts new hosts and dials through the mock."""
    return Operator(
        known_hosts_path=known_hosts_path,
        auto_add=True,
        timeout=5,
        dialer=mock_dialer,
    )
