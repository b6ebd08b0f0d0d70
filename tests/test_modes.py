from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dashboard.models import AuthMode
from dashboard.modes import is_loopback_host, is_private_host, select_mode


@pytest.mark.parametrize(
    "hostname",
    [
        "localhost",
        "LOCALHOST",
        "localhost:5173",
        "127.0.0.1",
        "127.0.0.1:8080",
        "[::1]",
        "10.4.2.1",
        "172.16.0.1",
        "172.31.255.254",
        "192.168.1.20",
        "dashboard-docker",
        "my-container.internal",
    ],
)
def test_development_hosts_use_local_mode(hostname: str) -> None:
    assert select_mode(hostname, False) is AuthMode.LOCAL


@pytest.mark.parametrize(
    "hostname",
    [
        "dashboard.bvg.com",
        "172.15.0.1",
        "172.32.0.1",
        "8.8.8.8",
        "11.0.0.1",
        "192.169.0.1",
    ],
)
def test_public_hosts_use_edge_mode(hostname: str) -> None:
    assert select_mode(hostname, False) is AuthMode.EDGE


def test_empty_hostname_defaults_to_edge() -> None:
    assert select_mode("", False) is AuthMode.EDGE


def test_override_flag_forces_local_mode() -> None:
    assert select_mode("dashboard.bvg.com", True) is AuthMode.LOCAL
    assert select_mode("", True) is AuthMode.LOCAL


def test_selection_is_deterministic() -> None:
    results = {select_mode("dashboard.bvg.com", False) for _ in range(5)}
    assert results == {AuthMode.EDGE}


def test_host_helpers() -> None:
    assert is_loopback_host("127.0.0.53")
    assert not is_loopback_host("10.0.0.1")
    assert is_private_host("10.0.0.1:3000")
    assert not is_private_host("dashboard.bvg.com")
    assert not is_private_host("fd00::1")
