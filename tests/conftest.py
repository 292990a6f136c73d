"""
Pytest configuration and fixtures for singbox-manager tests.
"""

import os
import stat
import sys
import tempfile
from pathlib import Path
from typing import Generator, List, Tuple

import pytest

# Add scripts directory to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

from manager_settings import ManagerSettings  # noqa: E402
from rule_models import CountryGroup, Filter, Node  # noqa: E402

# Stand-in for the sing-box binary: answers `version` and `check`, and `run`
# sleeps until terminated. SINGBOX_STUB_EXIT=<code> makes `run` exit immediately.
STUB_SINGBOX = """#!/bin/sh
case "$1" in
  version)
    echo "sing-box version 1.10.0-stub"
    exit 0
    ;;
  check)
    if grep -q '"invalid-marker"' "$3"; then
      echo "FATAL invalid config" >&2
      exit 1
    fi
    exit 0
    ;;
  run)
    if [ -n "$SINGBOX_STUB_EXIT" ]; then
      echo "stub exiting with $SINGBOX_STUB_EXIT"
      exit "$SINGBOX_STUB_EXIT"
    fi
    trap 'exit 0' TERM
    trap 'echo "stub reloaded"' HUP
    echo "stub running with $3"
    while true; do sleep 0.05; done
    ;;
esac
exit 2
"""


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def stub_singbox(temp_dir: Path) -> Path:
    """Write an executable fake sing-box."""
    path = temp_dir / "bin" / "sing-box"
    path.parent.mkdir(parents=True)
    path.write_text(STUB_SINGBOX)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def settings(temp_dir: Path, stub_singbox: Path) -> ManagerSettings:
    """Settings rooted in the temporary directory, using the stub binary."""
    data_dir = temp_dir / "data"
    return ManagerSettings(
        data_dir=str(data_dir),
        singbox_path=str(stub_singbox),
        config_path=str(data_dir / "generated" / "config.json"),
        auto_apply=False,
        probe_interval=0.05,
        start_timeout=5.0,
        stop_timeout=5.0,
    )


@pytest.fixture
def sample_nodes() -> List[Node]:
    return [
        Node(tag="香港 01", type="shadowsocks", server="hk1.example.com", server_port=8388, country="HK",
             extra={"method": "aes-128-gcm", "password": "secret"}),
        Node(tag="香港 02 Netflix", type="vless", server="hk2.example.com", server_port=443, country="HK",
             extra={"uuid": "11111111-2222-3333-4444-555555555555"}),
        Node(tag="日本 01", type="trojan", server="jp1.example.com", server_port=443, country="JP",
             extra={"password": "secret"}),
        Node(tag="美国 01 Netflix", type="vmess", server="us1.example.com", server_port=443, country="US",
             extra={"uuid": "66666666-7777-8888-9999-000000000000"}),
    ]


@pytest.fixture
def sample_filters() -> List[Filter]:
    return [
        Filter(id="f-stream", name="流媒体", enabled=True, include=["netflix"]),
        Filter(id="f-jp", name="日本专线", enabled=True, mode="selector", include_countries=["JP"]),
        Filter(id="f-off", name="停用过滤器", enabled=False, include=["01"]),
    ]


@pytest.fixture
def namespace_inputs(sample_nodes, sample_filters):
    """A mutable (country groups, filters) source for RuleStore."""
    from node_catalog import group_by_country

    state = {"groups": group_by_country(sample_nodes), "filters": list(sample_filters)}

    def source() -> Tuple[List[CountryGroup], List[Filter]]:
        return list(state["groups"]), list(state["filters"])

    source.state = state
    return source


@pytest.fixture(autouse=True)
def _clear_stub_env(monkeypatch):
    monkeypatch.delenv("SINGBOX_STUB_EXIT", raising=False)
    for name in list(os.environ):
        if name.startswith("SBM_"):
            monkeypatch.delenv(name, raising=False)
