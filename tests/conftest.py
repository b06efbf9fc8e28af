"""Shared pytest fixtures for frp-fleet tests."""

import os
import signal
import textwrap
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from frp_fleet.models import Role, TunnelConfig
from frp_fleet.process import find_config_processes
from frp_fleet.query import QueryEngine
from frp_fleet.settings import FleetSettings
from frp_fleet.store import ConfigStore
from frp_fleet.supervisor import Supervisor

FAKE_VERSION = "0.61.0"

IDLE_SCRIPT = f"""\
#!/bin/sh
if [ "$1" = "--version" ]; then
    echo "{FAKE_VERSION}"
    exit 0
fi
echo "fake frp started with $*"
trap 'echo "stopping"; exit 0' TERM
while true; do sleep 0.1; done
"""

CRASH_SCRIPT = f"""\
#!/bin/sh
if [ "$1" = "--version" ]; then
    echo "{FAKE_VERSION}"
    exit 0
fi
echo "login to server failed: bind: address already in use"
exit 1
"""

STUBBORN_SCRIPT = f"""\
#!/bin/sh
if [ "$1" = "--version" ]; then
    echo "{FAKE_VERSION}"
    exit 0
fi
trap '' TERM
while true; do sleep 0.1; done
"""


def write_binary(path: Path, script: str) -> Path:
    """Write an executable fake FRP binary."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(script))
    path.chmod(0o755)
    return path


@pytest.fixture(autouse=True)
def no_path_binaries(monkeypatch):
    """Keep FRP binaries installed on the host out of the tests."""
    monkeypatch.setattr("frp_fleet.version.shutil.which", lambda name: None)


@pytest.fixture
def frp_dir(tmp_path: Path) -> Path:
    """FRP installation directory with idle fake frpc and frps binaries."""
    directory = tmp_path / "frp"
    write_binary(directory / "frpc", IDLE_SCRIPT)
    write_binary(directory / "frps", IDLE_SCRIPT)
    return directory


@pytest.fixture
def settings(tmp_path: Path, frp_dir: Path) -> FleetSettings:
    """Settings rooted in a temporary directory with short timeouts."""
    return FleetSettings(
        config_dir=tmp_path / "fleet",
        frp_dir=frp_dir,
        startup_grace=0.3,
        stop_timeout=3,
        kill_timeout=3,
        probe_timeout=3,
        default_timeout=20,
    )


@pytest.fixture
def store(settings: FleetSettings) -> ConfigStore:
    return ConfigStore(settings)


@pytest.fixture
def supervisor(store: ConfigStore) -> Iterator[Supervisor]:
    """Supervisor that kills whatever its tests leave running."""
    supervisor = Supervisor(store)
    yield supervisor
    for proc in find_config_processes(store.settings.run_dir):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass
    for child in supervisor._children.values():
        child.wait(timeout=5)


@pytest.fixture
def engine(store: ConfigStore, supervisor: Supervisor) -> QueryEngine:
    return QueryEngine(store, supervisor)


@pytest.fixture
def make_client() -> Callable[..., TunnelConfig]:
    """Factory for valid client tunnels."""

    def factory(name: str = "web-a", **overrides: Any) -> TunnelConfig:
        connection = {
            "server_addr": "203.0.113.10",
            "server_port": 7000,
            "auth_token": "client-secret-token",
            "proxies": [{"name": f"{name}-http", "type": "tcp", "local_port": 8080, "remote_port": 6000}],
        }
        connection.update(overrides.pop("connection", {}))
        return TunnelConfig(name=name, role=Role.CLIENT, connection=connection, **overrides)

    return factory


@pytest.fixture
def make_server() -> Callable[..., TunnelConfig]:
    """Factory for valid server tunnels."""

    def factory(name: str = "edge", **overrides: Any) -> TunnelConfig:
        connection = {"bind_port": 7000, "auth_token": "server-secret-token"}
        connection.update(overrides.pop("connection", {}))
        return TunnelConfig(name=name, role=Role.SERVER, connection=connection, **overrides)

    return factory


@pytest.fixture
def populated_store(store: ConfigStore, make_client, make_server) -> ConfigStore:
    """Store holding web-a, web-b (tagged prod) and edge (server)."""
    registry = store.load()
    registry.add(make_client("web-a", tags=["prod", "region:eu"]))
    registry.add(make_client("web-b", tags=["prod"], connection={"server_port": 7001}))
    registry.add(make_server("edge", tags=["infra"]))
    store.save(registry)
    return store


@pytest.fixture
def install_frpc(frp_dir: Path) -> Callable[[str], Path]:
    """Swap the fake frpc for one that crashes ('crash') or ignores SIGTERM ('stubborn')."""
    scripts = {"idle": IDLE_SCRIPT, "crash": CRASH_SCRIPT, "stubborn": STUBBORN_SCRIPT}

    def install(kind: str) -> Path:
        return write_binary(frp_dir / "frpc", scripts[kind])

    return install


@pytest.fixture
def fake_binary() -> Callable[[Path, str], Path]:
    """Writer for custom fake FRP binaries."""
    return write_binary
