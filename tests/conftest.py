import subprocess
import sys
from pathlib import Path

import pytest

from agent_mesh.config import clear_settings_cache, get_settings
from agent_mesh.storage import MeshPaths


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Point the mesh at a private directory and reset cached settings."""
    mesh_dir: Path = tmp_path / "mesh"
    monkeypatch.setenv("AGENT_MESH_DIR", str(mesh_dir))
    monkeypatch.setenv("AGENT_MESH_SOCKET_DIR", str(mesh_dir / "sockets"))
    monkeypatch.setenv("LOCK_TIMEOUT_MS", "300")
    monkeypatch.setenv("LOCK_RETRY_MS", "10")
    monkeypatch.setenv("LOCK_STALE_SECONDS", "30")
    monkeypatch.setenv("AGENT_EXTENSION_PATH", "")
    for name in ("AGENT_MESH_SUBAGENT_DEPTH", "AGENT_MESH_SUBAGENT_MAX_DEPTH", "AGENT_MESH_AGENT_NAME"):
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    try:
        yield
    finally:
        clear_settings_cache()


@pytest.fixture
def mesh(isolated_env) -> MeshPaths:
    paths = MeshPaths.from_settings(get_settings())
    paths.ensure()
    return paths


@pytest.fixture
def dead_pid() -> int:
    """A pid that belonged to a process which has already exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid
