# ABOUTME: Shared fixtures: stub server descriptors and an isolated HOME/cwd
# ABOUTME: The stub is a real subprocess, so tests exercise actual pipes
import asyncio
import sys
from pathlib import Path
from typing import Callable

import pytest

from mcplink.models import ServerDescriptor

STUB_SERVER = Path(__file__).parent / "stub_server.py"


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point HOME and the working directory at a temp dir.

    Keeps config lookups and backups away from the real ~/.mcplink.
    """
    home = tmp_path / "home"
    home.mkdir()
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(project)
    return home


@pytest.fixture
def stub_server() -> Callable[..., ServerDescriptor]:
    """Factory for descriptors that launch tests/stub_server.py."""
    def make(name: str = "stub", *flags: str, enabled: bool = True) -> ServerDescriptor:
        return ServerDescriptor(
            name=name,
            command=sys.executable,
            args=[str(STUB_SERVER), *flags],
            enabled=enabled,
        )
    return make


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll predicate on the event loop until it holds or timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)
