"""
Shared pytest fixtures.

The server module loads its YAML config at import time, so the config path
is pointed at a throwaway directory before anything imports it.
"""

import os
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

os.environ["PASTEBIN_CONFIG"] = str(Path(tempfile.mkdtemp(prefix="pastebin_test_")) / "config.yaml")


class ScriptedGenerator:
    """Identifier generator that replays a fixed sequence of ids"""

    def __init__(self, ids):
        self.ids = list(ids)
        self.calls = 0

    def generate(self) -> str:
        value = self.ids[self.calls % len(self.ids)]
        self.calls += 1
        return value


@pytest.fixture
def scripted_generator():
    return ScriptedGenerator


def _client(app):
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://test")


@pytest_asyncio.fixture
async def global_client():
    """HTTP client for a global-buffer app with a buffer of 2 and 64-byte pastes"""
    from pastebin_server import ServerConfig, create_app

    app = create_app(ServerConfig(buffer_size=2, max_paste_size=64, log_level="WARNING"))
    async with _client(app) as client:
        yield client


@pytest_asyncio.fixture
async def device_client():
    """HTTP client for a device-scoped app with a quota of 2"""
    from pastebin_server import ServerConfig, create_app

    app = create_app(ServerConfig(mode="device", device_quota=2, max_paste_size=64, log_level="WARNING"))
    async with _client(app) as client:
        yield client
