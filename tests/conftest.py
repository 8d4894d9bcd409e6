"""
Shared pytest fixtures and configuration
"""

import asyncio
import os
import sys
import tempfile
import shutil
from pathlib import Path
from types import SimpleNamespace

import pytest


@pytest.fixture(scope="session", autouse=True)
def _isolate_app_config():
    """Isolate on-disk config from developer machine.

    Tests should not read/write user home config.json.
    """

    tmp_cfg_dir = Path(tempfile.mkdtemp())
    os.environ["DUO_RELAY_CONFIG_DIR"] = str(tmp_cfg_dir)
    try:
        yield
    finally:
        try:
            shutil.rmtree(tmp_cfg_dir, ignore_errors=True)
        finally:
            os.environ.pop("DUO_RELAY_CONFIG_DIR", None)


# Add the project root to the Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from duo_relay.core.connections import Connection  # noqa: E402
from duo_relay.core.router import SignalingRouter  # noqa: E402
from duo_relay.core.storage import ChatStorage  # noqa: E402


class FakeTransport:
    """In-memory stand-in for a websocket: records every frame sent"""

    def __init__(self):
        self.sent = []
        self.closed_with = None

    async def send_json(self, data):
        if self.closed_with is not None:
            raise RuntimeError("Cannot send once the socket is closed")
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.closed_with = code

    def events(self):
        return [frame["event"] for frame in self.sent]

    def payloads(self, event: str):
        return [frame["data"] for frame in self.sent if frame["event"] == event]


def make_connection(name: str = None) -> Connection:
    return Connection(FakeTransport(), connection_id=name)


def run(coro):
    """Run a coroutine to completion on a fresh event loop"""
    return asyncio.run(coro)


@pytest.fixture
def temp_dir():
    """Create a temp directory, removed after the test"""
    tmp = tempfile.mkdtemp()
    yield Path(tmp)
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def db_path(temp_dir: Path) -> Path:
    return temp_dir / "data" / "relay.db"


@pytest.fixture
def storage(db_path: Path) -> ChatStorage:
    return ChatStorage(str(db_path))


@pytest.fixture
def users(storage: ChatStorage) -> SimpleNamespace:
    """alice and bob are contacts; carol knows nobody"""
    alice = storage.create_user("alice", "https://avatars.example/alice.png")
    bob = storage.create_user("bob", "https://avatars.example/bob.png")
    carol = storage.create_user("carol", "https://avatars.example/carol.png")
    storage.add_contact(alice.id, bob.id)
    return SimpleNamespace(alice=alice, bob=bob, carol=carol)


@pytest.fixture
def relay(storage: ChatStorage) -> SignalingRouter:
    return SignalingRouter(storage)
