# tests/conftest.py
import pytest

from marketchat.chat import ChatService
from marketchat.config import Settings
from marketchat.db import create_tables, make_engine
from marketchat.realtime import BestEffortDelivery, ConnectionRegistry
from marketchat.storage import LocalFileStorage
from marketchat.store import SqlRowStore


class FakeConnection:
    """Stands in for a WebSocket; records every frame sent to it."""

    def __init__(self, name: str = ""):
        self.name = name
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)

    def events(self, name=None):
        return [f for f in self.sent if name is None or f["event"] == name]

    def last(self, name):
        found = self.events(name)
        return found[-1]["data"] if found else None

    def __repr__(self):
        return f"FakeConnection({self.name!r})"


class DeadConnection(FakeConnection):
    async def send_json(self, data):
        raise RuntimeError("socket closed")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        store_backend="sql",
        database_url="sqlite://",
        upload_dir=str(tmp_path / "uploads"),
        public_base_url="http://chat.test",
    )


@pytest.fixture
def store():
    engine = make_engine("sqlite://")
    create_tables(engine)
    return SqlRowStore(engine)


@pytest.fixture
def files(tmp_path):
    return LocalFileStorage(str(tmp_path / "uploads"), "http://chat.test")


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def service(store, registry, files, settings):
    return ChatService(store, registry, BestEffortDelivery(registry), files, settings)


@pytest.fixture
def online(service):
    """Log users in and return their connections: ``alice, bob = await online("alice", "bob")``."""

    async def _login(*user_ids):
        conns = []
        for user_id in user_ids:
            conn = FakeConnection(user_id)
            await service.login(conn, user_id)
            conns.append(conn)
        return conns

    return _login
