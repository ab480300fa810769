"""Shared test fixtures and configuration for backend tests."""
from typing import Any, Dict, List, Optional

import jwt
import pytest
from fastapi.testclient import TestClient

from marketchat.chat.hub import ChatHub, reset_hub, set_hub
from marketchat.chat.presence import Connection
from marketchat.chat.schemas import Identity
from marketchat.chat.store import ChatStore
from marketchat.config import AppSettings, reset_config, set_config
from marketchat.directory.schemas import OrderRecord, ProductRecord, UserRecord
from marketchat.directory.service import DirectoryService

SECRET = "test-secret"

USERS = [
    UserRecord(id="u1", name="Alice", email="alice@example.com", role="buyer"),
    UserRecord(id="u2", name="Bob", email="bob@example.com", role="farmer",
               profile_image="bob.jpg"),
    UserRecord(id="u3", name="Carol", email="carol@example.com", role="buyer"),
    UserRecord(id="admin", name="Admin", email="admin@example.com", role="admin"),
]


def make_token(user_id: str, secret: str = SECRET, **claims: Any) -> str:
    """Mint a bearer token the way the marketplace auth service does."""
    return jwt.encode({"id": user_id, **claims}, secret, algorithm="HS256")


def identity(user_id: str) -> Identity:
    user = next(u for u in USERS if u.id == user_id)
    return Identity(id=user.id, name=user.name, role=user.role)


class FakeTransport:
    """Records frames sent to a connection; can be told to fail."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def events(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        return [f for f in self.sent if name is None or f["event"] == name]


def fake_connection(user_id: str, fail: bool = False) -> Connection:
    return Connection(FakeTransport(fail=fail), identity(user_id))


@pytest.fixture
def config() -> AppSettings:
    settings = AppSettings(
        chat={"db_path": ":memory:", "notification_preview_length": 20},
        directory={"db_path": ":memory:"},
        secrets={"jwt": {"secret_key": SECRET}},
    )
    set_config(settings)
    yield settings
    reset_config()


@pytest.fixture
def directory() -> DirectoryService:
    service = DirectoryService(db_path=":memory:")
    for user in USERS:
        service.add_user(user)
    service.add_product(ProductRecord(id="p1", name="Heirloom tomatoes", price=4.5,
                                      images=["tomatoes.jpg"]))
    service.add_order(OrderRecord(id="o1", status="pending", total_amount=18.0))
    yield service
    service.close()


@pytest.fixture
def store() -> ChatStore:
    chat_store = ChatStore(db_path=":memory:")
    yield chat_store
    chat_store.close()


@pytest.fixture
def hub(config, store, directory) -> ChatHub:
    chat_hub = ChatHub.build(config, store=store, directory=directory)
    set_hub(chat_hub)
    yield chat_hub
    reset_hub()


@pytest.fixture
def client(hub) -> TestClient:
    from marketchat.main import app

    return TestClient(app)
