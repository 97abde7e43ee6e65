import asyncio
import json
import os
import sys

import pytest
from starlette.websockets import WebSocketState

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__) + "/.."))

from fastapi.testclient import TestClient

from chat_ws import ConnectionManager
from config import Config
from main import create_app
from messages import MessageStore
from users import UserRegistry

ORIGIN = "http://localhost:5500"


class FakeWebSocket:
    """Stands in for a Starlette WebSocket; records decoded outbound frames."""

    def __init__(self, fail=False, delay=0.0):
        self.client_state = WebSocketState.CONNECTING
        self.application_state = WebSocketState.CONNECTING
        self.fail = fail
        self.delay = delay
        self.sent = []
        self.closed_with = None

    async def accept(self):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, data):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("socket is broken")
        self.sent.append(json.loads(data))

    async def close(self, code=1000):
        self.closed_with = code
        self.application_state = WebSocketState.DISCONNECTED

    def commands(self):
        return [frame["command"] for frame in self.sent]

    def last(self):
        return self.sent[-1]

    def clear(self):
        self.sent.clear()


@pytest.fixture()
def message_store():
    store = MessageStore()
    yield store
    store.close()


@pytest.fixture()
def registry():
    return UserRegistry()


@pytest.fixture()
def manager(message_store, registry):
    return ConnectionManager(message_store, registry, send_timeout=0.2)


@pytest.fixture()
def config(tmp_path):
    class TestConfig(Config):
        DATA_FILE = str(tmp_path / "data" / "messages.json")
        ALLOWED_ORIGINS = [ORIGIN]
        SEND_TIMEOUT_SECONDS = 1.0

    return TestConfig


@pytest.fixture()
def app(config):
    """Create a fresh FastAPI app (own store, registry and coordinator) per test."""
    return create_app(config)


@pytest.fixture()
def client(app):
    """A test client that runs the app lifespan."""
    with TestClient(app) as test_client:
        yield test_client
