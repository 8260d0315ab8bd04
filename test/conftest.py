import asyncio

import pytest
from fastapi.testclient import TestClient

from _helper import FixedClock, InMemoryOrderStore
from orderflow.main import app
from orderflow.routes.orders import get_order_service
from orderflow.service import OrderService


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False
        # when set, deliveries wait until the event is set
        self.gate: asyncio.Event | None = None

    async def __call__(self, order, entry):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise ConnectionError("notification queue unreachable")
        self.sent.append((order, entry))


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(store, notifier):
    return OrderService(store, notifier=notifier, conflict_retries=1, clock=FixedClock())


@pytest.fixture
def client(service):
    # No lifespan: the app never touches Postgres or Redis in tests
    app.dependency_overrides[get_order_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()
