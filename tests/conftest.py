from decimal import Decimal
from uuid import uuid4

import pytest

from bookstore.caller import Caller
from bookstore.config import Settings
from bookstore.inventory.aggregate import InventoryItem
from bookstore.inventory.commands import CatalogService
from bookstore.jobs.queue import InMemoryJobQueue
from bookstore.order.commands import OrderCoordinator
from bookstore.store.memory import InMemoryStore


@pytest.fixture
def settings():
    return Settings(enqueue_timeout=0.5, worker_poll_interval=0.05)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def queue():
    return InMemoryJobQueue(max_attempts=3)


@pytest.fixture
def coordinator(store, queue, settings):
    return OrderCoordinator(store, queue, settings)


@pytest.fixture
def catalog(store, queue, settings):
    return CatalogService(store, queue, settings)


@pytest.fixture
def alice():
    return Caller(user_id="alice", email="alice@example.com")


@pytest.fixture
def bob():
    return Caller(user_id="bob", email="bob@example.com")


@pytest.fixture
def admin():
    return Caller(user_id="root", role="admin", email="root@example.com")


@pytest.fixture
def deliver():
    return Caller(user_id="driver", role="deliver")


@pytest.fixture
def seed(store):
    """在庫をストアに直接登録する (ジョブは投入しない)"""

    async def _seed(title="Book", quantity=5, price="10.00", is_available=True):
        item = InventoryItem(
            id=uuid4(),
            title=title,
            quantity=quantity,
            unit_price=Decimal(price),
            is_available=is_available,
        )
        async with store.transaction() as tx:
            await tx.write_item(item)
        return item

    return _seed


@pytest.fixture
def fetch_item(store):
    async def _fetch(item_id):
        async with store.transaction() as tx:
            return await tx.read_item(item_id)

    return _fetch
