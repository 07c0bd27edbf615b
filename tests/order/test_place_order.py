import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from uuid import uuid4

import pytest

from bookstore.caller import Caller
from bookstore.config import Settings
from bookstore.errors import InsufficientStock, InvalidInput, ItemNotFound, TransactionConflict
from bookstore.jobs.payloads import EMAIL_QUEUE
from bookstore.order import queries
from bookstore.order.commands import OrderCoordinator


async def test_order_scenario(coordinator, catalog, store, alice, bob, admin, seed, fetch_item):
    book = await seed(quantity=5, price="10.00")

    order = await coordinator.place_order(alice, [(book.id, 3)])
    assert order.total == Decimal("30.00")
    assert order.status == "pending"
    item = await fetch_item(book.id)
    assert item.quantity == 2
    assert item.status == "in_stock"

    with pytest.raises(InsufficientStock):
        await coordinator.place_order(bob, [(book.id, 3)])
    assert (await fetch_item(book.id)).quantity == 2

    # 後から単価を変えても既存の注文には影響しない
    await catalog.update_item(admin, book.id, unit_price="99.00")
    assert (await queries.get_order(store, alice, order.id)).total == Decimal("30.00")


async def test_selling_out_marks_item_out_of_stock(coordinator, alice, seed, fetch_item):
    book = await seed(quantity=2)
    await coordinator.place_order(alice, [{"item_id": str(book.id), "quantity": 2}])

    item = await fetch_item(book.id)
    assert item.quantity == 0
    assert item.status == "out_of_stock"
    assert item.sold_count == 2


async def test_total_uses_each_line_price(coordinator, alice, seed):
    a = await seed(title="A", quantity=5, price="10.00")
    b = await seed(title="B", quantity=5, price="2.50")

    order = await coordinator.place_order(alice, [(a.id, 2), (b.id, 3)])

    assert order.total == Decimal("27.50")
    assert [(line.title, line.quantity, line.unit_price) for line in order.lines] == [
        ("A", 2, Decimal("10.00")),
        ("B", 3, Decimal("2.50")),
    ]


@pytest.mark.parametrize(
    "lines",
    [
        [],
        None,
        [("ITEM", 0)],
        [("ITEM", -1)],
        [("ITEM", 1.5)],
        [("ITEM", True)],
        [("not-a-uuid", 1)],
        [("ITEM", 1), ("ITEM", 0)],
    ],
)
async def test_invalid_input_makes_no_changes(coordinator, store, queue, alice, seed, fetch_item, lines):
    book = await seed(quantity=5)
    if lines:
        lines = [(book.id if item_id == "ITEM" else item_id, qty) for item_id, qty in lines]

    with pytest.raises(InvalidInput):
        await coordinator.place_order(alice, lines)

    assert (await fetch_item(book.id)).quantity == 5
    assert await queries.list_orders(store, alice) == []
    assert queue.size(EMAIL_QUEUE) == 0


async def test_short_line_aborts_whole_order(coordinator, store, queue, alice, seed, fetch_item):
    a = await seed(title="A", quantity=5)
    b = await seed(title="B", quantity=1)

    with pytest.raises(InsufficientStock) as exc:
        await coordinator.place_order(alice, [(a.id, 2), (b.id, 2)])

    assert exc.value.item_id == b.id
    assert (await fetch_item(a.id)).quantity == 5
    assert (await fetch_item(b.id)).quantity == 1
    assert await queries.list_orders(store, alice) == []
    assert queue.size(EMAIL_QUEUE) == 0


async def test_repeated_item_counts_against_same_stock(coordinator, alice, seed, fetch_item):
    book = await seed(quantity=5)

    with pytest.raises(InsufficientStock):
        await coordinator.place_order(alice, [(book.id, 3), (book.id, 3)])

    assert (await fetch_item(book.id)).quantity == 5


async def test_missing_item_aborts(coordinator, alice, seed, fetch_item):
    book = await seed(quantity=5)
    missing = uuid4()

    with pytest.raises(ItemNotFound) as exc:
        await coordinator.place_order(alice, [(book.id, 1), (missing, 1)])

    assert exc.value.item_id == missing
    assert (await fetch_item(book.id)).quantity == 5


async def test_concurrent_orders_never_oversell(coordinator, seed, fetch_item):
    book = await seed(quantity=5)
    callers = [Caller(user_id=f"user-{i}") for i in range(12)]

    results = await asyncio.gather(
        *(coordinator.place_order(c, [(book.id, 1)]) for c in callers),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(succeeded) == 5
    assert all(isinstance(e, InsufficientStock) for e in failed)
    item = await fetch_item(book.id)
    assert item.quantity == 0
    assert item.status == "out_of_stock"


async def test_confirmation_job_is_enqueued_after_commit(coordinator, queue, alice, seed):
    book = await seed(title="Dune", quantity=5, price="10.00")

    order = await coordinator.place_order(alice, [(book.id, 3)])

    job = await queue.dequeue(EMAIL_QUEUE, timeout=0)
    assert job.kind == "sendOrderConfirmation"
    assert job.payload.order_id == order.id
    assert job.payload.recipient == "alice@example.com"
    assert job.payload.total == Decimal("30.00")
    assert job.payload.lines[0].title == "Dune"


async def test_caller_without_email_gets_no_confirmation(coordinator, queue, seed):
    book = await seed(quantity=5)
    order = await coordinator.place_order(Caller(user_id="carol"), [(book.id, 1)])

    assert order.status == "pending"
    assert queue.size(EMAIL_QUEUE) == 0


class BrokenQueue:
    max_attempts = 3

    async def enqueue(self, queue_name, kind, payload):
        raise ConnectionError("redis is down")


class SlowQueue:
    max_attempts = 3

    async def enqueue(self, queue_name, kind, payload):
        await asyncio.sleep(10)


@pytest.mark.parametrize("broken_queue", [BrokenQueue(), SlowQueue()])
async def test_enqueue_failure_does_not_affect_committed_order(store, alice, seed, fetch_item, broken_queue):
    coordinator = OrderCoordinator(store, broken_queue, Settings(enqueue_timeout=0.05))
    book = await seed(quantity=5)

    order = await coordinator.place_order(alice, [(book.id, 2)])

    assert (await queries.get_order(store, alice, order.id)).id == order.id
    assert (await fetch_item(book.id)).quantity == 3


async def test_idempotency_key_returns_existing_order(coordinator, store, queue, alice, seed, fetch_item):
    book = await seed(quantity=5)

    first = await coordinator.place_order(alice, [(book.id, 2)], idempotency_key="req-1")
    second = await coordinator.place_order(alice, [(book.id, 2)], idempotency_key="req-1")

    assert second.id == first.id
    assert (await fetch_item(book.id)).quantity == 3
    assert len(await queries.list_orders(store, alice)) == 1
    assert queue.size(EMAIL_QUEUE) == 1


async def test_idempotency_key_is_scoped_per_user(coordinator, alice, bob, seed, fetch_item):
    book = await seed(quantity=5)

    first = await coordinator.place_order(alice, [(book.id, 1)], idempotency_key="req-1")
    second = await coordinator.place_order(bob, [(book.id, 1)], idempotency_key="req-1")

    assert first.id != second.id
    assert (await fetch_item(book.id)).quantity == 3


class FlakyStore:
    """最初の failures 回だけ競合を起こすストア"""

    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = failures
        self.attempts = 0

    @asynccontextmanager
    async def transaction(self):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise TransactionConflict("simulated serialization failure")
        async with self.inner.transaction() as tx:
            yield tx


async def test_transaction_conflict_is_retried(store, queue, alice, seed, fetch_item):
    book = await seed(quantity=5)
    flaky = FlakyStore(store, failures=2)
    coordinator = OrderCoordinator(flaky, queue, Settings(transaction_retries=3))

    order = await coordinator.place_order(alice, [(book.id, 1)])

    assert order.total == Decimal("10.00")
    assert flaky.attempts == 3
    assert (await fetch_item(book.id)).quantity == 4


async def test_transaction_conflict_surfaces_after_retries(store, queue, alice, seed, fetch_item):
    book = await seed(quantity=5)
    flaky = FlakyStore(store, failures=10)
    coordinator = OrderCoordinator(flaky, queue, Settings(transaction_retries=1))

    with pytest.raises(TransactionConflict):
        await coordinator.place_order(alice, [(book.id, 1)])

    assert flaky.attempts == 2
    assert (await fetch_item(book.id)).quantity == 5
