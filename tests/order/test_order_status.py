from uuid import uuid4

import pytest

from bookstore.errors import Forbidden, InvalidInput, InvalidTransition, OrderNotFound
from bookstore.order import queries


@pytest.fixture
async def order(coordinator, alice, seed):
    book = await seed(quantity=5)
    return await coordinator.place_order(alice, [(book.id, 1)])


async def test_admin_moves_order_forward(coordinator, store, admin, alice, order):
    shipped = await coordinator.update_order_status(admin, order.id, "shipping")
    assert shipped.status == "shipping"

    delivered = await coordinator.update_order_status(admin, order.id, "delivered")
    assert delivered.status == "delivered"
    assert delivered.total == order.total
    assert (await queries.get_order(store, alice, order.id)).status == "delivered"


async def test_deliver_role_can_update_status(coordinator, deliver, order):
    updated = await coordinator.update_order_status(deliver, order.id, "delivered")
    assert updated.status == "delivered"


async def test_ordinary_user_cannot_update_status(coordinator, alice, order):
    with pytest.raises(Forbidden):
        await coordinator.update_order_status(alice, order.id, "shipping")


async def test_status_cannot_go_backwards(coordinator, store, admin, order):
    await coordinator.update_order_status(admin, order.id, "shipping")

    with pytest.raises(InvalidTransition):
        await coordinator.update_order_status(admin, order.id, "pending")
    assert (await queries.get_order(store, admin, order.id)).status == "shipping"


async def test_unknown_status_is_rejected(coordinator, admin, order):
    with pytest.raises(InvalidInput):
        await coordinator.update_order_status(admin, order.id, "lost")


async def test_update_missing_order(coordinator, admin):
    with pytest.raises(OrderNotFound):
        await coordinator.update_order_status(admin, uuid4(), "shipping")


async def test_purge_pending_order(coordinator, store, admin, order):
    await coordinator.purge_order(admin, order.id)
    with pytest.raises(OrderNotFound):
        await queries.get_order(store, admin, order.id)


async def test_purge_refused_once_fulfillment_started(coordinator, store, admin, order):
    await coordinator.update_order_status(admin, order.id, "shipping")

    with pytest.raises(InvalidTransition):
        await coordinator.purge_order(admin, order.id)
    assert (await queries.get_order(store, admin, order.id)).status == "shipping"


async def test_purge_requires_admin(coordinator, deliver, order):
    with pytest.raises(Forbidden):
        await coordinator.purge_order(deliver, order.id)


async def test_purge_missing_order(coordinator, admin):
    with pytest.raises(OrderNotFound):
        await coordinator.purge_order(admin, uuid4())


async def test_users_only_see_their_own_orders(coordinator, store, alice, bob, admin, deliver, seed, order):
    book = await seed(quantity=5)
    bobs = await coordinator.place_order(bob, [(book.id, 1)])

    assert [o.id for o in await queries.list_orders(store, alice)] == [order.id]
    assert [o.id for o in await queries.list_orders(store, bob)] == [bobs.id]
    assert {o.id for o in await queries.list_orders(store, admin)} == {order.id, bobs.id}
    assert {o.id for o in await queries.list_orders(store, deliver)} == {order.id, bobs.id}

    with pytest.raises(OrderNotFound):
        await queries.get_order(store, bob, order.id)
    assert (await queries.get_order(store, deliver, order.id)).user_id == "alice"
