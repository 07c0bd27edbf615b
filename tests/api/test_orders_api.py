from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from bookstore.api.main import create_app, status_code_for
from bookstore.config import Settings
from bookstore.errors import (
    BookstoreError,
    Forbidden,
    InsufficientStock,
    InvalidInput,
    InvalidTransition,
    ItemNotFound,
    TransactionConflict,
)
from bookstore.jobs.queue import InMemoryJobQueue
from bookstore.store.memory import InMemoryStore

ADMIN = {"X-User-Id": "root", "X-User-Role": "admin", "X-User-Email": "root@example.com"}
ALICE = {"X-User-Id": "alice", "X-User-Email": "alice@example.com"}
BOB = {"X-User-Id": "bob", "X-User-Email": "bob@example.com"}
DRIVER = {"X-User-Id": "driver", "X-User-Role": "deliver"}


@pytest.fixture
def api_queue():
    return InMemoryJobQueue()


@pytest.fixture
def client(api_queue):
    app = create_app(Settings(enqueue_timeout=0.5), store=InMemoryStore(), queue=api_queue)
    with TestClient(app) as client:
        yield client


def _add_book(client, quantity=5, price="10.00", title="Dune"):
    resp = client.post(
        "/items",
        json={"title": title, "quantity": quantity, "unit_price": price},
        headers=ADMIN,
    )
    assert resp.status_code == 201
    return resp.json()


def _order(client, item_id, quantity, headers=ALICE, **extra_headers):
    return client.post(
        "/orders",
        json={"items": [{"item_id": item_id, "quantity": quantity}]},
        headers={**headers, **extra_headers},
    )


def test_place_order_flow(client):
    book = _add_book(client)

    resp = _order(client, book["id"], 3)
    assert resp.status_code == 201
    order = resp.json()
    assert order["total"] == "30.00"
    assert order["status"] == "pending"
    assert order["lines"][0]["unit_price"] == "10.00"

    assert client.get(f"/items/{book['id']}").json()["quantity"] == 2

    resp = _order(client, book["id"], 3, headers=BOB)
    assert resp.status_code == 409
    assert resp.json()["error"] == "insufficient_stock"
    assert client.get(f"/items/{book['id']}").json()["quantity"] == 2


def test_invalid_quantity_is_bad_request(client):
    book = _add_book(client)

    resp = _order(client, book["id"], 0)

    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_input"


def test_empty_order_is_bad_request(client):
    resp = client.post("/orders", json={"items": []}, headers=ALICE)
    assert resp.status_code == 400


def test_unknown_item_is_not_found(client):
    resp = _order(client, str(uuid4()), 1)
    assert resp.status_code == 404
    assert resp.json()["error"] == "item_not_found"


def test_missing_identity_is_unauthorized(client):
    assert client.get("/orders").status_code == 401
    assert client.get("/orders", headers={"X-User-Id": "x", "X-User-Role": "root"}).status_code == 401


def test_idempotency_key_header(client):
    book = _add_book(client)

    first = _order(client, book["id"], 1, **{"Idempotency-Key": "abc"})
    second = _order(client, book["id"], 1, **{"Idempotency-Key": "abc"})

    assert first.json()["id"] == second.json()["id"]
    assert client.get(f"/items/{book['id']}").json()["quantity"] == 4


def test_order_visibility(client):
    book = _add_book(client)
    order_id = _order(client, book["id"], 1).json()["id"]

    assert client.get(f"/orders/{order_id}", headers=ALICE).status_code == 200
    assert client.get(f"/orders/{order_id}", headers=BOB).status_code == 404
    assert client.get(f"/orders/{order_id}", headers=DRIVER).status_code == 200
    assert [o["id"] for o in client.get("/orders", headers=ALICE).json()] == [order_id]
    assert client.get("/orders", headers=BOB).json() == []


def test_status_updates(client):
    book = _add_book(client)
    order_id = _order(client, book["id"], 1).json()["id"]
    url = f"/orders/{order_id}/status"

    assert client.patch(url, json={"status": "shipping"}, headers=ALICE).status_code == 403

    resp = client.patch(url, json={"status": "shipping"}, headers=DRIVER)
    assert resp.status_code == 200
    assert resp.json()["status"] == "shipping"

    assert client.patch(url, json={"status": "pending"}, headers=ADMIN).status_code == 409
    assert client.patch(url, json={"status": "lost"}, headers=ADMIN).status_code == 400


def test_delete_order(client):
    book = _add_book(client)
    order_id = _order(client, book["id"], 1).json()["id"]

    assert client.delete(f"/orders/{order_id}", headers=DRIVER).status_code == 403
    resp = client.delete(f"/orders/{order_id}", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json() == {"msg": "Order deleted successfully"}
    assert client.get(f"/orders/{order_id}", headers=ADMIN).status_code == 404


def test_confirmation_job_enqueued(client, api_queue):
    book = _add_book(client)
    _order(client, book["id"], 2)

    assert api_queue.size("email") == 1
    assert api_queue.size("book") == 1


def test_catalog_endpoints(client):
    book = _add_book(client, quantity=1)
    _add_book(client, quantity=0, title="Emma")

    assert client.post("/items", json={"title": "X", "quantity": 1, "unit_price": "1"}, headers=ALICE).status_code == 403
    assert [i["title"] for i in client.get("/items", params={"in_stock": "true"}).json()] == ["Dune"]

    resp = client.patch(f"/items/{book['id']}", json={"is_available": False}, headers=ADMIN)
    assert resp.json()["status"] == "discontinued"

    assert client.delete(f"/items/{book['id']}", headers=ADMIN).status_code == 200
    assert client.get(f"/items/{book['id']}").status_code == 404


def test_failed_jobs_admin_only(client):
    assert client.get("/jobs/email/failed", headers=ALICE).status_code == 403
    assert client.get("/jobs/email/failed", headers=ADMIN).json() == []


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"


@pytest.mark.parametrize(
    "exc, expected",
    [
        (InvalidInput("x"), 400),
        (Forbidden("x"), 403),
        (ItemNotFound(uuid4()), 404),
        (InsufficientStock(uuid4(), 2, 1), 409),
        (InvalidTransition("x"), 409),
        (TransactionConflict("x"), 503),
        (BookstoreError("x"), 500),
    ],
)
def test_status_code_mapping(exc, expected):
    assert status_code_for(exc) == expected


def test_malformed_request_is_bad_request(client):
    book = _add_book(client)

    resp = _order(client, book["id"], 1.5)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_input"

    assert client.get("/orders/not-a-uuid", headers=ALICE).status_code == 400
    assert client.get(f"/items/{book['id']}").json()["quantity"] == 5
