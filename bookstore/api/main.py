"""
Bookstore — FastAPI エントリーポイント

HTTP は薄いアダプタ。業務ロジックは OrderCoordinator / CatalogService に置き、
ここではリクエストの変換と、業務エラー → ステータスコードの対応付けだけを行う。

呼び出し元の識別は API ゲートウェイが付けるヘッダを信頼する:
    X-User-Id / X-User-Role (user | admin | deliver) / X-User-Email
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import create_async_engine

from ..caller import Caller
from ..config import Settings
from ..errors import (
    BookstoreError,
    Forbidden,
    InsufficientStock,
    InvalidInput,
    InvalidTransition,
    NotFound,
    TransactionConflict,
)
from ..inventory import queries as inventory_queries
from ..inventory.commands import CatalogService
from ..jobs.queue import JobQueue
from ..jobs.redis_queue import RedisJobQueue
from ..order import queries as order_queries
from ..order.commands import OrderCoordinator
from ..store.base import Store
from ..store.sql import SqlStore, create_schema

logger = logging.getLogger(__name__)

_STATUS_CODES: list[tuple[type[BookstoreError], int]] = [
    (InvalidInput, 400),
    (Forbidden, 403),
    (NotFound, 404),
    (InsufficientStock, 409),
    (InvalidTransition, 409),
    (TransactionConflict, 503),
]


def status_code_for(exc: BookstoreError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


# ── Request Models ───────────────────────────────

class OrderLineIn(BaseModel):
    item_id: UUID
    quantity: int


class PlaceOrderRequest(BaseModel):
    items: list[OrderLineIn]


class UpdateStatusRequest(BaseModel):
    status: str


class CreateItemRequest(BaseModel):
    title: str
    quantity: int
    unit_price: Decimal
    is_available: bool = True
    image_path: str | None = None


class UpdateItemRequest(BaseModel):
    title: str | None = None
    quantity: int | None = None
    unit_price: Decimal | None = None
    is_available: bool | None = None
    image_path: str | None = None


# ── App ──────────────────────────────────────────

def create_app(
    settings: Settings | None = None,
    store: Store | None = None,
    queue: JobQueue | None = None,
) -> FastAPI:
    """
    アプリを組み立てる。

    store / queue を渡さなければ lifespan で settings から
    SQLAlchemy エンジンと Redis 接続を作る。
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = None
        redis_conn = None
        app_store, app_queue = store, queue
        if app_store is None:
            engine = create_async_engine(settings.database_url, echo=False)
            await create_schema(engine)
            app_store = SqlStore(engine)
        if app_queue is None:
            redis_conn = aioredis.from_url(settings.redis_url, decode_responses=True)
            app_queue = RedisJobQueue.from_settings(redis_conn, settings)

        app.state.store = app_store
        app.state.queue = app_queue
        app.state.coordinator = OrderCoordinator(app_store, app_queue, settings)
        app.state.catalog = CatalogService(app_store, app_queue, settings)
        try:
            yield
        finally:
            if redis_conn is not None:
                await redis_conn.aclose()
            if engine is not None:
                await engine.dispose()

    app = FastAPI(title="Bookstore Order Service", lifespan=lifespan)

    @app.exception_handler(BookstoreError)
    async def handle_bookstore_error(request: Request, exc: BookstoreError):
        return JSONResponse(
            status_code=status_code_for(exc),
            content={"error": exc.code, "detail": exc.message},
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        # リクエスト形式の不正も業務エラーの InvalidInput と同じく 400 で返す
        detail = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"error": InvalidInput.code, "detail": detail},
        )

    _add_routes(app)
    return app


def get_caller(
    x_user_id: str | None = Header(default=None),
    x_user_role: str = Header(default="user"),
    x_user_email: str | None = Header(default=None),
) -> Caller:
    if not x_user_id:
        raise HTTPException(401, "Missing caller identity")
    try:
        return Caller(user_id=x_user_id, role=x_user_role, email=x_user_email)
    except ValidationError as e:
        raise HTTPException(401, "Invalid caller identity") from e


def _add_routes(app: FastAPI) -> None:
    # ── Orders ───────────────────────────────────

    @app.post("/orders", status_code=201)
    async def place_order(
        req: PlaceOrderRequest,
        request: Request,
        caller: Caller = Depends(get_caller),
        idempotency_key: str | None = Header(default=None),
    ):
        """注文確定 (在庫減算 + 注文保存を 1 トランザクションで)"""
        order = await request.app.state.coordinator.place_order(
            caller,
            [line.model_dump() for line in req.items],
            idempotency_key=idempotency_key,
        )
        return order.to_dict()

    @app.get("/orders")
    async def list_orders(request: Request, caller: Caller = Depends(get_caller)):
        orders = await order_queries.list_orders(request.app.state.store, caller)
        return [order.to_dict() for order in orders]

    @app.get("/orders/{order_id}")
    async def get_order(order_id: UUID, request: Request, caller: Caller = Depends(get_caller)):
        order = await order_queries.get_order(request.app.state.store, caller, order_id)
        return order.to_dict()

    @app.patch("/orders/{order_id}/status")
    async def update_order_status(
        order_id: UUID,
        req: UpdateStatusRequest,
        request: Request,
        caller: Caller = Depends(get_caller),
    ):
        order = await request.app.state.coordinator.update_order_status(
            caller, order_id, req.status
        )
        return order.to_dict()

    @app.delete("/orders/{order_id}")
    async def delete_order(order_id: UUID, request: Request, caller: Caller = Depends(get_caller)):
        await request.app.state.coordinator.purge_order(caller, order_id)
        return {"msg": "Order deleted successfully"}

    # ── Catalog ──────────────────────────────────

    @app.post("/items", status_code=201)
    async def create_item(
        req: CreateItemRequest,
        request: Request,
        caller: Caller = Depends(get_caller),
    ):
        item = await request.app.state.catalog.add_item(caller, **req.model_dump())
        return item.to_dict()

    @app.patch("/items/{item_id}")
    async def update_item(
        item_id: UUID,
        req: UpdateItemRequest,
        request: Request,
        caller: Caller = Depends(get_caller),
    ):
        changes = req.model_dump(exclude_unset=True)
        item = await request.app.state.catalog.update_item(caller, item_id, **changes)
        return item.to_dict()

    @app.delete("/items/{item_id}")
    async def delete_item(item_id: UUID, request: Request, caller: Caller = Depends(get_caller)):
        await request.app.state.catalog.remove_item(caller, item_id)
        return {"msg": "Item deleted successfully"}

    @app.get("/items")
    async def list_items(request: Request, in_stock: bool = False):
        items = await inventory_queries.list_items(request.app.state.store, in_stock_only=in_stock)
        return [item.to_dict() for item in items]

    @app.get("/items/{item_id}")
    async def get_item(item_id: UUID, request: Request):
        item = await inventory_queries.get_item(request.app.state.store, item_id)
        return item.to_dict()

    # ── Jobs (オペレーター向け) ──────────────────

    @app.get("/jobs/{queue_name}/failed")
    async def list_failed_jobs(
        queue_name: str,
        request: Request,
        caller: Caller = Depends(get_caller),
    ):
        if not caller.is_admin:
            raise Forbidden("Only admin can inspect failed jobs")
        jobs = await request.app.state.queue.list_failed(queue_name)
        return [job.to_dict() for job in jobs]

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "bookstore-order-service"}


app = create_app()
