"""
Order Service — FastAPI エントリーポイント

CQRS パターンに従い、状態を変える操作は commands、読み取りは queries に
委譲する。認証済みユーザーはゲートウェイが X-User-Id / X-User-Role
ヘッダーで渡す（JWT の検証はこのサービスの責務ではない）。

ドメインエラー (OrderServiceError) は例外ハンドラで
{"detail": ..., "kind": ...} と対応する HTTP ステータスに変換する。
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator, Literal

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from . import commands, queries
from .auth import Principal, Role, get_principal, require_permission, require_role
from .database import create_schema, make_engine, make_session_factory
from .errors import OrderServiceError

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
DB_AUTO_CREATE = os.environ.get("DB_AUTO_CREATE", "false").lower() == "true"

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = make_engine(DATABASE_URL)
async_session = make_session_factory(engine)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    if DB_AUTO_CREATE:
        await create_schema(engine)
        logger.info("Database schema created")
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── 依存関係 ─────────────────────────────────────


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


def get_redis() -> aioredis.Redis | None:
    return redis_pool


@app.exception_handler(OrderServiceError)
async def handle_order_service_error(request: Request, exc: OrderServiceError):
    logger.warning(
        "%s %s rejected: %s %s (%s)",
        request.method, request.url.path, exc.status_code, exc.kind, exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "kind": exc.kind},
    )


# ── Request Models ───────────────────────────────


class OrderItemRequest(BaseModel):
    product_id: int | None = None
    id: int | None = None
    quantity: int


class CreateOrderRequest(BaseModel):
    items: list[OrderItemRequest] = []
    shipping_address: dict | None = None
    billing_address: dict | None = None
    payment_method: str | None = None
    shipping_method: str | None = None
    notes: str | None = None


class SaveDraftRequest(BaseModel):
    items: list[OrderItemRequest] | None = None
    shipping_address: dict | None = None
    billing_address: dict | None = None
    payment_method: str | None = None
    shipping_method: str | None = None
    notes: str | None = None


class UpdateDraftRequest(SaveDraftRequest):
    payment_details: dict | None = None
    total: float | None = None
    shipping: float | None = None
    last_updated: str | None = None


class CancelOrderRequest(BaseModel):
    reason: str | None = None


class UpdateStatusRequest(BaseModel):
    status: str


class UpdatePaymentRequest(BaseModel):
    payment_status: str
    payment_details: dict | None = None


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/api/orders", status_code=201)
async def cmd_create_order(
    req: CreateOrderRequest,
    principal: Principal = Depends(require_role(Role.CUSTOMER)),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """注文作成コマンド"""
    order = await commands.create_order(
        session, redis, principal.id,
        [item.model_dump() for item in req.items],
        req.shipping_address, req.billing_address,
        req.payment_method, req.shipping_method, req.notes,
    )
    return order.to_dict()


@app.patch("/api/orders/{order_id}/cancel")
@app.put("/api/orders/{order_id}/cancel")
async def cmd_cancel_order(
    order_id: int,
    req: CancelOrderRequest | None = None,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """注文キャンセルコマンド（在庫を戻す）"""
    reason = req.reason if req else None
    order = await commands.cancel_order(session, redis, order_id, principal, reason)
    return order.to_dict()


@app.patch("/api/orders/{order_id}/status")
async def cmd_update_status(
    order_id: int,
    req: UpdateStatusRequest,
    principal: Principal = Depends(require_permission("order:update")),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    order = await commands.update_order_status(session, redis, order_id, req.status, principal)
    return order.to_dict()


@app.patch("/api/orders/{order_id}/payment")
async def cmd_update_payment(
    order_id: int,
    req: UpdatePaymentRequest,
    principal: Principal = Depends(require_permission("order:update")),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    order = await commands.update_payment_status(
        session, redis, order_id, req.payment_status, principal, req.payment_details
    )
    return order.to_dict()


@app.post("/api/orders/draft", status_code=201)
async def cmd_save_draft(
    req: SaveDraftRequest,
    principal: Principal = Depends(require_role(Role.CUSTOMER)),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """下書き保存コマンド（在庫には触れない）"""
    items = [item.model_dump() for item in req.items] if req.items is not None else None
    order = await commands.save_draft(
        session, redis, principal.id, items,
        req.shipping_address, req.billing_address,
        req.payment_method, req.shipping_method, req.notes,
    )
    return order.to_dict()


@app.put("/api/orders/draft/{draft_id}")
async def cmd_update_draft(
    draft_id: int,
    req: UpdateDraftRequest,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """下書き更新コマンド（送られたフィールドだけを書き換える）"""
    order = await commands.update_draft(
        session, redis, draft_id, principal, req.model_dump(exclude_unset=True)
    )
    return order.to_dict()


@app.post("/api/orders/draft/{draft_id}/convert")
async def cmd_convert_draft(
    draft_id: int,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """下書き → 注文の変換コマンド（在庫を減算する）"""
    order = await commands.convert_draft(session, redis, draft_id, principal)
    return order.to_dict()


@app.delete("/api/orders/draft/{draft_id}")
async def cmd_delete_draft(
    draft_id: int,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    await commands.delete_draft(session, redis, draft_id, principal)
    return {"message": "Draft order deleted successfully"}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/api/orders")
async def query_list_orders(
    status: str | None = None,
    payment_status: str | None = None,
    customer: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    min_amount: float | None = None,
    max_amount: float | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    principal: Principal = Depends(require_permission("order:view")),
    session: AsyncSession = Depends(get_session),
):
    """全注文の一覧（order:view 権限）"""
    return await queries.list_orders(
        session,
        status=status,
        payment_status=payment_status,
        customer_id=customer,
        start_date=start_date,
        end_date=end_date,
        min_amount=min_amount,
        max_amount=max_amount,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@app.get("/api/orders/my-orders")
async def query_my_orders(
    status: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    principal: Principal = Depends(require_role(Role.CUSTOMER)),
    session: AsyncSession = Depends(get_session),
):
    return await queries.list_my_orders(
        session, principal.id, status=status,
        page=page, limit=limit, sort_by=sort_by, sort_order=sort_order,
    )


@app.get("/api/orders/drafts")
async def query_my_drafts(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = "updated_at",
    sort_order: Literal["asc", "desc"] = "desc",
    principal: Principal = Depends(require_role(Role.CUSTOMER)),
    session: AsyncSession = Depends(get_session),
):
    return await queries.list_my_drafts(
        session, principal.id,
        page=page, limit=limit, sort_by=sort_by, sort_order=sort_order,
    )


@app.get("/api/orders/drafts/{draft_id}")
async def query_my_draft(
    draft_id: int,
    principal: Principal = Depends(require_role(Role.CUSTOMER)),
    session: AsyncSession = Depends(get_session),
):
    return await queries.get_my_draft(session, principal.id, draft_id)


@app.get("/api/orders/supplier-orders")
async def query_supplier_orders(
    status: str | None = None,
    payment_status: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    principal: Principal = Depends(require_role(Role.SUPPLIER)),
    session: AsyncSession = Depends(get_session),
):
    """自社商品を含む注文の一覧（仕入先用）"""
    return await queries.list_supplier_orders(
        session, principal.id,
        status=status,
        payment_status=payment_status,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@app.get("/api/orders/{order_id}")
async def query_get_order(
    order_id: int,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """注文詳細（管理者または注文した顧客）"""
    return await queries.get_order(session, order_id, principal)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
