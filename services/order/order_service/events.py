"""
Order Service — イベント定義と発行

注文ライフサイクルで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。

コミット成功後に Redis Pub/Sub の order_events チャネルへ発行する。
Pub/Sub は fire-and-forget なので、発行の失敗は注文の結果を変えない
（DB のコミットは既に完了している）。
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


class OrderEvent(BaseModel):
    order_id: int
    order_number: str
    customer_id: int
    timestamp: datetime


class OrderCreated(OrderEvent):
    """注文が作成された（在庫は減算済み）"""
    total_amount: float
    items: list[dict]


class OrderCancelled(OrderEvent):
    """注文がキャンセルされた（在庫は戻し済み）"""
    reason: str
    cancelled_by: str
    payment_status: str


class OrderStatusChanged(OrderEvent):
    """管理者が注文状態を変更した"""
    previous_status: str
    status: str


class PaymentStatusChanged(OrderEvent):
    """管理者が支払い状態を変更した"""
    previous_payment_status: str
    payment_status: str


class DraftSaved(OrderEvent):
    """下書きが保存・更新された"""
    total_amount: float


class DraftConverted(OrderEvent):
    """下書きが正式な注文に変換された"""
    draft_order_number: str
    total_amount: float


class DraftDeleted(OrderEvent):
    """下書きが削除された"""


async def publish(redis: aioredis.Redis | None, event: OrderEvent) -> None:
    """イベントを order_events チャネルに発行する。"""
    if redis is None:
        return
    try:
        await redis.publish(ORDER_EVENTS_CHANNEL, json.dumps({
            "event_type": type(event).__name__,
            "data": event.model_dump(mode="json"),
        }, default=str))
    except RedisError:
        logger.exception("Failed to publish %s", type(event).__name__)
