"""
Sales Service — イベント定義と発行

注文の作成・更新・削除がコミットされた後に、その事実をイベントとして
Redis Pub/Sub (order_events チャネル) に発行する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Protocol
from uuid import UUID

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


class OrderLineSnapshot(BaseModel):
    product_id: UUID
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class OrderCreated(BaseModel):
    """注文が作成された"""
    order_id: UUID
    customer_id: UUID
    total_amount: Decimal
    items: list[OrderLineSnapshot]
    timestamp: datetime


class OrderUpdated(BaseModel):
    """注文の明細が置き換えられた"""
    order_id: UUID
    customer_id: UUID
    previous_customer_id: UUID
    total_amount: Decimal
    items: list[OrderLineSnapshot]
    timestamp: datetime


class OrderDeleted(BaseModel):
    """注文が削除され、在庫が戻された"""
    order_id: UUID
    customer_id: UUID
    restored: dict[UUID, int]
    timestamp: datetime


class EventPublisher(Protocol):
    async def publish(self, event: BaseModel) -> None: ...


class RedisEventPublisher:
    """Redis Pub/Sub でイベントを発行する。"""

    def __init__(self, redis: aioredis.Redis, channel: str = ORDER_EVENTS_CHANNEL) -> None:
        self.redis = redis
        self.channel = channel

    async def publish(self, event: BaseModel) -> None:
        await self.redis.publish(
            self.channel,
            json.dumps(
                {
                    "event_type": type(event).__name__,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )


class NullEventPublisher:
    """REDIS_URL 未設定時に使う。何も発行しない。"""

    async def publish(self, event: BaseModel) -> None:
        logger.debug("Event not published (no broker): %s", type(event).__name__)
