"""
Redis Pub/Sub へのイベント発行

状態変更をコミットした後に通知として発行する。
発行に失敗してもコミット済みの状態は取り消さない（ログに残すだけ）。
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

INVENTORY_CHANNEL = "inventory_events"
ORDER_CHANNEL = "order_events"
PAYMENT_CHANNEL = "payment_events"
SAGA_CHANNEL = "saga_events"


async def publish_event(
    redis: aioredis.Redis,
    channel: str,
    event: BaseModel,
) -> None:
    payload = json.dumps(
        {
            "event_type": type(event).__name__,
            "data": event.model_dump(mode="json"),
        },
        default=str,
    )
    try:
        await redis.publish(channel, payload)
    except RedisError:
        logger.warning(
            "Failed to publish %s to %s", type(event).__name__, channel, exc_info=True
        )
