import json
import logging

import redis

from .settings import settings

logger = logging.getLogger(__name__)

# Redis client for pub/sub
redis_client: redis.Redis | None = None


def get_redis() -> redis.Redis | None:
    global redis_client
    if not settings.notifications_enabled:
        return None
    if redis_client is None:
        try:
            client = redis.from_url(settings.redis_url)
            client.ping()
            redis_client = client
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable at {settings.redis_url}: {e}")
            redis_client = None
    return redis_client


def publish_event(restaurant_id: int, payload: dict, table_id: int | None = None) -> None:
    """Publish a staff/table notice for the websocket bridge and push workers.

    Publishes to:
    - orders:restaurant:{restaurant_id} - staff dashboards
    - orders:table:{table_id} - the diners at that table, when given

    Fire-and-forget: a failed publish is logged and never reaches the caller.
    """
    r = get_redis()
    if r is None:
        return
    try:
        message = json.dumps(payload, default=str)
        r.publish(f"orders:restaurant:{restaurant_id}", message)
        if table_id is not None:
            r.publish(f"orders:table:{table_id}", message)
    except Exception as e:
        logger.warning(f"Notification publish failed for restaurant {restaurant_id}: {e}")
