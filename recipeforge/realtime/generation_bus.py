import json
import logging
from datetime import datetime, timezone
from typing import Optional

from redis.exceptions import RedisError

from ..infra.redis_client import get_redis

logger = logging.getLogger("recipeforge.events")

GENERATION_STARTED = "generation_started"
GENERATION_TEXT_READY = "generation_text_ready"
GENERATION_COMPLETE = "generation_complete"
GENERATION_PARTIAL = "generation_partial"
GENERATION_FAILED = "generation_failed"

TERMINAL_EVENTS = frozenset({GENERATION_COMPLETE, GENERATION_PARTIAL, GENERATION_FAILED})

# Late subscribers read the last event from here
LAST_EVENT_TTL_SEC = 60 * 60


def channel_for_recipe(recipe_id: str) -> str:
    return f"recipeforge:generation:recipe:{recipe_id}"


def last_event_key(recipe_id: str) -> str:
    return f"recipeforge:generation:last:{recipe_id}"


async def publish_generation_event(recipe_id: str, type: str, **fields) -> bool:
    """Best effort: a lost event never affects the run. Returns False on failure."""
    payload = {
        "type": type,
        "recipe_id": recipe_id,
        "at": datetime.now(timezone.utc).isoformat(),
        **fields,
    }
    try:
        r = await get_redis()
        data = json.dumps(payload)
        await r.set(last_event_key(recipe_id), data, ex=LAST_EVENT_TTL_SEC)
        await r.publish(channel_for_recipe(recipe_id), data)
        return True
    except (RedisError, OSError) as e:
        logger.warning(f"Failed to publish {type} for recipe {recipe_id}: {e}")
        return False


async def subscribe_recipe(recipe_id: str):
    r = await get_redis()
    pubsub = r.pubsub()
    await pubsub.subscribe(channel_for_recipe(recipe_id))
    return pubsub


async def get_last_event(recipe_id: str) -> Optional[dict]:
    r = await get_redis()
    raw = await r.get(last_event_key(recipe_id))
    return json.loads(raw) if raw else None
