"""Per-user limit for generation runs paid for with the platform key.

Users on their own API key are only subject to the route limit; runs on
the shared key are also throttled per user.
"""

import logging

from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from ..settings import settings

logger = logging.getLogger("recipeforge.ratelimit")

_storage = MemoryStorage()
_limiter = MovingWindowRateLimiter(_storage)


def hit_platform_key_limit(user_id: str) -> bool:
    """Record one platform-key run for this user. False when over the limit."""
    allowed = _limiter.hit(parse(settings.rate_limit_platform_key), "platform_key", user_id)
    if not allowed:
        logger.warning(f"User {user_id} exceeded the platform key limit ({settings.rate_limit_platform_key})")
    return allowed


def reset_platform_key_limits() -> None:
    _storage.reset()
