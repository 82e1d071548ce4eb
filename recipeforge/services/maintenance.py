import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..errors import PersistenceError
from ..settings import settings
from .recipe_store import RecipeStore, recipe_store
from .storage import ImageStore, get_image_store, image_key

logger = logging.getLogger("recipeforge.maintenance")


def purge_expired_recipes(
    store: RecipeStore,
    image_store: ImageStore,
    grace: timedelta,
    now: Optional[datetime] = None,
) -> int:
    """Permanently delete recipes soft-deleted more than `grace` ago. Returns count purged."""
    cutoff = (now or datetime.now(timezone.utc)) - grace
    purged = 0

    for recipe_id in store.list_expired_recipes(cutoff):
        # Image first: a leftover row is retried next sweep, a leftover object is not
        try:
            image_store.delete_image(image_key(recipe_id))
        except PersistenceError as e:
            logger.error(f"Failed to delete image for recipe {recipe_id}: {e}")
            continue

        try:
            if store.delete_recipe(recipe_id):
                purged += 1
        except PersistenceError as e:
            logger.error(f"Failed to purge recipe {recipe_id}: {e}")

    if purged:
        logger.info(f"Purged {purged} recipe(s) deleted before {cutoff.isoformat()}")
    return purged


async def run_purge_loop(
    interval_seconds: Optional[float] = None,
    store: Optional[RecipeStore] = None,
    image_store: Optional[ImageStore] = None,
) -> None:
    """Sweep forever; cancelled by the app lifespan on shutdown."""
    interval = interval_seconds or settings.purge_interval_seconds
    grace = timedelta(days=settings.recipe_delete_grace_days)
    store = store or recipe_store
    image_store = image_store or get_image_store()

    while True:
        try:
            await asyncio.to_thread(purge_expired_recipes, store, image_store, grace)
        except PersistenceError as e:
            logger.error(f"Purge sweep failed: {e}")
        await asyncio.sleep(interval)
