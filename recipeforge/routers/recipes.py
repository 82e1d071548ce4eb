"""Recipes API router.

Endpoints:
- POST /api/recipes - Create a draft and start generating it (202)
- GET /api/recipes/{id} - Get recipe with tags
- GET /api/recipes/{id}/history - Prompt/response history
- GET /api/recipes/{id}/events - SSE stream of generation progress
- DELETE /api/recipes/{id} - Soft delete (purged after the grace window)
"""

import asyncio
import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, StreamingResponse
from redis.exceptions import RedisError
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import get_current_user, get_orchestrator, get_recipe_store
from ..errors import AuthorizationError, PersistenceError
from ..infra.idempotency import idempotency_clear_key, idempotency_precheck, idempotency_store_result
from ..infra.rate_limit import hit_platform_key_limit
from ..models import Recipe, User
from ..realtime.generation_bus import TERMINAL_EVENTS, get_last_event, subscribe_recipe
from ..schemas import GenerateRecipeRequest, HistoryOut, RecipeOut
from ..services.credentials import uses_platform_key
from ..services.generation import GenerationJob, GenerationOrchestrator
from ..services.recipe_store import RecipeStore
from ..settings import settings

router = APIRouter()
limiter = Limiter(key_func=get_remote_address)
logger = logging.getLogger("recipeforge.recipes")


def _recipe_to_out(recipe: Recipe) -> RecipeOut:
    forked_from = recipe.forked_from
    return RecipeOut(
        id=recipe.id,
        title=recipe.title,
        ingredients=recipe.ingredients,
        instructions=recipe.instructions,
        cook_time=recipe.cook_time,
        unit_system=recipe.unit_system.value if recipe.unit_system else None,
        link_suggestions=recipe.link_suggestions,
        image_prompt=recipe.image_prompt,
        image_url=recipe.image_url,
        tags=recipe.tags,
        created_by_id=recipe.created_by_id,
        created_by_username=recipe.created_by.username if recipe.created_by else None,
        history_id=recipe.history.id if recipe.history else None,
        forked_from_id=recipe.forked_from_id,
        forked_from_title=forked_from.title if forked_from else None,
        personalization_uid=recipe.personalization_uid,
        status="draft" if recipe.is_draft else "ready",
        created_at=recipe.created_at,
    )


def _get_live_recipe(db: Session, recipe_id: str) -> Recipe:
    recipe = db.get(Recipe, recipe_id)
    if not recipe or recipe.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Recipe not found")
    return recipe


def _create_draft(store: RecipeStore, user: User) -> str:
    personalization = user.personalization
    return store.create_recipe(
        created_by_id=user.id,
        personalization_uid=personalization.uid if personalization else None,
    )


def _prepare_draft(
    db: Session, orchestrator: GenerationOrchestrator, recipe_id: str, user: User, prompt: str
) -> tuple[RecipeOut, GenerationJob]:
    """Load the new draft and snapshot its job; raises AuthorizationError if no key is usable."""
    recipe = _get_live_recipe(db, recipe_id)
    job = orchestrator.prepare_job(recipe, user, prompt)
    if settings.ai_mode.lower() == "gemini" and not job.api_key:
        raise AuthorizationError("missing_ai_key")
    return _recipe_to_out(recipe), job


@router.post("/recipes", response_model=RecipeOut, status_code=202)
@limiter.limit(settings.rate_limit_generate)
async def generate_recipe(
    request: Request,
    payload: GenerateRecipeRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    store: RecipeStore = Depends(get_recipe_store),
):
    """Create an empty draft and schedule its generation.

    Returns immediately; poll GET /recipes/{id} or subscribe to
    /recipes/{id}/events to observe completion.
    """
    if settings.ai_mode.lower() == "gemini" and await asyncio.to_thread(uses_platform_key, user):
        if not hit_platform_key_limit(user.id):
            raise HTTPException(
                status_code=429,
                detail="Too many generations on the shared API key. Add your own key or retry shortly.",
            )

    precheck = await idempotency_precheck(request, user_id=user.id, route_key="generate_recipe")
    if isinstance(precheck, JSONResponse):
        return precheck
    redis_key, req_hash = precheck if precheck else (None, None)

    try:
        recipe_id = await asyncio.to_thread(_create_draft, store, user)
    except PersistenceError as e:
        logger.error(f"Failed to create draft for user {user.id}: {e}")
        await idempotency_clear_key(redis_key)
        raise HTTPException(status_code=500, detail="Failed to create recipe")

    try:
        out, job = await asyncio.to_thread(_prepare_draft, db, orchestrator, recipe_id, user, payload.prompt)
    except AuthorizationError as e:
        logger.warning(f"Generation refused for user {user.id}: {e}")
        try:
            await asyncio.to_thread(store.delete_recipe, recipe_id)
        except PersistenceError as delete_error:
            logger.error(f"Failed to remove refused draft {recipe_id}: {delete_error}")
        await idempotency_clear_key(redis_key)
        raise HTTPException(status_code=409, detail={"error": "missing_ai_key", "message": str(e)})

    orchestrator.schedule(job)
    logger.info(f"Scheduled generation for recipe {recipe_id} (user {user.id})")

    if redis_key:
        await idempotency_store_result(redis_key, req_hash, status=202, body=jsonable_encoder(out))
    return out


@router.get("/recipes/{recipe_id}", response_model=RecipeOut)
def get_recipe(recipe_id: str, db: Session = Depends(get_db)):
    return _recipe_to_out(_get_live_recipe(db, recipe_id))


@router.get("/recipes/{recipe_id}/history", response_model=HistoryOut)
def get_recipe_history(recipe_id: str, db: Session = Depends(get_db)):
    recipe = _get_live_recipe(db, recipe_id)
    if recipe.history is None:
        raise HTTPException(status_code=404, detail="Recipe history not found")
    return recipe.history


@router.delete("/recipes/{recipe_id}", status_code=204)
def delete_recipe(
    recipe_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    store: RecipeStore = Depends(get_recipe_store),
):
    """Soft-delete a recipe. The purge sweep removes it for good after the grace window."""
    recipe = _get_live_recipe(db, recipe_id)
    if recipe.created_by_id != user.id:
        raise HTTPException(status_code=403, detail="Only the owner can delete this recipe")

    try:
        deleted = store.soft_delete_recipe(recipe_id, datetime.now(timezone.utc))
    except PersistenceError as e:
        logger.error(f"Failed to soft-delete recipe {recipe_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete recipe")
    if not deleted:
        raise HTTPException(status_code=404, detail="Recipe not found")

    logger.info(f"Recipe {recipe_id} soft-deleted by user {user.id}")
    return Response(status_code=204)


def _sse(event: dict) -> str:
    return f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"


@router.get("/recipes/{recipe_id}/events")
async def recipe_events(request: Request, recipe_id: str):
    """Server-Sent Events for generation progress via Redis Pub/Sub.

    The stream ends after a terminal event (complete, partial or failed),
    replaying it if the run finished before the client subscribed, or
    once a full generation timeout has passed without one.
    """

    async def event_generator():
        pubsub = await subscribe_recipe(recipe_id)
        loop = asyncio.get_running_loop()
        last_ping = loop.time()
        give_up_at = loop.time() + settings.generation_timeout_seconds

        try:
            # Subscribed first, so nothing published after this read is missed
            last = await get_last_event(recipe_id)
            if last is not None:
                yield _sse(last)
                if last["type"] in TERMINAL_EVENTS:
                    return

            while True:
                if await request.is_disconnected():
                    break

                remaining = give_up_at - loop.time()
                if remaining <= 0:
                    logger.info(f"Recipe {recipe_id} event stream closed without a final event")
                    break

                try:
                    msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=min(1.0, remaining))
                except RedisError as e:
                    logger.error(f"Redis PubSub Error: {e}")
                    await asyncio.sleep(1)
                    continue

                if msg:
                    event = json.loads(msg["data"])
                    yield _sse(event)
                    if event["type"] in TERMINAL_EVENTS:
                        break

                now = loop.time()
                if now - last_ping > 15:
                    yield "event: ping\ndata: {}\n\n"
                    last_ping = now
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()

    return StreamingResponse(event_generator(), media_type="text/event-stream")
