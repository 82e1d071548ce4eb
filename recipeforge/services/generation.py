"""Background recipe generation.

A run takes a persisted draft recipe and fills it in:

1. Text stage (own task): structured recipe from the text model. As soon
   as it arrives the image stage is started as a second task, then the
   recipe fields are written, a history entry appended and tags linked.
2. The supervisor (``GenerationOrchestrator.run``) waits for the text
   stage or the run deadline. Failure or expiry deletes the draft.
3. It then waits for the image stage against the same deadline. Failure
   or expiry leaves the text content in place with no image URL.
   Success uploads the bytes and stores the URL.

Only the supervisor decides on rollback and publishes the outcome; the
stages report back through their task results.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..core.ai_client import GeneratedRecipe, get_generation_client
from ..errors import GenerationTimeoutError, PersistenceError, RecipeValidationError
from ..models import Recipe, UnitSystem, User
from ..realtime import generation_bus
from ..settings import settings
from .credentials import resolve_api_key
from .recipe_store import HistoryEntryData, RecipeFields, RecipeStore, recipe_store
from .storage import ImageStore, get_image_store, image_key
from .tags import associate_tags

logger = logging.getLogger("recipeforge.generation")

# Run states
DRAFT = "draft"
TEXT_GENERATING = "text_generating"
IMAGE_GENERATING = "image_generating"
COMPLETE = "complete"
PARTIAL = "partial"  # text persisted, no image
FAILED_ROLLED_BACK = "failed_rolled_back"
TIMED_OUT_ROLLED_BACK = "timed_out_rolled_back"


@dataclass
class GenerationJob:
    """One in-flight run. Lives only as long as the run."""
    recipe_id: str
    user_id: str
    user_prompt: str
    unit_system: str
    requirements: str
    api_key: Optional[str]
    deadline: Optional[float] = None  # event-loop time
    state: str = DRAFT
    text_persisted: bool = False
    image_task: Optional[asyncio.Task] = None


@dataclass
class RunOutcome:
    recipe_id: str
    state: str
    error: Optional[str] = None
    image_url: Optional[str] = None


def populate_recipe_fields(generated: GeneratedRecipe) -> RecipeFields:
    recipe = generated.recipe
    return RecipeFields(
        title=recipe.title.strip(),
        ingredients=[ingredient.model_dump() for ingredient in recipe.ingredients],
        instructions=[step.strip() for step in recipe.instructions if step.strip()],
        cook_time=recipe.cook_time,
        unit_system=UnitSystem(recipe.unit_system),
        link_suggestions=list(recipe.link_suggestions),
        image_prompt=recipe.image_prompt.strip(),
    )


def validate_recipe_fields(fields: RecipeFields, entry: Optional[HistoryEntryData]) -> None:
    missing = [
        name
        for name, value in (
            ("title", fields.title),
            ("ingredients", fields.ingredients),
            ("instructions", fields.instructions),
            ("image_prompt", fields.image_prompt),
        )
        if not value
    ]
    if entry is None:
        missing.append("history_entry")
    if missing:
        raise RecipeValidationError(f"missing required fields in recipe: {', '.join(missing)}")


def _discard_result(task: asyncio.Task) -> None:
    # Retrieve the outcome of an abandoned task so asyncio does not warn about it
    if not task.cancelled():
        task.exception()


class GenerationOrchestrator:
    def __init__(
        self,
        store: Optional[RecipeStore] = None,
        image_store: Optional[ImageStore] = None,
        client_factory: Optional[Callable[[Optional[str]], Any]] = None,
        timeout_seconds: Optional[float] = None,
        publish: Optional[Callable[..., Awaitable[Any]]] = None,
    ):
        self.store = store or recipe_store
        self._image_store = image_store
        self.client_factory = client_factory or get_generation_client
        self.timeout_seconds = (
            settings.generation_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        self.publish = publish or generation_bus.publish_generation_event
        self._runs: set[asyncio.Task] = set()

    @property
    def image_store(self) -> ImageStore:
        if self._image_store is None:
            self._image_store = get_image_store()
        return self._image_store

    @property
    def active_runs(self) -> int:
        return len(self._runs)

    # --- Entry point ---

    def prepare_job(self, recipe: Recipe, user: User, user_prompt: str) -> GenerationJob:
        """Snapshot everything the run needs while the caller's session is still open."""
        personalization = user.personalization
        unit_system = personalization.unit_system if personalization else UnitSystem.US_CUSTOMARY
        return GenerationJob(
            recipe_id=recipe.id,
            user_id=user.id,
            user_prompt=user_prompt,
            unit_system=unit_system.label,
            requirements=personalization.requirements if personalization else "",
            api_key=resolve_api_key(user),
        )

    def run_generation(self, recipe: Recipe, user: User, user_prompt: str) -> asyncio.Task:
        """Schedule a run for a persisted draft and return without waiting for it."""
        return self.schedule(self.prepare_job(recipe, user, user_prompt))

    def schedule(self, job: GenerationJob) -> asyncio.Task:
        task = asyncio.create_task(self.run(job), name=f"generation:{job.recipe_id}")
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        return task

    async def shutdown(self) -> None:
        """Cancel outstanding runs and wait for them to unwind."""
        runs = list(self._runs)
        for task in runs:
            task.cancel()
        if runs:
            logger.info(f"Cancelling {len(runs)} in-flight generation run(s)")
            await asyncio.gather(*runs, return_exceptions=True)

    # --- Supervisor ---

    def _remaining(self, job: GenerationJob) -> float:
        return max(0.0, job.deadline - asyncio.get_running_loop().time())

    async def run(self, job: GenerationJob) -> RunOutcome:
        job.deadline = asyncio.get_running_loop().time() + self.timeout_seconds
        text_task: Optional[asyncio.Task] = None

        try:
            logger.info(f"Recipe {job.recipe_id} [text] generation started")
            await self.publish(job.recipe_id, generation_bus.GENERATION_STARTED)

            job.state = TEXT_GENERATING
            text_task = asyncio.create_task(self._text_stage(job), name=f"generation:{job.recipe_id}:text")

            done, _ = await asyncio.wait({text_task}, timeout=self._remaining(job))
            if not done:
                self._abandon(text_task)
                return await self._rollback(
                    job,
                    TIMED_OUT_ROLLED_BACK,
                    GenerationTimeoutError(
                        f"incomplete recipe generation: timed out after {self.timeout_seconds:g}s"
                    ),
                )
            try:
                text_task.result()
            except Exception as e:
                return await self._rollback(job, FAILED_ROLLED_BACK, e)

            await self.publish(job.recipe_id, generation_bus.GENERATION_TEXT_READY)
            return await self._await_image(job)

        except asyncio.CancelledError:
            if text_task is not None:
                self._abandon(text_task)
            if job.image_task is not None:
                self._abandon(job.image_task)
            await self._settle_cancelled(job)
            raise

    async def _await_image(self, job: GenerationJob) -> RunOutcome:
        image_task = job.image_task
        if image_task is None:
            return await self._accept_partial(job, RuntimeError("image stage was never started"))

        done, _ = await asyncio.wait({image_task}, timeout=self._remaining(job))
        if not done:
            self._abandon(image_task)
            return await self._accept_partial(
                job,
                GenerationTimeoutError(
                    f"incomplete recipe image generation: timed out after {self.timeout_seconds:g}s"
                ),
            )
        try:
            image_bytes = image_task.result()
        except Exception as e:
            return await self._accept_partial(job, e)

        key = image_key(job.recipe_id)
        try:
            url = await asyncio.to_thread(self.image_store.upload_image, image_bytes, key)
            # Upload and URL write are separate stores; a crash in between leaves
            # an object at the recipe's deterministic key that the next upload
            # overwrites and deletion removes.
            await asyncio.to_thread(self.store.update_recipe_image_url, job.recipe_id, url)
        except (PersistenceError, ValueError) as e:
            return await self._accept_partial(job, e)

        job.state = COMPLETE
        logger.info(f"Recipe {job.recipe_id} [image] stored at {url}; generation complete")
        await self.publish(job.recipe_id, generation_bus.GENERATION_COMPLETE, image_url=url)
        return RunOutcome(recipe_id=job.recipe_id, state=COMPLETE, image_url=url)

    # --- Stages ---

    async def _text_stage(self, job: GenerationJob) -> None:
        client = self.client_factory(job.api_key)
        generated = await client.generate_recipe(job.user_prompt, job.unit_system, job.requirements)

        # Overlap image generation with the remaining text work
        job.state = IMAGE_GENERATING
        job.image_task = asyncio.create_task(
            self._image_stage(client, generated.recipe.image_prompt),
            name=f"generation:{job.recipe_id}:image",
        )

        fields = populate_recipe_fields(generated)
        entry = HistoryEntryData(prompt=generated.prompt, response=generated.response)
        validate_recipe_fields(fields, entry)

        await asyncio.to_thread(self.store.update_recipe_def, job.recipe_id, fields, entry)
        job.text_persisted = True

        try:
            await asyncio.to_thread(associate_tags, self.store, job.recipe_id, generated.recipe.hashtags)
        except PersistenceError as e:
            logger.warning(f"Recipe {job.recipe_id} [tags] association failed: {e}")

    async def _image_stage(self, client, prompt: str) -> bytes:
        return await client.generate_image(prompt)

    # --- Outcomes ---

    async def _rollback(self, job: GenerationJob, state: str, error: BaseException) -> RunOutcome:
        logger.error(f"Recipe {job.recipe_id} [text] failed: {error.__class__.__name__}: {error}")
        if job.image_task is not None:
            self._abandon(job.image_task)

        try:
            deleted = await asyncio.to_thread(self.store.delete_recipe, job.recipe_id)
            if deleted:
                logger.info(f"Recipe {job.recipe_id} [rollback] deleted")
        except PersistenceError as e:
            logger.error(f"Recipe {job.recipe_id} [rollback] failed to delete recipe: {e}")

        job.state = state
        await self.publish(job.recipe_id, generation_bus.GENERATION_FAILED, reason=str(error))
        return RunOutcome(recipe_id=job.recipe_id, state=state, error=str(error))

    async def _accept_partial(self, job: GenerationJob, error: BaseException) -> RunOutcome:
        logger.warning(f"Recipe {job.recipe_id} [image] failed, keeping text: {error.__class__.__name__}: {error}")
        job.state = PARTIAL
        await self.publish(job.recipe_id, generation_bus.GENERATION_PARTIAL, reason=str(error))
        return RunOutcome(recipe_id=job.recipe_id, state=PARTIAL, error=str(error))

    def _abandon(self, task: asyncio.Task) -> None:
        if not task.done():
            task.cancel()
        task.add_done_callback(_discard_result)

    async def _settle_cancelled(self, job: GenerationJob) -> None:
        """Cancelled run (shutdown): drop an unfinished draft, keep persisted text."""
        if job.text_persisted:
            job.state = PARTIAL
            await self.publish(job.recipe_id, generation_bus.GENERATION_PARTIAL, reason="generation cancelled")
            return

        try:
            await asyncio.to_thread(self.store.delete_recipe, job.recipe_id)
            logger.info(f"Recipe {job.recipe_id} [rollback] deleted after cancellation")
        except PersistenceError as e:
            logger.error(f"Recipe {job.recipe_id} [rollback] failed to delete recipe: {e}")
        job.state = FAILED_ROLLED_BACK
        await self.publish(job.recipe_id, generation_bus.GENERATION_FAILED, reason="generation cancelled")


orchestrator = GenerationOrchestrator()
