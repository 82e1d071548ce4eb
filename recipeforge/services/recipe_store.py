"""Persistence boundary used by generation runs and maintenance.

Every call opens and closes its own session: runs execute outside any
request, in worker threads, so nothing here shares a session with a
router.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import SessionLocal
from ..errors import PersistenceError
from ..models import Recipe, RecipeHistory, RecipeHistoryEntry, Tag, UnitSystem

logger = logging.getLogger("recipeforge.store")


@dataclass
class RecipeFields:
    """Generated content written onto a draft in one update."""
    title: Optional[str] = None
    ingredients: Optional[list[dict]] = None
    instructions: Optional[list[str]] = None
    cook_time: Optional[int] = None
    unit_system: Optional[UnitSystem] = None
    link_suggestions: list[str] = field(default_factory=list)
    image_prompt: Optional[str] = None


@dataclass
class HistoryEntryData:
    prompt: str
    response: dict
    type: str = "generate"


class RecipeStore:
    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory

    def _session(self) -> Session:
        if self._session_factory is not None:
            return self._session_factory()
        return SessionLocal()()

    def create_recipe(
        self,
        *,
        created_by_id: str,
        personalization_uid: Optional[str] = None,
        forked_from_id: Optional[str] = None,
    ) -> str:
        """Persist an empty draft with an empty history; returns its id."""
        with self._session() as db:
            try:
                recipe = Recipe(
                    created_by_id=created_by_id,
                    personalization_uid=personalization_uid,
                    forked_from_id=forked_from_id,
                    history=RecipeHistory(),
                )
                db.add(recipe)
                db.commit()
                return recipe.id
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"failed to save recipe record: {e}") from e

    def update_recipe_def(self, recipe_id: str, fields: RecipeFields, entry: HistoryEntryData) -> int:
        """Write generated fields and append one history entry in a single commit.

        Returns the number of history entries after the append.
        """
        with self._session() as db:
            try:
                recipe = db.get(Recipe, recipe_id)
                if recipe is None:
                    raise PersistenceError(f"recipe {recipe_id} no longer exists")

                recipe.title = fields.title
                recipe.ingredients = fields.ingredients
                recipe.instructions = fields.instructions
                recipe.cook_time = fields.cook_time
                recipe.unit_system = fields.unit_system
                recipe.link_suggestions = fields.link_suggestions
                recipe.image_prompt = fields.image_prompt

                if recipe.history is None:
                    recipe.history = RecipeHistory()
                recipe.history.entries.append(
                    RecipeHistoryEntry(
                        position=len(recipe.history.entries),
                        type=entry.type,
                        prompt=entry.prompt,
                        response=entry.response,
                    )
                )
                count = len(recipe.history.entries)
                db.commit()
                return count
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"failed to update recipe {recipe_id}: {e}") from e

    def update_recipe_image_url(self, recipe_id: str, url: str) -> None:
        with self._session() as db:
            try:
                recipe = db.get(Recipe, recipe_id)
                if recipe is None:
                    raise PersistenceError(f"recipe {recipe_id} no longer exists")
                recipe.image_url = url
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"failed to set image url on recipe {recipe_id}: {e}") from e

    def delete_recipe(self, recipe_id: str) -> bool:
        """Hard delete; history and tag links go with it. False if already gone."""
        with self._session() as db:
            try:
                recipe = db.get(Recipe, recipe_id)
                if recipe is None:
                    return False
                db.delete(recipe)
                db.commit()
                return True
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"failed to delete recipe {recipe_id}: {e}") from e

    def find_tag_by_name(self, name: str) -> Optional[Tag]:
        with self._session() as db:
            try:
                return db.execute(select(Tag).where(Tag.name == name)).scalar_one_or_none()
            except SQLAlchemyError as e:
                raise PersistenceError(f"database error while searching for tag {name!r}: {e}") from e

    def create_tag(self, name: str) -> Tag:
        """Insert a tag; if another writer got there first, return theirs."""
        with self._session() as db:
            tag = Tag(name=name)
            db.add(tag)
            try:
                db.commit()
                db.refresh(tag)
                return tag
            except IntegrityError:
                db.rollback()
                existing = db.execute(select(Tag).where(Tag.name == name)).scalar_one_or_none()
                if existing is None:
                    raise PersistenceError(f"failed to create tag {name!r}")
                logger.info(f"Tag {name!r} created concurrently, reusing {existing.id}")
                return existing
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"failed to create tag {name!r}: {e}") from e

    def replace_recipe_tags(self, recipe_id: str, tags: Sequence[Tag]) -> None:
        with self._session() as db:
            try:
                recipe = db.get(Recipe, recipe_id)
                if recipe is None:
                    raise PersistenceError(f"recipe {recipe_id} no longer exists")
                tag_ids = [t.id for t in tags]
                resolved = (
                    db.execute(select(Tag).where(Tag.id.in_(tag_ids))).scalars().all()
                    if tag_ids else []
                )
                recipe.tags = list(resolved)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"failed to update recipe {recipe_id} with tags: {e}") from e

    def soft_delete_recipe(self, recipe_id: str, when: datetime) -> bool:
        with self._session() as db:
            try:
                recipe = db.get(Recipe, recipe_id)
                if recipe is None or recipe.deleted_at is not None:
                    return False
                recipe.deleted_at = when
                db.commit()
                return True
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"failed to soft-delete recipe {recipe_id}: {e}") from e

    def list_expired_recipes(self, deleted_before: datetime) -> list[str]:
        """Ids of recipes soft-deleted at or before `deleted_before`."""
        with self._session() as db:
            try:
                rows = db.execute(
                    select(Recipe.id).where(
                        Recipe.deleted_at.is_not(None),
                        Recipe.deleted_at <= deleted_before,
                    )
                ).scalars().all()
                return list(rows)
            except SQLAlchemyError as e:
                raise PersistenceError(f"failed to list expired recipes: {e}") from e


recipe_store = RecipeStore()
