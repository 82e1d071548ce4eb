import logging
from typing import Iterable

from ..models import Tag

logger = logging.getLogger("recipeforge.tags")


def normalize_tag(raw: str) -> str:
    """'#Spicy Chicken' -> 'spicychicken'."""
    cleaned = "".join(raw.lower().split())
    return cleaned.lstrip("#")


def normalize_tags(raw_tags: Iterable[str]) -> list[str]:
    """Normalize, drop empties, dedupe keeping first-seen order."""
    seen: dict[str, None] = {}
    for raw in raw_tags:
        name = normalize_tag(raw)
        if name:
            seen.setdefault(name, None)
    return list(seen)


def associate_tags(store, recipe_id: str, raw_tags: Iterable[str]) -> list[Tag]:
    """Find or create each tag, then replace the recipe's tag set with them.

    `store` needs find_tag_by_name / create_tag / replace_recipe_tags.
    """
    resolved: list[Tag] = []
    for name in normalize_tags(raw_tags):
        tag = store.find_tag_by_name(name)
        if tag is None:
            tag = store.create_tag(name)
            logger.info(f"Created tag {name!r}")
        resolved.append(tag)

    store.replace_recipe_tags(recipe_id, resolved)
    return resolved
