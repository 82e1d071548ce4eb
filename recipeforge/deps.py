"""FastAPI dependencies for RecipeForge API.

Provides:
- Database session dependency
- User resolution (header -> env -> 404)

Authentication happens upstream; by the time a request reaches this
service the caller's identity is carried in X-User-Id.
"""

import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from .db import get_db
from .models import User
from .services.generation import GenerationOrchestrator, orchestrator
from .services.recipe_store import RecipeStore, recipe_store
from .settings import settings


def get_current_user(
    db: Session = Depends(get_db),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> User:
    """Resolve the acting user.

    Resolution order:
    1. X-User-Id header (if present), as UUID then as username; unknown -> 404
    2. settings.default_username
    """
    user: Optional[User] = None

    if x_user_id:
        try:
            user = db.get(User, str(uuid.UUID(x_user_id)))
        except ValueError:
            user = db.query(User).filter(User.username == x_user_id).first()

        if user:
            return user

        # An explicit but unknown id must not fall back to the default user
        raise HTTPException(status_code=404, detail=f"User '{x_user_id}' not found")

    if settings.default_username:
        user = db.query(User).filter(User.username == settings.default_username).first()
        if user:
            return user

    raise HTTPException(
        status_code=404,
        detail="No user found. Run POST /api/dev/seed to create one."
    )


def get_orchestrator() -> GenerationOrchestrator:
    return orchestrator


def get_recipe_store() -> RecipeStore:
    return recipe_store
