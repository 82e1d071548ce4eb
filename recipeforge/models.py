"""SQLAlchemy ORM models for RecipeForge.

Tables:
- users / user_settings / personalizations: account plus generation preferences
- recipes: generated recipes (draft until the generation run populates them)
- recipe_histories / recipe_history_entries: append-only prompt/response log per recipe
- tags / recipe_tags: normalized hashtags shared across recipes
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from sqlalchemy.types import JSON

from .db import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB, "postgresql")


class UnitSystem(str, enum.Enum):
    US_CUSTOMARY = "us_customary"
    METRIC = "metric"

    @property
    def label(self) -> str:
        """Wording used in prompts."""
        if self is UnitSystem.METRIC:
            return "Metric"
        return "US Customary"


recipe_tags = Table(
    "recipe_tags",
    Base.metadata,
    Column("recipe_id", String(36), ForeignKey("recipes.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    """Account owning recipes. Auth and password handling live elsewhere."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    username: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    settings: Mapped[Optional["UserSettings"]] = relationship(
        "UserSettings", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    personalization: Mapped[Optional["Personalization"]] = relationship(
        "Personalization", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    recipes: Mapped[list["Recipe"]] = relationship(
        "Recipe", back_populates="created_by", foreign_keys="[Recipe.created_by_id]"
    )


class UserSettings(Base):
    __tablename__ = "user_settings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    use_personal_api_key: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Fernet token, never the plain key
    encrypted_api_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    user: Mapped["User"] = relationship("User", back_populates="settings")


class Personalization(Base):
    """Generation preferences applied to every recipe a user requests."""
    __tablename__ = "personalizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    uid: Mapped[str] = mapped_column(String(36), nullable=False, default=generate_uuid)
    unit_system: Mapped[UnitSystem] = mapped_column(
        Enum(UnitSystem, native_enum=False, length=20),
        nullable=False,
        default=UnitSystem.US_CUSTOMARY,
    )
    requirements: Mapped[str] = mapped_column(Text, nullable=False, default="")

    user: Mapped["User"] = relationship("User", back_populates="personalization")


class Tag(Base):
    """Normalized hashtag, unique by name."""
    __tablename__ = "tags"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)

    recipes: Mapped[list["Recipe"]] = relationship(
        "Recipe", secondary=recipe_tags, back_populates="tags"
    )


class Recipe(Base):
    """Generated recipe.

    Created empty (draft) by the request handler, populated by the
    generation run, deleted by the run when text generation fails.
    """
    __tablename__ = "recipes"
    __table_args__ = (
        Index("ix_recipes_created_by_id", "created_by_id"),
        Index("ix_recipes_deleted_at", "deleted_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    created_by_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    personalization_uid: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    title: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    # [{"name": ..., "unit": ..., "amount": ...}]
    ingredients: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    instructions: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    cook_time: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    unit_system: Mapped[Optional[UnitSystem]] = mapped_column(
        Enum(UnitSystem, native_enum=False, length=20), nullable=True
    )
    link_suggestions: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    image_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    forked_from_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("recipes.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_by: Mapped["User"] = relationship(
        "User", back_populates="recipes", foreign_keys=[created_by_id]
    )
    forked_from: Mapped[Optional["Recipe"]] = relationship(
        "Recipe", remote_side="Recipe.id", foreign_keys=[forked_from_id]
    )
    history: Mapped[Optional["RecipeHistory"]] = relationship(
        "RecipeHistory", back_populates="recipe", uselist=False, cascade="all, delete-orphan"
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary=recipe_tags, back_populates="recipes", order_by="Tag.name"
    )

    @property
    def is_draft(self) -> bool:
        return not self.title and not self.instructions


class RecipeHistory(Base):
    __tablename__ = "recipe_histories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    recipe_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipes.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    recipe: Mapped["Recipe"] = relationship("Recipe", back_populates="history")
    entries: Mapped[list["RecipeHistoryEntry"]] = relationship(
        "RecipeHistoryEntry", back_populates="history", cascade="all, delete-orphan",
        order_by="RecipeHistoryEntry.position"
    )


class RecipeHistoryEntry(Base):
    """One prompt/response turn. Appended, never rewritten."""
    __tablename__ = "recipe_history_entries"
    __table_args__ = (
        Index("ix_recipe_history_entries_history_id", "history_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    history_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipe_histories.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="generate")
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    response: Mapped[dict] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    history: Mapped["RecipeHistory"] = relationship("RecipeHistory", back_populates="entries")
