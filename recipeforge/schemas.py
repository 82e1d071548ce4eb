"""Pydantic schemas for RecipeForge API.

Request/response models for:
- Users and generation preferences
- Recipes (with tags and history)
- The structured recipe definition requested from the language model
"""

from datetime import datetime
from typing import Optional, Literal

from pydantic import BaseModel, Field


# --- Structured model output ---

IngredientUnit = Literal[
    "grams", "ml", "cups", "pieces", "teaspoons", "tablespoons", "ounces",
    "pounds", "pinch", "dash", "quarts", "gallons", "liters",
]


class Ingredient(BaseModel):
    name: str
    unit: IngredientUnit
    amount: float


class RecipeDef(BaseModel):
    """Shape the text model must return for a recipe."""
    title: str = Field(..., description="Name of the recipe")
    ingredients: list[Ingredient]
    instructions: list[str] = Field(..., description="Steps to prepare the recipe (no numbering)")
    cook_time: int = Field(..., ge=0, description="Total time to prepare the recipe in minutes")
    image_prompt: str = Field(..., description="Prompt to generate an image for the recipe")
    unit_system: Literal["metric", "us_customary"]
    hashtags: list[str] = Field(
        default_factory=list,
        description=(
            "Relevant hashtags, alphanumeric only, no '#'. Exclude implied words such as "
            "'recipe', 'homemade' or 'DIY'. camelCase when more than one word."
        ),
    )
    link_suggestions: list[str] = Field(
        default_factory=list,
        description="Names of companion recipes (sauces, sides, breads) worth generating separately",
    )


# --- Users ---

class PersonalizationOut(BaseModel):
    uid: str
    unit_system: str
    requirements: str

    class Config:
        from_attributes = True


class UserOut(BaseModel):
    id: str
    username: str
    has_personal_api_key: bool = False
    use_personal_api_key: bool = False
    # None when there is no personal key or it could not be checked
    api_key_valid: Optional[bool] = None
    personalization: Optional[PersonalizationOut] = None


class UserSettingsUpdate(BaseModel):
    # None leaves the stored key untouched, "" clears it
    api_key: Optional[str] = None
    use_personal_api_key: Optional[bool] = None
    unit_system: Optional[Literal["metric", "us_customary"]] = None
    requirements: Optional[str] = Field(None, max_length=2000)


# --- Recipes ---

class GenerateRecipeRequest(BaseModel):
    prompt: str = Field("", max_length=2000)


class TagOut(BaseModel):
    id: str
    name: str

    class Config:
        from_attributes = True


class RecipeOut(BaseModel):
    id: str
    title: Optional[str]
    ingredients: Optional[list[Ingredient]]
    instructions: Optional[list[str]]
    cook_time: Optional[int]
    unit_system: Optional[str]
    link_suggestions: Optional[list[str]]
    image_prompt: Optional[str]
    image_url: Optional[str]
    tags: list[TagOut] = []
    created_by_id: str
    created_by_username: Optional[str] = None
    history_id: Optional[str] = None
    forked_from_id: Optional[str] = None
    forked_from_title: Optional[str] = None
    personalization_uid: Optional[str] = None
    status: str  # draft | ready
    created_at: datetime


class HistoryEntryOut(BaseModel):
    id: str
    position: int
    type: str
    prompt: str
    response: dict
    created_at: datetime

    class Config:
        from_attributes = True


class HistoryOut(BaseModel):
    id: str
    recipe_id: str
    entries: list[HistoryEntryOut] = []

    class Config:
        from_attributes = True


# --- Dev Seed ---

class SeedResponse(BaseModel):
    user: UserOut
    created: bool
