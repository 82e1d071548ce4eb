"""User settings router.

Endpoints:
- GET /api/users/me - Current user with generation preferences
- PUT /api/users/me/settings - Personal API key and preferences

Personal keys are checked against the provider before they are stored,
and again whenever the user is read back.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import get_current_user
from ..errors import AuthorizationError, ProviderError
from ..models import Personalization, UnitSystem, User, UserSettings
from ..schemas import PersonalizationOut, UserOut, UserSettingsUpdate
from ..services.credentials import (
    decrypt_api_key,
    encrypt_api_key,
    has_personal_api_key,
    verify_personal_key,
)

router = APIRouter()
logger = logging.getLogger("recipeforge.users")


def user_to_out(user: User) -> UserOut:
    personalization = user.personalization
    return UserOut(
        id=user.id,
        username=user.username,
        has_personal_api_key=has_personal_api_key(user),
        use_personal_api_key=bool(user.settings and user.settings.use_personal_api_key),
        personalization=PersonalizationOut(
            uid=personalization.uid,
            unit_system=personalization.unit_system.value,
            requirements=personalization.requirements,
        ) if personalization else None,
    )


def _load_user(user: User) -> tuple[UserOut, Optional[str]]:
    token = user.settings.encrypted_api_key if user.settings else None
    return user_to_out(user), token


async def _check_stored_key(user_id: str, token: str) -> Optional[bool]:
    try:
        return await verify_personal_key(decrypt_api_key(token))
    except AuthorizationError:
        return False
    except ProviderError as e:
        logger.warning(f"Could not verify API key for user {user_id}: {e}")
        return None


@router.get("/users/me", response_model=UserOut)
async def get_me(user: User = Depends(get_current_user)):
    out, token = await asyncio.to_thread(_load_user, user)
    if token:
        out.api_key_valid = await _check_stored_key(user.id, token)
    return out


def _apply_settings(db: Session, user: User, payload: UserSettingsUpdate) -> UserOut:
    if user.settings is None:
        user.settings = UserSettings()
    if user.personalization is None:
        user.personalization = Personalization()

    if payload.api_key is not None:
        if payload.api_key == "":
            user.settings.encrypted_api_key = None
            user.settings.use_personal_api_key = False
        else:
            try:
                user.settings.encrypted_api_key = encrypt_api_key(payload.api_key)
            except AuthorizationError as e:
                raise HTTPException(status_code=409, detail=str(e))
            user.settings.use_personal_api_key = True
            logger.info(f"User {user.id} stored a personal API key")

    if payload.use_personal_api_key is not None:
        if payload.use_personal_api_key and not user.settings.encrypted_api_key:
            raise HTTPException(status_code=400, detail="No personal API key stored")
        user.settings.use_personal_api_key = payload.use_personal_api_key

    if payload.unit_system is not None:
        user.personalization.unit_system = UnitSystem(payload.unit_system)
    if payload.requirements is not None:
        user.personalization.requirements = payload.requirements.strip()

    db.commit()
    db.refresh(user)
    return user_to_out(user)


@router.put("/users/me/settings", response_model=UserOut)
async def update_my_settings(
    payload: UserSettingsUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if payload.api_key:
        try:
            valid = await verify_personal_key(payload.api_key)
        except ProviderError as e:
            logger.warning(f"Could not verify API key for user {user.id}: {e}")
            raise HTTPException(status_code=502, detail="Could not verify the API key with the provider")
        if not valid:
            raise HTTPException(
                status_code=409,
                detail={"error": "invalid_api_key", "message": "The provider rejected this API key"},
            )

    out = await asyncio.to_thread(_apply_settings, db, user, payload)
    if payload.api_key:
        out.api_key_valid = True
    return out
