"""Provider credential handling.

Personal keys are stored as Fernet tokens; a run resolves its key once at
entry: the user's own key when they opted in and have one, otherwise the
platform key.
"""

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from ..core.ai_client import verify_api_key
from ..errors import AuthorizationError
from ..models import User
from ..settings import settings

logger = logging.getLogger("recipeforge.credentials")


def _fernet(encryption_key: Optional[str] = None) -> Fernet:
    key = encryption_key or settings.credential_encryption_key
    if not key:
        raise AuthorizationError("CREDENTIAL_ENCRYPTION_KEY is not configured")
    return Fernet(key.encode() if isinstance(key, str) else key)


def encrypt_api_key(api_key: str, encryption_key: Optional[str] = None) -> str:
    return _fernet(encryption_key).encrypt(api_key.encode()).decode()


def decrypt_api_key(token: str, encryption_key: Optional[str] = None) -> str:
    try:
        return _fernet(encryption_key).decrypt(token.encode()).decode()
    except InvalidToken as e:
        raise AuthorizationError("stored API key could not be decrypted") from e


def has_personal_api_key(user: User) -> bool:
    return bool(user.settings and user.settings.encrypted_api_key)


def uses_platform_key(user: User) -> bool:
    user_settings = user.settings
    return not (
        user_settings and user_settings.use_personal_api_key and user_settings.encrypted_api_key
    )


def resolve_api_key(user: User, encryption_key: Optional[str] = None) -> Optional[str]:
    """Key for this user's generation runs, or None if nothing is configured."""
    user_settings = user.settings
    if user_settings and user_settings.use_personal_api_key and user_settings.encrypted_api_key:
        return decrypt_api_key(user_settings.encrypted_api_key, encryption_key)

    if not settings.gemini_api_key:
        logger.warning(f"No platform API key configured; user {user.id} has no personal key")
    return settings.gemini_api_key


async def verify_personal_key(api_key: str) -> bool:
    """Provider check for a user's key; mock mode never calls out."""
    if settings.ai_mode.lower() != "gemini":
        return True
    return await verify_api_key(api_key)
