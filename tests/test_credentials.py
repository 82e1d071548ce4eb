from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from cryptography.fernet import Fernet
from google.genai import errors as genai_errors

from recipeforge.core.ai_client import verify_api_key
from recipeforge.errors import AuthorizationError, ProviderError
from recipeforge.models import User
from recipeforge.services.credentials import decrypt_api_key, encrypt_api_key, resolve_api_key
from recipeforge.settings import settings


@pytest.fixture
def encryption_key(monkeypatch):
    key = Fernet.generate_key().decode()
    monkeypatch.setattr(settings, "credential_encryption_key", key)
    return key


def test_encrypted_key_is_not_plaintext(encryption_key):
    token = encrypt_api_key("sk-personal")
    assert "sk-personal" not in token
    assert decrypt_api_key(token) == "sk-personal"


def test_decrypt_with_wrong_key_is_authorization_error(encryption_key):
    token = encrypt_api_key("sk-personal")
    with pytest.raises(AuthorizationError):
        decrypt_api_key(token, Fernet.generate_key().decode())


def test_missing_encryption_key_is_authorization_error(monkeypatch):
    monkeypatch.setattr(settings, "credential_encryption_key", None)
    with pytest.raises(AuthorizationError):
        encrypt_api_key("sk-personal")


def test_personal_key_preferred_when_opted_in(encryption_key, monkeypatch, user, db_session):
    monkeypatch.setattr(settings, "gemini_api_key", "platform-key")
    user.settings.encrypted_api_key = encrypt_api_key("sk-personal")
    user.settings.use_personal_api_key = True
    db_session.commit()

    assert resolve_api_key(user) == "sk-personal"


def test_platform_key_when_not_opted_in(encryption_key, monkeypatch, user, db_session):
    monkeypatch.setattr(settings, "gemini_api_key", "platform-key")
    user.settings.encrypted_api_key = encrypt_api_key("sk-personal")
    user.settings.use_personal_api_key = False
    db_session.commit()

    assert resolve_api_key(user) == "platform-key"


def test_no_key_anywhere_resolves_to_none(monkeypatch, user):
    monkeypatch.setattr(settings, "gemini_api_key", None)
    assert resolve_api_key(user) is None


def test_settings_endpoint_stores_encrypted_key(client, user, db_session, encryption_key):
    response = client.put(
        "/api/users/me/settings",
        json={"api_key": "sk-personal", "unit_system": "us_customary", "requirements": " no dairy "},
        headers={"X-User-Id": user.id},
    )

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["has_personal_api_key"] is True
    assert data["use_personal_api_key"] is True
    assert data["personalization"]["unit_system"] == "us_customary"
    assert data["personalization"]["requirements"] == "no dairy"

    db_session.expire_all()
    stored = db_session.get(User, user.id).settings.encrypted_api_key
    assert stored != "sk-personal"
    assert decrypt_api_key(stored) == "sk-personal"


def test_settings_endpoint_clears_key(client, user, encryption_key):
    headers = {"X-User-Id": user.id}
    client.put("/api/users/me/settings", json={"api_key": "sk-personal"}, headers=headers)

    data = client.put("/api/users/me/settings", json={"api_key": ""}, headers=headers).json()

    assert data["has_personal_api_key"] is False
    assert data["use_personal_api_key"] is False


def test_cannot_opt_in_without_key(client, user):
    response = client.put(
        "/api/users/me/settings", json={"use_personal_api_key": True}, headers={"X-User-Id": user.id}
    )
    assert response.status_code == 400


def test_get_me_reports_preferences(client, user):
    data = client.get("/api/users/me", headers={"X-User-Id": user.id}).json()

    assert data["username"] == "local"
    assert data["has_personal_api_key"] is False
    assert data["personalization"]["unit_system"] == "metric"


# --- Provider key verification ---

def provider_models(get_side_effect=None):
    """Stand-in genai client whose aio.models.get behaves as given."""
    return SimpleNamespace(aio=SimpleNamespace(models=SimpleNamespace(get=AsyncMock(side_effect=get_side_effect))))


def client_error(code, message="denied"):
    return genai_errors.ClientError(code, {"error": {"code": code, "message": message, "status": "TEST"}})


@pytest.mark.asyncio
async def test_verify_accepts_working_key():
    fake = provider_models()
    assert await verify_api_key("good", client=fake) is True
    fake.aio.models.get.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.parametrize("code", [401, 403])
async def test_verify_rejects_unauthorized_key(code):
    assert await verify_api_key("bad", client=provider_models(client_error(code))) is False


@pytest.mark.asyncio
async def test_verify_rejects_malformed_key():
    error = client_error(400, "API key not valid. Please pass a valid API key.")
    assert await verify_api_key("bad", client=provider_models(error)) is False


@pytest.mark.asyncio
async def test_verify_outage_is_provider_error():
    error = genai_errors.ServerError(503, {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}})
    with pytest.raises(ProviderError):
        await verify_api_key("good", client=provider_models(error))


def test_settings_endpoint_refuses_rejected_key(client, user, db_session, encryption_key, monkeypatch):
    monkeypatch.setattr(settings, "ai_mode", "gemini")
    with patch("recipeforge.core.ai_client.genai.Client", return_value=provider_models(client_error(401))):
        response = client.put(
            "/api/users/me/settings", json={"api_key": "sk-wrong"}, headers={"X-User-Id": user.id}
        )

    assert response.status_code == 409
    assert response.json()["detail"]["error"] == "invalid_api_key"
    db_session.expire_all()
    assert db_session.get(User, user.id).settings.encrypted_api_key is None


def test_settings_endpoint_stores_verified_key(client, user, encryption_key, monkeypatch):
    monkeypatch.setattr(settings, "ai_mode", "gemini")
    with patch("recipeforge.core.ai_client.genai.Client", return_value=provider_models()):
        response = client.put(
            "/api/users/me/settings", json={"api_key": "sk-good"}, headers={"X-User-Id": user.id}
        )

    assert response.status_code == 200
    assert response.json()["api_key_valid"] is True


def test_get_me_reports_stored_key_validity(client, user, db_session, encryption_key, monkeypatch):
    monkeypatch.setattr(settings, "ai_mode", "gemini")
    user.settings.encrypted_api_key = encrypt_api_key("sk-revoked")
    user.settings.use_personal_api_key = True
    db_session.commit()
    headers = {"X-User-Id": user.id}

    with patch("recipeforge.core.ai_client.genai.Client", return_value=provider_models(client_error(403))):
        revoked = client.get("/api/users/me", headers=headers).json()
    with patch("recipeforge.core.ai_client.genai.Client", return_value=provider_models()):
        working = client.get("/api/users/me", headers=headers).json()

    assert revoked["api_key_valid"] is False
    assert working["api_key_valid"] is True
