import asyncio
import uuid

import pytest
from cryptography.fernet import Fernet

from recipeforge.deps import get_orchestrator, get_recipe_store
from recipeforge.errors import PersistenceError
from recipeforge.main import app
from recipeforge.models import Recipe
from recipeforge.services import generation
from recipeforge.services.credentials import encrypt_api_key
from recipeforge.services.generation import GenerationOrchestrator
from recipeforge.services.recipe_store import RecipeStore
from recipeforge.settings import settings

from .conftest import TestingSessionLocal, make_user


class RecordingOrchestrator(GenerationOrchestrator):
    """Captures scheduled jobs instead of running them in the app's loop."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.jobs = []

    def schedule(self, job):
        self.jobs.append(job)
        return None


class MemoryImageStore:
    def __init__(self):
        self.objects = {}

    def upload_image(self, data, key):
        self.objects[key] = data
        return f"https://images.test/{key}"

    def delete_image(self, key):
        self.objects.pop(key, None)


async def _no_publish(*args, **kwargs):
    return True


@pytest.fixture
def orch(client):
    orchestrator = RecordingOrchestrator(
        store=RecipeStore(session_factory=TestingSessionLocal),
        image_store=MemoryImageStore(),
        publish=_no_publish,
    )
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    return orchestrator


def test_generate_returns_draft_and_schedules(client, orch, user, db_session):
    response = client.post(
        "/api/recipes", json={"prompt": "quick vegan lunch"}, headers={"X-User-Id": user.id}
    )

    assert response.status_code == 202, response.text
    data = response.json()
    assert data["status"] == "draft"
    assert data["title"] is None
    assert data["image_url"] is None
    assert data["created_by_id"] == user.id

    assert len(orch.jobs) == 1
    assert orch.jobs[0].recipe_id == data["id"]
    assert orch.jobs[0].user_prompt == "quick vegan lunch"
    assert db_session.get(Recipe, data["id"]) is not None


def test_generate_then_run_populates_recipe(client, orch, user):
    created = client.post(
        "/api/recipes", json={"prompt": "quick vegan lunch"}, headers={"X-User-Id": user.id}
    ).json()

    # Mock mode: deterministic recipe and a 1x1 PNG
    outcome = asyncio.run(orch.run(orch.jobs[0]))
    assert outcome.state == generation.COMPLETE

    data = client.get(f"/api/recipes/{created['id']}").json()
    assert data["status"] == "ready"
    assert data["title"] == "Quick Vegan Lunch"
    assert data["instructions"]
    assert data["image_url"].endswith(f"recipes/{created['id']}/image.png")
    assert [t["name"] for t in data["tags"]] == ["mock"]

    history = client.get(f"/api/recipes/{created['id']}/history").json()
    assert history["id"] == data["history_id"]
    assert len(history["entries"]) == 1
    assert history["entries"][0]["prompt"] == "quick vegan lunch"


def test_generate_without_provider_key_is_refused(client, orch, user, db_session, monkeypatch):
    monkeypatch.setattr(settings, "ai_mode", "gemini")
    monkeypatch.setattr(settings, "gemini_api_key", None)

    response = client.post("/api/recipes", json={"prompt": "soup"}, headers={"X-User-Id": user.id})

    assert response.status_code == 409
    assert orch.jobs == []
    # Draft was removed again
    assert db_session.query(Recipe).count() == 0


def test_generate_idempotency_key_replays_draft(client, orch, user, db_session):
    headers = {"X-User-Id": user.id, "Idempotency-Key": str(uuid.uuid4())}

    first = client.post("/api/recipes", json={"prompt": "soup"}, headers=headers)
    second = client.post("/api/recipes", json={"prompt": "soup"}, headers=headers)

    assert first.status_code == 202
    assert second.status_code == 202
    assert first.json()["id"] == second.json()["id"]
    assert len(orch.jobs) == 1
    assert db_session.query(Recipe).count() == 1


def test_generate_idempotency_key_with_different_payload_conflicts(client, orch, user):
    headers = {"X-User-Id": user.id, "Idempotency-Key": str(uuid.uuid4())}

    client.post("/api/recipes", json={"prompt": "soup"}, headers=headers)
    response = client.post("/api/recipes", json={"prompt": "salad"}, headers=headers)

    assert response.status_code == 409


def test_unknown_user_header_is_404(client, orch):
    response = client.post("/api/recipes", json={"prompt": "soup"}, headers={"X-User-Id": "nobody"})
    assert response.status_code == 404


def test_default_user_is_used_without_header(client, orch, user):
    response = client.post("/api/recipes", json={"prompt": "soup"})
    assert response.status_code == 202
    assert response.json()["created_by_id"] == user.id


def test_get_recipe_not_found(client):
    assert client.get("/api/recipes/does-not-exist").status_code == 404


def test_soft_delete_hides_recipe(client, user, db_session):
    recipe_id = RecipeStore(session_factory=TestingSessionLocal).create_recipe(created_by_id=user.id)

    response = client.delete(f"/api/recipes/{recipe_id}", headers={"X-User-Id": user.id})

    assert response.status_code == 204
    assert client.get(f"/api/recipes/{recipe_id}").status_code == 404
    # Row kept until the purge sweep
    db_session.expire_all()
    assert db_session.get(Recipe, recipe_id).deleted_at is not None


def test_only_owner_can_delete(client, user, db_session):
    other = make_user(db_session, username="someone-else")
    recipe_id = RecipeStore(session_factory=TestingSessionLocal).create_recipe(created_by_id=user.id)

    response = client.delete(f"/api/recipes/{recipe_id}", headers={"X-User-Id": other.id})

    assert response.status_code == 403
    assert client.get(f"/api/recipes/{recipe_id}").status_code == 200


def test_dev_seed_is_idempotent(client):
    first = client.post("/api/dev/seed").json()
    second = client.post("/api/dev/seed").json()

    assert first["created"] is True
    assert second["created"] is False
    assert first["user"]["id"] == second["user"]["id"]
    assert first["user"]["personalization"]["unit_system"] == "us_customary"


def test_ready_reports_redis(client):
    data = client.get("/api/ready").json()
    assert data["ok"] is True


class FailingSoftDeleteStore(RecipeStore):
    def soft_delete_recipe(self, recipe_id, when):
        raise PersistenceError("database went away")


def test_soft_delete_failure_is_reported(client, user, db_session):
    recipe_id = RecipeStore(session_factory=TestingSessionLocal).create_recipe(created_by_id=user.id)
    app.dependency_overrides[get_recipe_store] = lambda: FailingSoftDeleteStore(session_factory=TestingSessionLocal)

    response = client.delete(f"/api/recipes/{recipe_id}", headers={"X-User-Id": user.id})

    assert response.status_code == 500
    db_session.expire_all()
    assert db_session.get(Recipe, recipe_id).deleted_at is None


class UndeletableStore(RecipeStore):
    def delete_recipe(self, recipe_id):
        raise PersistenceError("delete refused")


def test_refused_generation_clears_idempotency_key_when_draft_delete_fails(client, orch, user, monkeypatch):
    monkeypatch.setattr(settings, "ai_mode", "gemini")
    monkeypatch.setattr(settings, "gemini_api_key", None)
    app.dependency_overrides[get_recipe_store] = lambda: UndeletableStore(session_factory=TestingSessionLocal)
    headers = {"X-User-Id": user.id, "Idempotency-Key": str(uuid.uuid4())}

    first = client.post("/api/recipes", json={"prompt": "soup"}, headers=headers)
    # A key left in "processing" would answer the retry with a plain 409 string
    retry = client.post("/api/recipes", json={"prompt": "soup"}, headers=headers)

    assert first.status_code == 409
    assert first.json()["detail"]["error"] == "missing_ai_key"
    assert retry.status_code == 409
    assert retry.json()["detail"]["error"] == "missing_ai_key"


def test_platform_key_users_are_throttled(client, orch, user, monkeypatch):
    monkeypatch.setattr(settings, "ai_mode", "gemini")
    monkeypatch.setattr(settings, "gemini_api_key", "platform-key")
    monkeypatch.setattr(settings, "rate_limit_platform_key", "2/minute")
    headers = {"X-User-Id": user.id}

    codes = [client.post("/api/recipes", json={"prompt": "soup"}, headers=headers).status_code for _ in range(3)]

    assert codes == [202, 202, 429]
    assert len(orch.jobs) == 2


def test_personal_key_users_skip_platform_limit(client, orch, user, db_session, monkeypatch):
    monkeypatch.setattr(settings, "ai_mode", "gemini")
    monkeypatch.setattr(settings, "gemini_api_key", "platform-key")
    monkeypatch.setattr(settings, "rate_limit_platform_key", "1/minute")
    monkeypatch.setattr(settings, "credential_encryption_key", Fernet.generate_key().decode())
    user.settings.encrypted_api_key = encrypt_api_key("sk-personal")
    user.settings.use_personal_api_key = True
    db_session.commit()
    headers = {"X-User-Id": user.id}

    codes = [client.post("/api/recipes", json={"prompt": "soup"}, headers=headers).status_code for _ in range(3)]

    assert codes == [202, 202, 202]
    assert orch.jobs[0].api_key == "sk-personal"
