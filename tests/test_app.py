"""Tests for the HTTP surface."""

import os
import tempfile
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from persona_sms.config import AppConfig, validate_config
from persona_sms.server import create_app
from persona_sms.services.generation import GenerationResult

ADMIN_KEY = "admin-secret"


@pytest.fixture
def app_config():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield validate_config(
            {
                "server": {"admin_api_key": ADMIN_KEY},
                "storage": {"sqlite_db_path": os.path.join(tmpdir, "app.db")},
                "context": {"token_model": None},
                "workers": {"worker_count": 1},
                "personas": [
                    {
                        "slug": "mia",
                        "name": "Mia",
                        "phone_number": "+15550000001",
                        "personality_prompt": "You are Mia.",
                    }
                ],
            }
        )


@pytest.fixture
def collaborators():
    generator = AsyncMock()
    generator.generate.return_value = GenerationResult(text="hiii")
    delivery = AsyncMock()
    return generator, delivery


@pytest.fixture
def client(app_config: AppConfig, collaborators):
    generator, delivery = collaborators
    app = create_app(app_config, generator=generator, delivery=delivery)
    with TestClient(app) as test_client:
        yield test_client


def admin(**headers):
    return {"x-api-key": ADMIN_KEY, **headers}


class TestSmsWebhook:
    def test_invalid_json_rejected(self, client):
        response = client.post(
            "/webhook/sms", content=b"{not json", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400

    def test_missing_fields_rejected(self, client):
        response = client.post("/webhook/sms", json={"content": "hi"})
        assert response.status_code == 400

    def test_unidentifiable_message_rejected(self, client):
        response = client.post(
            "/webhook/sms",
            json={"from_number": "+15551234567", "to_number": "+15550000001", "content": "ok"},
        )
        assert response.status_code == 400

    def test_unknown_destination_acknowledged(self, client):
        response = client.post(
            "/webhook/sms",
            json={
                "from_number": "+15551234567",
                "to_number": "+19999999999",
                "content": "hi",
                "date_sent": "2026-03-01T10:00:00Z",
            },
        )
        assert response.status_code == 200
        assert response.text == "OK"

    def test_message_acknowledged_and_answered(self, app_config, collaborators):
        generator, delivery = collaborators
        app = create_app(app_config, generator=generator, delivery=delivery)
        with TestClient(app) as client:
            response = client.post(
                "/webhook/sms",
                json={
                    "from_number": "+15551234567",
                    "to_number": "+15550000001",
                    "content": "hello?",
                    "message_handle": "abc-1",
                },
            )
            assert response.status_code == 200
            assert response.text == "OK"

            users = client.get("/debug/users", headers=admin()).json()
            assert len(users) == 1
            assert users[0]["persona_name"] == "Mia"
            assert users[0]["free_messages"] == 1

        # Shutdown drains the worker pool
        delivery.send.assert_awaited_once()
        assert delivery.send.await_args.args[2] == "hiii"


class TestAdminRoutes:
    def test_cors_preflight(self, client):
        response = client.options(
            "/debug/users",
            headers={
                "origin": "https://dashboard.example.com",
                "access-control-request-method": "GET",
                "access-control-request-headers": "x-api-key",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        assert "x-api-key" in response.headers["access-control-allow-headers"].lower()

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.parametrize("path", ["/debug/personas", "/debug/users", "/debug/queue"])
    def test_requires_api_key(self, client, path):
        assert client.get(path).status_code == 401
        assert client.get(path, headers={"x-api-key": "wrong"}).status_code == 401

    def test_personas_seeded(self, client):
        personas = client.get("/debug/personas", headers=admin()).json()
        assert [p["slug"] for p in personas] == ["mia"]
        assert personas[0]["total_users"] == 0

    def test_scheduled_maintenance(self, client):
        assert client.post("/internal/scheduled").status_code == 401
        response = client.post("/internal/scheduled", headers=admin())
        assert response.status_code == 200
        assert response.json()["results"] == {"subscription_expiry_sweep": 0, "prune_delivery_keys": 0}


class TestBillingWebhook:
    def test_invalid_event_rejected(self, client):
        assert client.post("/webhook/billing", json={"type": "nonsense"}).status_code == 400

    def test_unknown_customer(self, client):
        response = client.post(
            "/webhook/billing",
            json={"id": "evt_1", "type": "payment_succeeded", "customer_id": "cus_missing"},
        )
        assert response.status_code == 200
        assert response.json() == {"status": "unknown_user", "user_status": None}
