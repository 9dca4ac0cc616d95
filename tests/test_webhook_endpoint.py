from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from sari.database import get_db
from sari.errors import PersistenceFailure
from sari.main import app
from sari.models import Message


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    with patch("sari.routers.webhook.run_reply_pipeline") as mock_reply:
        test_client = TestClient(app)
        test_client.mock_reply = mock_reply
        yield test_client
    app.dependency_overrides.clear()


class TestWhatsAppWebhook:
    def test_accepts_and_schedules_reply(self, client, db, connection, make_payload):
        response = client.post("/webhooks/whatsapp", json=make_payload(id_message="W-1"))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["status"] == "accepted"
        message = db.query(Message).one()
        client.mock_reply.assert_called_once_with(message.id, True)

    def test_same_message_twice_is_stored_once(self, client, db, connection, make_payload):
        payload = make_payload(id_message="W-2")

        first = client.post("/webhooks/whatsapp", json=payload)
        second = client.post("/webhooks/whatsapp", json=payload)

        assert first.json()["status"] == "accepted"
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"
        assert db.query(Message).count() == 1
        assert client.mock_reply.call_count == 1

    def test_legacy_path(self, client, db, connection, make_payload):
        response = client.post("/api/webhooks/greenapi", json=make_payload(id_message="W-3"))
        assert response.json()["status"] == "accepted"

    def test_invalid_json(self, client, connection):
        response = client.post(
            "/webhooks/whatsapp", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400

    def test_malformed_payload(self, client, connection, make_payload):
        payload = make_payload()
        payload["senderData"] = {}
        response = client.post("/webhooks/whatsapp", json=payload)
        assert response.status_code == 400

    @pytest.mark.parametrize("field, value", [("messageData", ["not", "an", "object"]), ("senderData", "9665@c.us")])
    def test_payload_section_with_wrong_shape(self, client, db, connection, make_payload, field, value):
        payload = make_payload()
        payload[field] = value

        response = client.post("/webhooks/whatsapp", json=payload)

        assert response.status_code == 400
        assert db.query(Message).count() == 0
        client.mock_reply.assert_not_called()

    def test_unknown_connection_is_acknowledged(self, client, connection, make_payload):
        response = client.post("/webhooks/whatsapp", json=make_payload(wid="966599999999"))

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["status"] == "unknown_connection"
        client.mock_reply.assert_not_called()

    def test_non_text_is_ignored(self, client, db, connection, make_payload):
        response = client.post("/webhooks/whatsapp", json=make_payload(type_message="imageMessage"))

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert db.query(Message).count() == 0

    def test_persistence_failure_returns_503(self, client, connection, make_payload):
        with patch("sari.routers.webhook.ingest", side_effect=PersistenceFailure("db down")):
            response = client.post("/webhooks/whatsapp", json=make_payload())
        assert response.status_code == 503


class TestWebhookSecret:
    @patch("sari.routers.webhook.settings.webhook_secret", "s3cret")
    def test_rejects_missing_secret(self, client, connection, make_payload):
        response = client.post("/webhooks/whatsapp", json=make_payload())
        assert response.status_code == 401

    @patch("sari.routers.webhook.settings.webhook_secret", "s3cret")
    def test_accepts_bearer_token(self, client, connection, make_payload):
        response = client.post(
            "/webhooks/whatsapp", json=make_payload(), headers={"Authorization": "Bearer s3cret"}
        )
        assert response.status_code == 200

    @patch("sari.routers.webhook.settings.webhook_secret", "s3cret")
    def test_accepts_header_secret(self, client, connection, make_payload):
        response = client.post("/webhooks/whatsapp", json=make_payload(), headers={"X-Webhook-Secret": "s3cret"})
        assert response.status_code == 200


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_webhook_health(self, client):
        assert client.get("/webhooks/health").json()["status"] == "ok"
