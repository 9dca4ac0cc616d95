from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest

from sari.services import alert_service
from sari.services.alert_service import alert_error, alert_warning, format_alert, send_alert


@pytest.fixture(autouse=True)
def reset_cooldowns():
    alert_service._last_sent.clear()
    yield
    alert_service._last_sent.clear()


@pytest.fixture
def telegram():
    with patch("sari.services.alert_service.settings.alert_bot_token", "test-token"), patch(
        "sari.services.alert_service.settings.alert_chat_id", "test-chat"
    ), patch("sari.services.alert_service.httpx.Client") as mock_client_class:
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=200)
        yield mock_client


class TestSendAlert:
    @patch("sari.services.alert_service.settings.alert_bot_token", None)
    @patch("sari.services.alert_service.settings.alert_chat_id", None)
    def test_returns_false_when_not_configured(self):
        assert send_alert("ERROR", "Test message") is False

    def test_sends_alert_to_telegram(self, telegram):
        result = send_alert("ERROR", "Delivery failed", {"conversation_id": "c-1"})

        assert result is True
        call_args = telegram.post.call_args
        assert "api.telegram.org/bottest-token" in call_args[0][0]
        json_data = call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "Sari ERROR" in json_data["text"]
        assert "conversation_id: c-1" in json_data["text"]

    def test_network_error_returns_false(self, telegram):
        telegram.post.side_effect = httpx.ConnectError("unreachable")
        assert send_alert("WARNING", "Something") is False

    def test_rejected_by_telegram(self, telegram):
        telegram.post.return_value = Mock(status_code=400)
        assert send_alert("WARNING", "Something") is False


class TestCooldown:
    def test_repeat_is_suppressed(self, telegram):
        context = {"connection_id": "conn-1", "receipt_id": 1}

        assert send_alert("ERROR", "Polling gave up", context) is True
        assert send_alert("ERROR", "Polling gave up", {**context, "receipt_id": 2}) is False
        assert telegram.post.call_count == 1

    def test_other_connection_still_alerts(self, telegram):
        assert send_alert("ERROR", "Polling gave up", {"connection_id": "conn-1"}) is True
        assert send_alert("ERROR", "Polling gave up", {"connection_id": "conn-2"}) is True

    def test_expires(self, telegram):
        with patch("sari.services.alert_service.settings.alert_cooldown_seconds", 0):
            assert send_alert("WARNING", "LLM generation failed") is True
            assert send_alert("WARNING", "LLM generation failed") is True

    def test_expired_entries_are_pruned(self, telegram):
        with patch("sari.services.alert_service.time.monotonic", side_effect=[0.0, 10.0, 1000.0]):
            send_alert("ERROR", "Polling gave up", {"connection_id": "conn-1"})
            send_alert("ERROR", "Polling gave up", {"connection_id": "conn-2"})
            send_alert("WARNING", "LLM generation failed", {"merchant_id": "m-1"})

        assert list(alert_service._last_sent) == [("WARNING", "LLM generation failed", "m-1", "None")]


class TestFormatAlert:
    def test_level_emoji(self):
        assert format_alert("ERROR", "down").startswith("❌ *Sari ERROR*")

    def test_unknown_level(self):
        assert format_alert("DEBUG", "x").startswith("📢")


@patch("sari.services.alert_service.send_alert")
def test_level_shortcuts(mock_send):
    alert_error("e")
    alert_warning("w", {"k": "v"})

    assert [c.args[0] for c in mock_send.call_args_list] == ["ERROR", "WARNING"]
