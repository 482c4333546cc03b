from unittest.mock import MagicMock, Mock, patch

from app.services.alert_service import (
    alert_critical,
    alert_error,
    alert_warning,
    reset_alert_cooldowns,
    send_alert,
    send_security_alert,
)


class TestSendAlert:
    @patch("app.services.alert_service.ALERT_BOT_TOKEN", None)
    @patch("app.services.alert_service.ALERT_CHAT_ID", None)
    def test_returns_false_when_not_configured(self):
        result = send_alert("ERROR", "Test message")
        assert result is False

    @patch("app.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("app.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("app.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client

        mock_response = Mock()
        mock_response.status_code = 200
        mock_client.post.return_value = mock_response

        result = send_alert("ERROR", "Test error message")

        assert result is True
        mock_client.post.assert_called_once()

        call_args = mock_client.post.call_args
        assert "api.telegram.org" in call_args[0][0]
        json_data = call_args[1]["json"]
        assert "chat_id" in json_data
        assert "text" in json_data
        assert "ERROR" in json_data["text"]

    @patch("app.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("app.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("app.services.alert_service.httpx.Client")
    def test_includes_context_in_message(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client

        mock_response = Mock()
        mock_response.status_code = 200
        mock_client.post.return_value = mock_response

        context = {"profile_id": "p-1", "error": "test error"}
        send_alert("ERROR", "Test message", context)

        call_args = mock_client.post.call_args
        json_data = call_args[1]["json"]
        assert "profile_id" in json_data["text"]
        assert "p-1" in json_data["text"]

    @patch("app.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("app.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("app.services.alert_service.httpx.Client")
    def test_returns_false_on_telegram_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client

        mock_response = Mock()
        mock_response.status_code = 400
        mock_client.post.return_value = mock_response

        result = send_alert("ERROR", "Test message")

        assert result is False

    @patch("app.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("app.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("app.services.alert_service.httpx.Client")
    def test_returns_false_on_exception(self, mock_client_class):
        mock_client_class.return_value.__enter__.side_effect = Exception("Network error")

        result = send_alert("ERROR", "Test message")

        assert result is False


class TestAlertShortcuts:
    @patch("app.services.alert_service.send_alert")
    def test_alert_error_calls_send_alert_with_error_level(self, mock_send):
        mock_send.return_value = True

        result = alert_error("Test error", {"key": "value"})

        mock_send.assert_called_once_with("ERROR", "Test error", {"key": "value"})
        assert result is True

    @patch("app.services.alert_service.send_alert")
    def test_alert_critical_calls_send_alert_with_critical_level(self, mock_send):
        mock_send.return_value = True

        result = alert_critical("Critical issue")

        mock_send.assert_called_once_with("CRITICAL", "Critical issue", None)
        assert result is True

    @patch("app.services.alert_service.send_alert")
    def test_alert_warning_calls_send_alert_with_warning_level(self, mock_send):
        mock_send.return_value = True

        result = alert_warning("Warning message")

        mock_send.assert_called_once_with("WARNING", "Warning message", None)
        assert result is True


class TestAlertEmojis:
    @patch("app.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("app.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("app.services.alert_service.httpx.Client")
    def test_error_has_correct_emoji(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_response = Mock()
        mock_response.status_code = 200
        mock_client.post.return_value = mock_response

        send_alert("ERROR", "Test")

        json_data = mock_client.post.call_args[1]["json"]
        assert "❌" in json_data["text"]

    @patch("app.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("app.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("app.services.alert_service.httpx.Client")
    def test_security_has_shield_emoji(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_response = Mock()
        mock_response.status_code = 200
        mock_client.post.return_value = mock_response

        send_alert("SECURITY", "Test")

        json_data = mock_client.post.call_args[1]["json"]
        assert "🛡" in json_data["text"]


class TestSecurityAlertCooldown:
    @patch("app.services.alert_service.send_alert", return_value=True)
    def test_same_key_suppressed_within_cooldown(self, mock_send):
        assert send_security_alert("injection:web:tok", "blocked") is True
        assert send_security_alert("injection:web:tok", "blocked") is False
        assert mock_send.call_count == 1

    @patch("app.services.alert_service.send_alert", return_value=True)
    def test_different_keys_not_suppressed(self, mock_send):
        send_security_alert("injection:web:a", "blocked")
        send_security_alert("injection:web:b", "blocked")
        assert mock_send.call_count == 2

    @patch("app.services.alert_service.send_alert", return_value=True)
    def test_reset_clears_cooldown(self, mock_send):
        send_security_alert("k", "blocked")
        reset_alert_cooldowns()
        assert send_security_alert("k", "blocked") is True

    @patch("app.services.alert_service.SECURITY_ALERT_COOLDOWN_SECONDS", 0)
    @patch("app.services.alert_service.send_alert", return_value=True)
    def test_zero_cooldown_always_sends(self, mock_send):
        send_security_alert("k", "blocked")
        send_security_alert("k", "blocked")
        assert mock_send.call_count == 2
