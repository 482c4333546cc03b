from unittest.mock import MagicMock, Mock, patch

import httpx

from app.services.delivery_service import (
    compute_twilio_signature,
    is_destination_allowed,
    post_webhook,
    push_altegio_client,
    send_whatsapp,
    sign_payload,
    validate_twilio_signature,
)

TWILIO_SETTINGS = {
    "TWILIO_ACCOUNT_SID": "AC123",
    "TWILIO_AUTH_TOKEN": "auth-token",
    "TWILIO_WHATSAPP_FROM": "+14155238886",
}


def _with_twilio(func):
    for name, value in TWILIO_SETTINGS.items():
        func = patch(f"app.services.delivery_service.{name}", value)(func)
    return func


class TestGeofence:
    def test_allowed_prefix(self):
        assert is_destination_allowed("+994 50 123 45 67") is True

    def test_other_country_refused(self):
        assert is_destination_allowed("+7 900 123 45 67") is False

    def test_empty(self):
        assert is_destination_allowed("") is False


class TestSendWhatsapp:
    @patch("app.services.delivery_service.TWILIO_ACCOUNT_SID", None)
    def test_not_configured(self):
        assert send_whatsapp("+994501234567", "hi") is False

    @_with_twilio
    @patch("app.services.delivery_service.httpx.Client")
    def test_sends_form_with_basic_auth(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=201)

        assert send_whatsapp("whatsapp:+994501234567", "Hello") is True

        call_args = mock_client.post.call_args
        assert "Accounts/AC123/Messages.json" in call_args[0][0]
        assert call_args[1]["auth"] == ("AC123", "auth-token")
        assert call_args[1]["data"] == {
            "To": "whatsapp:+994501234567",
            "From": "whatsapp:+14155238886",
            "Body": "Hello",
        }

    @_with_twilio
    @patch("app.services.delivery_service.httpx.Client")
    def test_geofence_blocks_before_http(self, mock_client_class):
        assert send_whatsapp("+79001234567", "Hello") is False
        mock_client_class.assert_not_called()

    @_with_twilio
    @patch("app.services.delivery_service.httpx.Client")
    def test_timeout_returns_false(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.side_effect = httpx.ConnectTimeout("slow")
        assert send_whatsapp("+994501234567", "Hello") is False

    @_with_twilio
    @patch("app.services.delivery_service.httpx.Client")
    def test_error_status_returns_false(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=400, text="bad")
        assert send_whatsapp("+994501234567", "Hello") is False


class TestTwilioSignature:
    @patch("app.services.delivery_service.TWILIO_AUTH_TOKEN", "auth-token")
    def test_valid_signature(self):
        params = {"From": "whatsapp:+994501234567", "Body": "hi"}
        url = "https://api.example.com/whatsapp/webhook"
        signature = compute_twilio_signature(url, params, "auth-token")
        assert validate_twilio_signature(url, params, signature) is True

    @patch("app.services.delivery_service.TWILIO_AUTH_TOKEN", "auth-token")
    def test_invalid_or_missing_signature(self):
        params = {"Body": "hi"}
        url = "https://api.example.com/whatsapp/webhook"
        assert validate_twilio_signature(url, params, "bogus") is False
        assert validate_twilio_signature(url, params, None) is False

    @patch("app.services.delivery_service.TWILIO_AUTH_TOKEN", None)
    def test_skipped_without_token(self):
        assert validate_twilio_signature("https://x", {}, None) is True


class TestPostWebhook:
    @patch("app.services.delivery_service.httpx.Client")
    def test_signed_post(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=204)

        assert post_webhook("https://93.184.216.34/hook", {"a": 1}, secret="s3cret") is True

        kwargs = mock_client.post.call_args[1]
        assert kwargs["headers"]["X-Signature"] == sign_payload(kwargs["content"], "s3cret")
        assert mock_client_class.call_args[1]["follow_redirects"] is False

    @patch("app.services.delivery_service.httpx.Client")
    def test_private_address_refused(self, mock_client_class):
        assert post_webhook("https://10.0.0.5/hook", {"a": 1}) is False
        mock_client_class.assert_not_called()

    @patch("app.services.delivery_service.httpx.Client")
    def test_unsigned_without_secret(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=200)

        post_webhook("https://93.184.216.34/hook", {"a": 1})
        assert "X-Signature" not in mock_client.post.call_args[1]["headers"]


class TestAltegio:
    @patch("app.services.delivery_service.httpx.Client")
    def test_creates_client(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=201)

        assert push_altegio_client("42", "partner", "user", "Aysel", "+994 50 123 45 67") is True

        call_args = mock_client.post.call_args
        assert call_args[0][0].endswith("/clients/42")
        assert call_args[1]["headers"]["Authorization"] == "Bearer partner, User user"
        assert call_args[1]["json"]["phone"] == "994501234567"
