from app.services.pii_service import (
    CARD_REDACTED,
    EMAIL_REDACTED,
    ID_REDACTED,
    PHONE_REDACTED,
    contact_spans,
    contains_pii,
    redact_pii,
)


class TestRedactPii:
    def test_redacts_email(self):
        assert redact_pii("write to anna@example.com please") == f"write to {EMAIL_REDACTED} please"

    def test_redacts_azerbaijani_phone(self):
        result = redact_pii("my number is +994 50 123 45 67")
        assert "50 123" not in result
        assert PHONE_REDACTED in result

    def test_redacts_local_phone(self):
        result = redact_pii("call 050 123 45 67")
        assert PHONE_REDACTED in result
        assert "123 45 67" not in result

    def test_redacts_card_before_phone(self):
        result = redact_pii("card 4169 7388 1234 5678")
        assert CARD_REDACTED in result
        assert PHONE_REDACTED not in result

    def test_redacts_fin_code(self):
        assert ID_REDACTED in redact_pii("my FIN 5ABCDEFG")

    def test_plain_text_unchanged(self):
        text = "How much is a haircut on Saturday?"
        assert redact_pii(text) == text

    def test_empty_input(self):
        assert redact_pii("") == ""
        assert redact_pii(None) == ""


class TestContainsPii:
    def test_detects_email(self):
        assert contains_pii("me@site.org") is True

    def test_no_pii(self):
        assert contains_pii("hello there") is False


class TestContactSpans:
    def test_email_and_phone_in_order(self):
        spans = contact_spans("call +994 50 123 45 67 or mail anna@example.com")
        assert spans == ["+994 50 123 45 67", "anna@example.com"]

    def test_card_is_not_a_contact(self):
        assert contact_spans("card 4111 1111 1111 1111") == []

    def test_plain_text(self):
        assert contact_spans("what time do you open?") == []
        assert contact_spans("") == []
