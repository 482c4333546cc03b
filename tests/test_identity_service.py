from unittest.mock import patch

import pytest

from app.models import ChannelConversation
from app.services.identity_service import (
    TELEGRAM,
    WEB,
    WHATSAPP,
    extract_greeting_slug,
    normalize_address,
    reset_session,
    resolve,
    touch_outbound,
)


class TestNormalizeAddress:
    def test_whatsapp_prefix_and_plus_removed(self):
        assert normalize_address(WHATSAPP, "whatsapp:+994 50 111 22 33") == "994501112233"

    def test_other_channels_trimmed_only(self):
        assert normalize_address(TELEGRAM, " 12345 ") == "12345"


class TestExtractGreetingSlug:
    def test_hello_slug(self):
        assert extract_greeting_slug("Hello Salon-A!") == "salon-a"

    def test_salam_slug(self):
        assert extract_greeting_slug("salam beauty") == "beauty"

    def test_no_greeting(self):
        assert extract_greeting_slug("what are your prices?") is None


class TestResolve:
    def test_unknown_channel_raises(self, db):
        with pytest.raises(ValueError):
            resolve(db, "sms", "123")

    def test_nothing_matches_returns_none_and_writes_nothing(self, db, make_profile):
        make_profile()
        assert resolve(db, WHATSAPP, "whatsapp:+994501112233", text="hi") is None
        assert db.query(ChannelConversation).count() == 0

    def test_greeting_binds_profile(self, db, make_profile):
        profile = make_profile(slug="salon-a")
        identity = resolve(db, WHATSAPP, "whatsapp:+994501112233", text="Hello salon-a")
        assert identity.profile_id == profile.id
        assert identity.is_new_session is True
        assert identity.session_id.startswith("wa-994501112233-")

    def test_continuity_for_same_address(self, db, make_profile):
        make_profile(slug="salon-a")
        first = resolve(db, WHATSAPP, "whatsapp:+994501112233", text="Hello salon-a")
        second = resolve(db, WHATSAPP, "whatsapp:+994501112233", text="how much is a haircut?")
        assert second.session_id == first.session_id
        assert second.is_new_session is False

    def test_different_number_gets_different_session(self, db, make_profile):
        make_profile(slug="salon-a")
        first = resolve(db, WHATSAPP, "+994501112233", text="Hello salon-a")
        other = resolve(db, WHATSAPP, "+994509998877", text="Hello salon-a")
        assert other.session_id != first.session_id

    def test_master_fallback_requires_channel_enabled(self, db, make_profile):
        master = make_profile(slug="master", is_master=True, whatsapp_chat_enabled=False)
        assert resolve(db, WHATSAPP, "+994501112233", text="hi") is None

        master.whatsapp_chat_enabled = True
        db.commit()
        identity = resolve(db, WHATSAPP, "+994501112233", text="hi")
        assert identity.profile_id == master.id

    def test_web_master_fallback(self, db, make_profile):
        master = make_profile(slug="master", is_master=True)
        identity = resolve(db, WEB, "browser-token-1")
        assert identity.profile_id == master.id
        assert identity.session_id.startswith("web-browser-token-1-")

    def test_explicit_slug_switches_profile(self, db, make_profile):
        make_profile(slug="salon-a")
        second = make_profile(slug="salon-b")
        first = resolve(db, TELEGRAM, "777", explicit_slug="salon-a")
        switched = resolve(db, TELEGRAM, "777", text="hi", explicit_slug="salon-b")
        assert switched.profile_id == second.id
        assert switched.session_id != first.session_id
        assert switched.is_new_session is True

    def test_inactive_bound_profile_falls_back(self, db, make_profile):
        bound = make_profile(slug="salon-a")
        master = make_profile(slug="master", is_master=True, telegram_chat_enabled=True)
        resolve(db, TELEGRAM, "777", explicit_slug="salon-a")
        bound.is_active = False
        db.commit()
        identity = resolve(db, TELEGRAM, "777", text="hello again")
        assert identity.profile_id == master.id

    def test_greeting_ignores_profile_with_channel_disabled(self, db, make_profile):
        make_profile(slug="salon-a", whatsapp_chat_enabled=False)
        assert resolve(db, WHATSAPP, "+994501112233", text="Salam salon-a") is None
        assert db.query(ChannelConversation).count() == 0

    def test_slug_hint_ignores_profile_with_channel_disabled(self, db, make_profile):
        make_profile(slug="salon-a", telegram_chat_enabled=False)
        assert resolve(db, TELEGRAM, "777", explicit_slug="salon-a") is None

    def test_binding_dropped_when_channel_disabled(self, db, make_profile):
        bound = make_profile(slug="salon-a")
        resolve(db, WHATSAPP, "+994501112233", text="Hello salon-a")
        bound.whatsapp_chat_enabled = False
        db.commit()
        assert resolve(db, WHATSAPP, "+994501112233", text="price?") is None

    def test_web_ignores_channel_flags(self, db, make_profile):
        profile = make_profile(slug="salon-a", whatsapp_chat_enabled=False, telegram_chat_enabled=False)
        assert resolve(db, WEB, "tok-1", explicit_slug="salon-a").profile_id == profile.id

    @patch("app.services.identity_service.SESSION_INACTIVITY_HOURS", 1)
    def test_stale_binding_gets_new_session(self, db, make_profile):
        from datetime import datetime, timedelta, timezone

        make_profile(slug="salon-a")
        first = resolve(db, TELEGRAM, "777", explicit_slug="salon-a")
        binding = db.query(ChannelConversation).one()
        binding.last_inbound_at = datetime.now(timezone.utc) - timedelta(hours=3)
        db.commit()

        second = resolve(db, TELEGRAM, "777", text="hi")
        assert second.is_new_session is True
        assert second.session_id != first.session_id


class TestResetSession:
    def test_reset_starts_new_session(self, db, make_profile):
        make_profile(slug="salon-a")
        first = resolve(db, TELEGRAM, "777", explicit_slug="salon-a")
        reset = reset_session(db, TELEGRAM, "777")
        assert reset.profile_id == first.profile_id
        assert reset.session_id != first.session_id

    def test_reset_without_binding_or_slug(self, db):
        assert reset_session(db, TELEGRAM, "777") is None

    def test_unknown_slug_keeps_current_session(self, db, make_profile):
        make_profile(slug="salon-a")
        first = resolve(db, TELEGRAM, "777", explicit_slug="salon-a")
        assert reset_session(db, TELEGRAM, "777", explicit_slug="nope") is None
        binding = db.query(ChannelConversation).one()
        assert binding.session_id == first.session_id

    def test_slug_with_channel_disabled(self, db, make_profile):
        make_profile(slug="salon-a", telegram_chat_enabled=False)
        assert reset_session(db, TELEGRAM, "777", explicit_slug="salon-a") is None
        assert db.query(ChannelConversation).count() == 0


class TestTouch:
    def test_touch_updates_binding_timestamps(self, db, make_profile):
        profile = make_profile(slug="salon-a")
        resolve(db, WHATSAPP, "whatsapp:+994501112233", text="Hi salon-a")
        binding = db.query(ChannelConversation).one()
        assert binding.last_outbound_at is None
        first_inbound = binding.last_inbound_at

        touch_outbound(db, WHATSAPP, "whatsapp:+994501112233", profile.id)
        resolve(db, WHATSAPP, "+994501112233", text="price?")

        db.refresh(binding)
        assert binding.last_outbound_at is not None
        assert binding.last_inbound_at >= first_inbound

    def test_touch_without_binding_is_noop(self, db, make_profile):
        profile = make_profile()
        touch_outbound(db, TELEGRAM, "42", profile.id)
        assert db.query(ChannelConversation).count() == 0
