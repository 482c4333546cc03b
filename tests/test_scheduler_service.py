from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from app.models import ChannelConversation, Message
from app.services.lead_service import FOLLOWUP, WEBHOOK, append_marker, has_marker
from app.services.scheduler_service import (
    build_activity_summary,
    format_summary,
    run_follow_ups,
    run_periodic_summaries,
    run_scheduled_jobs,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _conversation(db, profile, session_id, phone, last_at):
    db.add(
        ChannelConversation(
            channel="whatsapp",
            transport_address=phone,
            profile_id=profile.id,
            session_id=session_id,
            last_inbound_at=last_at,
            created_at=last_at,
            updated_at=last_at,
        )
    )
    for offset, role in ((2, "user"), (1, "assistant")):
        db.add(
            Message(
                profile_id=profile.id,
                session_id=session_id,
                channel="whatsapp",
                role=role,
                content="hi",
                created_at=last_at - timedelta(minutes=offset),
            )
        )
    db.commit()


class TestFollowUps:
    @patch("app.services.scheduler_service.delivery_service.send_whatsapp", return_value=True)
    def test_stale_session_gets_one_follow_up(self, mock_send, db, make_profile):
        profile = make_profile(whatsapp_followup_enabled=True, whatsapp_followup_hours=24)
        _conversation(db, profile, "wa-1", "994501234567", NOW - timedelta(hours=30))

        assert run_follow_ups(db, NOW) == 1
        assert run_follow_ups(db, NOW) == 0
        mock_send.assert_called_once()
        assert mock_send.call_args[0][0] == "994501234567"
        assert has_marker(db, profile.id, "wa-1", FOLLOWUP)

    @patch("app.services.scheduler_service.delivery_service.send_whatsapp", return_value=True)
    def test_recent_session_skipped(self, mock_send, db, make_profile):
        profile = make_profile(whatsapp_followup_enabled=True, whatsapp_followup_hours=24)
        _conversation(db, profile, "wa-1", "994501234567", NOW - timedelta(hours=2))
        assert run_follow_ups(db, NOW) == 0
        mock_send.assert_not_called()

    @patch("app.services.scheduler_service.delivery_service.send_whatsapp", return_value=True)
    def test_session_with_lead_skipped(self, mock_send, db, make_profile):
        profile = make_profile(whatsapp_followup_enabled=True)
        _conversation(db, profile, "wa-1", "994501234567", NOW - timedelta(hours=30))
        append_marker(db, profile.id, "wa-1", WEBHOOK)
        # The marker is newer than the conversation but is not a visitor/assistant turn.
        assert run_follow_ups(db, NOW) == 0

    @patch("app.services.scheduler_service.delivery_service.send_whatsapp", return_value=True)
    def test_disabled_profile_skipped(self, mock_send, db, make_profile):
        profile = make_profile(whatsapp_followup_enabled=False)
        _conversation(db, profile, "wa-1", "994501234567", NOW - timedelta(hours=30))
        assert run_follow_ups(db, NOW) == 0

    @patch("app.services.scheduler_service.delivery_service.send_whatsapp", return_value=False)
    def test_failed_send_leaves_no_marker(self, mock_send, db, make_profile):
        profile = make_profile(whatsapp_followup_enabled=True)
        _conversation(db, profile, "wa-1", "994501234567", NOW - timedelta(hours=30))
        assert run_follow_ups(db, NOW) == 0
        assert has_marker(db, profile.id, "wa-1", FOLLOWUP) is False


class TestSummaries:
    def test_activity_counts(self, db, make_profile):
        profile = make_profile()
        _conversation(db, profile, "wa-1", "994501234567", NOW - timedelta(hours=1))
        _conversation(db, profile, "wa-2", "994501234568", NOW - timedelta(hours=2))
        append_marker(db, profile.id, "wa-1", WEBHOOK)

        stats = build_activity_summary(db, profile, NOW - timedelta(hours=24))
        assert stats["sessions"] == 2
        assert stats["user_messages"] == 2
        assert stats["ai_messages"] == 2
        assert stats["leads"] == 1

    def test_format(self, make_profile):
        profile = make_profile(business_name="Salon A")
        text = format_summary(profile, "weekly", {"sessions": 3, "user_messages": 5, "ai_messages": 5, "leads": 1})
        assert "Salon A: activity this week" in text
        assert "Leads: 1" in text

    @patch("app.services.scheduler_service.delivery_service.send_whatsapp", return_value=True)
    def test_daily_summary_sent_once_per_period(self, mock_send, db, make_profile):
        profile = make_profile(whatsapp_summary_enabled=True, whatsapp_number="994501110000")

        assert run_periodic_summaries(db, NOW) == 1
        assert run_periodic_summaries(db, NOW + timedelta(hours=23)) == 0
        assert run_periodic_summaries(db, NOW + timedelta(hours=25)) == 1
        assert mock_send.call_args[0][0] == "994501110000"
        db.refresh(profile)
        assert profile.whatsapp_summary_last_sent is not None


class TestRunScheduledJobs:
    @patch("app.services.scheduler_service.alert_error")
    @patch("app.services.scheduler_service.run_periodic_summaries", return_value=2)
    @patch("app.services.scheduler_service.run_follow_ups", side_effect=RuntimeError("boom"))
    def test_one_failing_job_does_not_stop_the_other(self, mock_follow, mock_summaries, mock_alert, db):
        results = run_scheduled_jobs(db, NOW)
        assert results == {"follow_ups": None, "summaries": 2}
        mock_alert.assert_called_once()
        assert "follow_ups" in mock_alert.call_args[0][0]
