from unittest.mock import MagicMock, patch

import redis

from app.services.rate_limit_service import check_rate_limit, reset_rate_limits


class TestLocalWindow:
    def test_allows_up_to_limit(self):
        decisions = [check_rate_limit("web", "tok", now=100.0) for _ in range(16)]
        assert all(d.allowed for d in decisions[:15])
        assert decisions[15].allowed is False
        assert 0 < decisions[15].retry_after <= 60

    def test_reset_clears_counters(self):
        for _ in range(16):
            check_rate_limit("web", "tok", now=100.0)
        reset_rate_limits()
        assert check_rate_limit("web", "tok", now=100.0).allowed is True

    def test_addresses_are_independent(self):
        for _ in range(16):
            check_rate_limit("web", "tok-a", now=100.0)
        assert check_rate_limit("web", "tok-b", now=100.0).allowed is True

    def test_channels_are_independent(self):
        for _ in range(16):
            check_rate_limit("web", "777", now=100.0)
        assert check_rate_limit("whatsapp", "777", now=100.0).allowed is True

    def test_telegram_ban_lasts_ten_minutes(self):
        for _ in range(5):
            assert check_rate_limit("telegram", "777", now=0.0).allowed is True
        started = check_rate_limit("telegram", "777", now=1.0)
        assert started.allowed is False
        assert started.ban_started is True

        during = check_rate_limit("telegram", "777", now=300.0)
        assert during.allowed is False
        assert during.ban_started is False

        assert check_rate_limit("telegram", "777", now=602.0).allowed is True

    def test_unknown_channel_not_limited(self):
        assert check_rate_limit("sms", "1").allowed is True


class TestRedisBackend:
    def test_redis_ban_started_only_once(self):
        client = MagicMock()
        client.ttl.return_value = -2
        client.set.side_effect = [True, False]
        limiter = MagicMock()
        limiter.hit.return_value = False

        with patch("app.services.rate_limit_service._get_redis_client", return_value=client), patch(
            "app.services.rate_limit_service._get_redis_limiter", return_value=limiter
        ):
            first = check_rate_limit("telegram", "777")
            second = check_rate_limit("telegram", "777")

        assert first.ban_started is True
        assert second.ban_started is False
        assert client.set.call_args[1]["nx"] is True
        limiter.clear.assert_called_once()

    def test_active_ban_skips_window(self):
        client = MagicMock()
        client.ttl.return_value = 420
        limiter = MagicMock()

        with patch("app.services.rate_limit_service._get_redis_client", return_value=client), patch(
            "app.services.rate_limit_service._get_redis_limiter", return_value=limiter
        ):
            decision = check_rate_limit("telegram", "777")

        assert decision.allowed is False
        assert decision.retry_after == 420
        limiter.hit.assert_not_called()

    def test_redis_error_falls_back_to_local(self):
        client = MagicMock()
        limiter = MagicMock()
        limiter.hit.side_effect = redis.ConnectionError("down")

        with patch("app.services.rate_limit_service._get_redis_client", return_value=client), patch(
            "app.services.rate_limit_service._get_redis_limiter", return_value=limiter
        ):
            decision = check_rate_limit("web", "tok")

        assert decision.allowed is True
