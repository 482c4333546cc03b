"""Fixed-window rate limits per (channel, address).

Windows are counted by ``limits`` against Redis, or in process memory when
Redis is disabled or failing. The Telegram ban sits on top of the window and
is its own Redis key (or local entry).
"""

import os
import threading
import time
from dataclasses import dataclass
from typing import Optional

import redis
from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import MemoryStorage, storage_from_string
from limits.strategies import FixedWindowRateLimiter

from app.logging_config import get_logger

logger = get_logger("rate_limit_service")

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
RATE_LIMIT_PREFIX = "receptionist:rl"
REDIS_SOCKET_TIMEOUT_SECONDS = float(os.environ.get("RATE_LIMIT_REDIS_TIMEOUT_SECONDS", "0.3"))
TELEGRAM_MAX_MESSAGE_CHARS = int(os.environ.get("TELEGRAM_MAX_MESSAGE_CHARS", "1000"))


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: int
    ban_seconds: int = 0

    def item(self) -> RateLimitItem:
        return RateLimitItemPerSecond(self.limit, self.window_seconds)


POLICIES = {
    "web": RateLimitPolicy(limit=15, window_seconds=60),
    "owner": RateLimitPolicy(limit=20, window_seconds=60),
    "whatsapp": RateLimitPolicy(limit=30, window_seconds=60),
    "telegram": RateLimitPolicy(limit=5, window_seconds=60, ban_seconds=600),
}


@dataclass
class RateLimitDecision:
    allowed: bool
    # True only for the message that started a ban, so the notice is sent once.
    ban_started: bool = False
    retry_after: int = 0


_memory_storage = MemoryStorage()
_memory_limiter = FixedWindowRateLimiter(_memory_storage)
_redis_limiter: Optional[FixedWindowRateLimiter] = None
_redis_client = None
_redis_client_url = None
_local_bans: dict[str, float] = {}
_local_lock = threading.Lock()


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _get_redis_client():
    global _redis_client, _redis_client_url, _redis_limiter
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return None
    if not _is_env_enabled(os.environ.get("RATE_LIMIT_REDIS_ENABLED"), default=True):
        return None
    if _redis_client is None or _redis_client_url != REDIS_URL:
        _redis_client_url = REDIS_URL
        _redis_client = redis.Redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
        )
        _redis_limiter = None
    return _redis_client


def _get_redis_limiter() -> FixedWindowRateLimiter:
    global _redis_limiter
    if _redis_limiter is None:
        storage = storage_from_string(
            REDIS_URL,
            socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
        )
        _redis_limiter = FixedWindowRateLimiter(storage)
    return _redis_limiter


def _retry_after(limiter: FixedWindowRateLimiter, item: RateLimitItem, identifiers: tuple) -> int:
    stats = limiter.get_window_stats(item, *identifiers)
    return max(1, int(stats.reset_time - time.time()))


def _check_redis(client, policy: RateLimitPolicy, identifiers: tuple) -> RateLimitDecision:
    ban_key = ":".join((*identifiers, "ban"))
    if policy.ban_seconds:
        ttl = client.ttl(ban_key)
        if ttl and ttl > 0:
            return RateLimitDecision(allowed=False, retry_after=int(ttl))

    limiter = _get_redis_limiter()
    item = policy.item()
    if limiter.hit(item, *identifiers):
        return RateLimitDecision(allowed=True)

    if policy.ban_seconds:
        # NX: only the first over-limit message starts the ban.
        started = bool(client.set(ban_key, "1", ex=policy.ban_seconds, nx=True))
        if started:
            limiter.clear(item, *identifiers)
        return RateLimitDecision(allowed=False, ban_started=started, retry_after=policy.ban_seconds)
    return RateLimitDecision(allowed=False, retry_after=_retry_after(limiter, item, identifiers))


def _check_local(policy: RateLimitPolicy, identifiers: tuple, now: float) -> RateLimitDecision:
    ban_key = ":".join(identifiers)
    with _local_lock:
        banned_until = _local_bans.get(ban_key)
        if banned_until is not None:
            if now < banned_until:
                return RateLimitDecision(allowed=False, retry_after=int(banned_until - now))
            _local_bans.pop(ban_key, None)

    item = policy.item()
    if _memory_limiter.hit(item, *identifiers):
        return RateLimitDecision(allowed=True)

    if policy.ban_seconds:
        with _local_lock:
            started = _local_bans.get(ban_key, 0.0) <= now
            if started:
                _local_bans[ban_key] = now + policy.ban_seconds
        if started:
            _memory_limiter.clear(item, *identifiers)
        return RateLimitDecision(allowed=False, ban_started=started, retry_after=policy.ban_seconds)
    return RateLimitDecision(allowed=False, retry_after=_retry_after(_memory_limiter, item, identifiers))


def check_rate_limit(channel: str, address: str, now: Optional[float] = None) -> RateLimitDecision:
    """Count one message from ``address`` on ``channel``.

    ``now`` is a monotonic timestamp and only drives the local ban clock.
    """
    policy = POLICIES.get(channel)
    if policy is None or not address:
        return RateLimitDecision(allowed=True)

    identifiers = (RATE_LIMIT_PREFIX, channel, address)
    client = _get_redis_client()
    if client is not None:
        try:
            return _check_redis(client, policy, identifiers)
        except redis.RedisError as exc:
            logger.warning(f"Rate limit redis failed, using local window: {exc}")

    return _check_local(policy, identifiers, time.monotonic() if now is None else now)


def reset_rate_limits() -> None:
    _memory_storage.reset()
    with _local_lock:
        _local_bans.clear()
