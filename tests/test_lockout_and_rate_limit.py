"""
Tests for account lockout and sliding-window rate limiting.

Lockout: 5 failures lock the account for 24 hours and reset the counter.
Rate limits: per-rule sliding windows with Retry-After, failing open when
Redis is unavailable.
"""

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import redis

from security.exceptions import AccountLockedError, RateLimitExceededError
from security.lockout import InMemoryAttemptCounter, LockoutManager, RedisAttemptCounter, minutes_until
from security.rate_limiter import (
    AUTH_RULE,
    DEFAULT_RULES,
    InMemoryRateLimiter,
    RateLimitResult,
    RedisRateLimiter,
    RequestThrottle,
    SlowDownPolicy,
    rate_limit_key,
)


@pytest.fixture
def lockout(clock):
    return LockoutManager(InMemoryAttemptCounter(), clock=clock)


class TestLockoutManager:
    """Tests for the account lockout policy."""

    def test_attempts_count_down(self, lockout):
        """Each failure reports what is left before the lock."""
        remaining = [lockout.record_failure("member@lodge.test").attempts_remaining for _ in range(4)]
        assert remaining == [4, 3, 2, 1]

    def test_fifth_failure_locks_for_a_day(self, lockout, clock):
        """The threshold failure locks for 24 hours."""
        for _ in range(4):
            lockout.record_failure("member@lodge.test")
        status = lockout.record_failure("member@lodge.test")

        assert status.locked
        assert status.locked_until == clock.now + timedelta(hours=24)
        assert status.lock_time_remaining == 24 * 60
        assert "Try again in 1440 minutes" in status.reason

    def test_check_raises_while_locked(self, lockout, clock):
        """check() raises with the remaining minutes."""
        for _ in range(5):
            lockout.record_failure("member@lodge.test")
        clock.advance(hours=23, minutes=30)

        with pytest.raises(AccountLockedError) as exc_info:
            lockout.check("member@lodge.test")
        assert exc_info.value.lock_time_remaining == 30

    def test_lock_lifts_and_counter_restarts(self, lockout, clock):
        """After the window the next failure counts as the first."""
        for _ in range(5):
            lockout.record_failure("member@lodge.test")
        clock.advance(hours=24)

        assert not lockout.is_locked("member@lodge.test")
        assert lockout.record_failure("member@lodge.test").attempts == 1

    def test_failures_during_lock_do_not_extend_it(self, lockout, clock):
        """Attempts inside the window leave the expiry alone."""
        for _ in range(5):
            lockout.record_failure("member@lodge.test")
        until = lockout.status("member@lodge.test").locked_until

        clock.advance(hours=1)
        lockout.record_failure("member@lodge.test")
        assert lockout.status("member@lodge.test").locked_until == until

    def test_success_clears_counter(self, lockout):
        """A successful login forgets earlier failures."""
        for _ in range(3):
            lockout.record_failure("member@lodge.test")
        lockout.record_success("member@lodge.test")
        assert lockout.status("member@lodge.test").attempts == 0

    def test_principal_case_insensitive(self, lockout):
        """Emails differing only in case share a counter."""
        lockout.record_failure("Member@Lodge.test")
        assert lockout.status("member@lodge.test").attempts == 1

    def test_admin_unlock(self, lockout):
        """An administrator can lift the lock."""
        for _ in range(5):
            lockout.record_failure("member@lodge.test")
        lockout.admin_unlock("member@lodge.test", actor_id="super")
        assert lockout.check("member@lodge.test").allowed

    def test_status_dict(self, lockout):
        """Status serializes with camelCase keys."""
        data = lockout.status("member@lodge.test").to_dict()
        assert data["attemptsRemaining"] == 5
        assert data["lockedUntil"] is None

    def test_minutes_until_rounds_up(self, clock):
        """Partial minutes count as whole ones."""
        assert minutes_until(clock.now + timedelta(seconds=61), clock.now) == 2
        assert minutes_until(clock.now + timedelta(seconds=1), clock.now) == 1
        assert minutes_until(clock.now, clock.now) == 0


class TestRedisAttemptCounter:
    """Tests for the Redis lockout backend."""

    def test_failure_below_threshold(self, mock_redis_client, clock):
        """The script counts and reports no lock below the threshold."""
        mock_redis_client.script_load.return_value = "sha-1"
        mock_redis_client.evalsha.return_value = [2, 0]
        counter = RedisAttemptCounter(mock_redis_client)

        attempts, until = counter.register_failure("account:a", 5, timedelta(hours=24), clock.now)

        assert (attempts, until) == (2, None)
        mock_redis_client.evalsha.assert_called_once_with(
            "sha-1",
            2,
            "lodge:lockout:attempts:account:a",
            "lodge:lockout:locked:account:a",
            5,
            86400,
            (clock.now + timedelta(hours=24)).isoformat(),
        )

    def test_threshold_reports_lock(self, mock_redis_client, clock):
        """A locking run returns the lock expiry."""
        mock_redis_client.evalsha.return_value = [5, 1]
        counter = RedisAttemptCounter(mock_redis_client)

        attempts, until = counter.register_failure("account:a", 5, timedelta(hours=24), clock.now)

        assert attempts == 5
        assert until == clock.now + timedelta(hours=24)

    def test_script_loaded_once(self, mock_redis_client, clock):
        """The script is registered lazily and reused by sha."""
        mock_redis_client.evalsha.return_value = [1, 0]
        counter = RedisAttemptCounter(mock_redis_client)

        for _ in range(3):
            counter.register_failure("account:a", 5, timedelta(hours=24), clock.now)

        mock_redis_client.script_load.assert_called_once()
        assert mock_redis_client.evalsha.call_count == 3

    def test_script_reloaded_after_flush(self, mock_redis_client, clock):
        """A flushed script cache is repopulated and the failure still counts."""
        mock_redis_client.script_load.side_effect = ["sha-1", "sha-2"]
        mock_redis_client.evalsha.side_effect = [redis.exceptions.NoScriptError("gone"), [1, 0]]
        counter = RedisAttemptCounter(mock_redis_client)

        assert counter.register_failure("account:a", 5, timedelta(hours=24), clock.now) == (1, None)
        assert mock_redis_client.script_load.call_count == 2
        assert mock_redis_client.evalsha.call_args[0][0] == "sha-2"

    def test_script_skips_counting_while_locked(self):
        """Locked accounts are checked inside the script, before INCR."""
        script = RedisAttemptCounter._LUA_REGISTER_FAILURE
        assert script.index("EXISTS") < script.index("INCR")
        assert "DEL" in script

    def test_get_state_parses_lock(self, clock):
        """The lock key holds the ISO expiry."""
        client = MagicMock()
        until = clock.now + timedelta(hours=2)
        client.get.side_effect = lambda key: b"3" if "attempts" in key else until.isoformat().encode()

        assert RedisAttemptCounter(client).get_state("account:a", clock.now) == (3, until)


class TestConcurrentFailures:
    """Failures racing from several threads."""

    def test_in_memory_counter_locks_once(self, clock):
        """Threads crossing the threshold together lock exactly once and lose no counts."""
        counter = InMemoryAttemptCounter()
        workers = 5
        barrier = threading.Barrier(workers)
        results = []
        results_lock = threading.Lock()

        def fail():
            barrier.wait()
            outcome = counter.register_failure("account:a", workers, timedelta(hours=24), clock.now)
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=fail) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        attempts = sorted(a for a, _ in results)
        assert attempts == [1, 2, 3, 4, 5]
        assert sum(1 for _, until in results if until is not None) == 1
        assert counter.get_state("account:a", clock.now)[1] == clock.now + timedelta(hours=24)

    def test_in_memory_counter_many_threads(self, clock):
        """Below the threshold every failure from every thread is counted."""
        counter = InMemoryAttemptCounter()
        workers, per_worker = 8, 25
        barrier = threading.Barrier(workers)

        def fail():
            barrier.wait()
            for _ in range(per_worker):
                counter.register_failure("account:b", 1000, timedelta(hours=24), clock.now)

        threads = [threading.Thread(target=fail) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert counter.get_state("account:b", clock.now) == (workers * per_worker, None)


class TestInMemoryRateLimiter:
    """Tests for the in-process sliding window."""

    def test_limit_then_retry_after(self, clock):
        """The request over the limit is refused with Retry-After."""
        limiter = InMemoryRateLimiter(clock=clock.monotonic)
        results = [limiter.hit("ip:1", 5, 900, "auth") for _ in range(5)]
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0]

        clock.advance(seconds=100)
        refused = limiter.hit("ip:1", 5, 900, "auth")
        assert not refused.allowed
        assert refused.retry_after == 801

    def test_window_slides(self, clock):
        """Old requests fall out of the window."""
        limiter = InMemoryRateLimiter(clock=clock.monotonic)
        for _ in range(5):
            limiter.hit("ip:1", 5, 900, "auth")
        clock.advance(seconds=901)
        assert limiter.hit("ip:1", 5, 900, "auth").allowed

    def test_keys_are_independent(self, clock):
        """One client's usage does not affect another."""
        limiter = InMemoryRateLimiter(clock=clock.monotonic)
        for _ in range(5):
            limiter.hit("ip:1", 5, 900, "auth")
        assert limiter.hit("ip:2", 5, 900, "auth").allowed
        assert limiter.count("ip:1", 900, "auth") == 5

    def test_reset(self, clock):
        """Reset empties the bucket."""
        limiter = InMemoryRateLimiter(clock=clock.monotonic)
        limiter.hit("ip:1", 1, 900, "auth")
        limiter.reset("ip:1", "auth")
        assert limiter.hit("ip:1", 1, 900, "auth").allowed


class TestRedisRateLimiter:
    """Tests for the Redis sorted-set limiter."""

    def test_under_limit(self, mock_redis_client):
        """zcard below the limit admits the request."""
        mock_redis_client.pipeline.return_value.execute.return_value = [0, 3, 1, True]
        limiter = RedisRateLimiter(mock_redis_client, clock=lambda: 1000.0)

        result = limiter.hit("ip:1", 5, 900, "auth")

        assert result.allowed
        assert result.remaining == 1
        mock_redis_client.pipeline.return_value.zremrangebyscore.assert_called_once_with(
            "lodge:rate_limit:auth:ip:1", 0, 100.0
        )

    def test_over_limit_computes_retry_after(self, mock_redis_client):
        """The oldest member decides when a slot frees up."""
        mock_redis_client.pipeline.return_value.execute.return_value = [0, 5, 1, True]
        mock_redis_client.zrange.return_value = [(b"first", 900.0)]
        limiter = RedisRateLimiter(mock_redis_client, clock=lambda: 1000.0)

        result = limiter.hit("ip:1", 5, 900, "auth")

        assert not result.allowed
        assert result.retry_after == 801
        mock_redis_client.zrem.assert_called_once()

    def test_fails_open(self):
        """A Redis outage does not block traffic."""
        client = MagicMock()
        client.pipeline.side_effect = ConnectionError("redis down")
        result = RedisRateLimiter(client, clock=lambda: 1000.0).hit("ip:1", 5, 900, "auth")
        assert result.allowed


class TestRequestThrottle:
    """Tests for named rules and slow-down."""

    def test_default_rules(self):
        """Thresholds for each named rule."""
        assert (AUTH_RULE.limit, AUTH_RULE.window_seconds) == (5, 900)
        assert (DEFAULT_RULES["general"].limit, DEFAULT_RULES["general"].window_seconds) == (100, 900)
        assert (DEFAULT_RULES["password_reset"].limit, DEFAULT_RULES["password_reset"].window_seconds) == (3, 3600)
        assert (DEFAULT_RULES["admin"].limit, DEFAULT_RULES["admin"].window_seconds) == (50, 300)
        assert (DEFAULT_RULES["upload"].limit, DEFAULT_RULES["upload"].window_seconds) == (10, 600)

    def test_check_raises_with_retry_after(self, clock):
        """The sixth login attempt raises with the rule message."""
        throttle = RequestThrottle(InMemoryRateLimiter(clock=clock.monotonic))
        for _ in range(5):
            throttle.check("auth", "ip:1")

        with pytest.raises(RateLimitExceededError) as exc_info:
            throttle.check("auth", "ip:1")
        assert exc_info.value.retry_after == 901
        assert exc_info.value.message == AUTH_RULE.message

    def test_disabled_throttle_allows(self, clock):
        """Disabled throttles never refuse."""
        throttle = RequestThrottle(InMemoryRateLimiter(clock=clock.monotonic), enabled=False)
        for _ in range(10):
            assert throttle.check("auth", "ip:1").allowed

    def test_slow_down_grows_per_request(self, clock):
        """No delay for two requests, then 500 ms more each time."""
        throttle = RequestThrottle(InMemoryRateLimiter(clock=clock.monotonic))
        delays = [throttle.slow_down_delay("ip:1") for _ in range(5)]
        assert delays == [0.0, 0.0, 0.5, 1.0, 1.5]

    def test_slow_down_cap(self):
        """Delays stop at 20 seconds."""
        assert SlowDownPolicy().delay_for(1000) == 20.0

    def test_reset_clears_auth_and_slow_down(self, clock):
        """A successful login resets both windows."""
        throttle = RequestThrottle(InMemoryRateLimiter(clock=clock.monotonic))
        for _ in range(5):
            throttle.check("auth", "ip:1")
            throttle.slow_down_delay("ip:1")
        throttle.reset("ip:1")
        assert throttle.check("auth", "ip:1").remaining == 4
        assert throttle.slow_down_delay("ip:1") == 0.0


def test_rate_limit_key():
    """Authenticated requests are keyed by user, others by IP."""
    assert rate_limit_key("u1", "10.0.0.1") == "user:u1"
    assert rate_limit_key(None, "10.0.0.1") == "ip:10.0.0.1"
    assert rate_limit_key(None, None) == "ip:unknown"


def test_result_headers():
    """Refusals carry Retry-After and the reset time."""
    headers = RateLimitResult(False, 5, 0, retry_after=60).headers(now=1000.0)
    assert headers["Retry-After"] == "60"
    assert headers["X-RateLimit-Reset"] == "1060"
    assert "Retry-After" not in RateLimitResult(True, 5, 4).headers(now=1000.0)
