"""
Tests for password hashing and policy, session tokens and log masking.
"""

import logging
from datetime import timedelta

import jwt
import pytest

from security.data_sanitizer import MASKED, DataSanitizer, mask_sensitive
from security.exceptions import InvalidTokenError
from security.password_policy import ADMIN_MIN_SCORE, calculate_strength, policy_description, validate_password
from security.passwords import hash_password, verify_password
from security.secure_logger import get_logger, log_security_event
from security.tokens import (
    InMemoryRevokedSessionStore,
    RedisRevokedSessionStore,
    TokenService,
    resolve_secret,
)
from support import TEST_JWT_SECRET, TEST_PASSWORD


class TestPasswordHashing:
    """Tests for bcrypt hashing."""

    def test_hash_and_verify(self):
        """A hash verifies its own password only."""
        hashed = hash_password(TEST_PASSWORD, rounds=4)
        assert hashed.startswith("$2")
        assert verify_password(TEST_PASSWORD, hashed)
        assert not verify_password("Lodge#Secure2025", hashed)

    def test_empty_password_rejected(self):
        """Empty passwords cannot be hashed."""
        with pytest.raises(ValueError):
            hash_password("")

    def test_overlong_password_rejected(self):
        """Passwords over 128 characters cannot be hashed."""
        with pytest.raises(ValueError):
            hash_password("A" * 129, rounds=4)

    def test_verify_against_garbage_hash(self):
        """A malformed hash verifies nothing."""
        assert not verify_password(TEST_PASSWORD, "not-a-bcrypt-hash")
        assert not verify_password("", "$2b$04$abc")


class TestPasswordPolicy:
    """Tests for composition rules and strength scoring."""

    def test_strong_password_accepted(self):
        """A long mixed password passes with a strong score."""
        result = validate_password(TEST_PASSWORD, role_names=["super_admin"])
        assert result.is_valid, result.errors
        assert result.strength.level == "strong"

    def test_common_password(self):
        """Dictionary passwords fail several rules."""
        result = validate_password("password")
        assert not result.is_valid
        assert "Password is too common. Please choose a more unique password" in result.errors
        assert "Password must contain at least one uppercase letter" in result.errors

    def test_repeating_characters(self):
        """Four identical characters in a row are rejected."""
        result = validate_password("Aaaaa#1bcX")
        assert "Password cannot contain more than 3 repeating characters" in result.errors

    def test_name_and_email_excluded(self):
        """Account details may not appear in the password."""
        result = validate_password("Amina#Chidi99", name="Amina", email="chidi@lodge.test")
        assert "Password cannot contain your name" in result.errors
        assert "Password cannot contain parts of your email address" in result.errors

    def test_keyboard_pattern_is_warning_only(self):
        """Keyboard runs warn but do not fail."""
        result = validate_password("Qwerty#2024x")
        assert result.is_valid
        assert result.warnings

    def test_admin_roles_need_higher_score(self):
        """A minimal compliant password is enough for members only."""
        assert validate_password("Ab1!Ab1!", role_names=["member"]).is_valid

        result = validate_password("Ab1!Ab1!", role_names=["state_admin"])
        assert not result.is_valid
        assert result.strength.score < ADMIN_MIN_SCORE

    def test_strength_penalties(self):
        """Sequences lower the score."""
        assert calculate_strength("Xk#9mQ2v").score > calculate_strength("Abc#1234").score
        assert calculate_strength("").level == "weak"

    def test_policy_description(self):
        """The policy summary is exposed for clients."""
        assert policy_description()["minLength"] == 8
        assert policy_description()["adminMinScore"] == ADMIN_MIN_SCORE


class TestTokens:
    """Tests for session token issue and decode."""

    @pytest.fixture
    def tokens(self, clock):
        return TokenService(TEST_JWT_SECRET, expire_minutes=480, clock=clock)

    def test_round_trip_claims(self, tokens, clock):
        """Decoded claims carry user, session and expiry."""
        claims = tokens.decode(tokens.issue("member", session_id="s-1"))
        assert claims.user_id == "member"
        assert claims.session_id == "s-1"
        assert claims.expires_at == clock.now + timedelta(minutes=480)

    def test_new_session_id_per_login(self, tokens):
        """Each issue without a session id gets a fresh one."""
        first = tokens.decode(tokens.issue("member")).session_id
        second = tokens.decode(tokens.issue("member")).session_id
        assert first != second

    def test_expired_token(self, tokens, clock):
        """Tokens stop working after the expiry window."""
        token = tokens.issue("member")
        clock.advance(minutes=479)
        assert tokens.decode(token).user_id == "member"

        clock.advance(minutes=1)
        with pytest.raises(InvalidTokenError) as exc_info:
            tokens.decode(token)
        assert exc_info.value.message == "Session expired"

    def test_wrong_secret(self, tokens, clock):
        """Tokens signed with another key are invalid."""
        other = TokenService("x" * 40, clock=clock)
        with pytest.raises(InvalidTokenError) as exc_info:
            tokens.decode(other.issue("member"))
        assert exc_info.value.message == "Invalid session token"

    def test_wrong_token_type(self, tokens, clock):
        """Only session tokens are accepted."""
        token = jwt.encode(
            {"sub": "member", "sid": "s-1", "exp": clock.now.timestamp() + 3600, "type": "refresh"},
            TEST_JWT_SECRET,
            algorithm="HS256",
        )
        assert tokens.decode_safe(token) is None

    def test_missing_token(self, tokens):
        """An empty token asks for authentication."""
        with pytest.raises(InvalidTokenError) as exc_info:
            tokens.decode("")
        assert exc_info.value.message == "Authentication required"
        assert tokens.decode_safe(None) is None

    def test_role_cap_shortens_lifetime(self, tokens, clock):
        """A role's max session duration caps the token, never extends it."""
        assert tokens.lifetime_minutes(240) == 240
        assert tokens.lifetime_minutes(720) == 480
        assert tokens.lifetime_minutes(None) == 480
        assert tokens.lifetime_minutes(0) == 480

        claims = tokens.decode(tokens.issue("super", max_minutes=240))
        assert claims.expires_at == clock.now + timedelta(minutes=240)

    def test_revoked_session_rejected(self, tokens):
        """A revoked session's token is refused; other sessions are not."""
        token = tokens.issue("member", session_id="s-1")
        other = tokens.issue("member", session_id="s-2")
        tokens.revoke(tokens.decode(token))

        with pytest.raises(InvalidTokenError) as exc_info:
            tokens.decode(token)
        assert exc_info.value.message == "Session revoked"
        assert tokens.decode(other).session_id == "s-2"

    def test_revocation_pruned_after_expiry(self, clock):
        """Revocations only live as long as the token could."""
        store = InMemoryRevokedSessionStore()
        store.revoke("s-1", clock.now + timedelta(minutes=10), clock.now)
        assert store.is_revoked("s-1", clock.now)
        assert not store.is_revoked("s-1", clock.now + timedelta(minutes=11))


class TestRedisRevokedSessionStore:
    """Tests for the shared revocation list."""

    def test_revoke_sets_key_with_remaining_ttl(self, mock_redis_client, clock):
        """The key expires when the token would have."""
        store = RedisRevokedSessionStore(mock_redis_client, prefix="lodge:")
        until = clock.now + timedelta(minutes=5)
        store.revoke("s-1", until, clock.now)

        mock_redis_client.set.assert_called_once_with("lodge:session:revoked:s-1", until.isoformat(), ex=301)

    def test_lookup(self, mock_redis_client, clock):
        """Existing keys mean revoked."""
        store = RedisRevokedSessionStore(mock_redis_client, prefix="lodge:")
        assert store.is_revoked("s-1", clock.now) is False

        mock_redis_client.exists.return_value = 1
        assert store.is_revoked("s-1", clock.now) is True

    def test_redis_error_fails_closed(self, mock_redis_client, clock):
        """An unreachable revocation list rejects the token."""
        mock_redis_client.exists.side_effect = ConnectionError("redis down")
        store = RedisRevokedSessionStore(mock_redis_client)

        assert store.is_revoked("s-1", clock.now) is True


class TestResolveSecret:
    """Tests for signing key resolution."""

    def test_production_requires_secret(self):
        """Production refuses to start without a key."""
        with pytest.raises(RuntimeError):
            resolve_secret(None, is_production=True)

    def test_development_generates_secret(self):
        """Development generates a throwaway key with a warning."""
        with pytest.warns(UserWarning):
            secret = resolve_secret(None, is_production=False)
        assert secret.startswith("DEV-ONLY-")

    def test_short_secret_rejected(self):
        """Keys under 32 characters are refused."""
        with pytest.raises(ValueError):
            resolve_secret("short", is_production=False)


class TestDataSanitizer:
    """Tests for masking of fields and free text."""

    def test_sensitive_fields_masked(self):
        """Credential fields are masked, others kept."""
        sanitizer = DataSanitizer()
        result = sanitizer.sanitize_dict({
            "password": "Lodge#Secure2024",
            "mfaSecret": "JBSWY3DPEHPK3PXP",
            "backup_codes": ["A1B2C3D4"],
            "access_token": "abc",
            "state_id": "LA",
        })
        assert result["password"] == MASKED
        assert result["mfaSecret"] == MASKED
        assert result["backup_codes"] == MASKED
        assert result["access_token"] == MASKED
        assert result["state_id"] == "LA"

    def test_nested_values(self):
        """Masking reaches nested dicts and lists."""
        result = mask_sensitive({"body": {"user": {"pin": "1234"}}, "items": [{"otp": "123456"}]})
        assert result["body"]["user"]["pin"] == MASKED
        assert result["items"][0]["otp"] == MASKED

    def test_empty_values_left_alone(self):
        """Empty credentials show as empty, not masked."""
        assert DataSanitizer().sanitize_dict({"password": ""})["password"] == ""

    def test_free_text_patterns(self):
        """Bearer tokens, OTP secrets and emails are scrubbed from text."""
        sanitizer = DataSanitizer()
        text = sanitizer.sanitize_string(
            "Bearer abc.def.ghi for amina@lodge.test otpauth://totp/x?secret=JBSWY3DPEHPK3PXP"
        )
        assert "abc.def.ghi" not in text
        assert "a***a@lodge.test" in text
        assert "secret=" + MASKED in text

    def test_headers(self):
        """Authorization and cookie headers are masked case-insensitively."""
        headers = DataSanitizer().sanitize_headers({"Authorization": "Bearer x", "Cookie": "s=1", "Accept": "*/*"})
        assert headers == {"Authorization": MASKED, "Cookie": MASKED, "Accept": "*/*"}

    def test_additional_fields(self):
        """Callers can register extra sensitive field names."""
        sanitizer = DataSanitizer(additional_fields=["bankAccount"])
        assert sanitizer.sanitize_dict({"bank_account": "0123456789"})["bank_account"] == MASKED


class TestSecureLogger:
    """Tests for masking at the logging layer."""

    def test_message_masked(self, caplog):
        """Tokens never reach a handler."""
        logger = get_logger("tests.secure_logger")
        with caplog.at_level(logging.INFO, logger="tests.secure_logger"):
            logger.warning("Rejected Bearer abcdef123456")
        assert "abcdef123456" not in caplog.text
        assert MASKED in caplog.text

    def test_security_event_details_masked(self, caplog):
        """Event details are masked and the level follows the severity."""
        logger = get_logger("tests.security_events")
        with caplog.at_level(logging.INFO, logger="tests.security_events"):
            log_security_event(logger, "mfa_setup", "ERROR", {"user_id": "u1", "secret": "JBSWY3DP"})

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.getMessage() == "SECURITY: mfa_setup"
        assert record.details == {"user_id": "u1", "secret": MASKED}

    def test_logger_registry(self):
        """Loggers are cached by name."""
        assert get_logger("tests.registry") is get_logger("tests.registry")
