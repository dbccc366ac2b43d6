"""
Password hashing with bcrypt.

The policy check lives in password_policy; this module only turns
accepted passwords into hashes and verifies login attempts.
"""

import logging

import bcrypt

from .password_policy import MAX_PASSWORD_LENGTH

logger = logging.getLogger(__name__)

# bcrypt work factor (12 is a good balance of security and performance)
BCRYPT_ROUNDS = 12

# bcrypt only reads the first 72 bytes; newer releases raise instead of truncating
BCRYPT_MAX_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    """
    Hash a password using bcrypt.

    Raises:
        ValueError: If password is empty or too long
    """
    if not password:
        raise ValueError("Password cannot be empty")

    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"Password exceeds maximum length of {MAX_PASSWORD_LENGTH}")

    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(_encode(password), salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """Constant-time check of a password against its bcrypt hash."""
    if not password or not hashed:
        return False

    try:
        return bcrypt.checkpw(_encode(password), hashed.encode("utf-8"))
    except ValueError as e:
        logger.error(f"Password verification error: {e}")
        return False
