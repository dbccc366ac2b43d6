"""
TOTP (RFC 6238) generation and verification.

Compatible with Google Authenticator, Authy, Microsoft Authenticator and
other TOTP apps. Time is injectable so drift windows can be tested.
"""

import base64
import hashlib
import hmac
import secrets
import struct
import time
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote


class TOTPGenerator:
    """
    Time-based One-Time Password generator.

    SHA1 / 6 digits / 30 second steps for authenticator compatibility.
    """

    DIGITS = 6
    PERIOD = 30
    ALGORITHM = "sha1"

    @staticmethod
    def generate_secret(length: int = 20) -> str:
        """
        Generate a base32-encoded secret key.

        Args:
            length: Number of random bytes (default 20 = 160 bits)
        """
        random_bytes = secrets.token_bytes(length)
        return base64.b32encode(random_bytes).decode("utf-8").rstrip("=")

    @staticmethod
    def get_totp_code(secret: str, time_offset: int = 0, at: Optional[float] = None) -> str:
        """
        Generate the TOTP code for a moment.

        Args:
            secret: Base32-encoded secret key
            time_offset: Number of time steps to offset
            at: Unix timestamp (defaults to now)
        """
        secret_padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        key = base64.b32decode(secret_padded.upper())

        timestamp = int(at if at is not None else time.time())
        counter = (timestamp // TOTPGenerator.PERIOD) + time_offset

        counter_bytes = struct.pack(">Q", counter)
        hmac_hash = hmac.new(key, counter_bytes, hashlib.sha1).digest()

        # Dynamic truncation
        offset = hmac_hash[-1] & 0x0F
        binary = struct.unpack(">I", hmac_hash[offset:offset + 4])[0] & 0x7FFFFFFF

        otp = binary % (10 ** TOTPGenerator.DIGITS)
        return str(otp).zfill(TOTPGenerator.DIGITS)

    @staticmethod
    def verify_totp(secret: str, code: str, window: int = 2, at: Optional[float] = None) -> bool:
        """
        Verify a TOTP code with drift tolerance.

        Args:
            window: Accepted steps before/after (2 = +/-60 seconds)
        """
        code = (code or "").strip().replace(" ", "")

        if len(code) != TOTPGenerator.DIGITS or not code.isdigit():
            return False

        for offset in range(-window, window + 1):
            expected = TOTPGenerator.get_totp_code(secret, offset, at)
            if hmac.compare_digest(code, expected):
                return True

        return False

    @staticmethod
    def get_provisioning_uri(secret: str, account_name: str, issuer: str = "MCAN Lodge") -> str:
        """otpauth:// URI for QR code enrollment."""
        account = quote(account_name, safe="")
        issuer_encoded = quote(issuer, safe="")

        return (
            f"otpauth://totp/{issuer_encoded}:{account}"
            f"?secret={secret}"
            f"&issuer={issuer_encoded}"
            f"&algorithm=SHA1"
            f"&digits={TOTPGenerator.DIGITS}"
            f"&period={TOTPGenerator.PERIOD}"
        )


def generate_backup_codes(count: int = 10) -> list:
    """Single-use recovery codes, 8 uppercase hex characters each."""
    return [secrets.token_hex(4).upper() for _ in range(count)]


def hash_backup_code(code: str) -> str:
    """Hash a backup code for storage."""
    normalized = code.strip().replace("-", "").replace(" ", "").upper()
    return hashlib.sha256(normalized.encode()).hexdigest()


def utc_timestamp(moment: datetime) -> float:
    """Unix timestamp for a naive-UTC or aware datetime."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()
