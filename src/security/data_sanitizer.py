"""
Data Sanitization Module.

Masks credentials and contact details before data reaches logs, audit
snapshots or API responses.
CRITICAL: Secrets, session tokens and MFA material must never be persisted
in clear text outside their own stores.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, Optional, Set

# Patterns for sensitive data embedded in free text
PATTERNS = {
    "bearer": re.compile(r"\bBearer\s+[A-Za-z0-9._~+/-]+=*", re.IGNORECASE),
    "jwt": re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\b"),
    "otp_secret": re.compile(r"(secret=)[A-Z2-7]+", re.IGNORECASE),
    "api_key": re.compile(r"\b(sk-|pk_|api[_-]?key)[A-Za-z0-9_-]{20,}\b", re.IGNORECASE),
    "credit_card": re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b"),
    "phone": re.compile(r"\+\d{1,3}[-.\s]?\d[\d\s.-]{7,13}\d"),
}

# Field name tokens that mark a value as a credential
SENSITIVE_FIELDS: Set[str] = {
    "password", "passwd", "token", "secret", "key", "mfasecret",
    "authorization", "cookie", "otp", "pin", "cvv",
}

# Exact field names that are sensitive even though no token matches
SENSITIVE_NAMES: Set[str] = {
    "backup_codes", "backup_code", "totp_code", "mfa_code", "card_number",
    "set_cookie", "x_api_key", "password_hash", "phone_number",
}

SENSITIVE_HEADERS = ("authorization", "cookie", "x-api-key")

# Masking placeholder
MASKED = "***MASKED***"


def _normalize(field_name: str) -> str:
    # camelCase -> snake_case so mfaSecret and mfa_secret match alike
    snake = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", field_name)
    return snake.lower().replace("-", "_").replace(" ", "_")


class DataSanitizer:
    """
    Masks sensitive fields and patterns.

    Use Cases:
    - Logging: strip credentials before writing log records
    - Audit: mask request bodies and headers before storage and on query
    - Error responses: keep tokens out of messages
    """

    def __init__(
        self,
        additional_fields: Optional[Iterable[str]] = None,
        additional_patterns: Optional[Dict[str, re.Pattern]] = None,
    ):
        self.sensitive_fields = SENSITIVE_FIELDS.copy()
        if additional_fields:
            self.sensitive_fields.update(_normalize(f) for f in additional_fields)

        self.patterns = PATTERNS.copy()
        if additional_patterns:
            self.patterns.update(additional_patterns)

    def sanitize_dict(self, data: Dict[str, Any], deep: bool = True) -> Dict[str, Any]:
        """
        Return a copy of ``data`` with sensitive fields masked.

        Keys are kept so readers can see a value was present.
        """
        result = {}

        for key, value in data.items():
            if self._is_sensitive_field(str(key)):
                result[key] = MASKED if value not in (None, "") else value
                continue

            if deep:
                result[key] = self.sanitize_value(value)
            else:
                result[key] = value

        return result

    def sanitize_value(self, value: Any) -> Any:
        if value is None:
            return None

        if isinstance(value, str):
            return self.sanitize_string(value)

        if isinstance(value, (int, float, bool)):
            return value

        if isinstance(value, dict):
            return self.sanitize_dict(value)

        if isinstance(value, (list, tuple)):
            return [self.sanitize_value(item) for item in value]

        return self.sanitize_string(str(value))

    def sanitize_string(self, text: str) -> str:
        """Replace credentials and contact details found in free text."""
        result = text

        for pattern_name, pattern in self.patterns.items():
            if pattern_name == "email":
                result = pattern.sub(self._redact_email, result)
            elif pattern_name == "otp_secret":
                result = pattern.sub(lambda m: m.group(1) + MASKED, result)
            else:
                result = pattern.sub(MASKED, result)

        return result

    def sanitize_headers(self, headers: Dict[str, Any]) -> Dict[str, Any]:
        """Mask authorization, cookie and API key headers, case-insensitively."""
        sanitized = {}
        for name, value in headers.items():
            sanitized[name] = MASKED if name.lower() in SENSITIVE_HEADERS else value
        return sanitized

    def sanitize_for_logging(self, data: Any, context: str = "") -> str:
        if isinstance(data, dict):
            sanitized = self.sanitize_dict(data)
        else:
            sanitized = self.sanitize_value(data)

        if context:
            return f"[{context}] {sanitized}"
        return str(sanitized)

    def _is_sensitive_field(self, field_name: str) -> bool:
        normalized = _normalize(field_name)
        if normalized in SENSITIVE_NAMES or normalized in self.sensitive_fields:
            return True
        compact = normalized.replace("_", "")
        if compact in self.sensitive_fields:
            return True
        return any(token in self.sensitive_fields for token in normalized.split("_"))

    def _redact_email(self, match: re.Match) -> str:
        """Partially redact email addresses."""
        email = match.group(0)
        local, _, domain = email.partition("@")
        if len(local) > 2:
            local = local[0] + "*" * (len(local) - 2) + local[-1]
        else:
            local = "*" * len(local)
        return f"{local}@{domain}"


# Singleton instance
_sanitizer: Optional[DataSanitizer] = None


def get_sanitizer() -> DataSanitizer:
    """Get the singleton sanitizer instance."""
    global _sanitizer
    if _sanitizer is None:
        _sanitizer = DataSanitizer()
    return _sanitizer


def mask_sensitive(data: Any) -> Any:
    """Convenience function for masking a snapshot of any shape."""
    return get_sanitizer().sanitize_value(data)


def sanitize_for_logging(data: Any, context: str = "") -> str:
    """Convenience function for logging sanitization."""
    return get_sanitizer().sanitize_for_logging(data, context)
