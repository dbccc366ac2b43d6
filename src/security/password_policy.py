"""
Password policy - composition rules and strength scoring.

Rules: 8-128 characters; upper, lower, digit and special characters; no
character repeated more than 3 times in a row; no common passwords or
common patterns; no name or email local part inside the password.
Keyboard sequences only produce a warning.

Strength is scored 0-10. Admin roles need a score of at least 6.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MAX_REPEATING_CHARS = 3
SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

ADMIN_ROLES = frozenset({"super_admin", "national_admin", "state_admin"})
ADMIN_MIN_SCORE = 6

COMMON_PASSWORDS = frozenset({
    "password", "123456", "123456789", "qwerty", "abc123", "password123",
    "admin", "letmein", "welcome", "monkey", "1234567890", "password1",
    "qwerty123", "admin123", "root", "toor", "pass", "test", "guest",
    "user", "login", "changeme", "secret", "default", "master",
})

_COMMON_PATTERN = re.compile(r"^(password|admin|user|test|guest|login)\d*$", re.IGNORECASE)
_KEYBOARD_PATTERNS = ("qwerty", "asdf", "zxcv", "1234", "abcd")
_SPECIAL_RE = re.compile(f"[{re.escape(SPECIAL_CHARACTERS)}]")
_REPEAT_RE = re.compile(rf"(.)\1{{{MAX_REPEATING_CHARS},}}", re.IGNORECASE)
_SEQUENTIAL_DIGITS = re.compile(r"012|123|234|345|456|567|678|789|890")
_SEQUENTIAL_LETTERS = re.compile(
    "|".join("abcdefghijklmnopqrstuvwxyz"[i:i + 3] for i in range(24)), re.IGNORECASE
)


@dataclass(frozen=True)
class PasswordStrength:
    score: int
    level: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "level": self.level, "description": self.description}


@dataclass
class PasswordValidation:
    is_valid: bool
    strength: PasswordStrength
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "strength": self.strength.to_dict(),
        }


def calculate_strength(password: str) -> PasswordStrength:
    """Score length, variety and uniqueness; penalize repeats and sequences."""
    score = 0

    for threshold in (8, 12, 16):
        if len(password) >= threshold:
            score += 1

    if re.search(r"[a-z]", password):
        score += 1
    if re.search(r"[A-Z]", password):
        score += 1
    if re.search(r"\d", password):
        score += 1
    if re.search(r"[^a-zA-Z0-9]", password):
        score += 1

    if password and len(set(password)) >= len(password) * 0.7:
        score += 1

    if re.search(r"(.)\1{2,}", password):
        score -= 1
    if _SEQUENTIAL_DIGITS.search(password):
        score -= 1
    if _SEQUENTIAL_LETTERS.search(password):
        score -= 1

    score = max(0, min(10, score))
    if score <= 2:
        level, description = "weak", "Very weak password. Consider using a longer password with mixed characters."
    elif score <= 4:
        level, description = "fair", "Fair password. Consider adding more character variety."
    elif score <= 6:
        level, description = "good", "Good password. Consider making it longer for better security."
    elif score <= 8:
        level, description = "strong", "Strong password. Well done!"
    else:
        level, description = "very_strong", "Very strong password. Excellent security!"
    return PasswordStrength(score=score, level=level, description=description)


def validate_password(
    password: str,
    name: Optional[str] = None,
    email: Optional[str] = None,
    role_names: Optional[Iterable[str]] = None,
) -> PasswordValidation:
    """
    Check a candidate password against the policy.

    Args:
        name, email: Account details that must not appear in the password
        role_names: Held roles; admin roles raise the minimum strength
    """
    errors: List[str] = []
    warnings: List[str] = []
    password = password or ""
    lower = password.lower()

    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must not exceed {MAX_PASSWORD_LENGTH} characters")

    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not _SPECIAL_RE.search(password):
        errors.append(f"Password must contain at least one special character ({SPECIAL_CHARACTERS})")

    if _REPEAT_RE.search(password):
        errors.append(f"Password cannot contain more than {MAX_REPEATING_CHARS} repeating characters")

    if lower in COMMON_PASSWORDS:
        errors.append("Password is too common. Please choose a more unique password")
    if _COMMON_PATTERN.match(password):
        errors.append("Password follows a common pattern. Please choose a more unique password")
    if any(pattern in lower for pattern in _KEYBOARD_PATTERNS):
        warnings.append("Password contains keyboard patterns which may be easier to guess")

    if name and len(name) >= 3 and name.lower() in lower:
        errors.append("Password cannot contain your name")
    if email:
        local_part = email.lower().split("@")[0]
        if len(local_part) >= 3 and local_part in lower:
            errors.append("Password cannot contain parts of your email address")

    strength = calculate_strength(password)
    if ADMIN_ROLES.intersection(role_names or ()) and strength.score < ADMIN_MIN_SCORE:
        errors.append(f"Admin accounts require stronger passwords (minimum score: {ADMIN_MIN_SCORE}/10)")

    return PasswordValidation(is_valid=not errors, strength=strength, errors=errors, warnings=warnings)


def policy_description() -> Dict[str, Any]:
    return {
        "minLength": MIN_PASSWORD_LENGTH,
        "maxLength": MAX_PASSWORD_LENGTH,
        "requireUppercase": True,
        "requireLowercase": True,
        "requireNumbers": True,
        "requireSpecialChars": True,
        "maxRepeatingChars": MAX_REPEATING_CHARS,
        "specialChars": SPECIAL_CHARACTERS,
        "adminMinScore": ADMIN_MIN_SCORE,
    }
