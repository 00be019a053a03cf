"""
Password hashing (bcrypt) and strength scoring.

Strength score is the sum of fixed weights, capped at 100:

    length >= min_length      25
    length >= 12              10
    length >= 16              10
    lowercase letter          10
    uppercase letter          15
    digit                     15
    symbol                    15

Each rule only ever adds points, so satisfying one more rule never lowers
the score.  A password is valid when it is within the length bounds and
contains all four character classes.
"""

import re
from dataclasses import dataclass, field

import bcrypt

from aegis_engine.common.exceptions import MalformedHashError, PasswordPolicyError

DEFAULT_ROUNDS = 12
DEFAULT_MIN_LENGTH = 8
DEFAULT_MAX_LENGTH = 72

WEIGHT_MIN_LENGTH = 25
WEIGHT_LENGTH_12 = 10
WEIGHT_LENGTH_16 = 10
WEIGHT_LOWER = 10
WEIGHT_UPPER = 15
WEIGHT_DIGIT = 15
WEIGHT_SYMBOL = 15

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")
_SYMBOL = re.compile(r"[^A-Za-z0-9]")
_BCRYPT_HASH = re.compile(r"^\$2[aby]?\$(\d{2})\$[./A-Za-z0-9]{53}$")


@dataclass
class StrengthResult:
    valid: bool
    score: int
    issues: list[str] = field(default_factory=list)


class PasswordHasher:
    """Adaptive password hashing with length bounds checked before hashing."""

    def __init__(
        self,
        rounds: int = DEFAULT_ROUNDS,
        min_length: int = DEFAULT_MIN_LENGTH,
        max_length: int = DEFAULT_MAX_LENGTH,
    ):
        self.rounds = rounds
        self.min_length = min_length
        self.max_length = max_length

    def hash(self, password: str) -> str:
        """Hash a password. Raises PasswordPolicyError outside the length bounds."""
        encoded = password.encode("utf-8")
        if len(password) < self.min_length:
            raise PasswordPolicyError(
                f"Password must be at least {self.min_length} characters"
            )
        if len(encoded) > self.max_length:
            raise PasswordPolicyError(
                f"Password must be at most {self.max_length} bytes"
            )
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("ascii")

    def verify(self, password: str, hashed: str) -> bool:
        """False on mismatch; MalformedHashError only when ``hashed`` is not a bcrypt hash."""
        if not isinstance(hashed, str) or not _BCRYPT_HASH.match(hashed):
            raise MalformedHashError()
        encoded = password.encode("utf-8")
        if len(encoded) > self.max_length:
            # Never hashed, so it cannot match
            return False
        try:
            return bcrypt.checkpw(encoded, hashed.encode("ascii"))
        except ValueError as exc:
            raise MalformedHashError() from exc

    def needs_rehash(self, hashed: str) -> bool:
        """True if the hash was produced with a lower cost factor than configured."""
        match = _BCRYPT_HASH.match(hashed or "")
        if not match:
            raise MalformedHashError()
        return int(match.group(1)) < self.rounds

    def check_strength(self, password: str) -> StrengthResult:
        return check_strength(password, self.min_length, self.max_length)


def check_strength(
    password: str,
    min_length: int = DEFAULT_MIN_LENGTH,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> StrengthResult:
    """Score a password 0-100 and list the rules it fails."""
    issues: list[str] = []
    score = 0
    length = len(password)

    if length >= min_length:
        score += WEIGHT_MIN_LENGTH
    else:
        issues.append(f"Must be at least {min_length} characters")
    if length >= 12:
        score += WEIGHT_LENGTH_12
    if length >= 16:
        score += WEIGHT_LENGTH_16
    if len(password.encode("utf-8")) > max_length:
        issues.append(f"Must be at most {max_length} bytes")

    if _LOWER.search(password):
        score += WEIGHT_LOWER
    else:
        issues.append("Must contain a lowercase letter")
    if _UPPER.search(password):
        score += WEIGHT_UPPER
    else:
        issues.append("Must contain an uppercase letter")
    if _DIGIT.search(password):
        score += WEIGHT_DIGIT
    else:
        issues.append("Must contain a digit")
    if _SYMBOL.search(password):
        score += WEIGHT_SYMBOL
    else:
        issues.append("Must contain a symbol")

    return StrengthResult(valid=not issues, score=min(score, 100), issues=issues)
