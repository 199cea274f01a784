"""
auth/tokens.py -- Password hashing, password policy, and session token utilities.

Security design decisions:
  Passwords: argon2-cffi PasswordHasher (Argon2id). Argon2id is slow, salted,
       and memory-hard, so GPU brute force of a stolen verifier is expensive.
       Cost parameters come from Settings so tests can run with small ones.
       verify() compares in constant time.

  Timing equalization: make_dummy_hash() produces a verifier for a random
       string. The credential service verifies against it when the email is
       unknown so response time does not reveal whether an account exists [C1].

  Session tokens: secrets.token_urlsafe(32) gives 256 bits of entropy -- brute
       force is computationally infeasible. The raw token is returned to the
       client once and never stored. We store HMAC-SHA256(SECRET_KEY, token):
       deterministic, so lookup is O(1) by primary key, and a leaked database
       cannot be replayed without also knowing SECRET_KEY. The slow KDF is
       unnecessary for high-entropy random tokens.

Layer rule: no imports from api/ or clinic/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from core.config import Settings

# ---------------------------------------------------------------------------
# Password hashing (Argon2id)
# ---------------------------------------------------------------------------


def make_password_hasher(settings: Settings) -> PasswordHasher:
    return PasswordHasher(
        time_cost=settings.argon2_time_cost,
        memory_cost=settings.argon2_memory_cost,
        parallelism=settings.argon2_parallelism,
    )


def hash_password(hasher: PasswordHasher, plain: str) -> str:
    """Return an Argon2id verifier (salt and parameters encoded in the string)."""
    return hasher.hash(plain)


def verify_password(hasher: PasswordHasher, plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the verifier."""
    try:
        return hasher.verify(hashed, plain)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


def make_dummy_hash(hasher: PasswordHasher) -> str:
    """Verifier for a throwaway secret, used to equalize timing on unknown emails [C1]."""
    return hasher.hash(secrets.token_hex(16))


# ---------------------------------------------------------------------------
# Password policy
# ---------------------------------------------------------------------------


def password_policy_violations(password: str, settings: Settings) -> list[str]:
    """Return the list of unmet password rules (empty list = acceptable).

    Rules come from Settings:
      PASSWORD_MIN_LENGTH      -- minimum length in characters
      PASSWORD_REQUIRE_UPPER   -- at least one upper-case letter
      PASSWORD_REQUIRE_SYMBOL  -- at least one character from PASSWORD_SYMBOLS
    """
    violations: list[str] = []
    if len(password) < settings.password_min_length:
        violations.append(f"at least {settings.password_min_length} characters")
    if settings.password_require_upper and not any(c.isupper() for c in password):
        violations.append("an upper-case letter")
    if settings.password_require_symbol and not any(c in settings.password_symbols for c in password):
        violations.append(f"one of {settings.password_symbols}")
    return violations


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def generate_session_token() -> str:
    """Generate a new opaque bearer token (256 bits, URL-safe base64)."""
    return secrets.token_urlsafe(32)


def hash_session_token(secret_key: str, raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string."""
    return hmac.new(
        secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()
