"""
auth/passwords.py -- Password hashing, identity normalization, credential checks.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). The work factor comes
       from AuthConfig.bcrypt_rounds (default 10). bcrypt only reads the first
       72 bytes of its input and current releases raise on longer input, so
       registration rejects passwords over 72 UTF-8 bytes instead of letting
       them be silently truncated or blow up later.

  Timing equalization [C1]: CredentialValidator builds a dummy hash at
       construction, with the same work factor as real hashes. verify() runs
       bcrypt against it when the email is unknown, so "unknown email" and
       "wrong password" cost the same and response time does not reveal
       whether an account exists. Both paths raise the same
       InvalidCredentialsError.

  Soft timeout: hashing is CPU-bound and never cancelled. Calls slower than
       hash_soft_timeout_ms are logged at WARNING so a too-high work factor
       shows up in the logs before it shows up as latency complaints.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
import time

import bcrypt
from sqlalchemy.exc import IntegrityError

from auth.errors import AlreadyExistsError, InvalidCredentialsError, InvalidInputError
from auth.models import User
from auth.store import UserStore

logger = logging.getLogger("keyturn.auth")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MIN_EMAIL_LENGTH = 3
MAX_EMAIL_LENGTH = 255
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = 72
MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 100

_DUMMY_PASSWORD = "keyturn_timing_dummy"


# ---------------------------------------------------------------------------
# Normalization and field validation
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> str:
    """Normalize and validate an email. Returns the normalized form."""
    normalized = normalize_email(email)
    if len(normalized) < MIN_EMAIL_LENGTH:
        raise InvalidInputError("email", f"Email must be at least {MIN_EMAIL_LENGTH} characters long.")
    if len(normalized) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(normalized):
        raise InvalidInputError("email", "Email must be a valid email address.")
    return normalized


def validate_password(password: str) -> str:
    if password is None or len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidInputError("password", f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise InvalidInputError("password", f"Password must not exceed {MAX_PASSWORD_BYTES} bytes.")
    return password


def validate_name(name: str) -> str:
    """Trim and length-check a display name. Returns the trimmed form."""
    trimmed = (name or "").strip()
    if len(trimmed) < MIN_NAME_LENGTH:
        raise InvalidInputError("name", f"Name must be at least {MIN_NAME_LENGTH} characters long.")
    if len(trimmed) > MAX_NAME_LENGTH:
        raise InvalidInputError("name", f"Name must not exceed {MAX_NAME_LENGTH} characters.")
    return trimmed


# ---------------------------------------------------------------------------
# CredentialValidator
# ---------------------------------------------------------------------------


class CredentialValidator:
    """Creates accounts and checks email/password pairs against UserStore."""

    def __init__(self, store: UserStore, rounds: int = 10, soft_timeout_ms: int = 300) -> None:
        self._store = store
        self._rounds = rounds
        self._soft_timeout = soft_timeout_ms / 1000
        # Computed once so the first failed login is not measurably slower
        # than later ones [C1].
        self._dummy_hash = self.hash_password(_DUMMY_PASSWORD)

    def hash_password(self, plain: str) -> str:
        """Return a bcrypt hash of the given plaintext password."""
        start = time.perf_counter()
        hashed = bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")
        self._check_elapsed("hash", start)
        return hashed

    def verify_password(self, plain: str, hashed: str) -> bool:
        """Return True if the plaintext password matches the bcrypt hash."""
        start = time.perf_counter()
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # Over-long input or a corrupt stored hash -- never a match.
            return False
        finally:
            self._check_elapsed("verify", start)

    def register(self, email: str, password: str, name: str) -> User:
        """Validate input, check uniqueness, hash, and persist a new user.

        All validation runs before the store is touched. Raises
        InvalidInputError or AlreadyExistsError.
        """
        normalized = validate_email(email)
        validate_password(password)
        trimmed_name = validate_name(name)

        if self._store.get_by_email(normalized) is not None:
            raise AlreadyExistsError("A user with this email already exists.")

        user = User(email=normalized, password_hash=self.hash_password(password), name=trimmed_name)
        try:
            user.id = self._store.create_user(user)
        except IntegrityError as exc:
            # Lost a race with a concurrent registration for the same email.
            raise AlreadyExistsError("A user with this email already exists.") from exc
        created = self._store.get_by_id(user.id)
        logger.info("User registered: %s", user.id)
        return created if created is not None else user

    def verify(self, email: str, password: str) -> User:
        """Return the user for a correct email/password pair.

        Always runs bcrypt whether or not the user exists [C1]:
        - Unknown email: bcrypt runs against the dummy hash (same cost)
        - Wrong password: bcrypt runs against the real hash (same cost)

        Raises InvalidCredentialsError on any failure.
        """
        user = self._store.get_by_email(normalize_email(email))
        if user is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            self.verify_password(password or "", self._dummy_hash)
            raise InvalidCredentialsError()
        if not self.verify_password(password or "", user.password_hash):
            raise InvalidCredentialsError()
        return user

    def _check_elapsed(self, operation: str, start: float) -> None:
        elapsed = time.perf_counter() - start
        if elapsed > self._soft_timeout:
            logger.warning(
                "bcrypt %s took %.0fms (soft limit %.0fms, rounds=%d)",
                operation,
                elapsed * 1000,
                self._soft_timeout * 1000,
                self._rounds,
            )
