"""
auth/service.py -- AuthService: the session state machine.

    Anonymous --login--> Authenticated --access expires--> AccessExpired
    AccessExpired --refresh ok--> Authenticated (new pair, old refresh retired)
    AccessExpired --refresh fails / logout--> Anonymous

AuthService composes CredentialValidator (passwords), TokenIssuer (tokens) and
RefreshTokenStore (revocation ledger). Dependencies are passed to the
constructor; build_auth_service() wires the default set from an AuthConfig.

Every failure is one of the types in auth/errors.py. UnauthorizedError
reasons are logged here at WARNING and then collapse to one generic 401 at the
boundary.

All validation and token checks run before any write, so a failed call never
leaves a user row half-updated.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AlreadyExistsError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    UnauthorizedError,
    UnauthorizedReason,
)
from auth.models import LoginResult, PublicUser, TokenPair, User
from auth.passwords import CredentialValidator, validate_email, validate_name
from auth.sessions import RefreshTokenStore
from auth.store import UserStore
from auth.tokens import Clock, TokenIssuer, TokenSigner, utc_now
from core.config import AuthConfig

logger = logging.getLogger("keyturn.auth")


class AuthService:
    """register / login / refresh / logout / get_profile / update_profile."""

    def __init__(
        self,
        users: UserStore,
        credentials: CredentialValidator,
        issuer: TokenIssuer,
        refresh_tokens: RefreshTokenStore,
        clock: Clock = utc_now,
    ) -> None:
        self._users = users
        self._credentials = credentials
        self._issuer = issuer
        self._refresh_tokens = refresh_tokens
        self._clock = clock

    @property
    def issuer(self) -> TokenIssuer:
        return self._issuer

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: str) -> PublicUser:
        try:
            user = self._credentials.register(email, password, name)
        except AlreadyExistsError as exc:
            logger.info("Registration rejected: email already in use")
            raise ConflictError("A user with this email already exists.") from exc
        return PublicUser.from_user(user)

    def login(self, email: str, password: str) -> LoginResult:
        try:
            user = self._credentials.verify(email, password)
        except InvalidCredentialsError:
            logger.warning("Login failed: %s", UnauthorizedReason.INVALID_CREDENTIALS.value)
            raise
        tokens = self._issuer.issue_pair(user)
        self._refresh_tokens.save(user.id, tokens.refresh_token, tokens.refresh_expires_at)
        logger.info("Login succeeded for user %s", user.id)
        return LoginResult(tokens=tokens, user=PublicUser.from_user(user))

    # ------------------------------------------------------------------
    # Refresh and logout
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a live refresh token for a new pair, retiring the old token.

        Steps 1-4 are checks; step 5 is the only write and is a
        compare-and-set on the presented token.
        """
        # 1. Signature, expiry, kind.
        try:
            claims = self._issuer.verify_refresh(refresh_token)
        except UnauthorizedError as exc:
            raise self._unauthorized(exc.reason) from exc

        # 2. Must be the value currently on file.
        user = self._refresh_tokens.find_by_token_value(refresh_token)
        if user is None:
            raise self._unauthorized(UnauthorizedReason.REVOKED, claims.subject)

        # 3. Stored expiry is authoritative even if the JWT says otherwise.
        expires_at = user.refresh_token_expires_at
        if expires_at is None or expires_at <= self._clock():
            self._refresh_tokens.clear_if_current(user.id, refresh_token)
            raise self._unauthorized(UnauthorizedReason.EXPIRED, user.id)

        # 4. Token subject and stored owner must agree.
        if claims.subject != user.id:
            raise self._unauthorized(UnauthorizedReason.SUBJECT_MISMATCH, user.id)

        # 5. Rotate.
        tokens = self._issuer.issue_pair(user)
        if not self._refresh_tokens.rotate(user.id, refresh_token, tokens.refresh_token, tokens.refresh_expires_at):
            raise self._unauthorized(UnauthorizedReason.REVOKED, user.id)
        logger.info("Refresh token rotated for user %s", user.id)
        return tokens

    def logout(self, user_id: str) -> None:
        self._refresh_tokens.clear(user_id)
        logger.info("Logout for user %s", user_id)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def get_profile(self, user_id: str) -> PublicUser:
        return PublicUser.from_user(self._load(user_id))

    def update_profile(self, user_id: str, email: str | None = None, name: str | None = None) -> PublicUser:
        """Change email and/or name. Fields left as None are not touched."""
        user = self._load(user_id)
        fields: dict[str, str] = {}

        if email is not None:
            normalized = validate_email(email)
            if normalized != user.email:
                other = self._users.get_by_email(normalized)
                if other is not None and other.id != user.id:
                    raise ConflictError("A user with this email already exists.")
                fields["email"] = normalized

        if name is not None:
            trimmed = validate_name(name)
            if trimmed != user.name:
                fields["name"] = trimmed

        if fields:
            try:
                updated = self._users.update_user(user_id, **fields)
            except IntegrityError as exc:
                raise ConflictError("A user with this email already exists.") from exc
            if not updated:
                raise NotFoundError("User not found.")
            logger.info("Profile updated for user %s (%s)", user_id, ", ".join(sorted(fields)))
            user = self._load(user_id)
        return PublicUser.from_user(user)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, user_id: str) -> User:
        user = self._users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    def _unauthorized(self, reason: UnauthorizedReason, user_id: str | None = None) -> UnauthorizedError:
        logger.warning("Refresh rejected: %s (user=%s)", reason.value, user_id or "unknown")
        return UnauthorizedError(reason)


def build_auth_service(config: AuthConfig, users: UserStore, clock: Clock = utc_now) -> AuthService:
    """Wire an AuthService from the immutable config and a user repository."""
    issuer = TokenIssuer(TokenSigner(config.access, clock), TokenSigner(config.refresh, clock))
    credentials = CredentialValidator(
        users,
        rounds=config.bcrypt_rounds,
        soft_timeout_ms=config.hash_soft_timeout_ms,
    )
    return AuthService(
        users=users,
        credentials=credentials,
        issuer=issuer,
        refresh_tokens=RefreshTokenStore(users),
        clock=clock,
    )
