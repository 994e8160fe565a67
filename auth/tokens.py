"""
auth/tokens.py -- Signing and verification of access and refresh tokens.

Security design decisions:
  JWT: python-jose, HS256 by default. One TokenSigner type, parametrized by
       a SigningConfig (secret + lifetime), is instantiated twice -- once for
       access tokens, once for refresh tokens. The two secrets are independent
       (core.config refuses to start when they are equal), so a token signed
       in one context never verifies in the other.

  Claims:
       access  -> sub, email, iat, exp, jti
       refresh -> sub, kind="refresh", iat, exp, jti
       jti is random per token. Without it two tokens minted for the same user
       in the same second would be byte-identical and rotation could hand
       back the value it was meant to retire.

  Verification raises UnauthorizedError with an internal reason:
       EXPIRED    -- signature fine, exp in the past
       MALFORMED  -- bad signature, garbage input, missing claims
       WRONG_KIND -- refresh verification of a token whose kind != "refresh"

  Clock: issuing reads time from an injected callable so tests can mint
       already-expired tokens. Expiry on decode is checked by python-jose
       against the wall clock.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import UnauthorizedError, UnauthorizedReason
from auth.models import AccessClaims, RefreshClaims, TokenPair, User
from core.config import SigningConfig

logger = logging.getLogger("keyturn.tokens")

Clock = Callable[[], datetime]

REFRESH_KIND = "refresh"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# TokenSigner -- one signing context
# ---------------------------------------------------------------------------


class TokenSigner:
    """Encode and decode JWTs for a single signing context."""

    def __init__(self, config: SigningConfig, clock: Clock = utc_now) -> None:
        self.config = config
        self._clock = clock

    def sign(self, claims: dict) -> tuple[str, datetime]:
        """Sign `claims` with iat/exp/jti added. Returns (token, expires_at)."""
        now = self._clock()
        expires_at = now + self.config.expires_in
        payload = {
            **claims,
            "iat": now,
            "exp": expires_at,
            "jti": uuid.uuid4().hex,
        }
        token = jwt.encode(payload, self.config.secret, algorithm=self.config.algorithm)
        return token, expires_at

    def decode(self, token: str) -> dict:
        """Verify signature and expiry and return the payload.

        Raises UnauthorizedError(EXPIRED) or UnauthorizedError(MALFORMED).
        """
        if not token or not isinstance(token, str):
            raise UnauthorizedError(UnauthorizedReason.MALFORMED)
        try:
            return jwt.decode(token, self.config.secret, algorithms=[self.config.algorithm])
        except ExpiredSignatureError as exc:
            raise UnauthorizedError(UnauthorizedReason.EXPIRED) from exc
        except JWTError as exc:
            raise UnauthorizedError(UnauthorizedReason.MALFORMED) from exc


def _expiry(payload: dict) -> datetime:
    try:
        return datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError) as exc:
        raise UnauthorizedError(UnauthorizedReason.MALFORMED) from exc


# ---------------------------------------------------------------------------
# TokenIssuer -- the access/refresh pair
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Issues and verifies access/refresh pairs using two TokenSigners.

    Usage:
        issuer = TokenIssuer(TokenSigner(config.access), TokenSigner(config.refresh))
        pair = issuer.issue_pair(user)
        claims = issuer.verify_access(pair.access_token)
    """

    def __init__(self, access: TokenSigner, refresh: TokenSigner) -> None:
        self._access = access
        self._refresh = refresh

    def issue_pair(self, user: User) -> TokenPair:
        access_token, access_exp = self._access.sign({"sub": user.id, "email": user.email})
        refresh_token, refresh_exp = self._refresh.sign({"sub": user.id, "kind": REFRESH_KIND})
        logger.debug("Issued token pair for user %s", user.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._access.decode(token)
        subject = payload.get("sub")
        email = payload.get("email")
        if not subject or not email or payload.get("kind") == REFRESH_KIND:
            raise UnauthorizedError(UnauthorizedReason.MALFORMED)
        return AccessClaims(subject=str(subject), email=str(email), expires_at=_expiry(payload))

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._refresh.decode(token)
        # Exact match -- prevents an access token being replayed as a refresh token.
        if payload.get("kind") != REFRESH_KIND:
            raise UnauthorizedError(UnauthorizedReason.WRONG_KIND)
        subject = payload.get("sub")
        if not subject:
            raise UnauthorizedError(UnauthorizedReason.MALFORMED)
        return RefreshClaims(subject=str(subject), token_kind=REFRESH_KIND, expires_at=_expiry(payload))
