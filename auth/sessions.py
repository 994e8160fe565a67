"""
auth/sessions.py -- Refresh-token ledger (rotation and revocation).

Each user has at most one live refresh token, stored on the user row. Writing
a new one overwrites the old one, which is the whole revocation mechanism: a
token whose value no longer matches the stored one is revoked, however valid
its signature and expiry.

Concurrency:
  Two refresh calls presenting the same token must not both succeed. rotate()
  and clear_if_current() are compare-and-set updates keyed by (user id,
  presented token). Whichever UPDATE the database applies first wins; the
  other matches zero rows and the caller reports the token as revoked.
"""

from __future__ import annotations

import logging
from datetime import datetime

from auth.models import User
from auth.store import UserStore

logger = logging.getLogger("keyturn.auth")


class RefreshTokenStore:
    def __init__(self, store: UserStore) -> None:
        self._store = store

    def save(self, user_id: str, token: str, expires_at: datetime) -> None:
        """Unconditionally replace the user's refresh token and expiry."""
        self._store.set_refresh_token(user_id, token, expires_at)

    def find_by_token_value(self, token: str) -> User | None:
        return self._store.get_by_refresh_token(token)

    def clear(self, user_id: str) -> None:
        """Drop the user's refresh token. Idempotent."""
        self._store.set_refresh_token(user_id, None, None)

    def rotate(self, user_id: str, expected: str, token: str, expires_at: datetime) -> bool:
        """Replace `expected` with `token` only if `expected` is still the stored value.

        Returns False when another call already replaced or cleared it.
        """
        swapped = self._store.set_refresh_token(user_id, token, expires_at, expected=expected)
        if not swapped:
            logger.info("Refresh rotation lost for user %s: token no longer current", user_id)
        return swapped

    def clear_if_current(self, user_id: str, expected: str) -> bool:
        """Clear the user's token only if it still equals `expected`."""
        return self._store.set_refresh_token(user_id, None, None, expected=expected)
