"""Unit tests for auth/service.py -- AuthService session state machine.

Covers:
- register(): sanitized result, Conflict across normalized-equal emails, InvalidInput
- login(): tokens issued and refresh token persisted; generic Unauthorized on failure
- refresh(): rotation (old token single-use), stored-expiry path clears the entry,
  logout revokes, wrong-kind / malformed tokens, subject mismatch
- Concurrent refresh with the same token: exactly one winner
- get_profile() / update_profile(): NotFound, Conflict excluding self, validation before write
- End-to-end scenario from register through logout
"""

from __future__ import annotations

import threading
from dataclasses import asdict
from datetime import timedelta

import pytest

from auth.errors import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    UnauthorizedError,
    UnauthorizedReason,
)
from auth.models import PublicUser
from auth.service import AuthService, build_auth_service
from auth.store import UserStore
from auth.tokens import TokenSigner
from core.config import AuthConfig

from conftest import FakeClock

_SECRET_FIELDS = {"password_hash", "refresh_token", "refresh_token_expires_at"}


def _register_and_login(service: AuthService, email: str = "ann@example.com"):
    service.register(email, "password123", "Ann")
    return service.login(email, "password123")


class TestRegister:
    def test_returns_sanitized_user(self, service: AuthService) -> None:
        user = service.register("Ann@Example.com", "password123", "Ann")
        assert isinstance(user, PublicUser)
        assert user.email == "ann@example.com"
        assert _SECRET_FIELDS.isdisjoint(asdict(user))

    @pytest.mark.parametrize("variant", ["ann@example.com", " ANN@example.COM ", "Ann@Example.com"])
    def test_conflict_on_normalized_duplicate(self, service: AuthService, variant: str) -> None:
        service.register("Ann@Example.com", "password123", "Ann")
        with pytest.raises(ConflictError):
            service.register(variant, "password123", "Ann Again")

    def test_invalid_input(self, service: AuthService) -> None:
        with pytest.raises(InvalidInputError):
            service.register("ann@example.com", "short", "Ann")


class TestLogin:
    def test_login_persists_refresh_token(self, service: AuthService, user_store: UserStore) -> None:
        result = _register_and_login(service)
        stored = user_store.get_by_id(result.user.id)
        assert stored.refresh_token == result.tokens.refresh_token
        assert stored.refresh_token_expires_at == result.tokens.refresh_expires_at
        assert _SECRET_FIELDS.isdisjoint(asdict(result.user))

    def test_login_access_token_verifies(self, service: AuthService) -> None:
        result = _register_and_login(service)
        claims = service.issuer.verify_access(result.tokens.access_token)
        assert claims.subject == result.user.id
        assert claims.email == "ann@example.com"

    @pytest.mark.parametrize("email, password", [("ann@example.com", "wrong-pass"), ("ghost@example.com", "password123")])
    def test_bad_credentials_generic(self, service: AuthService, email: str, password: str) -> None:
        service.register("ann@example.com", "password123", "Ann")
        with pytest.raises(UnauthorizedError) as exc_info:
            service.login(email, password)
        assert exc_info.value.reason is UnauthorizedReason.INVALID_CREDENTIALS

    def test_second_login_invalidates_first_session(self, service: AuthService) -> None:
        first = _register_and_login(service)
        service.login("ann@example.com", "password123")
        with pytest.raises(UnauthorizedError) as exc_info:
            service.refresh(first.tokens.refresh_token)
        assert exc_info.value.reason is UnauthorizedReason.REVOKED


class TestRefresh:
    def test_rotation_makes_old_token_single_use(self, service: AuthService) -> None:
        login = _register_and_login(service)
        token_a = login.tokens.refresh_token
        pair = service.refresh(token_a)
        assert pair.refresh_token != token_a
        with pytest.raises(UnauthorizedError) as exc_info:
            service.refresh(token_a)
        assert exc_info.value.reason is UnauthorizedReason.REVOKED
        # The new token still works.
        service.refresh(pair.refresh_token)

    def test_stored_expiry_clears_entry(
        self, service: AuthService, user_store: UserStore, clock: FakeClock
    ) -> None:
        login = _register_and_login(service)
        clock.advance(timedelta(days=7, seconds=1))
        with pytest.raises(UnauthorizedError) as exc_info:
            service.refresh(login.tokens.refresh_token)
        assert exc_info.value.reason is UnauthorizedReason.EXPIRED
        stored = user_store.get_by_id(login.user.id)
        assert stored.refresh_token is None
        assert stored.refresh_token_expires_at is None
        # Second attempt no longer finds the token at all.
        with pytest.raises(UnauthorizedError) as exc_info:
            service.refresh(login.tokens.refresh_token)
        assert exc_info.value.reason is UnauthorizedReason.REVOKED

    def test_past_expiry_written_directly(self, service: AuthService, user_store: UserStore, clock: FakeClock) -> None:
        login = _register_and_login(service)
        user_store.set_refresh_token(login.user.id, login.tokens.refresh_token, clock.now - timedelta(minutes=1))
        with pytest.raises(UnauthorizedError):
            service.refresh(login.tokens.refresh_token)
        assert user_store.get_by_id(login.user.id).refresh_token is None

    def test_logout_revokes(self, service: AuthService) -> None:
        login = _register_and_login(service)
        service.logout(login.user.id)
        with pytest.raises(UnauthorizedError) as exc_info:
            service.refresh(login.tokens.refresh_token)
        assert exc_info.value.reason is UnauthorizedReason.REVOKED

    def test_logout_is_idempotent(self, service: AuthService) -> None:
        login = _register_and_login(service)
        service.logout(login.user.id)
        service.logout(login.user.id)
        service.logout("never-existed")

    def test_access_token_cannot_refresh(self, service: AuthService) -> None:
        login = _register_and_login(service)
        with pytest.raises(UnauthorizedError):
            service.refresh(login.tokens.access_token)

    def test_wrong_kind(self, service: AuthService, auth_config: AuthConfig) -> None:
        login = _register_and_login(service)
        token, _ = TokenSigner(auth_config.refresh).sign({"sub": login.user.id})
        with pytest.raises(UnauthorizedError) as exc_info:
            service.refresh(token)
        assert exc_info.value.reason is UnauthorizedReason.WRONG_KIND

    def test_never_issued_token(self, service: AuthService, auth_config: AuthConfig) -> None:
        login = _register_and_login(service)
        token, _ = TokenSigner(auth_config.refresh).sign({"sub": login.user.id, "kind": "refresh"})
        with pytest.raises(UnauthorizedError) as exc_info:
            service.refresh(token)
        assert exc_info.value.reason is UnauthorizedReason.REVOKED

    def test_subject_mismatch(self, service: AuthService, user_store: UserStore, auth_config: AuthConfig) -> None:
        ann = _register_and_login(service)
        bob = _register_and_login(service, "bob@example.com")
        # A validly signed token naming Ann, planted in Bob's slot.
        forged, expires = TokenSigner(auth_config.refresh).sign({"sub": ann.user.id, "kind": "refresh"})
        user_store.set_refresh_token(bob.user.id, forged, expires)
        with pytest.raises(UnauthorizedError) as exc_info:
            service.refresh(forged)
        assert exc_info.value.reason is UnauthorizedReason.SUBJECT_MISMATCH
        # Pure check: Bob's slot is untouched.
        assert user_store.get_by_id(bob.user.id).refresh_token == forged

    def test_garbage(self, service: AuthService) -> None:
        with pytest.raises(UnauthorizedError) as exc_info:
            service.refresh("garbage")
        assert exc_info.value.reason is UnauthorizedReason.MALFORMED


class TestConcurrentRefresh:
    def test_only_one_racer_wins(self, auth_config: AuthConfig, tmp_path) -> None:
        store = UserStore(f"sqlite:///{tmp_path / 'race.db'}")
        service = build_auth_service(auth_config, store)
        try:
            login = _register_and_login(service)
            token = login.tokens.refresh_token
            barrier = threading.Barrier(2)
            outcomes: list[object] = []
            lock = threading.Lock()

            def racer() -> None:
                barrier.wait()
                try:
                    result: object = service.refresh(token)
                except UnauthorizedError as exc:
                    result = exc
                with lock:
                    outcomes.append(result)

            threads = [threading.Thread(target=racer) for _ in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)

            failures = [o for o in outcomes if isinstance(o, UnauthorizedError)]
            successes = [o for o in outcomes if not isinstance(o, UnauthorizedError)]
            assert len(successes) == 1
            assert len(failures) == 1
            assert failures[0].reason is UnauthorizedReason.REVOKED
            assert store.get_by_id(login.user.id).refresh_token == successes[0].refresh_token
        finally:
            store.close()


class TestProfile:
    def test_get_profile(self, service: AuthService) -> None:
        login = _register_and_login(service)
        profile = service.get_profile(login.user.id)
        assert profile == login.user

    def test_get_profile_not_found(self, service: AuthService) -> None:
        with pytest.raises(NotFoundError):
            service.get_profile("no-such-id")

    def test_update_name_and_email(self, service: AuthService) -> None:
        login = _register_and_login(service)
        updated = service.update_profile(login.user.id, email="  Annie@Example.com ", name="  Annie ")
        assert updated.email == "annie@example.com"
        assert updated.name == "Annie"
        # Login now works under the new email only.
        service.login("annie@example.com", "password123")
        with pytest.raises(UnauthorizedError):
            service.login("ann@example.com", "password123")

    def test_same_email_different_case_is_not_conflict(self, service: AuthService) -> None:
        login = _register_and_login(service)
        updated = service.update_profile(login.user.id, email="ANN@example.com")
        assert updated.email == "ann@example.com"

    def test_email_conflict(self, service: AuthService) -> None:
        ann = _register_and_login(service)
        service.register("bob@example.com", "password123", "Bob")
        with pytest.raises(ConflictError):
            service.update_profile(ann.user.id, email="Bob@Example.com")

    def test_invalid_name_writes_nothing(self, service: AuthService) -> None:
        login = _register_and_login(service)
        with pytest.raises(InvalidInputError):
            service.update_profile(login.user.id, email="new@example.com", name="A")
        assert service.get_profile(login.user.id).email == "ann@example.com"

    def test_invalid_email(self, service: AuthService) -> None:
        login = _register_and_login(service)
        with pytest.raises(InvalidInputError):
            service.update_profile(login.user.id, email="nope")

    def test_update_not_found(self, service: AuthService) -> None:
        with pytest.raises(NotFoundError):
            service.update_profile("no-such-id", name="Ghost")

    def test_empty_update_returns_profile(self, service: AuthService) -> None:
        login = _register_and_login(service)
        assert service.update_profile(login.user.id) == login.user

    def test_update_keeps_session(self, service: AuthService) -> None:
        login = _register_and_login(service)
        service.update_profile(login.user.id, name="Annie")
        service.refresh(login.tokens.refresh_token)


class TestEndToEnd:
    def test_register_login_rotate_logout(self, service: AuthService) -> None:
        user = service.register("Ann@Example.com", "password123", "Ann")
        login = service.login("ann@example.com", "password123")
        assert login.tokens.access_token
        v1 = login.tokens.refresh_token

        v2 = service.refresh(v1).refresh_token
        assert v2 != v1

        with pytest.raises(UnauthorizedError):
            service.refresh(v1)

        service.logout(user.id)
        with pytest.raises(UnauthorizedError):
            service.refresh(v2)
