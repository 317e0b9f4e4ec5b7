"""Unit tests for auth service.

Tests for:
- Password hashing and verification
- Login credential checks and payload snapshot
- Token authentication outcomes
"""

import pytest

from warden.config import Settings
from warden.service.auth import AuthService
from warden.service.errors import (
    InvalidCredentials,
    PermissionDenied,
    TokenExpired,
    TokenNotFound,
    ValidationError,
)
from warden.service.permissions import PermissionEvaluator
from warden.service.tokens import TokenService
from warden.storage.memory import MemoryStore


@pytest.fixture
def settings():
    return Settings(
        token_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        token_ttl_seconds=300,
        token_renew_threshold_seconds=30,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings, clock):
    tokens = TokenService(memory_store, settings, clock=clock)
    return AuthService(memory_store, tokens, PermissionEvaluator(memory_store), settings)


@pytest.fixture
def test_user(memory_store, auth_service):
    """Create a test user with password."""
    return memory_store.create_person(
        "ana", "Ana", auth_service.hash_password("TestPassword123!"), "12345678"
    )


class TestPasswordHashing:
    def test_hash_is_argon2id(self, auth_service):
        pwd_hash = auth_service.hash_password("TestPassword123!")
        assert pwd_hash.startswith("$argon2id$")
        assert auth_service.verify_password(pwd_hash, "TestPassword123!")
        assert not auth_service.verify_password(pwd_hash, "wrong")

    def test_malformed_hash_does_not_verify(self, auth_service):
        assert auth_service.verify_password("plaintext", "plaintext") is False


class TestLogin:
    def test_login_issues_token_with_snapshot(self, auth_service, test_user):
        person, issued = auth_service.login("ana", "TestPassword123!")
        assert person.id == test_user.id
        assert issued.payload["user_id"] == test_user.id
        assert issued.payload["services"] == {}

    def test_wrong_password_and_unknown_user_raise_same_error(self, auth_service, test_user):
        with pytest.raises(InvalidCredentials) as wrong:
            auth_service.login("ana", "nope")
        with pytest.raises(InvalidCredentials) as unknown:
            auth_service.login("ghost", "TestPassword123!")
        assert wrong.value.message == unknown.value.message


class TestAuthenticate:
    def test_unknown_token_raises_not_found(self, auth_service):
        with pytest.raises(TokenNotFound):
            auth_service.authenticate("missing")

    def test_expired_token_raises_expired(self, auth_service, test_user, clock):
        _, issued = auth_service.login("ana", "TestPassword123!")
        clock.advance(301)
        with pytest.raises(TokenExpired):
            auth_service.authenticate(issued.token)

    def test_logout_then_authenticate(self, auth_service, test_user):
        _, issued = auth_service.login("ana", "TestPassword123!")
        assert auth_service.logout(issued.token) is True
        assert auth_service.logout(issued.token) is False
        with pytest.raises(TokenNotFound):
            auth_service.authenticate(issued.token)

    def test_check_token_enforces_snapshot(self, auth_service, test_user):
        _, issued = auth_service.login("ana", "TestPassword123!")
        assert auth_service.check_token(issued.token).valid
        with pytest.raises(PermissionDenied):
            auth_service.check_token(issued.token, service="billing")
        with pytest.raises(ValidationError):
            auth_service.check_token(issued.token, permission="invoice.read")


class TestLoginRace:
    def test_person_removed_during_login_gets_no_token(self, auth_service, memory_store, test_user):
        build_payload = auth_service.permissions.build_payload

        def build_then_remove(person):
            payload = build_payload(person)
            # removal lands between the credential check and the token insert
            memory_store.remove_person(person.id, 1)
            auth_service.tokens.revoke_user_tokens(person.id)
            return payload

        auth_service.permissions.build_payload = build_then_remove
        with pytest.raises(InvalidCredentials):
            auth_service.login("ana", "TestPassword123!")
        assert memory_store.tokens == {}
