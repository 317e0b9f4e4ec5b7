"""Token issuance, sliding renewal, expiry and revocation against the memory store."""

import pytest

from warden.config import Settings
from warden.service.errors import ServerError
from warden.service.tokens import TokenService, TokenStatus
from warden.storage.memory import MemoryStore

PAYLOAD = {
    "user_id": 7,
    "username": "ana",
    "name": "Ana",
    "services": {"billing": {"service_id": 1, "roles": ["clerk"], "permissions": ["invoice.read"]}},
}


def _settings(**overrides) -> Settings:
    values = {
        "token_secret": "unit-test-secret",
        "token_ttl_seconds": 300,
        "token_renew_threshold_seconds": 30,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tokens(store, clock):
    return TokenService(store, _settings(), clock=clock)


class TestIssue:
    def test_issue_returns_unique_hex_tokens(self, tokens):
        first = tokens.issue(PAYLOAD)
        second = tokens.issue(PAYLOAD)
        assert first.token != second.token
        assert len(first.token) == 64
        int(first.token, 16)

    def test_immediate_validate_returns_issued_payload(self, tokens):
        issued = tokens.issue(PAYLOAD)
        result = tokens.validate(issued.token)
        assert result.status == TokenStatus.VALID
        assert result.payload == PAYLOAD
        assert result.renewed is False

    def test_expiry_is_last_activity_plus_ttl(self, tokens, clock):
        issued = tokens.issue(PAYLOAD)
        assert issued.issued_at == int(clock.now)
        assert issued.expires_at == int(clock.now) + 300

    def test_collision_retries_with_new_token(self, store, clock):
        candidates = iter(["dup", "dup", "fresh"])
        service = TokenService(store, _settings(), clock=clock, token_factory=lambda: next(candidates))
        assert service.issue(PAYLOAD).token == "dup"
        assert service.issue(PAYLOAD).token == "fresh"

    def test_persistent_collision_raises_server_error(self, store, clock):
        service = TokenService(
            store, _settings(token_issue_attempts=2), clock=clock, token_factory=lambda: "same"
        )
        service.issue(PAYLOAD)
        with pytest.raises(ServerError):
            service.issue(PAYLOAD)


class TestSlidingWindow:
    def test_no_renewal_before_threshold(self, tokens, clock):
        issued = tokens.issue(PAYLOAD)
        clock.advance(100)
        result = tokens.validate(issued.token)
        assert result.valid
        assert result.renewed is False
        assert result.expires_at == issued.expires_at

    def test_renewal_near_expiry_then_expiry(self, tokens, store, clock):
        """TTL 300, threshold 30: renewed at t=275, expired at t=600."""
        start = int(clock.now)
        issued = tokens.issue(PAYLOAD)

        clock.advance(275)
        renewed = tokens.validate(issued.token)
        assert renewed.valid and renewed.renewed
        assert renewed.expires_at == start + 575

        clock.advance(325)
        expired = tokens.validate(issued.token)
        assert expired.status == TokenStatus.EXPIRED
        assert store.get_token(issued.token) is None

    def test_window_boundaries_are_inclusive(self, tokens, clock):
        issued = tokens.issue(PAYLOAD)
        clock.advance(270)
        assert tokens.validate(issued.token).renewed is True

        other = tokens.issue(PAYLOAD)
        clock.advance(300)
        at_ttl = tokens.validate(other.token)
        assert at_ttl.valid and at_ttl.renewed

    def test_one_second_past_ttl_is_expired(self, tokens, clock):
        issued = tokens.issue(PAYLOAD)
        clock.advance(301)
        assert tokens.validate(issued.token).status == TokenStatus.EXPIRED

    def test_expiry_never_moves_backwards(self, tokens, clock):
        issued = tokens.issue(PAYLOAD)
        seen = [issued.expires_at]
        for step in (50, 240, 10, 280, 5):
            clock.advance(step)
            result = tokens.validate(issued.token)
            assert result.valid
            seen.append(result.expires_at)
        assert seen == sorted(seen)

    def test_validate_without_renew_leaves_row_untouched(self, tokens, store, clock):
        issued = tokens.issue(PAYLOAD)
        clock.advance(280)
        result = tokens.validate(issued.token, renew=False)
        assert result.valid and not result.renewed
        assert store.get_token(issued.token).last_activity == issued.issued_at


class TestRejection:
    @pytest.mark.parametrize("token", [None, "", "not-a-token"])
    def test_missing_tokens_are_not_found(self, tokens, token):
        assert tokens.validate(token).status == TokenStatus.NOT_FOUND

    def test_revoked_token_is_not_found(self, tokens):
        issued = tokens.issue(PAYLOAD)
        assert tokens.revoke(issued.token) is True
        assert tokens.revoke(issued.token) is False
        assert tokens.validate(issued.token).status == TokenStatus.NOT_FOUND

    def test_revoke_user_tokens_only_touches_that_user(self, tokens):
        mine = [tokens.issue(PAYLOAD) for _ in range(3)]
        theirs = tokens.issue({**PAYLOAD, "user_id": 8})
        assert tokens.revoke_user_tokens(7) == 3
        assert all(not tokens.validate(t.token).valid for t in mine)
        assert tokens.validate(theirs.token).valid

    def test_delete_expired_keeps_live_rows(self, tokens, clock):
        old = tokens.issue(PAYLOAD)
        clock.advance(200)
        fresh = tokens.issue(PAYLOAD)
        clock.advance(150)
        assert tokens.delete_expired() == 1
        assert tokens.validate(old.token).status == TokenStatus.NOT_FOUND
        assert tokens.validate(fresh.token).valid


class TestSettingsWindow:
    def test_threshold_must_be_below_ttl(self):
        with pytest.raises(ValueError):
            _settings(token_ttl_seconds=30, token_renew_threshold_seconds=30)

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            _settings(token_renew_threshold_seconds=0)
