from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

from warden.config import Settings
from warden.logging import get_logger, token_fingerprint
from warden.service.errors import ServerError
from warden.storage.models import TokenCacheEntry

logger = get_logger(__name__)


class TokenCacheStore(Protocol):
    def insert_token(self, entry: TokenCacheEntry) -> bool: ...

    def get_token(self, token: str) -> Optional[TokenCacheEntry]: ...

    def renew_token(
        self, token: str, now: int, *, min_idle: int, max_idle: int
    ) -> Optional[TokenCacheEntry]: ...

    def delete_token(self, token: str) -> bool: ...

    def delete_token_if_expired(self, token: str, now: int, ttl_seconds: int) -> bool: ...

    def delete_expired(self, now: int, ttl_seconds: int) -> int: ...

    def delete_user_tokens(self, user_id: int) -> int: ...


class TokenStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


@dataclass
class IssuedToken:
    token: str
    payload: Dict[str, Any]
    issued_at: int
    expires_at: int


@dataclass
class TokenValidation:
    status: TokenStatus
    entry: Optional[TokenCacheEntry] = None
    renewed: bool = False
    expires_at: Optional[int] = None

    @property
    def valid(self) -> bool:
        return self.status == TokenStatus.VALID

    @property
    def payload(self) -> Optional[Dict[str, Any]]:
        return self.entry.payload if self.entry else None


class TokenService:
    """Issues, validates, renews and revokes opaque session tokens.

    Validation never takes a lock of its own. A valid token inside the renewal
    window is bumped with one conditional update on the store; when that update
    matches nothing, a single read classifies the token as not found, expired
    or valid-but-not-yet-due. Deletions always beat renewals because a deleted
    row can no longer match the conditional update.
    """

    def __init__(
        self,
        store: TokenCacheStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
        token_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.ttl_seconds = settings.token_ttl_seconds
        self.renew_threshold_seconds = settings.token_renew_threshold_seconds
        self.max_issue_attempts = settings.token_issue_attempts
        self._secret = (settings.token_secret or "").encode("utf-8")
        self._clock = clock or time.time
        self._token_factory = token_factory or self.generate_token
        self.logger = logger

    def _now(self) -> int:
        return int(self._clock())

    @property
    def renew_after_seconds(self) -> int:
        """Idle time from which a still-valid token gets its window slid."""

        return self.ttl_seconds - self.renew_threshold_seconds

    def generate_token(self) -> str:
        """HMAC-SHA256 over a random nonce and the issuance time, hex encoded."""

        nonce = secrets.token_bytes(32)
        issued_ns = time.time_ns().to_bytes(8, "big")
        return hmac.new(self._secret, nonce + issued_ns, hashlib.sha256).hexdigest()

    def issue(self, payload: Dict[str, Any]) -> IssuedToken:
        now = self._now()
        for attempt in range(1, self.max_issue_attempts + 1):
            token = self._token_factory()
            entry = TokenCacheEntry(token=token, payload=payload, last_activity=now)
            if self.store.insert_token(entry):
                self.logger.info(
                    "token_issued",
                    token_fingerprint=token_fingerprint(token),
                    user_id=entry.user_id,
                )
                return IssuedToken(
                    token=token,
                    payload=payload,
                    issued_at=now,
                    expires_at=entry.expires_at(self.ttl_seconds),
                )
            self.logger.warning("token_collision", attempt=attempt)
        raise ServerError("could not allocate a unique token")

    def validate(self, token: Optional[str], *, renew: bool = True) -> TokenValidation:
        if not token:
            return TokenValidation(status=TokenStatus.NOT_FOUND)
        now = self._now()
        if renew:
            renewed = self.store.renew_token(
                token,
                now,
                min_idle=self.renew_after_seconds,
                max_idle=self.ttl_seconds,
            )
            if renewed is not None:
                self.logger.debug(
                    "token_renewed", token_fingerprint=token_fingerprint(token)
                )
                return TokenValidation(
                    status=TokenStatus.VALID,
                    entry=renewed,
                    renewed=True,
                    expires_at=renewed.expires_at(self.ttl_seconds),
                )

        # diagnostic read; never writes except to reap a row that is still expired
        entry = self.store.get_token(token)
        if entry is None:
            return TokenValidation(status=TokenStatus.NOT_FOUND)
        if entry.is_expired(now, self.ttl_seconds):
            if self.store.delete_token_if_expired(token, now, self.ttl_seconds):
                self.logger.info(
                    "token_expired_reaped", token_fingerprint=token_fingerprint(token)
                )
            return TokenValidation(status=TokenStatus.EXPIRED)
        return TokenValidation(
            status=TokenStatus.VALID,
            entry=entry,
            renewed=False,
            expires_at=entry.expires_at(self.ttl_seconds),
        )

    def revoke(self, token: Optional[str]) -> bool:
        if not token:
            return False
        removed = self.store.delete_token(token)
        self.logger.info(
            "token_revoked", token_fingerprint=token_fingerprint(token), removed=removed
        )
        return removed

    def revoke_user_tokens(self, user_id: int) -> int:
        removed = self.store.delete_user_tokens(user_id)
        self.logger.info("user_tokens_revoked", user_id=user_id, removed=removed)
        return removed

    def delete_expired(self, now: Optional[int] = None) -> int:
        current = self._now() if now is None else now
        return self.store.delete_expired(current, self.ttl_seconds)
