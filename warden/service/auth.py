from __future__ import annotations

import secrets
from typing import Optional, Protocol, Tuple, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from warden.config import Settings
from warden.logging import get_logger, token_fingerprint
from warden.service.errors import (
    InvalidCredentials,
    TokenExpired,
    TokenNotFound,
    ValidationError,
)
from warden.service.permissions import PermissionEvaluator
from warden.service.tokens import IssuedToken, TokenService, TokenStatus, TokenValidation
from warden.storage.models import Person

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def get_person_by_username(self, username: str) -> Optional[Person]: ...

    def get_person(self, person_id: int) -> Optional[Person]: ...


class AuthService:
    """Login, logout and token authentication on top of TokenService."""

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        permissions: PermissionEvaluator,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.permissions = permissions
        self.settings = settings
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # verified against when the username is unknown so both paths cost one argon2 check
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def login(self, username: str, password: str) -> Tuple[Person, IssuedToken]:
        """Verify credentials and issue a token carrying the assignment snapshot.

        Raises:
            InvalidCredentials: unknown or removed user, or wrong password
        """
        person = self.store.get_person_by_username(username)
        if person is None:
            self.verify_password(self._dummy_hash, password)
            self.logger.warning("login_failed", username=username, reason="unknown_user")
            raise InvalidCredentials()
        if not self.verify_password(person.password_hash, password):
            self.logger.warning("login_failed", username=username, reason="bad_password")
            raise InvalidCredentials()

        payload = self.permissions.build_payload(person)
        issued = self.tokens.issue(payload)
        # a removal that ran revoke_user_tokens before the insert did not see this row
        if self.store.get_person(person.id) is None:
            self.tokens.revoke(issued.token)
            self.logger.warning("login_failed", username=username, reason="removed_during_login")
            raise InvalidCredentials()
        self.logger.info("login_succeeded", user_id=person.id)
        return person, issued

    def logout(self, token: Optional[str]) -> bool:
        """Delete the token if it exists; repeated calls are harmless."""
        return self.tokens.revoke(token)

    def authenticate(self, token: Optional[str], *, renew: bool = True) -> TokenValidation:
        validation = self.tokens.validate(token, renew=renew)
        if validation.status == TokenStatus.NOT_FOUND:
            self.logger.warning(
                "token_rejected", reason="not_found", token_fingerprint=token_fingerprint(token)
            )
            raise TokenNotFound()
        if validation.status == TokenStatus.EXPIRED:
            self.logger.warning(
                "token_rejected", reason="expired", token_fingerprint=token_fingerprint(token)
            )
            raise TokenExpired()
        return validation

    def check_token(
        self,
        token: Optional[str],
        *,
        service: Union[str, int, None] = None,
        permission: Optional[str] = None,
    ) -> TokenValidation:
        """Authenticate and, when a service is named, enforce the payload grant.

        The permission check reads the snapshot embedded at login, so grants
        made after issuance only show up on tokens issued afterwards. A service
        disabled since issuance is denied immediately.
        """
        validation = self.authenticate(token)
        if permission is not None and service is None:
            raise ValidationError("service is required when permission is given")
        if service is not None:
            self.permissions.require(validation.payload or {}, service, permission)
        return validation
