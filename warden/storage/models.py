from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

PERSON_TYPES = ("N", "J")
DOCUMENT_TYPES = ("DNI", "CE", "RUC")


def epoch_now() -> int:
    return int(time.time())


@dataclass
class Person:
    id: int
    username: str
    name: str
    password_hash: str
    document_number: str
    person_type: str = "N"
    document_type: str = "DNI"
    created_at: int = field(default_factory=epoch_now)
    updated_at: int = field(default_factory=epoch_now)
    removed_at: Optional[int] = None

    @property
    def is_removed(self) -> bool:
        return self.removed_at is not None


@dataclass
class Role:
    id: int
    name: str
    created_at: int = field(default_factory=epoch_now)
    updated_at: int = field(default_factory=epoch_now)


@dataclass
class Permission:
    id: int
    name: str
    created_at: int = field(default_factory=epoch_now)
    updated_at: int = field(default_factory=epoch_now)


@dataclass
class Service:
    id: int
    name: str
    description: Optional[str] = None
    status: bool = True
    created_at: int = field(default_factory=epoch_now)
    updated_at: int = field(default_factory=epoch_now)


@dataclass
class RolePermission:
    role_id: int
    permission_id: int
    created_at: int = field(default_factory=epoch_now)
    updated_at: int = field(default_factory=epoch_now)


@dataclass
class ServiceRole:
    service_id: int
    role_id: int
    created_at: int = field(default_factory=epoch_now)
    updated_at: int = field(default_factory=epoch_now)


@dataclass
class PersonServiceRole:
    person_id: int
    service_id: int
    role_id: int
    created_at: int = field(default_factory=epoch_now)
    updated_at: int = field(default_factory=epoch_now)


@dataclass
class TokenCacheEntry:
    """One live session: the opaque token, its issuance snapshot and idle clock."""

    token: str
    payload: Dict[str, Any]
    last_activity: int

    @property
    def user_id(self) -> Optional[int]:
        value = self.payload.get("user_id")
        return int(value) if value is not None else None

    def idle_seconds(self, now: int) -> int:
        return now - self.last_activity

    def is_expired(self, now: int, ttl_seconds: int) -> bool:
        return self.idle_seconds(now) > ttl_seconds

    def expires_at(self, ttl_seconds: int) -> int:
        return self.last_activity + ttl_seconds
