from __future__ import annotations

import copy
import itertools
import threading
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    Permission,
    Person,
    PersonServiceRole,
    Role,
    RolePermission,
    Service,
    ServiceRole,
    TokenCacheEntry,
    epoch_now,
)


class MemoryStore:
    """In-process directory and token cache for tests and local development.

    Every public method holds ``_data_lock`` for its whole body, so each
    conditional token operation is one indivisible step, the same guarantee
    a single-row ``UPDATE ... WHERE`` gives in Postgres.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.people: Dict[int, Person] = {}
        self.roles: Dict[int, Role] = {}
        self.permissions: Dict[int, Permission] = {}
        self.services: Dict[int, Service] = {}
        self.role_permissions: Dict[Tuple[int, int], RolePermission] = {}
        self.service_roles: Dict[Tuple[int, int], ServiceRole] = {}
        self.person_service_roles: Dict[Tuple[int, int, int], PersonServiceRole] = {}
        self.tokens: Dict[str, TokenCacheEntry] = {}
        self._ids = {
            "person": itertools.count(1),
            "role": itertools.count(1),
            "permission": itertools.count(1),
            "service": itertools.count(1),
        }
        self._data_lock = threading.RLock()

    def _touch(self, record) -> None:
        # write-time audit hook, same contract as the set_epoch_audit_fields trigger
        record.updated_at = epoch_now()

    def verify_connection(self) -> None:
        return None

    # people
    def create_person(
        self,
        username: str,
        name: str,
        password_hash: str,
        document_number: str,
        *,
        person_type: str = "N",
        document_type: str = "DNI",
    ) -> Person:
        with self._data_lock:
            for existing in self.people.values():
                if existing.username == username:
                    raise ConstraintViolation("username already exists", {"field": "username"})
                if (existing.document_type, existing.document_number) == (
                    document_type,
                    document_number,
                ):
                    raise ConstraintViolation(
                        "document already registered", {"field": "document_number"}
                    )
            person = Person(
                id=next(self._ids["person"]),
                username=username,
                name=name,
                password_hash=password_hash,
                document_number=document_number,
                person_type=person_type,
                document_type=document_type,
            )
            self.people[person.id] = person
            return replace(person)

    def get_person(self, person_id: int, *, include_removed: bool = False) -> Optional[Person]:
        with self._data_lock:
            person = self.people.get(person_id)
            if not person or (person.is_removed and not include_removed):
                return None
            return replace(person)

    def get_person_by_username(self, username: str) -> Optional[Person]:
        with self._data_lock:
            for person in self.people.values():
                if person.username == username and not person.is_removed:
                    return replace(person)
            return None

    def list_people(self, limit: int = 100) -> List[Person]:
        with self._data_lock:
            active = [replace(p) for p in self.people.values() if not p.is_removed]
            return sorted(active, key=lambda p: p.id)[:limit]

    def update_person(
        self,
        person_id: int,
        *,
        username: Optional[str] = None,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> Optional[Person]:
        with self._data_lock:
            person = self.people.get(person_id)
            if not person or person.is_removed:
                return None
            if username is not None and username != person.username:
                if any(p.username == username for p in self.people.values()):
                    raise ConstraintViolation("username already exists", {"field": "username"})
                person.username = username
            if name is not None:
                person.name = name
            if password_hash is not None:
                person.password_hash = password_hash
            self._touch(person)
            return replace(person)

    def remove_person(self, person_id: int, removed_at: int) -> bool:
        with self._data_lock:
            person = self.people.get(person_id)
            if not person or person.is_removed:
                return False
            person.removed_at = removed_at
            self._touch(person)
            return True

    # roles
    def create_role(self, name: str) -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(id=next(self._ids["role"]), name=name)
            self.roles[role.id] = role
            return replace(role)

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [replace(r) for r in sorted(self.roles.values(), key=lambda r: r.id)]

    def update_role(self, role_id: int, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if any(r.name == name and r.id != role_id for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role.name = name
            self._touch(role)
            return replace(role)

    def delete_role(self, role_id: int) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            self._cascade(role_id=role_id)
            return True

    # permissions
    def create_permission(self, name: str) -> Permission:
        with self._data_lock:
            if any(p.name == name for p in self.permissions.values()):
                raise ConstraintViolation("permission already exists", {"field": "name"})
            permission = Permission(id=next(self._ids["permission"]), name=name)
            self.permissions[permission.id] = permission
            return replace(permission)

    def get_permission(self, permission_id: int) -> Optional[Permission]:
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            return replace(permission) if permission else None

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return [
                replace(p) for p in sorted(self.permissions.values(), key=lambda p: p.id)
            ]

    def update_permission(self, permission_id: int, name: str) -> Optional[Permission]:
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            if not permission:
                return None
            if any(
                p.name == name and p.id != permission_id for p in self.permissions.values()
            ):
                raise ConstraintViolation("permission already exists", {"field": "name"})
            permission.name = name
            self._touch(permission)
            return replace(permission)

    def delete_permission(self, permission_id: int) -> bool:
        with self._data_lock:
            if self.permissions.pop(permission_id, None) is None:
                return False
            self._cascade(permission_id=permission_id)
            return True

    # services
    def create_service(
        self, name: str, description: Optional[str] = None, *, status: bool = True
    ) -> Service:
        with self._data_lock:
            if any(s.name == name for s in self.services.values()):
                raise ConstraintViolation("service already exists", {"field": "name"})
            service = Service(
                id=next(self._ids["service"]),
                name=name,
                description=description,
                status=status,
            )
            self.services[service.id] = service
            return replace(service)

    def get_service(self, service_id: int) -> Optional[Service]:
        with self._data_lock:
            service = self.services.get(service_id)
            return replace(service) if service else None

    def get_service_by_name(self, name: str) -> Optional[Service]:
        with self._data_lock:
            for service in self.services.values():
                if service.name == name:
                    return replace(service)
            return None

    def list_services(self, *, include_inactive: bool = False) -> List[Service]:
        with self._data_lock:
            return [
                replace(s)
                for s in sorted(self.services.values(), key=lambda s: s.id)
                if include_inactive or s.status
            ]

    def update_service(
        self,
        service_id: int,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[bool] = None,
    ) -> Optional[Service]:
        with self._data_lock:
            service = self.services.get(service_id)
            if not service:
                return None
            if name is not None and name != service.name:
                if any(s.name == name for s in self.services.values()):
                    raise ConstraintViolation("service already exists", {"field": "name"})
                service.name = name
            if description is not None:
                service.description = description
            if status is not None:
                service.status = status
            self._touch(service)
            return replace(service)

    def disable_service(self, service_id: int) -> bool:
        with self._data_lock:
            service = self.services.get(service_id)
            if not service:
                return False
            service.status = False
            self._touch(service)
            return True

    # assignment edges
    def _require(self, **refs: int) -> None:
        tables = {
            "person_id": self.people,
            "role_id": self.roles,
            "permission_id": self.permissions,
            "service_id": self.services,
        }
        for field_name, value in refs.items():
            if value not in tables[field_name]:
                raise ConstraintViolation(
                    "referenced record does not exist", {field_name: value}
                )

    def _cascade(
        self,
        *,
        role_id: Optional[int] = None,
        permission_id: Optional[int] = None,
    ) -> None:
        if role_id is not None:
            for key in [k for k in self.role_permissions if k[0] == role_id]:
                self.role_permissions.pop(key)
            for key in [k for k in self.service_roles if k[1] == role_id]:
                self.service_roles.pop(key)
            for key in [k for k in self.person_service_roles if k[2] == role_id]:
                self.person_service_roles.pop(key)
        if permission_id is not None:
            for key in [k for k in self.role_permissions if k[1] == permission_id]:
                self.role_permissions.pop(key)

    def assign_permission_to_role(self, role_id: int, permission_id: int) -> RolePermission:
        with self._data_lock:
            self._require(role_id=role_id, permission_id=permission_id)
            key = (role_id, permission_id)
            edge = self.role_permissions.get(key)
            if edge is None:
                edge = RolePermission(role_id=role_id, permission_id=permission_id)
                self.role_permissions[key] = edge
            return replace(edge)

    def remove_permission_from_role(self, role_id: int, permission_id: int) -> bool:
        with self._data_lock:
            return self.role_permissions.pop((role_id, permission_id), None) is not None

    def list_role_permissions(self, role_id: int) -> List[Permission]:
        with self._data_lock:
            return [
                replace(self.permissions[permission_id])
                for (rid, permission_id) in sorted(self.role_permissions)
                if rid == role_id
            ]

    def assign_role_to_service(self, service_id: int, role_id: int) -> ServiceRole:
        with self._data_lock:
            self._require(service_id=service_id, role_id=role_id)
            key = (service_id, role_id)
            edge = self.service_roles.get(key)
            if edge is None:
                edge = ServiceRole(service_id=service_id, role_id=role_id)
                self.service_roles[key] = edge
            return replace(edge)

    def remove_role_from_service(self, service_id: int, role_id: int) -> bool:
        with self._data_lock:
            return self.service_roles.pop((service_id, role_id), None) is not None

    def list_service_roles(self, service_id: int) -> List[Role]:
        with self._data_lock:
            return [
                replace(self.roles[role_id])
                for (sid, role_id) in sorted(self.service_roles)
                if sid == service_id
            ]

    def assign_role_to_person(
        self, person_id: int, service_id: int, role_id: int
    ) -> PersonServiceRole:
        with self._data_lock:
            self._require(person_id=person_id, service_id=service_id, role_id=role_id)
            key = (person_id, service_id, role_id)
            edge = self.person_service_roles.get(key)
            if edge is None:
                edge = PersonServiceRole(
                    person_id=person_id, service_id=service_id, role_id=role_id
                )
                self.person_service_roles[key] = edge
            return replace(edge)

    def remove_role_from_person(self, person_id: int, service_id: int, role_id: int) -> bool:
        with self._data_lock:
            return (
                self.person_service_roles.pop((person_id, service_id, role_id), None)
                is not None
            )

    def list_person_roles_in_service(self, person_id: int, service_id: int) -> List[Role]:
        with self._data_lock:
            return [
                replace(self.roles[role_id])
                for (pid, sid, role_id) in sorted(self.person_service_roles)
                if pid == person_id and sid == service_id
            ]

    def list_people_with_role_in_service(self, service_id: int, role_id: int) -> List[Person]:
        with self._data_lock:
            return [
                replace(self.people[pid])
                for (pid, sid, rid) in sorted(self.person_service_roles)
                if sid == service_id and rid == role_id and not self.people[pid].is_removed
            ]

    def list_person_service_roles(self, person_id: int) -> List[Tuple[Service, Role]]:
        with self._data_lock:
            return [
                (replace(self.services[sid]), replace(self.roles[rid]))
                for (pid, sid, rid) in sorted(self.person_service_roles)
                if pid == person_id
            ]

    def list_services_of_person(self, person_id: int) -> List[Service]:
        with self._data_lock:
            service_ids = sorted(
                {sid for (pid, sid, _) in self.person_service_roles if pid == person_id}
            )
            return [
                replace(self.services[sid])
                for sid in service_ids
                if self.services[sid].status
            ]

    def person_has_permission(
        self, person_id: int, service_id: int, permission_name: str
    ) -> bool:
        with self._data_lock:
            service = self.services.get(service_id)
            if not service or not service.status:
                return False
            role_ids = {
                rid
                for (pid, sid, rid) in self.person_service_roles
                if pid == person_id and sid == service_id
            }
            return any(
                rid in role_ids and self.permissions[permission_id].name == permission_name
                for (rid, permission_id) in self.role_permissions
            )

    # token cache
    def insert_token(self, entry: TokenCacheEntry) -> bool:
        with self._data_lock:
            if entry.token in self.tokens:
                return False
            self.tokens[entry.token] = TokenCacheEntry(
                token=entry.token,
                payload=copy.deepcopy(entry.payload),
                last_activity=entry.last_activity,
            )
            return True

    def get_token(self, token: str) -> Optional[TokenCacheEntry]:
        with self._data_lock:
            entry = self.tokens.get(token)
            return self._copy_entry(entry) if entry else None

    def renew_token(
        self, token: str, now: int, *, min_idle: int, max_idle: int
    ) -> Optional[TokenCacheEntry]:
        with self._data_lock:
            entry = self.tokens.get(token)
            if entry is None:
                return None
            if not min_idle <= now - entry.last_activity <= max_idle:
                return None
            entry.last_activity = now
            return self._copy_entry(entry)

    def delete_token(self, token: str) -> bool:
        with self._data_lock:
            return self.tokens.pop(token, None) is not None

    def delete_token_if_expired(self, token: str, now: int, ttl_seconds: int) -> bool:
        with self._data_lock:
            entry = self.tokens.get(token)
            if entry is None or not entry.is_expired(now, ttl_seconds):
                return False
            self.tokens.pop(token)
            return True

    def delete_expired(self, now: int, ttl_seconds: int) -> int:
        with self._data_lock:
            expired = [
                token
                for token, entry in self.tokens.items()
                if entry.is_expired(now, ttl_seconds)
            ]
            for token in expired:
                self.tokens.pop(token)
            return len(expired)

    def delete_user_tokens(self, user_id: int) -> int:
        with self._data_lock:
            owned = [
                token for token, entry in self.tokens.items() if entry.user_id == user_id
            ]
            for token in owned:
                self.tokens.pop(token)
            return len(owned)

    @staticmethod
    def _copy_entry(entry: TokenCacheEntry) -> TokenCacheEntry:
        return TokenCacheEntry(
            token=entry.token,
            payload=copy.deepcopy(entry.payload),
            last_activity=entry.last_activity,
        )
