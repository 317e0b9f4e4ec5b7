from __future__ import annotations

from typing import Callable, List, Optional

from warden.logging import get_logger
from warden.service.errors import NotFoundError, ValidationError
from warden.service.permissions import PermissionEvaluator
from warden.service.tokens import TokenService
from warden.storage.models import (
    DOCUMENT_TYPES,
    PERSON_TYPES,
    Permission,
    Person,
    PersonServiceRole,
    Role,
    RolePermission,
    Service,
    ServiceRole,
    epoch_now,
)

logger = get_logger(__name__)


class DirectoryService:
    """Management of people, roles, permissions, services and their assignments.

    Store-level uniqueness failures surface as ConstraintViolation (409);
    references to missing rows raise NotFoundError (404).
    """

    def __init__(
        self,
        store,
        tokens: TokenService,
        permissions: PermissionEvaluator,
        password_hasher: Callable[[str], str],
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.permissions = permissions
        self._hash_password = password_hasher

    # people
    def create_person(
        self,
        username: str,
        password: str,
        name: str,
        document_number: str,
        *,
        person_type: str = "N",
        document_type: str = "DNI",
    ) -> Person:
        if person_type not in PERSON_TYPES:
            raise ValidationError(
                "invalid person_type", detail={"allowed": list(PERSON_TYPES)}
            )
        if document_type not in DOCUMENT_TYPES:
            raise ValidationError(
                "invalid document_type", detail={"allowed": list(DOCUMENT_TYPES)}
            )
        person = self.store.create_person(
            username,
            name,
            self._hash_password(password),
            document_number,
            person_type=person_type,
            document_type=document_type,
        )
        logger.info("person_created", person_id=person.id)
        return person

    def list_people(self, limit: int = 100) -> List[Person]:
        return self.store.list_people(limit=limit)

    def get_person(self, person_id: int) -> Person:
        person = self.store.get_person(person_id)
        if not person:
            raise NotFoundError("person not found", detail={"person_id": person_id})
        return person

    def update_person(
        self,
        person_id: int,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Person:
        password_hash = self._hash_password(password) if password else None
        person = self.store.update_person(
            person_id, username=username, name=name, password_hash=password_hash
        )
        if not person:
            raise NotFoundError("person not found", detail={"person_id": person_id})
        return person

    def delete_person(self, person_id: int) -> int:
        """Soft-delete the person, then drop every live token they hold.

        Returns the number of tokens removed.
        """
        if not self.store.remove_person(person_id, epoch_now()):
            raise NotFoundError("person not found", detail={"person_id": person_id})
        revoked = self.tokens.revoke_user_tokens(person_id)
        logger.info("person_removed", person_id=person_id, tokens_revoked=revoked)
        return revoked

    # roles
    def create_role(self, name: str) -> Role:
        return self.store.create_role(name)

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def get_role(self, role_id: int) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    def update_role(self, role_id: int, name: str) -> Role:
        role = self.store.update_role(role_id, name)
        if not role:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    def delete_role(self, role_id: int) -> None:
        if not self.store.delete_role(role_id):
            raise NotFoundError("role not found", detail={"role_id": role_id})

    # permissions
    def create_permission(self, name: str) -> Permission:
        return self.store.create_permission(name)

    def list_permissions(self) -> List[Permission]:
        return self.store.list_permissions()

    def get_permission(self, permission_id: int) -> Permission:
        permission = self.store.get_permission(permission_id)
        if not permission:
            raise NotFoundError(
                "permission not found", detail={"permission_id": permission_id}
            )
        return permission

    def update_permission(self, permission_id: int, name: str) -> Permission:
        permission = self.store.update_permission(permission_id, name)
        if not permission:
            raise NotFoundError(
                "permission not found", detail={"permission_id": permission_id}
            )
        return permission

    def delete_permission(self, permission_id: int) -> None:
        if not self.store.delete_permission(permission_id):
            raise NotFoundError(
                "permission not found", detail={"permission_id": permission_id}
            )

    # services
    def create_service(self, name: str, description: Optional[str] = None) -> Service:
        return self.store.create_service(name, description)

    def list_services(self, *, include_inactive: bool = False) -> List[Service]:
        return self.store.list_services(include_inactive=include_inactive)

    def get_service(self, service_id: int) -> Service:
        service = self.store.get_service(service_id)
        if not service:
            raise NotFoundError("service not found", detail={"service_id": service_id})
        return service

    def update_service(
        self,
        service_id: int,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[bool] = None,
    ) -> Service:
        service = self.store.update_service(
            service_id, name=name, description=description, status=status
        )
        if not service:
            raise NotFoundError("service not found", detail={"service_id": service_id})
        return service

    def delete_service(self, service_id: int) -> None:
        """Retire a service; its assignments stay but grant nothing while disabled."""
        if not self.store.disable_service(service_id):
            raise NotFoundError("service not found", detail={"service_id": service_id})

    # assignments
    def assign_permission_to_role(self, role_id: int, permission_id: int) -> RolePermission:
        self.get_role(role_id)
        self.get_permission(permission_id)
        edge = self.store.assign_permission_to_role(role_id, permission_id)
        logger.info("permission_assigned", role_id=role_id, permission_id=permission_id)
        return edge

    def remove_permission_from_role(self, role_id: int, permission_id: int) -> bool:
        return self.store.remove_permission_from_role(role_id, permission_id)

    def list_role_permissions(self, role_id: int) -> List[Permission]:
        self.get_role(role_id)
        return self.store.list_role_permissions(role_id)

    def assign_role_to_service(self, service_id: int, role_id: int) -> ServiceRole:
        self.get_service(service_id)
        self.get_role(role_id)
        return self.store.assign_role_to_service(service_id, role_id)

    def remove_role_from_service(self, service_id: int, role_id: int) -> bool:
        return self.store.remove_role_from_service(service_id, role_id)

    def list_service_roles(self, service_id: int) -> List[Role]:
        self.get_service(service_id)
        return self.store.list_service_roles(service_id)

    def assign_role_to_person(
        self, person_id: int, service_id: int, role_id: int
    ) -> PersonServiceRole:
        self.get_person(person_id)
        self.get_service(service_id)
        self.get_role(role_id)
        edge = self.store.assign_role_to_person(person_id, service_id, role_id)
        logger.info(
            "person_role_assigned",
            person_id=person_id,
            service_id=service_id,
            role_id=role_id,
        )
        return edge

    def remove_role_from_person(self, person_id: int, service_id: int, role_id: int) -> bool:
        return self.store.remove_role_from_person(person_id, service_id, role_id)

    def list_person_roles_in_service(self, person_id: int, service_id: int) -> List[Role]:
        return self.store.list_person_roles_in_service(person_id, service_id)

    def list_people_with_role_in_service(self, service_id: int, role_id: int) -> List[Person]:
        return self.store.list_people_with_role_in_service(service_id, role_id)

    def list_services_of_person(self, person_id: int) -> List[Service]:
        return self.store.list_services_of_person(person_id)

    def check_permission(self, person_id: int, service_id: int, permission_name: str) -> bool:
        return self.permissions.has_permission(person_id, service_id, permission_name)
