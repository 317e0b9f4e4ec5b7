from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, Union

from warden.logging import get_logger
from warden.service.errors import PermissionDenied
from warden.storage.models import Permission, Person, Role, Service

logger = get_logger(__name__)


class AssignmentReader(Protocol):
    def get_service(self, service_id: int) -> Optional[Service]: ...

    def person_has_permission(
        self, person_id: int, service_id: int, permission_name: str
    ) -> bool: ...

    def list_person_service_roles(self, person_id: int) -> List[Tuple[Service, Role]]: ...

    def list_role_permissions(self, role_id: int) -> List[Permission]: ...


class PermissionEvaluator:
    """Answers permission questions from the live assignment graph or a token snapshot."""

    def __init__(self, store: AssignmentReader) -> None:
        self.store = store

    def has_permission(self, person_id: int, service_id: int, permission_name: str) -> bool:
        """Live check: person holds a role in the service granting the permission.

        A missing or disabled service denies everything.
        """
        service = self.store.get_service(service_id)
        if service is None or not service.status:
            logger.debug(
                "permission_service_inactive",
                service_id=service_id,
                exists=service is not None,
            )
            return False
        return self.store.person_has_permission(person_id, service_id, permission_name)

    def build_payload(self, person: Person) -> Dict[str, Any]:
        """Snapshot of the person's active services, roles and permissions.

        Embedded in the token at issuance; later assignment changes are not
        reflected until the person logs in again.
        """
        services: Dict[str, Dict[str, Any]] = {}
        role_permissions: Dict[int, List[str]] = {}
        for service, role in self.store.list_person_service_roles(person.id):
            if not service.status:
                continue
            grant = services.setdefault(
                service.name, {"service_id": service.id, "roles": [], "permissions": []}
            )
            if role.name not in grant["roles"]:
                grant["roles"].append(role.name)
            if role.id not in role_permissions:
                role_permissions[role.id] = [
                    p.name for p in self.store.list_role_permissions(role.id)
                ]
            for name in role_permissions[role.id]:
                if name not in grant["permissions"]:
                    grant["permissions"].append(name)
        for grant in services.values():
            grant["roles"].sort()
            grant["permissions"].sort()
        return {
            "user_id": person.id,
            "username": person.username,
            "name": person.name,
            "services": services,
        }

    @staticmethod
    def _find_grant(
        payload: Mapping[str, Any], service: Union[str, int]
    ) -> Optional[Mapping[str, Any]]:
        services = payload.get("services") or {}
        grant = services.get(str(service))
        if grant is not None:
            return grant
        for candidate in services.values():
            if str(candidate.get("service_id")) == str(service):
                return candidate
        return None

    def payload_allows(
        self,
        payload: Mapping[str, Any],
        service: Union[str, int],
        permission_name: Optional[str] = None,
    ) -> bool:
        """Evaluate against the issuance snapshot; accepts a service name or id.

        Role and permission grants come from the snapshot, but the service's
        active flag is read live: a service disabled after login grants nothing.
        """
        grant = self._find_grant(payload, service)
        if grant is None:
            return False
        current = self.store.get_service(int(grant["service_id"]))
        if current is None or not current.status:
            logger.debug(
                "permission_service_inactive",
                service_id=grant["service_id"],
                exists=current is not None,
            )
            return False
        if permission_name is None:
            return True
        return permission_name in (grant.get("permissions") or [])

    def require(
        self,
        payload: Mapping[str, Any],
        service: Union[str, int],
        permission_name: Optional[str] = None,
    ) -> None:
        if self.payload_allows(payload, service, permission_name):
            return
        logger.warning(
            "permission_denied",
            user_id=payload.get("user_id"),
            service=str(service),
            permission=permission_name,
        )
        if permission_name is None:
            raise PermissionDenied("service access", str(service))
        raise PermissionDenied(permission_name, str(service))
