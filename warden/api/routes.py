from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Query

from warden.api.schemas import (
    CheckPermissionResponse,
    CheckTokenRequest,
    CheckTokenResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    NameRequest,
    PermissionListResponse,
    PermissionResponse,
    PersonCreateRequest,
    PersonListResponse,
    PersonResponse,
    PersonServiceRoleRequest,
    PersonUpdateRequest,
    ProfileResponse,
    RoleListResponse,
    RolePermissionRequest,
    RoleResponse,
    ServiceCreateRequest,
    ServiceListResponse,
    ServiceResponse,
    ServiceRoleRequest,
    ServiceUpdateRequest,
)
from warden.service.runtime import get_runtime
from warden.service.tokens import TokenValidation
from warden.storage.models import Permission, Person, Role, Service

# sync handlers; FastAPI runs them in its threadpool
router = APIRouter()


def require_token(
    token: Optional[str] = Header(None, convert_underscores=False),
) -> TokenValidation:
    """Management routes: the token must be live, but is not renewed."""
    runtime = get_runtime()
    return runtime.auth.authenticate(token, renew=False)


def _person_to_response(person: Person) -> PersonResponse:
    return PersonResponse(
        id=person.id,
        username=person.username,
        name=person.name,
        person_type=person.person_type,
        document_type=person.document_type,
        document_number=person.document_number,
        created_at=person.created_at,
        updated_at=person.updated_at,
    )


def _role_to_response(role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id, name=role.name, created_at=role.created_at, updated_at=role.updated_at
    )


def _permission_to_response(permission: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=permission.id,
        name=permission.name,
        created_at=permission.created_at,
        updated_at=permission.updated_at,
    )


def _service_to_response(service: Service) -> ServiceResponse:
    return ServiceResponse(
        id=service.id,
        name=service.name,
        description=service.description,
        status=service.status,
        created_at=service.created_at,
        updated_at=service.updated_at,
    )


# auth
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest):
    """Authenticate with username and password and receive a token.

    Raises:
        401: If the username is unknown, removed, or the password is wrong
    """
    runtime = get_runtime()
    _, issued = runtime.auth.login(body.username, body.password)
    return Envelope(
        status="ok",
        data=LoginResponse(
            token=issued.token, expires_at=issued.expires_at, payload=issued.payload
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(token: Optional[str] = Header(None, convert_underscores=False)):
    """Revoke the presented token. Succeeds even if it is already gone."""
    runtime = get_runtime()
    runtime.auth.logout(token)
    return Envelope(status="ok", data=LogoutResponse())


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
def profile(token: Optional[str] = Header(None, convert_underscores=False)):
    """Return the payload of a live token, sliding its window when due.

    Raises:
        401: If the token is missing, unknown or expired
    """
    runtime = get_runtime()
    validation = runtime.auth.authenticate(token)
    return Envelope(
        status="ok",
        data=ProfileResponse(
            payload=validation.payload or {},
            renewed=validation.renewed,
            expires_at=validation.expires_at,
        ),
    )


@router.post("/check-token", response_model=Envelope, tags=["auth"])
def check_token(
    body: Optional[CheckTokenRequest] = Body(None),
    token: Optional[str] = Header(None, convert_underscores=False),
):
    """Validate a token for a downstream service, optionally gated on a permission.

    The permission is evaluated against the snapshot taken at login.

    Raises:
        401: If the token is missing, unknown or expired
        403: If the token lacks the requested service or permission
    """
    runtime = get_runtime()
    target = body or CheckTokenRequest()
    validation = runtime.auth.check_token(
        token, service=target.service, permission=target.permission
    )
    return Envelope(
        status="ok",
        data=CheckTokenResponse(
            payload=validation.payload or {},
            renewed=validation.renewed,
            expires_at=validation.expires_at,
        ),
    )


# people
@router.get("/users", response_model=Envelope, tags=["users"])
def list_people(
    limit: int = Query(100, ge=1, le=1000),
    _: TokenValidation = Depends(require_token),
):
    people = get_runtime().directory.list_people(limit=limit)
    return Envelope(
        status="ok", data=PersonListResponse(items=[_person_to_response(p) for p in people])
    )


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
def create_person(body: PersonCreateRequest, _: TokenValidation = Depends(require_token)):
    """Register a person. The password is stored as an argon2id hash.

    Raises:
        409: If the username or document is already registered
    """
    person = get_runtime().directory.create_person(
        body.username,
        body.password,
        body.name,
        body.document_number,
        person_type=body.person_type,
        document_type=body.document_type,
    )
    return Envelope(status="ok", data=_person_to_response(person))


@router.get("/users/{person_id}", response_model=Envelope, tags=["users"])
def get_person(person_id: int, _: TokenValidation = Depends(require_token)):
    person = get_runtime().directory.get_person(person_id)
    return Envelope(status="ok", data=_person_to_response(person))


@router.put("/users/{person_id}", response_model=Envelope, tags=["users"])
def update_person(
    person_id: int,
    body: PersonUpdateRequest,
    _: TokenValidation = Depends(require_token),
):
    person = get_runtime().directory.update_person(
        person_id, username=body.username, password=body.password, name=body.name
    )
    return Envelope(status="ok", data=_person_to_response(person))


@router.delete("/users/{person_id}", response_model=Envelope, tags=["users"])
def delete_person(person_id: int, _: TokenValidation = Depends(require_token)):
    """Soft-delete a person and revoke all of their tokens."""
    revoked = get_runtime().directory.delete_person(person_id)
    return Envelope(
        status="ok",
        data={"deleted": True, "person_id": person_id, "tokens_revoked": revoked},
    )


@router.get("/people/{person_id}/services", response_model=Envelope, tags=["users"])
def list_services_of_person(person_id: int, _: TokenValidation = Depends(require_token)):
    services = get_runtime().directory.list_services_of_person(person_id)
    return Envelope(
        status="ok",
        data=ServiceListResponse(items=[_service_to_response(s) for s in services]),
    )


# services
@router.get("/services", response_model=Envelope, tags=["services"])
def list_services(
    include_inactive: bool = Query(False),
    _: TokenValidation = Depends(require_token),
):
    services = get_runtime().directory.list_services(include_inactive=include_inactive)
    return Envelope(
        status="ok",
        data=ServiceListResponse(items=[_service_to_response(s) for s in services]),
    )


@router.post("/services", response_model=Envelope, status_code=201, tags=["services"])
def create_service(body: ServiceCreateRequest, _: TokenValidation = Depends(require_token)):
    service = get_runtime().directory.create_service(body.name, body.description)
    return Envelope(status="ok", data=_service_to_response(service))


@router.get("/services/{service_id}", response_model=Envelope, tags=["services"])
def get_service(service_id: int, _: TokenValidation = Depends(require_token)):
    service = get_runtime().directory.get_service(service_id)
    return Envelope(status="ok", data=_service_to_response(service))


@router.put("/services/{service_id}", response_model=Envelope, tags=["services"])
def update_service(
    service_id: int,
    body: ServiceUpdateRequest,
    _: TokenValidation = Depends(require_token),
):
    service = get_runtime().directory.update_service(
        service_id, name=body.name, description=body.description, status=body.status
    )
    return Envelope(status="ok", data=_service_to_response(service))


@router.delete("/services/{service_id}", response_model=Envelope, tags=["services"])
def delete_service(service_id: int, _: TokenValidation = Depends(require_token)):
    """Disable a service; every permission check against it is denied afterwards."""
    get_runtime().directory.delete_service(service_id)
    return Envelope(status="ok", data={"disabled": True, "service_id": service_id})


@router.get("/services/{service_id}/roles", response_model=Envelope, tags=["services"])
def list_service_roles(service_id: int, _: TokenValidation = Depends(require_token)):
    roles = get_runtime().directory.list_service_roles(service_id)
    return Envelope(
        status="ok", data=RoleListResponse(items=[_role_to_response(r) for r in roles])
    )


@router.get(
    "/services/{service_id}/roles/{role_id}/people",
    response_model=Envelope,
    tags=["services"],
)
def list_people_with_role_in_service(
    service_id: int, role_id: int, _: TokenValidation = Depends(require_token)
):
    people = get_runtime().directory.list_people_with_role_in_service(service_id, role_id)
    return Envelope(
        status="ok", data=PersonListResponse(items=[_person_to_response(p) for p in people])
    )


# roles
@router.get("/roles", response_model=Envelope, tags=["roles"])
def list_roles(_: TokenValidation = Depends(require_token)):
    roles = get_runtime().directory.list_roles()
    return Envelope(
        status="ok", data=RoleListResponse(items=[_role_to_response(r) for r in roles])
    )


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
def create_role(body: NameRequest, _: TokenValidation = Depends(require_token)):
    role = get_runtime().directory.create_role(body.name)
    return Envelope(status="ok", data=_role_to_response(role))


@router.get("/roles/{role_id}", response_model=Envelope, tags=["roles"])
def get_role(role_id: int, _: TokenValidation = Depends(require_token)):
    role = get_runtime().directory.get_role(role_id)
    return Envelope(status="ok", data=_role_to_response(role))


@router.put("/roles/{role_id}", response_model=Envelope, tags=["roles"])
def update_role(role_id: int, body: NameRequest, _: TokenValidation = Depends(require_token)):
    role = get_runtime().directory.update_role(role_id, body.name)
    return Envelope(status="ok", data=_role_to_response(role))


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["roles"])
def delete_role(role_id: int, _: TokenValidation = Depends(require_token)):
    get_runtime().directory.delete_role(role_id)
    return Envelope(status="ok", data={"deleted": True, "role_id": role_id})


@router.get("/roles/{role_id}/permissions", response_model=Envelope, tags=["roles"])
def list_role_permissions(role_id: int, _: TokenValidation = Depends(require_token)):
    permissions = get_runtime().directory.list_role_permissions(role_id)
    return Envelope(
        status="ok",
        data=PermissionListResponse(items=[_permission_to_response(p) for p in permissions]),
    )


# permissions
@router.get("/permissions", response_model=Envelope, tags=["permissions"])
def list_permissions(_: TokenValidation = Depends(require_token)):
    permissions = get_runtime().directory.list_permissions()
    return Envelope(
        status="ok",
        data=PermissionListResponse(items=[_permission_to_response(p) for p in permissions]),
    )


@router.post("/permissions", response_model=Envelope, status_code=201, tags=["permissions"])
def create_permission(body: NameRequest, _: TokenValidation = Depends(require_token)):
    permission = get_runtime().directory.create_permission(body.name)
    return Envelope(status="ok", data=_permission_to_response(permission))


@router.get("/permissions/{permission_id}", response_model=Envelope, tags=["permissions"])
def get_permission(permission_id: int, _: TokenValidation = Depends(require_token)):
    permission = get_runtime().directory.get_permission(permission_id)
    return Envelope(status="ok", data=_permission_to_response(permission))


@router.put("/permissions/{permission_id}", response_model=Envelope, tags=["permissions"])
def update_permission(
    permission_id: int, body: NameRequest, _: TokenValidation = Depends(require_token)
):
    permission = get_runtime().directory.update_permission(permission_id, body.name)
    return Envelope(status="ok", data=_permission_to_response(permission))


@router.delete("/permissions/{permission_id}", response_model=Envelope, tags=["permissions"])
def delete_permission(permission_id: int, _: TokenValidation = Depends(require_token)):
    get_runtime().directory.delete_permission(permission_id)
    return Envelope(status="ok", data={"deleted": True, "permission_id": permission_id})


# assignments
@router.post("/role-permissions", response_model=Envelope, tags=["assignments"])
def assign_permission_to_role(
    body: RolePermissionRequest, _: TokenValidation = Depends(require_token)
):
    get_runtime().directory.assign_permission_to_role(body.role_id, body.permission_id)
    return Envelope(status="ok", data=body.model_dump())


@router.delete("/role-permissions", response_model=Envelope, tags=["assignments"])
def remove_permission_from_role(
    body: RolePermissionRequest, _: TokenValidation = Depends(require_token)
):
    removed = get_runtime().directory.remove_permission_from_role(
        body.role_id, body.permission_id
    )
    return Envelope(status="ok", data={**body.model_dump(), "removed": removed})


@router.post("/service-roles", response_model=Envelope, tags=["assignments"])
def assign_role_to_service(
    body: ServiceRoleRequest, _: TokenValidation = Depends(require_token)
):
    get_runtime().directory.assign_role_to_service(body.service_id, body.role_id)
    return Envelope(status="ok", data=body.model_dump())


@router.delete("/service-roles", response_model=Envelope, tags=["assignments"])
def remove_role_from_service(
    body: ServiceRoleRequest, _: TokenValidation = Depends(require_token)
):
    removed = get_runtime().directory.remove_role_from_service(body.service_id, body.role_id)
    return Envelope(status="ok", data={**body.model_dump(), "removed": removed})


@router.post("/person-service-roles", response_model=Envelope, tags=["assignments"])
def assign_role_to_person(
    body: PersonServiceRoleRequest, _: TokenValidation = Depends(require_token)
):
    """Grant a role to a person within a service.

    Tokens issued before the grant keep their old snapshot until the person logs in again.
    """
    get_runtime().directory.assign_role_to_person(
        body.person_id, body.service_id, body.role_id
    )
    return Envelope(status="ok", data=body.model_dump())


@router.delete("/person-service-roles", response_model=Envelope, tags=["assignments"])
def remove_role_from_person(
    body: PersonServiceRoleRequest, _: TokenValidation = Depends(require_token)
):
    removed = get_runtime().directory.remove_role_from_person(
        body.person_id, body.service_id, body.role_id
    )
    return Envelope(status="ok", data={**body.model_dump(), "removed": removed})


@router.get(
    "/people/{person_id}/services/{service_id}/roles",
    response_model=Envelope,
    tags=["assignments"],
)
def list_person_roles_in_service(
    person_id: int, service_id: int, _: TokenValidation = Depends(require_token)
):
    roles = get_runtime().directory.list_person_roles_in_service(person_id, service_id)
    return Envelope(
        status="ok", data=RoleListResponse(items=[_role_to_response(r) for r in roles])
    )


@router.get("/check-permission", response_model=Envelope, tags=["assignments"])
def check_permission(
    person_id: int = Query(..., ge=1),
    service_id: int = Query(..., ge=1),
    permission_name: str = Query(..., min_length=1),
    _: TokenValidation = Depends(require_token),
):
    """Live permission check against current assignments (no token snapshot)."""
    allowed = get_runtime().directory.check_permission(person_id, service_id, permission_name)
    return Envelope(status="ok", data=CheckPermissionResponse(has_permission=allowed))
