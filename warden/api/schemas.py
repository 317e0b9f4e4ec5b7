from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# auth
class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=150)
    password: str = Field(..., min_length=1, max_length=1024)


class LoginResponse(BaseModel):
    token: str
    expires_at: int
    payload: Dict[str, Any]


class ProfileResponse(BaseModel):
    payload: Dict[str, Any]
    renewed: bool
    expires_at: int


class CheckTokenRequest(BaseModel):
    """Optional authorization target; the service may be given by name or id."""

    model_config = ConfigDict(extra="forbid")

    service: Optional[Union[int, str]] = None
    permission: Optional[str] = Field(default=None, min_length=1, max_length=255)


class CheckTokenResponse(BaseModel):
    valid: bool = True
    payload: Dict[str, Any]
    renewed: bool
    expires_at: int


class LogoutResponse(BaseModel):
    status: str = "logged_out"


# directory
class PersonCreateRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=150)
    password: str = Field(..., min_length=8, max_length=1024)
    name: str = Field(..., min_length=1, max_length=255)
    person_type: Literal["N", "J"] = "N"
    document_type: Literal["DNI", "CE", "RUC"] = "DNI"
    document_number: str = Field(..., min_length=1, max_length=32)


class PersonUpdateRequest(BaseModel):
    username: Optional[str] = Field(default=None, min_length=1, max_length=150)
    password: Optional[str] = Field(default=None, min_length=8, max_length=1024)
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)

    @model_validator(mode="after")
    def _require_change(self) -> "PersonUpdateRequest":
        if self.username is None and self.password is None and self.name is None:
            raise ValueError("at least one of username, password or name is required")
        return self


class PersonResponse(BaseModel):
    id: int
    username: str
    name: str
    person_type: str
    document_type: str
    document_number: str
    created_at: int
    updated_at: int


class PersonListResponse(BaseModel):
    items: List[PersonResponse]


class NameRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class RoleResponse(BaseModel):
    id: int
    name: str
    created_at: int
    updated_at: int


class RoleListResponse(BaseModel):
    items: List[RoleResponse]


class PermissionResponse(BaseModel):
    id: int
    name: str
    created_at: int
    updated_at: int


class PermissionListResponse(BaseModel):
    items: List[PermissionResponse]


class ServiceCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)


class ServiceUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    status: Optional[bool] = None


class ServiceResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    status: bool
    created_at: int
    updated_at: int


class ServiceListResponse(BaseModel):
    items: List[ServiceResponse]


class RolePermissionRequest(BaseModel):
    role_id: int = Field(..., ge=1)
    permission_id: int = Field(..., ge=1)


class ServiceRoleRequest(BaseModel):
    service_id: int = Field(..., ge=1)
    role_id: int = Field(..., ge=1)


class PersonServiceRoleRequest(BaseModel):
    person_id: int = Field(..., ge=1)
    service_id: int = Field(..., ge=1)
    role_id: int = Field(..., ge=1)


class CheckPermissionResponse(BaseModel):
    has_permission: bool
