"""
API request and response models for the authentication REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire names follow the existing frontend (preferredMethod, newPassword,
isAdmin, ldapAvailable), so fields declare camelCase aliases and responses are
dumped with by_alias=True.
"""

from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from audit.store import AuditEntry
from auth.models import Identity, LoginMethod, Session

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PreferredMethodEnum(str, Enum):
    ldap = "ldap"
    local = "local"

    def to_login_method(self) -> LoginMethod:
        return LoginMethod.DIRECTORY if self is PreferredMethodEnum.ldap else LoginMethod.LOCAL


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


# Only emails are trimmed; passwords reach the credential check byte for byte.
TrimmedEmail = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(populate_by_name=True)

    email: TrimmedEmail
    password: str = Field(min_length=1, max_length=255, json_schema_extra={"format": "password"})
    preferred_method: PreferredMethodEnum = Field(default=PreferredMethodEnum.ldap, alias="preferredMethod")


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: TrimmedEmail
    password: str = Field(min_length=1, max_length=255)


class SetLocalPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/set-local-password."""

    model_config = ConfigDict(populate_by_name=True)

    email: TrimmedEmail
    password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255, alias="newPassword")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserPayload(BaseModel):
    """Public user shape returned by login, register and /me."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    email: str
    name: str
    role: str
    is_admin: bool = Field(serialization_alias="isAdmin")

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserPayload":
        return cls(
            id=identity.id,
            email=identity.email,
            name=identity.display_name,
            role=identity.role.value,
            is_admin=identity.is_admin,
        )

    @classmethod
    def from_session(cls, session: Session) -> "UserPayload":
        return cls(
            id=session.subject_id,
            email=session.email,
            name=session.display_name,
            role=session.role.value,
            is_admin=session.is_admin,
        )


class UserResponse(BaseModel):
    """Response for login, register and /me. The session token is never part of it."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    user: UserPayload


class SuccessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True


class LdapStatusResponse(BaseModel):
    """Response for GET /api/v1/auth/ldap-status."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    success: bool = True
    ldap_available: bool = Field(serialization_alias="ldapAvailable")


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    action: str
    entity_type: str
    entity_id: Optional[int] = None
    actor_id: Optional[int] = None
    details: dict = Field(default_factory=dict)
    created_at: str

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            actor_id=entry.actor_id,
            details=entry.details,
            created_at=entry.created_at or "",
        )


class AuditLogResponse(BaseModel):
    """Response for GET /api/v1/audit-log."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    logs: list[AuditEntryResponse]
    total: int
    page: int
    total_pages: int = Field(serialization_alias="totalPages")


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
