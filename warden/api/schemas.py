from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from warden.logging import get_correlation_id


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after stripping zero-width and bidi override characters."""
    zero_width = '​‌‍﻿'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable, machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _default_request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """Uniform response wrapper for every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_default_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """8 to 100 characters with at least one upper-case, one lower-case and one digit."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 100:
        raise ValueError("password must be at most 100 characters")
    if not any(c.isupper() for c in value):
        raise ValueError("password must contain an uppercase letter")
    if not any(c.islower() for c in value):
        raise ValueError("password must contain a lowercase letter")
    if not any(c.isdigit() for c in value):
        raise ValueError("password must contain a digit")
    return value


def _validate_display_name(value: str) -> str:
    normalized = _normalize_unicode(value).strip()
    if not normalized:
        raise ValueError("name is required")
    if len(normalized) > 50:
        raise ValueError("name must be at most 50 characters")
    return normalized


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _validate_display_name(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class SessionTokenRequest(BaseModel):
    """Body for refresh and logout; the token may come from the cookie instead."""

    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    status: str
    created_at: datetime


class AuthResponse(BaseModel):
    user: Optional[UserResponse] = None
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class MeResponse(BaseModel):
    user: UserResponse
    permissions: List[str]


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=255)


class PermissionCreateRequest(BaseModel):
    name: str = Field(..., min_length=3, max_length=128)
    description: Optional[str] = Field(default=None, max_length=255)


class RoleResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime


class PermissionResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None


class RoleDetailResponse(RoleResponse):
    permissions: List[PermissionResponse]


class UserDetailResponse(UserResponse):
    roles: List[RoleResponse]


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=255)


class PermissionUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=3, max_length=128)
    description: Optional[str] = Field(default=None, max_length=255)


class RoleGrantRequest(BaseModel):
    permission_id: str = Field(..., max_length=64)


class RolePermissionsSyncRequest(BaseModel):
    """Complete replacement set; an empty list removes every grant."""

    permission_ids: List[str] = Field(..., max_length=256)


class RoleBulkDeleteRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1, max_length=256)


class RoleAssignRequest(BaseModel):
    role_id: str = Field(..., max_length=64)


class UserRolesSyncRequest(BaseModel):
    role_ids: List[str] = Field(..., max_length=256)


class UserUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role_ids: Optional[List[str]] = Field(default=None, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("password")
    @classmethod
    def _validate_update_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None

    @field_validator("name")
    @classmethod
    def _validate_update_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_display_name(value) if value is not None else None
