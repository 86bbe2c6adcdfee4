from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from medgate.storage.models import StaffMember, StaffRole


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_locked",
    "account_inactive",
    "email_not_verified",
    "tenant_inactive",
    "invalid_token",
    "token_expired",
    "token_already_used",
    "too_many_attempts",
    "already_verified",
    "invalid_operation",
    "invalid_current_password",
    "email_dispatch_failed",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
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


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 ()-]{5,28}$")


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
    """Upper, lower and digit required; length bounds are checked again by the service."""
    if len(value) < 6:
        raise ValueError("password must be at least 6 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not (
        any(c.isupper() for c in value)
        and any(c.islower() for c in value)
        and any(c.isdigit() for c in value)
    ):
        raise ValueError(
            "password must contain at least one uppercase letter, one lowercase letter, and one number"
        )
    return value


class _Stripped(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


class HospitalData(_Stripped):
    name: str = Field(..., min_length=2, max_length=100)
    email: str
    registration_number: str = Field(..., min_length=5, max_length=50)
    license_number: str = Field(..., min_length=5, max_length=50)
    hospital_number: str = Field(..., min_length=5, max_length=50)

    @field_validator("email")
    @classmethod
    def _validate_hospital_email(cls, value: str) -> str:
        return _validate_email(value)


class AdminData(_Stripped):
    full_name: str = Field(..., min_length=2, max_length=100)
    job_title: str = Field(..., min_length=2, max_length=100)
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class HospitalRegistrationRequest(BaseModel):
    hospital: HospitalData
    admin: AdminData


class RegistrationResponse(BaseModel):
    tenant_id: str
    email: str
    verification_required: bool
    token_expires_at: datetime


class VerifyEmailRequest(_Stripped):
    email: str
    token: str = Field(..., pattern=r"^\d{6}$")

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)


class ResendVerificationRequest(_Stripped):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class ResendVerificationResponse(BaseModel):
    email: str
    token_expires_at: datetime


class LoginRequest(_Stripped):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime
    principal: dict
    tenant: dict


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PermissionModel(BaseModel):
    module: str = Field(..., min_length=1, max_length=64)
    actions: List[str] = Field(default_factory=list, max_length=32)


class StaffCreateRequest(_Stripped):
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    email: str
    role: StaffRole
    department: Optional[str] = Field(default=None, max_length=100)
    specialization: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = None
    permissions: Optional[List[PermissionModel]] = None

    @field_validator("email")
    @classmethod
    def _validate_staff_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _PHONE_PATTERN.match(value):
            raise ValueError("invalid phone number")
        return value


class StaffUpdateRequest(_Stripped):
    first_name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    role: Optional[StaffRole] = None
    department: Optional[str] = Field(default=None, max_length=100)
    specialization: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = None
    is_active: Optional[bool] = None
    permissions: Optional[List[PermissionModel]] = None

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _PHONE_PATTERN.match(value):
            raise ValueError("invalid phone number")
        return value


class StaffResponse(BaseModel):
    id: str
    tenant_id: str
    first_name: str
    last_name: str
    email: str
    role: str
    employee_id: str
    department: Optional[str] = None
    specialization: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool
    must_change_password: bool
    permissions: List[PermissionModel]
    created_by: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, member: StaffMember) -> "StaffResponse":
        return cls(
            id=member.id,
            tenant_id=member.tenant_id,
            first_name=member.first_name,
            last_name=member.last_name,
            email=member.email,
            role=member.role,
            employee_id=member.employee_id,
            department=member.department,
            specialization=member.specialization,
            phone=member.phone,
            is_active=member.is_active,
            must_change_password=member.must_change_password,
            permissions=[PermissionModel(**entry.to_dict()) for entry in member.permissions],
            created_by=member.created_by,
            created_at=member.created_at,
            updated_at=member.updated_at,
        )
