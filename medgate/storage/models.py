from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TenantStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class AdminRole(str, Enum):
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class StaffRole(str, Enum):
    DOCTOR = "doctor"
    NURSE = "nurse"
    RECEPTIONIST = "receptionist"
    LAB_TECHNICIAN = "lab_technician"
    PHARMACIST = "pharmacist"
    ACCOUNTANT = "accountant"
    ADMIN = "admin"


class VerificationKind(str, Enum):
    HOSPITAL_REGISTRATION = "hospital_registration"
    PASSWORD_RESET = "password_reset"
    EMAIL_CHANGE = "email_change"


# Two-letter employee id prefixes; unknown roles fall back to "US"
EMPLOYEE_ID_PREFIXES: Dict[str, str] = {
    "admin": "AD",
    "doctor": "DR",
    "nurse": "NU",
    "receptionist": "RC",
    "lab_technician": "LT",
    "pharmacist": "PH",
    "accountant": "AC",
}


@dataclass(frozen=True)
class PermissionEntry:
    module: str
    actions: FrozenSet[str] = frozenset()

    @classmethod
    def of(cls, module: str, *actions: str) -> "PermissionEntry":
        return cls(module=module, actions=frozenset(actions))

    def to_dict(self) -> dict:
        return {"module": self.module, "actions": sorted(self.actions)}

    @classmethod
    def from_dict(cls, raw: dict) -> "PermissionEntry":
        return cls(module=raw["module"], actions=frozenset(raw.get("actions") or []))


@dataclass
class Tenant:
    tenant_id: str
    name: str
    email: str
    registration_number: str
    license_number: str
    hospital_number: str
    status: str = TenantStatus.PENDING.value
    is_verified: bool = False
    verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE.value


@dataclass
class Administrator:
    id: str
    tenant_id: str
    name: str
    email: str
    password_hash: str
    job_title: Optional[str] = None
    role: str = AdminRole.ADMIN.value
    permissions: List[PermissionEntry] = field(default_factory=list)
    is_active: bool = False
    is_email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class StaffMember:
    id: str
    tenant_id: str
    first_name: str
    last_name: str
    email: str
    password_hash: str
    role: str
    employee_id: str
    created_by: str
    department: Optional[str] = None
    specialization: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    permissions: List[PermissionEntry] = field(default_factory=list)
    must_change_password: bool = True
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass
class VerificationRecord:
    id: str
    email: str
    token: str
    kind: str
    expires_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None
    attempts: int = 0
    max_attempts: int = 5
    is_blocked: bool = False
    blocked_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
