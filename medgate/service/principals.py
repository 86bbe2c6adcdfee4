from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple, Union

from medgate.service.sessions import SessionClaims
from medgate.storage.models import (
    Administrator,
    AdminRole,
    PermissionEntry,
    StaffMember,
    Tenant,
)


@dataclass(frozen=True)
class AdminPrincipal:
    id: str
    tenant_id: str
    email: str
    role: str
    name: str
    permissions: Tuple[PermissionEntry, ...]
    is_active: bool
    tenant: Tenant
    claims: Optional[SessionClaims] = None
    kind: str = "admin"

    @property
    def is_super_admin(self) -> bool:
        return self.role == AdminRole.SUPER_ADMIN.value

    @classmethod
    def from_record(
        cls, admin: Administrator, tenant: Tenant, claims: Optional[SessionClaims] = None
    ) -> "AdminPrincipal":
        return cls(
            id=admin.id,
            tenant_id=admin.tenant_id,
            email=admin.email,
            role=admin.role,
            name=admin.name,
            permissions=tuple(admin.permissions),
            is_active=admin.is_active,
            tenant=tenant,
            claims=claims,
        )

    def summary(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "tenant_id": self.tenant_id,
        }


@dataclass(frozen=True)
class StaffPrincipal:
    id: str
    tenant_id: str
    email: str
    role: str
    first_name: str
    last_name: str
    employee_id: str
    permissions: Tuple[PermissionEntry, ...]
    is_active: bool
    must_change_password: bool
    tenant: Tenant
    claims: Optional[SessionClaims] = None
    kind: str = "staff"

    is_super_admin = False

    @classmethod
    def from_record(
        cls, member: StaffMember, tenant: Tenant, claims: Optional[SessionClaims] = None
    ) -> "StaffPrincipal":
        return cls(
            id=member.id,
            tenant_id=member.tenant_id,
            email=member.email,
            role=member.role,
            first_name=member.first_name,
            last_name=member.last_name,
            employee_id=member.employee_id,
            permissions=tuple(member.permissions),
            is_active=member.is_active,
            must_change_password=member.must_change_password,
            tenant=tenant,
            claims=claims,
        )

    def summary(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "role": self.role,
            "employee_id": self.employee_id,
            "tenant_id": self.tenant_id,
            "must_change_password": self.must_change_password,
        }


Principal = Union[AdminPrincipal, StaffPrincipal]


def tenant_summary(tenant: Tenant) -> dict:
    return {
        "tenant_id": tenant.tenant_id,
        "name": tenant.name,
        "email": tenant.email,
        "status": tenant.status,
        "is_verified": tenant.is_verified,
    }
