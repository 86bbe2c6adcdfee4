from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

from medgate.service.errors import ForbiddenError
from medgate.service.principals import AdminPrincipal, Principal
from medgate.storage.models import PermissionEntry, StaffRole

MANAGE = "manage"

_CRUD = ("create", "read", "update", "delete")

_DEFAULT_ROLE_PERMISSIONS: Dict[str, Tuple[Tuple[str, Tuple[str, ...]], ...]] = {
    StaffRole.ADMIN.value: (
        ("users", _CRUD),
        ("patients", _CRUD),
        ("appointments", _CRUD),
        ("billing", _CRUD + ("approve",)),
        ("inventory", _CRUD),
        ("reports", ("read", "create")),
        ("settings", ("read", "update")),
    ),
    StaffRole.DOCTOR.value: (
        ("patients", ("create", "read", "update")),
        ("appointments", ("read", "update")),
        ("medical_records", ("create", "read", "update")),
        ("prescriptions", ("create", "read", "update")),
        ("lab_results", ("read",)),
    ),
    StaffRole.NURSE.value: (
        ("patients", ("read", "update")),
        ("appointments", ("read", "update")),
        ("medical_records", ("read", "update")),
        ("vital_signs", ("create", "read", "update")),
        ("medications", ("read", "update")),
    ),
    StaffRole.RECEPTIONIST.value: (
        ("patients", ("create", "read", "update")),
        ("appointments", _CRUD),
        ("billing", ("read",)),
        ("insurance", ("read", "update")),
    ),
    StaffRole.LAB_TECHNICIAN.value: (
        ("lab_tests", ("create", "read", "update")),
        ("lab_results", ("create", "read", "update")),
        ("patients", ("read",)),
        ("inventory", ("read", "update")),
    ),
    StaffRole.PHARMACIST.value: (
        ("prescriptions", ("read", "update")),
        ("medications", ("create", "read", "update")),
        ("inventory", ("read", "update")),
        ("patients", ("read",)),
    ),
    StaffRole.ACCOUNTANT.value: (
        ("billing", ("create", "read", "update")),
        ("payments", ("create", "read", "update")),
        ("insurance", ("read", "update")),
        ("reports", ("read", "create")),
        ("patients", ("read",)),
    ),
}


def default_permissions_for(role: str) -> List[PermissionEntry]:
    """Baseline permission set granted to a newly created staff member."""
    return [
        PermissionEntry.of(module, *actions)
        for module, actions in _DEFAULT_ROLE_PERMISSIONS.get(role, ())
    ]


def _grants(entries: Iterable[PermissionEntry], module: str, action: str) -> bool:
    return any(
        entry.module == module and (action in entry.actions or MANAGE in entry.actions)
        for entry in entries
    )


def is_allowed(
    principal: Principal, module: str, action: str, *, tenant_id: Optional[str] = None
) -> bool:
    """Decide whether ``principal`` may perform ``action`` on ``module``.

    Super administrators may do anything. A tenant's administrator has full
    rights inside its own tenant. Everyone else needs a permission entry for
    the module listing the action or ``manage``.
    """
    if principal.is_super_admin:
        return True
    if isinstance(principal, AdminPrincipal) and (
        tenant_id is None or tenant_id == principal.tenant_id
    ):
        return True
    return _grants(principal.permissions, module, action)


def authorize(
    principal: Principal, module: str, action: str, *, tenant_id: Optional[str] = None
) -> None:
    if not is_allowed(principal, module, action, tenant_id=tenant_id):
        raise ForbiddenError(
            f"not permitted to {action} {module}",
            detail={"module": module, "action": action},
        )


def require_admin(principal: Principal) -> AdminPrincipal:
    if not isinstance(principal, AdminPrincipal):
        raise ForbiddenError(
            "administrator access required",
            detail={"module": "users", "action": MANAGE},
        )
    return principal
