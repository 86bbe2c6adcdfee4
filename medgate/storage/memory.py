from __future__ import annotations

import copy
import hmac
import json
import os
import re
import tempfile
import threading
import uuid
from dataclasses import fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from medgate.logging import get_logger
from medgate.storage.errors import ConstraintViolation
from medgate.storage.models import (
    EMPLOYEE_ID_PREFIXES,
    Administrator,
    AdminRole,
    PermissionEntry,
    StaffMember,
    Tenant,
    TenantStatus,
    VerificationRecord,
)

T = TypeVar("T")

_TENANT_ID_PATTERN = re.compile(r"^HOSP(\d+)$")
_DATETIME_FIELDS = {
    "created_at",
    "updated_at",
    "verified_at",
    "email_verified_at",
    "lock_until",
    "last_login_at",
    "expires_at",
    "used_at",
    "blocked_at",
}
_STAFF_MUTABLE_FIELDS = {
    "first_name",
    "last_name",
    "role",
    "department",
    "specialization",
    "phone",
    "is_active",
    "permissions",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process record store for tenants, principals and verification codes.

    Every public method runs under one re-entrant lock, which gives the
    single-document read-modify-write guarantee the services rely on
    (``modify_*``). When ``state_path`` is set, each write snapshots the state
    to JSON so tooling scripts and restarts see the same records.
    """

    def __init__(self, state_path: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.administrators: Dict[str, Administrator] = {}
        self.staff: Dict[str, StaffMember] = {}
        self.verifications: Dict[str, VerificationRecord] = {}
        self.token_denylist: Dict[str, datetime] = {}
        # insertion order breaks created_at ties for "latest record" lookups
        self._verification_seq: Dict[str, int] = {}
        self._seq = 0
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path:
            self._load_state()

    # tenants / administrators
    def _next_tenant_id(self) -> str:
        highest = 0
        for tenant_id in self.tenants:
            match = _TENANT_ID_PATTERN.match(tenant_id)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"HOSP{highest + 1:04d}"

    def find_tenant_conflicts(
        self,
        *,
        email: str,
        registration_number: str,
        license_number: str,
        hospital_number: str,
    ) -> List[str]:
        """Return the unique tenant fields that an existing tenant already uses."""
        wanted = {
            "email": email,
            "registration_number": registration_number,
            "license_number": license_number,
            "hospital_number": hospital_number,
        }
        conflicts: List[str] = []
        with self._data_lock:
            for tenant in self.tenants.values():
                for name, value in wanted.items():
                    if getattr(tenant, name) == value and name not in conflicts:
                        conflicts.append(name)
        return conflicts

    def create_tenant_and_admin(
        self,
        tenant_fields: Dict[str, Any],
        admin_fields: Dict[str, Any],
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[Tenant, Administrator]:
        """Create a pending tenant and its inactive, unverified administrator."""
        with self._data_lock:
            conflicts = self.find_tenant_conflicts(
                email=tenant_fields["email"],
                registration_number=tenant_fields["registration_number"],
                license_number=tenant_fields["license_number"],
                hospital_number=tenant_fields["hospital_number"],
            )
            if conflicts:
                raise ConstraintViolation(
                    "tenant already exists", {"fields": conflicts}
                )
            if self._admin_by_email(admin_fields["email"]):
                raise ConstraintViolation(
                    "administrator email already exists", {"fields": ["admin_email"]}
                )
            now = now or _utcnow()
            tenant = Tenant(
                tenant_id=self._next_tenant_id(),
                name=tenant_fields["name"],
                email=tenant_fields["email"],
                registration_number=tenant_fields["registration_number"],
                license_number=tenant_fields["license_number"],
                hospital_number=tenant_fields["hospital_number"],
                status=TenantStatus.PENDING.value,
                is_verified=False,
                created_at=now,
                updated_at=now,
            )
            admin = Administrator(
                id=str(uuid.uuid4()),
                tenant_id=tenant.tenant_id,
                name=admin_fields["name"],
                email=admin_fields["email"],
                password_hash=admin_fields["password_hash"],
                job_title=admin_fields.get("job_title"),
                role=admin_fields.get("role", "admin"),
                permissions=list(admin_fields.get("permissions") or []),
                is_active=False,
                is_email_verified=False,
                created_at=now,
                updated_at=now,
            )
            self.tenants[tenant.tenant_id] = tenant
            self.administrators[admin.id] = admin
            self._persist_state()
            return copy.deepcopy(tenant), copy.deepcopy(admin)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return copy.deepcopy(self.tenants.get(tenant_id))

    def set_tenant_status(
        self, tenant_id: str, status: str, *, now: Optional[datetime] = None
    ) -> Optional[Tenant]:
        TenantStatus(status)
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.status = status
            tenant.updated_at = now or _utcnow()
            self._persist_state()
            return copy.deepcopy(tenant)

    def activate_registration(
        self, tenant_id: str, admin_id: str, now: datetime
    ) -> Optional[Tuple[Tenant, Administrator]]:
        """Activate a tenant and its administrator together, or neither."""
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            admin = self.administrators.get(admin_id)
            if not tenant or not admin or admin.tenant_id != tenant_id:
                return None
            tenant.status = TenantStatus.ACTIVE.value
            tenant.is_verified = True
            tenant.verified_at = now
            tenant.updated_at = now
            admin.is_active = True
            admin.is_email_verified = True
            admin.email_verified_at = now
            admin.updated_at = now
            self._persist_state()
            return copy.deepcopy(tenant), copy.deepcopy(admin)

    def delete_registration(self, tenant_id: str, admin_id: str) -> bool:
        """Remove a tenant and its administrator; safe to call repeatedly."""
        with self._data_lock:
            removed = False
            admin = self.administrators.get(admin_id)
            if admin and admin.tenant_id == tenant_id:
                self.administrators.pop(admin_id, None)
                removed = True
            if self.tenants.pop(tenant_id, None):
                removed = True
            if removed:
                self._persist_state()
            return removed

    def _admin_by_email(self, email: str) -> Optional[Administrator]:
        return next((a for a in self.administrators.values() if a.email == email), None)

    def get_administrator(self, admin_id: str) -> Optional[Administrator]:
        with self._data_lock:
            return copy.deepcopy(self.administrators.get(admin_id))

    def get_administrator_by_email(self, email: str) -> Optional[Administrator]:
        with self._data_lock:
            return copy.deepcopy(self._admin_by_email(email))

    def modify_administrator(
        self,
        admin_id: str,
        fn: Callable[[Administrator], None],
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Administrator]:
        """Atomically apply ``fn`` to an administrator record and persist it."""
        with self._data_lock:
            return self._modify(self.administrators, admin_id, fn, now=now)

    def set_administrator_role(self, admin_id: str, role: str) -> Optional[Administrator]:
        AdminRole(role)

        def _apply(admin: Administrator) -> None:
            admin.role = role

        return self.modify_administrator(admin_id, _apply)

    # staff
    def _next_employee_id(self, tenant_id: str, role: str) -> str:
        prefix = EMPLOYEE_ID_PREFIXES.get(role, "US")
        highest = 0
        for member in self.staff.values():
            if member.tenant_id != tenant_id:
                continue
            if member.employee_id.startswith(prefix) and member.employee_id[len(prefix):].isdigit():
                highest = max(highest, int(member.employee_id[len(prefix):]))
        return f"{prefix}{highest + 1:04d}"

    def create_staff(
        self,
        *,
        tenant_id: str,
        first_name: str,
        last_name: str,
        email: str,
        password_hash: str,
        role: str,
        created_by: str,
        department: Optional[str] = None,
        specialization: Optional[str] = None,
        phone: Optional[str] = None,
        permissions: Optional[Iterable[PermissionEntry]] = None,
        is_active: bool = True,
        now: Optional[datetime] = None,
    ) -> StaffMember:
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant not found for staff", {"tenant_id": tenant_id})
            if any(member.email == email for member in self.staff.values()):
                raise ConstraintViolation("staff email already exists", {"fields": ["email"]})
            employee_id = self._next_employee_id(tenant_id, role)
            now = now or _utcnow()
            member = StaffMember(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                first_name=first_name,
                last_name=last_name,
                email=email,
                password_hash=password_hash,
                role=role,
                employee_id=employee_id,
                created_by=created_by,
                department=department,
                specialization=specialization,
                phone=phone,
                is_active=is_active,
                permissions=list(permissions or []),
                must_change_password=True,
                created_at=now,
                updated_at=now,
            )
            self.staff[member.id] = member
            self._persist_state()
            return copy.deepcopy(member)

    def _scoped_staff(self, staff_id: str, tenant_id: str) -> Optional[StaffMember]:
        member = self.staff.get(staff_id)
        if not member or member.tenant_id != tenant_id:
            return None
        return member

    def get_staff(self, staff_id: str, *, tenant_id: str) -> Optional[StaffMember]:
        with self._data_lock:
            return copy.deepcopy(self._scoped_staff(staff_id, tenant_id))

    def get_staff_by_email(self, email: str) -> Optional[StaffMember]:
        with self._data_lock:
            member = next((m for m in self.staff.values() if m.email == email), None)
            return copy.deepcopy(member)

    def update_staff(
        self,
        staff_id: str,
        *,
        tenant_id: str,
        changes: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Optional[StaffMember]:
        unknown = set(changes) - _STAFF_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")

        def _apply(member: StaffMember) -> None:
            for name, value in changes.items():
                setattr(member, name, value)

        return self.modify_staff(staff_id, _apply, tenant_id=tenant_id, now=now)

    def modify_staff(
        self,
        staff_id: str,
        fn: Callable[[StaffMember], None],
        *,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[StaffMember]:
        """Atomically apply ``fn`` to a staff record within ``tenant_id``."""
        with self._data_lock:
            if not self._scoped_staff(staff_id, tenant_id):
                return None
            return self._modify(self.staff, staff_id, fn, now=now)

    def delete_staff(self, staff_id: str, *, tenant_id: str) -> bool:
        with self._data_lock:
            if not self._scoped_staff(staff_id, tenant_id):
                return False
            self.staff.pop(staff_id, None)
            self._persist_state()
            return True

    def count_staff(self, tenant_id: str, role: Optional[str] = None) -> int:
        with self._data_lock:
            return sum(
                1
                for m in self.staff.values()
                if m.tenant_id == tenant_id and (role is None or m.role == role)
            )

    # verification records
    def create_verification(
        self,
        *,
        email: str,
        token: str,
        kind: str,
        expires_at: datetime,
        created_at: datetime,
        max_attempts: int = 5,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> VerificationRecord:
        with self._data_lock:
            record = VerificationRecord(
                id=str(uuid.uuid4()),
                email=email,
                token=token,
                kind=kind,
                expires_at=expires_at,
                max_attempts=max_attempts,
                metadata=dict(metadata or {}),
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=created_at,
            )
            self.verifications[record.id] = record
            self._seq += 1
            self._verification_seq[record.id] = self._seq
            self._persist_state()
            return copy.deepcopy(record)

    def _verification_order(self, record: VerificationRecord) -> Tuple[datetime, int]:
        return record.created_at, self._verification_seq.get(record.id, 0)

    def find_verification(
        self, email: str, kind: str, *, token: str, now: datetime
    ) -> Optional[VerificationRecord]:
        """Find an unused, unexpired record whose code matches ``token``."""
        with self._data_lock:
            matches = [
                r
                for r in self.verifications.values()
                if r.email == email
                and r.kind == kind
                and not r.is_used
                and r.expires_at > now
                and hmac.compare_digest(r.token.encode(), token.encode())
            ]
            if not matches:
                return None
            return copy.deepcopy(max(matches, key=self._verification_order))

    def latest_verification(
        self, email: str, kind: str, *, pending_only: bool = False
    ) -> Optional[VerificationRecord]:
        with self._data_lock:
            candidates = [
                r
                for r in self.verifications.values()
                if r.email == email and r.kind == kind and not (pending_only and r.is_used)
            ]
            if not candidates:
                return None
            return copy.deepcopy(max(candidates, key=self._verification_order))

    def get_verification(self, record_id: str) -> Optional[VerificationRecord]:
        with self._data_lock:
            return copy.deepcopy(self.verifications.get(record_id))

    def modify_verification(
        self, record_id: str, fn: Callable[[VerificationRecord], None]
    ) -> Optional[VerificationRecord]:
        with self._data_lock:
            return self._modify(self.verifications, record_id, fn, touch=False)

    def delete_verification(self, record_id: str) -> bool:
        with self._data_lock:
            if self.verifications.pop(record_id, None) is None:
                return False
            self._verification_seq.pop(record_id, None)
            self._persist_state()
            return True

    def purge_verifications(self, older_than: datetime) -> int:
        """Delete verification records created before ``older_than``."""
        with self._data_lock:
            stale = [rid for rid, r in self.verifications.items() if r.created_at < older_than]
            for rid in stale:
                self.verifications.pop(rid, None)
                self._verification_seq.pop(rid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # session token deny-list (fallback when no Redis is configured)
    def denylist_token(self, jti: str, expires_at: datetime) -> None:
        with self._data_lock:
            self.token_denylist[jti] = expires_at
            self._persist_state()

    def is_token_denylisted(self, jti: str, now: datetime) -> bool:
        with self._data_lock:
            expires_at = self.token_denylist.get(jti)
            if expires_at is None:
                return False
            if expires_at <= now:
                self.token_denylist.pop(jti, None)
                return False
            return True

    def purge_denylist(self, now: datetime) -> int:
        """Drop deny-list entries whose tokens have already expired."""
        with self._data_lock:
            expired = [jti for jti, exp in self.token_denylist.items() if exp <= now]
            for jti in expired:
                self.token_denylist.pop(jti, None)
            if expired:
                self._persist_state()
            return len(expired)

    def _modify(
        self,
        table: Dict[str, T],
        key: str,
        fn: Callable[[T], None],
        *,
        touch: bool = True,
        now: Optional[datetime] = None,
    ) -> Optional[T]:
        current = table.get(key)
        if current is None:
            return None
        working = copy.deepcopy(current)
        fn(working)
        if touch and hasattr(working, "updated_at"):
            working.updated_at = now or _utcnow()
        table[key] = working
        self._persist_state()
        return copy.deepcopy(working)

    # persistence
    @staticmethod
    def _serialize_record(record: Any) -> dict:
        data: dict = {}
        for f in fields(record):
            value = getattr(record, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif f.name == "permissions":
                value = [entry.to_dict() for entry in value]
            data[f.name] = value
        return data

    @staticmethod
    def _deserialize_record(cls: Type[T], data: dict) -> T:
        known = {f.name for f in fields(cls)}
        kwargs: dict = {}
        for name, value in data.items():
            if name not in known:
                continue
            if name in _DATETIME_FIELDS and isinstance(value, str):
                value = datetime.fromisoformat(value)
            elif name == "permissions":
                value = [PermissionEntry.from_dict(entry) for entry in value or []]
            kwargs[name] = value
        return cls(**kwargs)

    def _persist_state(self) -> None:
        if not self.state_path:
            return
        ordered = sorted(self.verifications.values(), key=self._verification_order)
        state = {
            "tenants": [self._serialize_record(t) for t in self.tenants.values()],
            "administrators": [
                self._serialize_record(a) for a in self.administrators.values()
            ],
            "staff": [self._serialize_record(s) for s in self.staff.values()],
            "verifications": [self._serialize_record(v) for v in ordered],
            "token_denylist": {
                jti: exp.isoformat() for jti, exp in self.token_denylist.items()
            },
        }
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.state_path.parent), prefix=".state_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, self.state_path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error("memory_state_load_failed", error=str(exc), path=str(self.state_path))
            return False
        for raw in data.get("tenants", []):
            tenant = self._deserialize_record(Tenant, raw)
            self.tenants[tenant.tenant_id] = tenant
        for raw in data.get("administrators", []):
            admin = self._deserialize_record(Administrator, raw)
            self.administrators[admin.id] = admin
        for raw in data.get("staff", []):
            member = self._deserialize_record(StaffMember, raw)
            self.staff[member.id] = member
        for raw in data.get("verifications", []):
            record = self._deserialize_record(VerificationRecord, raw)
            self.verifications[record.id] = record
            self._seq += 1
            self._verification_seq[record.id] = self._seq
        for jti, exp in (data.get("token_denylist") or {}).items():
            self.token_denylist[jti] = datetime.fromisoformat(exp)
        self.logger.info(
            "memory_state_loaded",
            tenants=len(self.tenants),
            administrators=len(self.administrators),
            staff=len(self.staff),
        )
        return True
