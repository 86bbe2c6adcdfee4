from __future__ import annotations

import asyncio
import functools
import re
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from medgate.config import Settings
from medgate.logging import get_logger, redact_email
from medgate.service import authorization
from medgate.service.clock import Clock, SystemClock
from medgate.service.credentials import (
    CredentialVault,
    check_password_policy,
    generate_temporary_password,
)
from medgate.service.email import EmailDispatchError, EmailService
from medgate.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ConflictError,
    EmailDispatchFailedError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidCurrentPasswordError,
    InvalidOperationError,
    NotFoundError,
    ServerError,
    ServiceError,
    SessionTokenError,
    TenantInactiveError,
    ValidationError,
)
from medgate.service.lockout import LockoutPolicy, LoginState
from medgate.service.principals import (
    AdminPrincipal,
    Principal,
    StaffPrincipal,
    tenant_summary,
)
from medgate.service.saga import Saga
from medgate.service.sessions import IssuedToken, SessionIssuer
from medgate.service.verification import VerificationLedger
from medgate.storage.errors import ConstraintViolation
from medgate.storage.memory import MemoryStore
from medgate.storage.models import (
    Administrator,
    PermissionEntry,
    StaffMember,
    StaffRole,
    Tenant,
    VerificationKind,
    VerificationRecord,
)

logger = get_logger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_STAFF_ROLES = {role.value for role in StaffRole}
_STAFF_UPDATABLE = {
    "first_name",
    "last_name",
    "role",
    "department",
    "specialization",
    "phone",
    "is_active",
    "permissions",
}


@dataclass(frozen=True)
class RegistrationResult:
    tenant_id: str
    email: str
    verification_required: bool
    token_expires_at: datetime


@dataclass(frozen=True)
class ResendResult:
    email: str
    token_expires_at: datetime


@dataclass(frozen=True)
class LoginResult:
    token: str
    expires_at: datetime
    principal: Dict[str, Any]
    tenant: Dict[str, Any]


def normalize_email(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("email must be a string", detail={"field": "email"})
    normalized = value.strip().lower()
    if not _EMAIL_PATTERN.match(normalized):
        raise ValidationError("invalid email address", detail={"field": "email"})
    return normalized


def _required_text(
    fields: Dict[str, Any], name: str, *, min_length: int = 1, max_length: int = 100
) -> str:
    value = fields.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required", detail={"field": name})
    value = value.strip()
    if not min_length <= len(value) <= max_length:
        raise ValidationError(
            f"{name} must be between {min_length} and {max_length} characters",
            detail={"field": name},
        )
    return value


def _optional_text(fields: Dict[str, Any], name: str, *, max_length: int = 100) -> Optional[str]:
    value = fields.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string", detail={"field": name})
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(
            f"{name} must be at most {max_length} characters", detail={"field": name}
        )
    return value or None


def _staff_role(value: Any) -> str:
    if value not in _STAFF_ROLES:
        raise ValidationError(
            "invalid role", detail={"field": "role", "allowed": sorted(_STAFF_ROLES)}
        )
    return StaffRole(value).value


def _permission_entries(raw: Iterable[Any]) -> List[PermissionEntry]:
    entries: List[PermissionEntry] = []
    for item in raw:
        if isinstance(item, PermissionEntry):
            entries.append(item)
            continue
        if not isinstance(item, dict) or not isinstance(item.get("module"), str):
            raise ValidationError("invalid permission entry", detail={"field": "permissions"})
        entries.append(PermissionEntry.from_dict(item))
    return entries


def _without_secret(member: StaffMember) -> StaffMember:
    return replace(member, password_hash="")


def service_boundary(fn: Callable) -> Callable:
    """Keep the failure taxonomy closed at the service edge.

    Service errors pass through, storage constraint violations become
    conflicts, and anything else is logged and reported as a bare server error.
    """

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except ServiceError:
            raise
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        except Exception as exc:
            logger.exception(
                "unexpected_service_error",
                operation=fn.__name__,
                error_type=type(exc).__name__,
            )
            raise ServerError("unexpected error") from exc

    return wrapper


class AuthService:
    """Tenant registration, principal login and staff credential lifecycle."""

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        email_service: EmailService,
        sessions: Optional[SessionIssuer] = None,
        clock: Optional[Clock] = None,
        vault: Optional[CredentialVault] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.email = email_service
        self.vault = vault or CredentialVault(
            settings.password_hash_cost, settings.password_hash_memory_kib
        )
        self.lockout = LockoutPolicy(settings.max_login_attempts, settings.lock_duration)
        self.ledger = VerificationLedger(store, self.clock, settings)
        self.sessions = sessions or SessionIssuer(settings, self.clock, store=store)
        self.logger = logger

    # registration -------------------------------------------------------
    @service_boundary
    async def register_tenant(
        self,
        tenant_fields: Dict[str, Any],
        admin_fields: Dict[str, Any],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RegistrationResult:
        tenant_data = {
            "name": _required_text(tenant_fields, "name", min_length=2),
            "email": normalize_email(tenant_fields.get("email")),
            "registration_number": _required_text(
                tenant_fields, "registration_number", max_length=50
            ),
            "license_number": _required_text(
                tenant_fields, "license_number", max_length=50
            ),
            "hospital_number": _required_text(
                tenant_fields, "hospital_number", max_length=50
            ),
        }
        password = admin_fields.get("password")
        if not isinstance(password, str):
            raise ValidationError("password is required", detail={"field": "password"})
        check_password_policy(password, self.settings.password_min_length)
        admin_data = {
            "name": _required_text(admin_fields, "name", min_length=2),
            "job_title": _required_text(admin_fields, "job_title", min_length=2),
            "email": normalize_email(admin_fields.get("email")),
        }

        conflicts = self.store.find_tenant_conflicts(
            email=tenant_data["email"],
            registration_number=tenant_data["registration_number"],
            license_number=tenant_data["license_number"],
            hospital_number=tenant_data["hospital_number"],
        )
        if conflicts:
            raise ConflictError("hospital already exists", detail={"fields": conflicts})
        if self.store.get_administrator_by_email(admin_data["email"]):
            raise ConflictError(
                "administrator email already exists", detail={"fields": ["admin_email"]}
            )

        admin_data["password_hash"] = await asyncio.to_thread(self.vault.hash, password)
        # an abandoned request still finishes its writes or rolls them back
        task = asyncio.ensure_future(
            self._register(tenant_data, admin_data, ip_address=ip_address, user_agent=user_agent)
        )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(self._log_detached_registration)
            raise

    def _log_detached_registration(self, task: asyncio.Future[RegistrationResult]) -> None:
        if task.cancelled():
            self.logger.warning("detached_registration_cancelled")
            return
        exc = task.exception()
        if exc is not None:
            self.logger.warning(
                "detached_registration_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
        else:
            self.logger.info("detached_registration_completed", tenant_id=task.result().tenant_id)

    async def _register(
        self,
        tenant_data: Dict[str, Any],
        admin_data: Dict[str, Any],
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> RegistrationResult:
        saga = Saga("register_tenant", admin_email=redact_email(admin_data["email"]))
        try:
            tenant, admin = self.store.create_tenant_and_admin(
                tenant_data, admin_data, now=self.clock.now()
            )
            saga.context.update(tenant_id=tenant.tenant_id, admin_id=admin.id)
            saga.add_compensation(
                "delete_registration", self.store.delete_registration, tenant.tenant_id, admin.id
            )
            record = self.ledger.issue(
                admin.email,
                VerificationKind.HOSPITAL_REGISTRATION.value,
                {"tenant_id": tenant.tenant_id, "admin_id": admin.id},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            saga.add_compensation("delete_verification", self.ledger.discard, record.id)
            await self.email.send_verification_code(
                admin.email,
                record.token,
                hospital_name=tenant.name,
                admin_name=admin.name,
                expires_minutes=self.settings.verification_code_ttl_minutes,
            )
        except EmailDispatchError as exc:
            saga.compensate()
            raise EmailDispatchFailedError(
                "unable to send verification email; registration was not saved"
            ) from exc
        except BaseException:
            saga.compensate()
            raise
        self.logger.info(
            "tenant_registered", tenant_id=tenant.tenant_id, admin_id=admin.id
        )
        return RegistrationResult(
            tenant_id=tenant.tenant_id,
            email=admin.email,
            verification_required=True,
            token_expires_at=record.expires_at,
        )

    @service_boundary
    async def verify_registration(self, email: str, code: str) -> LoginResult:
        email = normalize_email(email)
        code = (code or "").strip() if isinstance(code, str) else ""
        record = self.ledger.redeem(email, code, VerificationKind.HOSPITAL_REGISTRATION.value)
        tenant_id = record.metadata.get("tenant_id")
        admin_id = record.metadata.get("admin_id")
        try:
            activated = self.store.activate_registration(tenant_id, admin_id, self.clock.now())
        except BaseException:
            self.ledger.release(record.id)
            raise
        if activated is None:
            self.ledger.release(record.id)
            raise NotFoundError(
                "registration not found", detail={"tenant_id": tenant_id}
            )
        tenant, admin = activated
        self.logger.info("tenant_verified", tenant_id=tenant.tenant_id, admin_id=admin.id)
        issued = self._issue_admin_token(admin)
        try:
            await self.email.send_welcome(
                admin.email,
                admin_name=admin.name,
                hospital_name=tenant.name,
                tenant_id=tenant.tenant_id,
            )
        except EmailDispatchError as exc:
            self.logger.warning(
                "welcome_email_failed", tenant_id=tenant.tenant_id, error=str(exc)
            )
        return self._login_result(issued, AdminPrincipal.from_record(admin, tenant), tenant)

    @service_boundary
    async def resend_verification(self, email: str) -> ResendResult:
        email = normalize_email(email)

        def _admin_verified(record: VerificationRecord) -> bool:
            admin = self.store.get_administrator(record.metadata.get("admin_id", ""))
            return bool(admin and admin.is_email_verified)

        record = self.ledger.reissue(
            email,
            VerificationKind.HOSPITAL_REGISTRATION.value,
            is_subject_verified=_admin_verified,
        )
        admin = self.store.get_administrator(record.metadata.get("admin_id", ""))
        tenant = self.store.get_tenant(record.metadata.get("tenant_id", ""))
        if not admin or not tenant:
            raise NotFoundError("registration not found")
        try:
            await self.email.send_verification_code(
                admin.email,
                record.token,
                hospital_name=tenant.name,
                admin_name=admin.name,
                expires_minutes=self.settings.verification_code_ttl_minutes,
            )
        except EmailDispatchError as exc:
            raise EmailDispatchFailedError("unable to send verification email") from exc
        return ResendResult(email=email, token_expires_at=record.expires_at)

    # login ----------------------------------------------------------------
    def _check_not_locked(self, record: Any, now: datetime) -> None:
        state = LoginState(record.login_attempts, record.lock_until)
        if self.lockout.is_locked(state, now):
            minutes = self.lockout.remaining_lock_minutes(state, now)
            raise AccountLockedError(
                f"account is locked; try again in {minutes} minutes",
                detail={"retry_after_minutes": minutes},
            )

    def _apply_failure(self, now: datetime) -> Callable[[Any], None]:
        def _fail(record: Any) -> None:
            state = self.lockout.register_failure(
                LoginState(record.login_attempts, record.lock_until), now
            )
            record.login_attempts = state.login_attempts
            record.lock_until = state.lock_until

        return _fail

    def _apply_success(
        self, now: datetime, ip_address: Optional[str], rehashed: Optional[str] = None
    ) -> Callable[[Any], None]:
        def _succeed(record: Any) -> None:
            if rehashed:
                record.password_hash = rehashed
            state = self.lockout.register_success()
            record.login_attempts = state.login_attempts
            record.lock_until = state.lock_until
            record.last_login_at = now
            record.last_login_ip = ip_address

        return _succeed

    async def _rehash_if_stale(self, password: str, digest: str) -> Optional[str]:
        """New digest when the stored one predates the current hash parameters."""
        if not self.vault.needs_rehash(digest):
            return None
        return await asyncio.to_thread(self.vault.hash, password)

    def _invalid_credentials(self, updated: Any) -> InvalidCredentialsError:
        state = LoginState(updated.login_attempts, updated.lock_until)
        return InvalidCredentialsError(
            "invalid email or password",
            detail={"attempts_remaining": self.lockout.attempts_remaining(state)},
        )

    def _require_active_tenant(self, tenant_id: str) -> Tenant:
        tenant = self.store.get_tenant(tenant_id)
        if not tenant or not tenant.is_active or not tenant.is_verified:
            raise TenantInactiveError("hospital account is not active")
        return tenant

    @service_boundary
    async def admin_login(
        self, email: str, password: str, *, ip_address: Optional[str] = None
    ) -> LoginResult:
        email = normalize_email(email)
        admin = self.store.get_administrator_by_email(email)
        if not admin:
            raise InvalidCredentialsError("invalid email or password")
        now = self.clock.now()
        self._check_not_locked(admin, now)
        matched = await asyncio.to_thread(self.vault.verify, password, admin.password_hash)
        if not matched:
            updated = (
                self.store.modify_administrator(admin.id, self._apply_failure(now), now=now)
                or admin
            )
            self.logger.warning(
                "admin_login_failed", admin_id=admin.id, attempts=updated.login_attempts
            )
            raise self._invalid_credentials(updated)
        if not admin.is_active:
            raise AccountInactiveError("account is inactive")
        if not admin.is_email_verified:
            raise EmailNotVerifiedError("email address is not verified")
        tenant = self._require_active_tenant(admin.tenant_id)
        rehashed = await self._rehash_if_stale(password, admin.password_hash)
        admin = (
            self.store.modify_administrator(
                admin.id,
                self._apply_success(now, ip_address, rehashed),
                now=now,
            )
            or admin
        )
        self.logger.info("admin_login_succeeded", admin_id=admin.id, tenant_id=admin.tenant_id)
        issued = self._issue_admin_token(admin)
        return self._login_result(issued, AdminPrincipal.from_record(admin, tenant), tenant)

    @service_boundary
    async def staff_login(
        self, email: str, password: str, *, ip_address: Optional[str] = None
    ) -> LoginResult:
        email = normalize_email(email)
        member = self.store.get_staff_by_email(email)
        if not member:
            raise InvalidCredentialsError("invalid email or password")
        now = self.clock.now()
        lockout_enabled = self.settings.staff_lockout_enabled
        if lockout_enabled:
            self._check_not_locked(member, now)
        matched = await asyncio.to_thread(self.vault.verify, password, member.password_hash)
        if not matched:
            if not lockout_enabled:
                raise InvalidCredentialsError("invalid email or password")
            updated = (
                self.store.modify_staff(
                    member.id, self._apply_failure(now), tenant_id=member.tenant_id, now=now
                )
                or member
            )
            self.logger.warning(
                "staff_login_failed", staff_id=member.id, attempts=updated.login_attempts
            )
            raise self._invalid_credentials(updated)
        if not member.is_active:
            raise AccountInactiveError("account is inactive")
        tenant = self._require_active_tenant(member.tenant_id)
        rehashed = await self._rehash_if_stale(password, member.password_hash)
        member = (
            self.store.modify_staff(
                member.id,
                self._apply_success(now, ip_address, rehashed),
                tenant_id=member.tenant_id,
                now=now,
            )
            or member
        )
        self.logger.info("staff_login_succeeded", staff_id=member.id, tenant_id=member.tenant_id)
        issued = self.sessions.issue(
            subject_id=member.id,
            kind="staff",
            tenant_id=member.tenant_id,
            email=member.email,
            role=member.role,
        )
        return self._login_result(issued, StaffPrincipal.from_record(member, tenant), tenant)

    def _issue_admin_token(self, admin: Administrator) -> IssuedToken:
        return self.sessions.issue(
            subject_id=admin.id,
            kind="admin",
            tenant_id=admin.tenant_id,
            email=admin.email,
            role=admin.role,
        )

    @staticmethod
    def _login_result(issued: IssuedToken, principal: Principal, tenant: Tenant) -> LoginResult:
        return LoginResult(
            token=issued.token,
            expires_at=issued.claims.expires_at,
            principal=principal.summary(),
            tenant=tenant_summary(tenant),
        )

    # request authentication ----------------------------------------------
    @service_boundary
    async def authenticate(self, token: str) -> Principal:
        claims = await self.sessions.validate(token)
        if claims.kind == "admin":
            admin = self.store.get_administrator(claims.subject_id)
            if not admin:
                raise InvalidCredentialsError("account not found")
            if admin.tenant_id != claims.tenant_id or admin.role != claims.role:
                raise SessionTokenError("session no longer matches account")
            if not admin.is_active:
                raise AccountInactiveError("account is inactive")
            if not admin.is_email_verified:
                raise EmailNotVerifiedError("email address is not verified")
            tenant = self._require_active_tenant(admin.tenant_id)
            return AdminPrincipal.from_record(admin, tenant, claims)
        member = self.store.get_staff(claims.subject_id, tenant_id=claims.tenant_id)
        if not member:
            raise InvalidCredentialsError("account not found")
        if member.role != claims.role:
            raise SessionTokenError("session no longer matches account")
        if not member.is_active:
            raise AccountInactiveError("account is inactive")
        tenant = self._require_active_tenant(member.tenant_id)
        return StaffPrincipal.from_record(member, tenant, claims)

    @service_boundary
    async def authorize(
        self, principal: Principal, module: str, action: str, *, tenant_id: Optional[str] = None
    ) -> None:
        authorization.authorize(principal, module, action, tenant_id=tenant_id)

    @service_boundary
    async def logout(self, principal: Principal) -> None:
        if principal.claims is not None:
            await self.sessions.revoke(principal.claims)
        self.logger.info("logout", principal_id=principal.id, kind=principal.kind)

    # staff management -----------------------------------------------------
    def _scoped_staff(self, actor: AdminPrincipal, staff_id: str) -> StaffMember:
        member = self.store.get_staff(staff_id, tenant_id=actor.tenant_id)
        if not member:
            raise NotFoundError("staff member not found", detail={"staff_id": staff_id})
        return member

    @service_boundary
    async def create_staff(self, actor: Principal, fields: Dict[str, Any]) -> StaffMember:
        admin = authorization.require_admin(actor)
        authorization.authorize(admin, "users", "create", tenant_id=admin.tenant_id)
        role = _staff_role(fields.get("role"))
        email = normalize_email(fields.get("email"))
        first_name = _required_text(fields, "first_name", min_length=2, max_length=50)
        last_name = _required_text(fields, "last_name", min_length=2, max_length=50)
        department = _optional_text(fields, "department")
        specialization = _optional_text(fields, "specialization")
        phone = _optional_text(fields, "phone", max_length=30)
        raw_permissions = fields.get("permissions")
        permissions = (
            _permission_entries(raw_permissions)
            if raw_permissions
            else authorization.default_permissions_for(role)
        )
        if self.store.get_staff_by_email(email):
            raise ConflictError("staff email already exists", detail={"fields": ["email"]})

        temporary_password = generate_temporary_password(self.settings.temp_password_length)
        password_hash = await asyncio.to_thread(self.vault.hash, temporary_password)
        member = self.store.create_staff(
            tenant_id=admin.tenant_id,
            first_name=first_name,
            last_name=last_name,
            email=email,
            password_hash=password_hash,
            role=role,
            created_by=admin.id,
            department=department,
            specialization=specialization,
            phone=phone,
            permissions=permissions,
            now=self.clock.now(),
        )
        saga = Saga("create_staff", tenant_id=admin.tenant_id, staff_id=member.id)
        saga.add_compensation(
            "delete_staff", functools.partial(self.store.delete_staff, tenant_id=admin.tenant_id), member.id
        )
        try:
            await self.email.send_staff_invitation(
                member.email,
                first_name=member.first_name,
                hospital_name=admin.tenant.name,
                role=member.role,
                employee_id=member.employee_id,
                temporary_password=temporary_password,
            )
        except EmailDispatchError as exc:
            saga.compensate()
            raise EmailDispatchFailedError(
                "unable to send invitation email; staff member was not created"
            ) from exc
        except BaseException:
            saga.compensate()
            raise
        self.logger.info(
            "staff_created",
            staff_id=member.id,
            tenant_id=member.tenant_id,
            employee_id=member.employee_id,
            role=member.role,
        )
        return _without_secret(member)

    @service_boundary
    async def update_staff(
        self, actor: Principal, staff_id: str, changes: Dict[str, Any]
    ) -> StaffMember:
        admin = authorization.require_admin(actor)
        authorization.authorize(admin, "users", "update", tenant_id=admin.tenant_id)
        unknown = set(changes) - _STAFF_UPDATABLE
        if unknown:
            raise ValidationError(
                "fields cannot be updated", detail={"fields": sorted(unknown)}
            )
        cleaned: Dict[str, Any] = {}
        if "first_name" in changes:
            cleaned["first_name"] = _required_text(changes, "first_name", min_length=2, max_length=50)
        if "last_name" in changes:
            cleaned["last_name"] = _required_text(changes, "last_name", min_length=2, max_length=50)
        if "role" in changes:
            cleaned["role"] = _staff_role(changes["role"])
        for name in ("department", "specialization"):
            if name in changes:
                cleaned[name] = _optional_text(changes, name)
        if "phone" in changes:
            cleaned["phone"] = _optional_text(changes, "phone", max_length=30)
        if "is_active" in changes:
            if not isinstance(changes["is_active"], bool):
                raise ValidationError("is_active must be a boolean", detail={"field": "is_active"})
            cleaned["is_active"] = changes["is_active"]
        if "permissions" in changes:
            cleaned["permissions"] = _permission_entries(changes["permissions"] or [])

        member = self._scoped_staff(admin, staff_id)
        if cleaned.get("is_active") is False and member.email == admin.email:
            raise InvalidOperationError("you cannot deactivate your own account")
        updated = self.store.update_staff(
            staff_id, tenant_id=admin.tenant_id, changes=cleaned, now=self.clock.now()
        )
        if updated is None:
            raise NotFoundError("staff member not found", detail={"staff_id": staff_id})
        self.logger.info("staff_updated", staff_id=staff_id, fields=sorted(cleaned))
        return _without_secret(updated)

    @service_boundary
    async def delete_staff(self, actor: Principal, staff_id: str) -> None:
        admin = authorization.require_admin(actor)
        authorization.authorize(admin, "users", "delete", tenant_id=admin.tenant_id)
        member = self._scoped_staff(admin, staff_id)
        if member.email == admin.email:
            raise InvalidOperationError("you cannot delete your own account")
        self.store.delete_staff(staff_id, tenant_id=admin.tenant_id)
        self.logger.info("staff_deleted", staff_id=staff_id, tenant_id=admin.tenant_id)

    @service_boundary
    async def reset_staff_password(self, actor: Principal, staff_id: str) -> None:
        admin = authorization.require_admin(actor)
        authorization.authorize(admin, "users", "update", tenant_id=admin.tenant_id)
        member = self._scoped_staff(admin, staff_id)
        temporary_password = generate_temporary_password(self.settings.temp_password_length)
        password_hash = await asyncio.to_thread(self.vault.hash, temporary_password)
        previous = (
            member.password_hash,
            member.must_change_password,
            member.login_attempts,
            member.lock_until,
        )

        def _reset(record: StaffMember) -> None:
            record.password_hash = password_hash
            record.must_change_password = True
            record.login_attempts = 0
            record.lock_until = None

        def _restore(record: StaffMember) -> None:
            (
                record.password_hash,
                record.must_change_password,
                record.login_attempts,
                record.lock_until,
            ) = previous

        now = self.clock.now()
        if self.store.modify_staff(staff_id, _reset, tenant_id=admin.tenant_id, now=now) is None:
            raise NotFoundError("staff member not found", detail={"staff_id": staff_id})
        saga = Saga("reset_staff_password", tenant_id=admin.tenant_id, staff_id=staff_id)
        saga.add_compensation(
            "restore_password",
            functools.partial(self.store.modify_staff, tenant_id=admin.tenant_id, now=now),
            staff_id,
            _restore,
        )
        try:
            await self.email.send_staff_password_reset(
                member.email,
                first_name=member.first_name,
                temporary_password=temporary_password,
            )
        except EmailDispatchError as exc:
            saga.compensate()
            raise EmailDispatchFailedError(
                "unable to send password reset email; password was not changed"
            ) from exc
        except BaseException:
            saga.compensate()
            raise
        self.logger.info("staff_password_reset", staff_id=staff_id, tenant_id=admin.tenant_id)

    # self-service ---------------------------------------------------------
    @service_boundary
    async def change_password(
        self, principal: Principal, current_password: str, new_password: str
    ) -> None:
        if isinstance(principal, AdminPrincipal):
            record = self.store.get_administrator(principal.id)
        else:
            record = self.store.get_staff(principal.id, tenant_id=principal.tenant_id)
        if record is None:
            raise NotFoundError("account not found")
        matched = await asyncio.to_thread(
            self.vault.verify, current_password, record.password_hash
        )
        if not matched:
            raise InvalidCurrentPasswordError("current password is incorrect")
        if not isinstance(new_password, str):
            raise ValidationError("new password is required", detail={"field": "new_password"})
        check_password_policy(new_password, self.settings.password_min_length)
        password_hash = await asyncio.to_thread(self.vault.hash, new_password)

        def _apply(target: Any) -> None:
            target.password_hash = password_hash
            if isinstance(target, StaffMember):
                target.must_change_password = False

        now = self.clock.now()
        if isinstance(principal, AdminPrincipal):
            self.store.modify_administrator(principal.id, _apply, now=now)
        else:
            self.store.modify_staff(principal.id, _apply, tenant_id=principal.tenant_id, now=now)
        self.logger.info("password_changed", principal_id=principal.id, kind=principal.kind)

    # maintenance ----------------------------------------------------------
    @service_boundary
    async def purge_expired_verifications(self) -> int:
        """Purge stale verification records and expired deny-list entries.

        Returns the number of verification records removed.
        """
        self.sessions.purge_expired()
        return self.ledger.purge_expired()
