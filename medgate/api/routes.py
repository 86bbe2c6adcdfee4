from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from medgate.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    HospitalRegistrationRequest,
    LoginRequest,
    LoginResponse,
    RegistrationResponse,
    ResendVerificationRequest,
    ResendVerificationResponse,
    StaffCreateRequest,
    StaffResponse,
    StaffUpdateRequest,
    VerifyEmailRequest,
)
from medgate.logging import get_logger
from medgate.service.auth import LoginResult
from medgate.service.errors import AuthenticationError
from medgate.service.principals import Principal, tenant_summary
from medgate.service.runtime import get_runtime
from medgate.service.sessions import extract_bearer

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_STAFF_ID = Path(..., min_length=1, max_length=64)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _login_envelope(result: LoginResult) -> Envelope:
    return Envelope(
        status="ok",
        data=LoginResponse(
            token=result.token,
            expires_at=result.expires_at,
            principal=result.principal,
            tenant=result.tenant,
        ),
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    """Resolve the bearer token to a live principal for this request."""
    token = extract_bearer(authorization)
    if not token:
        raise AuthenticationError("access token is required")
    return await get_runtime().auth.authenticate(token)


def require_permission(module: str, action: str) -> Callable:
    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        await get_runtime().auth.authorize(principal, module, action)
        return principal

    return _dependency


@router.post("/hospital/register", response_model=Envelope, status_code=201, tags=["hospital"])
async def register_hospital(body: HospitalRegistrationRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.register_tenant(
        {
            "name": body.hospital.name,
            "email": body.hospital.email,
            "registration_number": body.hospital.registration_number,
            "license_number": body.hospital.license_number,
            "hospital_number": body.hospital.hospital_number,
        },
        {
            "name": body.admin.full_name,
            "job_title": body.admin.job_title,
            "email": body.admin.email,
            "password": body.admin.password,
        },
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(
        status="ok",
        data=RegistrationResponse(
            tenant_id=result.tenant_id,
            email=result.email,
            verification_required=result.verification_required,
            token_expires_at=result.token_expires_at,
        ),
    )


@router.post("/hospital/verify-email", response_model=Envelope, tags=["hospital"])
async def verify_hospital_email(body: VerifyEmailRequest):
    result = await get_runtime().auth.verify_registration(body.email, body.token)
    return _login_envelope(result)


@router.post("/hospital/resend-verification", response_model=Envelope, tags=["hospital"])
async def resend_verification(body: ResendVerificationRequest):
    result = await get_runtime().auth.resend_verification(body.email)
    return Envelope(
        status="ok",
        data=ResendVerificationResponse(
            email=result.email, token_expires_at=result.token_expires_at
        ),
    )


@router.post("/admin/login", response_model=Envelope, tags=["auth"])
async def admin_login(body: LoginRequest, request: Request):
    result = await get_runtime().auth.admin_login(
        body.email, body.password, ip_address=_client_ip(request)
    )
    return _login_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def staff_login(body: LoginRequest, request: Request):
    result = await get_runtime().auth.staff_login(
        body.email, body.password, ip_address=_client_ip(request)
    )
    return _login_envelope(result)


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data={
            "principal": principal.summary(),
            "tenant": tenant_summary(principal.tenant),
            "permissions": [entry.to_dict() for entry in principal.permissions],
        },
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: Principal = Depends(get_principal)):
    await get_runtime().auth.logout(principal)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: Principal = Depends(get_principal)
):
    await get_runtime().auth.change_password(
        principal, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"message": "password changed"})


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_staff(
    body: StaffCreateRequest,
    principal: Principal = Depends(require_permission("users", "create")),
):
    fields = body.model_dump(exclude_none=True)
    fields["role"] = body.role.value
    member = await get_runtime().auth.create_staff(principal, fields)
    return Envelope(status="ok", data=StaffResponse.from_model(member))


@router.put("/users/{staff_id}", response_model=Envelope, tags=["users"])
async def update_staff(
    body: StaffUpdateRequest,
    staff_id: str = _STAFF_ID,
    principal: Principal = Depends(require_permission("users", "update")),
):
    changes = body.model_dump(exclude_unset=True)
    if body.role is not None:
        changes["role"] = body.role.value
    member = await get_runtime().auth.update_staff(principal, staff_id, changes)
    return Envelope(status="ok", data=StaffResponse.from_model(member))


@router.delete("/users/{staff_id}", response_model=Envelope, tags=["users"])
async def delete_staff(
    staff_id: str = _STAFF_ID,
    principal: Principal = Depends(require_permission("users", "delete")),
):
    await get_runtime().auth.delete_staff(principal, staff_id)
    return Envelope(status="ok", data={"deleted": True, "staff_id": staff_id})


@router.post("/users/{staff_id}/reset-password", response_model=Envelope, tags=["users"])
async def reset_staff_password(
    staff_id: str = _STAFF_ID,
    principal: Principal = Depends(require_permission("users", "update")),
):
    await get_runtime().auth.reset_staff_password(principal, staff_id)
    return Envelope(
        status="ok", data={"message": "password reset and emailed", "staff_id": staff_id}
    )
