from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from gatekeeper.api.schemas import (
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordChangeRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenRefreshRequest,
    TokenResponse,
    UpdateProfileRequest,
    UserResponse,
    UserStatusRequest,
    VerifyTokenResponse,
)
from gatekeeper.logging import get_correlation_id, get_logger
from gatekeeper.service.auth import RequestMeta
from gatekeeper.service.runtime import get_runtime
from gatekeeper.service.session_guard import AuthenticatedContext
from gatekeeper.service.tokens import TokenPair
from gatekeeper.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _envelope(data) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


def _client_address(request: Request) -> str:
    """Resolve the caller's address, honoring X-Forwarded-For only behind a trusted proxy."""
    if get_runtime().settings.trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=_client_address(request),
        user_agent=request.headers.get("User-Agent"),
    )


def _token_response(pair: TokenPair) -> dict:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.access_expires_in,
    ).model_dump()


async def get_context(authorization: Optional[str] = Header(None)) -> AuthenticatedContext:
    runtime = get_runtime()
    return runtime.sessions.authenticate(authorization)


def require_role(required: Role):
    """Build a dependency admitting only callers whose role satisfies ``required``."""

    async def _dependency(
        ctx: AuthenticatedContext = Depends(get_context),
    ) -> AuthenticatedContext:
        ctx.require_role(required)
        return ctx

    return _dependency


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Every successful login starts a new session and retires tokens issued
    to any earlier one.

    Raises:
        401: invalid credentials or deactivated account
        423: account locked after repeated failures
        429: too many attempts from this address for this email
    """
    runtime = get_runtime()
    meta = _request_meta(request)
    await runtime.login_limiter.enforce(meta.ip_address, body.email)
    result = await runtime.auth.login(body.email, body.password, meta)
    data = LoginResponse(
        **_token_response(result.tokens),
        user=UserResponse.from_identity(result.identity),
    )
    return _envelope(data.model_dump(mode="json"))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token, _request_meta(request))
    return _envelope(_token_response(result.tokens))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    """Email a one-time reset code to the account owner."""
    runtime = get_runtime()
    meta = _request_meta(request)
    await runtime.forgot_limiter.enforce(meta.ip_address, body.email)
    expires = await runtime.password_reset.request_reset(
        body.email, ip_address=meta.ip_address, user_agent=meta.user_agent
    )
    return _envelope(
        {
            "message": "OTP sent to your email address",
            "expires_at": expires.isoformat(),
        }
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    meta = _request_meta(request)
    await runtime.reset_limiter.enforce(meta.ip_address, body.email)
    await runtime.password_reset.confirm_reset(
        body.email,
        body.otp,
        body.new_password,
        ip_address=meta.ip_address,
        user_agent=meta.user_agent,
    )
    return _envelope(MessageResponse(message="Password reset successfully").model_dump())


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, ctx: AuthenticatedContext = Depends(get_context)):
    runtime = get_runtime()
    await runtime.auth.logout(ctx, _request_meta(request))
    return _envelope(MessageResponse(message="Logged out successfully").model_dump())


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: AuthenticatedContext = Depends(get_context)):
    return _envelope(UserResponse.from_identity(ctx.identity).model_dump(mode="json"))


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify_token(ctx: AuthenticatedContext = Depends(get_context)):
    data = VerifyTokenResponse(valid=True, user=UserResponse.from_identity(ctx.identity))
    return _envelope(data.model_dump(mode="json"))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    ctx: AuthenticatedContext = Depends(get_context),
):
    """Replace the caller's password; tokens issued before the change stop working."""
    runtime = get_runtime()
    await runtime.auth.change_password(
        ctx, body.current_password, body.new_password, _request_meta(request)
    )
    return _envelope(MessageResponse(message="Password changed successfully").model_dump())


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    ctx: AuthenticatedContext = Depends(require_role(Role.ADMIN)),
):
    runtime = get_runtime()
    identity = await runtime.auth.register(
        ctx,
        body.email,
        body.password,
        name=body.name,
        role=Role.parse(body.role),
        meta=_request_meta(request),
    )
    logger.info("identity_registered", identity_id=identity.id, created_by=ctx.identity_id)
    return _envelope(UserResponse.from_identity(identity).model_dump(mode="json"))


@router.put("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: UpdateProfileRequest,
    request: Request,
    ctx: AuthenticatedContext = Depends(get_context),
):
    """Update the caller's name and/or email.

    Raises:
        400: malformed email
        409: email already used by another account
    """
    runtime = get_runtime()
    identity = await runtime.auth.update_profile(
        ctx, name=body.name, email=body.email, meta=_request_meta(request)
    )
    return _envelope(UserResponse.from_identity(identity).model_dump(mode="json"))


@router.put("/users/{identity_id}/status", response_model=Envelope, tags=["users"])
async def set_user_status(
    identity_id: str,
    body: UserStatusRequest,
    request: Request,
    ctx: AuthenticatedContext = Depends(require_role(Role.ADMIN)),
):
    runtime = get_runtime()
    identity = await runtime.auth.set_active(
        ctx, identity_id, body.is_active, _request_meta(request)
    )
    return _envelope(UserResponse.from_identity(identity).model_dump(mode="json"))
