from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from crmcore.api.schemas import (
    AuthResponse,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshResponse,
    RegisterRequest,
    ResendVerificationRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    UserResponse,
)
from crmcore.logging import get_logger
from crmcore.service.auth import AuthContext, AuthResult, TokenPair, UserProfile
from crmcore.service.errors import NotFoundError, RateLimitedError
from crmcore.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_FORGOT_PASSWORD_MESSAGE = "If the email exists, a password reset link has been sent"
_RESEND_VERIFICATION_MESSAGE = (
    "If the account exists and is unverified, a verification email has been sent"
)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one token for ``key``; raise 429 when the bucket is empty.

    Raises:
        RateLimitedError if the bucket is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", scope=key.split(":", 1)[0])
        raise RateLimitedError(reset_seconds)
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


def _user_response(profile: UserProfile) -> UserResponse:
    return UserResponse(
        id=profile.id,
        email=profile.email,
        role=profile.role.value,
        org_id=profile.org_id,
        organization_name=profile.organization_name,
        first_name=profile.first_name,
        last_name=profile.last_name,
        email_verified=profile.email_verified,
        last_login_at=profile.last_login_at,
    )


def _token_response(tokens: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=_user_response(result.user), tokens=_token_response(result.tokens)
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an organization together with its first user.

    The very first user of the deployment becomes an admin with a verified
    email; everyone after that starts as an unverified rep.

    Raises:
        400: If the body fails validation
        409: If the email is already registered
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.register_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.register(
        body.organization_name,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid, the account is locked or deactivated
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    """Revoke the session named by ``refresh_token``, or every session of the caller."""
    runtime = get_runtime()
    await runtime.auth.logout(
        principal.user_id,
        body.refresh_token if body else None,
        org_id=principal.org_id,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    body: TokenRefreshRequest, request: Request, response: Response
):
    """Rotate a refresh token into a new access/refresh pair.

    The presented refresh token is consumed; replaying it fails with 401.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
        response=response,
    )
    tokens = await runtime.auth.refresh(
        body.refresh_token,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=RefreshResponse(tokens=_token_response(tokens)))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    token = await runtime.auth.forgot_password(body.email)
    # Same answer whether or not the email exists
    return Envelope(
        status="ok",
        data=MessageResponse(
            message=_FORGOT_PASSWORD_MESSAGE,
            dev_token=None if runtime.settings.is_production else token,
        ),
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: PasswordResetConfirm, request: Request, response: Response
):
    runtime = get_runtime()
    # Keyed by client so reset tokens cannot be brute-forced
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.reset_password(body.token, body.password)
    return Envelope(status="ok", data=MessageResponse(message="Password reset successfully"))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(
    body: EmailVerificationRequest, request: Request, response: Response
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{_client_ip(request)}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
        response=response,
    )
    changed = await runtime.auth.verify_email(body.token)
    message = "Email verified successfully" if changed else "Email already verified"
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:resend:{body.email}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
        response=response,
    )
    token = await runtime.auth.resend_verification_email(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message=_RESEND_VERIFICATION_MESSAGE,
            dev_token=None if runtime.settings.is_production else token,
        ),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    """Return the caller's profile, including the organization name.

    Raises:
        401: If the bearer token is missing, invalid or its session revoked
        404: If the user row no longer exists
    """
    runtime = get_runtime()
    profile = await runtime.auth.get_current_user(principal.user_id)
    if profile is None:
        raise NotFoundError("user not found")
    return Envelope(status="ok", data=_user_response(profile))
