"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST  /api/v1/auth/register            -- self-registration; returns tokens
  POST  /api/v1/auth/login               -- password login; tokens or 2FA-pending
  POST  /api/v1/auth/2fa/resend          -- new code for a pending challenge
  POST  /api/v1/auth/2fa/verify          -- complete a 2FA login; returns tokens
  POST  /api/v1/auth/refresh             -- refresh token -> access token
  POST  /api/v1/auth/logout              -- revoke a refresh token (requires auth)
  POST  /api/v1/auth/logout-by-refresh   -- revoke a refresh token (no access token)
  GET   /api/v1/auth/me                  -- current profile (requires auth)
  PATCH /api/v1/auth/me                  -- update names (requires auth)
  POST  /api/v1/auth/change-password     -- requires auth; ends every session

Security:
  [H2] /login, /2fa/resend and /2fa/verify are rate-limited per IP. Each
       resend restarts the attempt counter, so resend has its own, tighter
       limit.
  [C1] AuthService.login() goes through authenticate_identity() (timing
       equalization); never inline get_by_email() + verify_password().
  [M5] Cache-Control: no-store on every response that carries a token.
  Wrong email and wrong password produce the same message.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_LIMIT, RESEND_LIMIT, VERIFY_LIMIT, limiter
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    ProfilePatch,
    RefreshRequest,
    RegisterRequest,
    TwoFactorResendRequest,
    TwoFactorVerifyRequest,
    envelope,
)
from auth.dependencies import get_current_identity, request_context
from auth.models import Identity
from auth.service import AuthService, LoginResult

# Auth policy:
# - register, login, 2fa/*, refresh, logout-by-refresh: public
# - logout, me, change-password: requires auth (get_current_identity)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _login_payload(result: LoginResult) -> dict:
    if result.requires_two_factor:
        return {"requires_two_factor": True, "session_token": result.session_token}
    return {
        "requires_two_factor": False,
        "user": result.identity.public_projection(),
        "access_token": result.tokens.access_token,
        "refresh_token": result.tokens.refresh_token,
        "token_type": "bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        "expires_in": result.tokens.expires_in,
    }


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", status_code=201)
async def register(request: Request, body: RegisterRequest) -> JSONResponse:
    result = await _service(request).register(
        body.email, body.password, body.first_name, body.last_name, request_context(request)
    )
    return envelope(_login_payload(result), "User registered successfully.", status_code=201, no_store=True)


@limiter.limit(LOGIN_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login")
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    With two-factor enabled no tokens are issued: the response carries a
    session token for /2fa/verify and a code goes out by email.
    """
    result = await _service(request).login(body.email, body.password, request_context(request))
    message = "Verification code sent." if result.requires_two_factor else "Login successful."
    return envelope(_login_payload(result), message, no_store=True)


@limiter.limit(RESEND_LIMIT)  # [H2]
@router.post("/auth/2fa/resend")
async def resend_code(request: Request, body: TwoFactorResendRequest) -> JSONResponse:
    await _service(request).resend_code(body.session_token)
    return envelope(message="A new verification code has been sent.")


@limiter.limit(VERIFY_LIMIT)  # [H2]
@router.post("/auth/2fa/verify")
async def verify_code(request: Request, body: TwoFactorVerifyRequest) -> JSONResponse:
    result = await _service(request).verify_code(body.session_token, body.code, request_context(request))
    return envelope(_login_payload(result), "Login successful.", no_store=True)


@router.post("/auth/refresh")
async def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    service = _service(request)
    access_token = await service.refresh(body.refresh_token)
    return envelope(
        {"access_token": access_token, "token_type": "bearer", "expires_in": service.access_token_expire_seconds},
        "Token refreshed successfully.",
        no_store=True,
    )


@router.post("/auth/logout-by-refresh")
async def logout_by_refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    await _service(request).logout_by_refresh(body.refresh_token, request_context(request))
    return envelope(message="Logged out successfully.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout")
async def logout(
    request: Request,
    body: RefreshRequest,
    identity: Identity = Depends(get_current_identity),
) -> JSONResponse:
    await _service(request).logout(identity, body.refresh_token, request_context(request))
    return envelope(message="Logged out successfully.")


@router.get("/auth/me")
async def me(identity: Identity = Depends(get_current_identity)) -> JSONResponse:
    return envelope({"user": identity.public_projection()}, "Profile retrieved successfully.")


@router.patch("/auth/me")
async def update_me(
    request: Request,
    body: ProfilePatch,
    identity: Identity = Depends(get_current_identity),
) -> JSONResponse:
    updated = await _service(request).update_profile(
        identity, first_name=body.first_name, last_name=body.last_name, context=request_context(request)
    )
    return envelope({"user": updated.public_projection()}, "Profile updated successfully.")


@router.post("/auth/change-password")
async def change_password(
    request: Request,
    body: ChangePasswordRequest,
    identity: Identity = Depends(get_current_identity),
) -> JSONResponse:
    await _service(request).change_password(
        identity, body.current_password, body.new_password, request_context(request)
    )
    return envelope(message="Password changed successfully. Please sign in again.")
