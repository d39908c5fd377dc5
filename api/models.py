"""
API request and response models for TechPacker REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py,
documents/models.py and audit/models.py, which own the internal domain
representation. Route handlers map between the two.

Every response body is the same envelope:

    {"success": true,  "message": "...", "data": {...}}
    {"success": false, "message": "...", "errorCode": "FORBIDDEN", "data": {...}?}

Response data is built from public projections only; no model here has a
field for a password hash, a refresh-token list or a two-factor code hash.

Separation of concerns: domain models = domain truth; api/ models = API contract.
"""

import math
from typing import Any, Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from auth.models import SystemRole
from documents.models import DocumentRole

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
CODE_PATTERN = r"^\d{6}$"
PASSWORD_MIN_LENGTH = 8

# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ApiResult(BaseModel):
    """Top-level envelope for every response, success or failure."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    success: bool
    message: str
    data: Optional[Any] = None
    error_code: Optional[str] = Field(default=None, alias="errorCode")


def envelope(
    data: Any = None,
    message: str = "OK",
    *,
    status_code: int = 200,
    success: bool = True,
    error_code: str | None = None,
    no_store: bool = False,
) -> JSONResponse:
    """Render an ApiResult. data and errorCode are omitted when None."""
    content: dict[str, Any] = {"success": success, "message": message}
    if data is not None:
        content["data"] = data
    if error_code is not None:
        content["errorCode"] = error_code
    response = JSONResponse(status_code=status_code, content=content)
    if no_store:
        response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


def pagination(page: int, limit: int, total: int) -> dict:
    return {"page": page, "limit": limit, "total": total, "total_pages": math.ceil(total / limit) if limit else 0}


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=128)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class TwoFactorResendRequest(BaseModel):
    session_token: str = Field(min_length=1)


class TwoFactorVerifyRequest(BaseModel):
    session_token: str = Field(min_length=1)
    code: str = Field(pattern=CODE_PATTERN, description="The 6-digit code sent by email.")


class RefreshRequest(BaseModel):
    """Body for /auth/refresh, /auth/logout and /auth/logout-by-refresh."""

    refresh_token: str = Field(min_length=1)


class ProfilePatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=128)


# ---------------------------------------------------------------------------
# Admin -- request models
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/admin/users."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    role: SystemRole = SystemRole.designer


class UserUpdate(BaseModel):
    """Request body for PUT /api/v1/admin/users/{id}. All fields optional."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    role: Optional[SystemRole] = None
    is_active: Optional[bool] = None


class RoleChange(BaseModel):
    role: SystemRole


class TwoFactorToggle(BaseModel):
    enabled: bool


class PasswordReset(BaseModel):
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=128)


# ---------------------------------------------------------------------------
# Documents -- request models
# ---------------------------------------------------------------------------


class DocumentCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)


class DocumentPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)


class ShareRequest(BaseModel):
    """Request body for PUT /api/v1/documents/{id}/share."""

    user_id: int = Field(ge=1)
    role: DocumentRole


class ShareRoleUpdate(BaseModel):
    role: DocumentRole


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Data payload for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
