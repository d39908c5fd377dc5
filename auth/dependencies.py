"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Credentials arrive as an Authorization: Bearer <access token> header.

    header -> verify_access_token (pure, no I/O) -> IdentityResolver.resolve
           (cache first, store on miss or cache error) -> active Identity

The token's role claim is not trusted for authorization: the resolved
identity's current role is. A demoted user therefore loses privileges as soon
as the identity cache entry is invalidated, not when the token expires.

get_current_identity() raises Unauthorized.
require_admin() additionally raises Forbidden for non-admins.

Layer rule: no imports from api/, documents/, or audit/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.identity import IdentityResolver
from auth.models import Identity, RequestContext, SystemRole
from auth.tokens import verify_access_token
from core.errors import Forbidden, Unauthorized


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:7].lower() == "bearer ":
        token = auth_header[7:].strip()
        return token or None
    return None


async def get_current_identity(request: Request) -> Identity:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: Identity = Depends(get_current_identity)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise Unauthorized("Authentication required.")
    claims = verify_access_token(token)
    resolver: IdentityResolver = request.app.state.identity_resolver
    return await resolver.resolve(claims)


async def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    """Require the system admin role."""
    if identity.role is not SystemRole.admin:
        raise Forbidden("Admin access required.")
    return identity


def request_context(request: Request) -> RequestContext:
    """Caller metadata for audit records."""
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )
