"""
auth/service.py -- Credential-to-token flows.

    login ──> credentials ok? ──no──> Unauthorized (+ FAILED_LOGIN)
                   │yes
                   ├── 2FA off ──> tokens issued, jti appended, last_login stamped
                   └── 2FA on  ──> challenge started, session token returned (no tokens)
    verify_code ──> challenge ok ──> tokens issued (same path as 2FA off)

A refresh token is usable only while its jti is listed on the identity. Every
change to that list (login appends, logout removes, password change clears)
is a read-modify-write through IdentityStore.mutate(), so two logins racing
on the same identity both keep their jti, and a logout cannot be undone by a
concurrent login writing back a stale list.

Audit records are queued, never awaited; see audit/trail.py.

Layer rule: imports audit/ for action kinds and the AuditTrail type; the trail
itself is handed in. No imports from api/ or documents/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from audit.models import AuditAction, AuditResource
from audit.trail import AuditTrail
from auth.identity import IdentityResolver
from auth.models import Identity, RequestContext, SystemRole, TokenPair
from auth.store import IdentityStore
from auth.tokens import (
    authenticate_identity,
    hash_password,
    issue_access_token,
    issue_refresh_token,
    verify_password,
    verify_refresh_token,
)
from auth.two_factor import TwoFactorEngine
from core.errors import Forbidden, NotFound, Unauthorized, ValidationFailed

logger = logging.getLogger("techpacker.auth.service")

MIN_PASSWORD_LENGTH = 8


def validate_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a login step.

    Exactly one of tokens / session_token is set: tokens when the identity is
    fully authenticated, session_token when a two-factor code is pending.
    """

    identity: Identity
    tokens: Optional[TokenPair] = None
    session_token: Optional[str] = None

    @property
    def requires_two_factor(self) -> bool:
        return self.tokens is None


class AuthService:
    def __init__(
        self,
        store: IdentityStore,
        two_factor: TwoFactorEngine,
        resolver: IdentityResolver,
        audit: AuditTrail,
        *,
        access_token_expire_seconds: int = 900,
        self_registration_enabled: bool = True,
    ) -> None:
        self.store = store
        self.two_factor = two_factor
        self.resolver = resolver
        self.audit = audit
        self.access_token_expire_seconds = access_token_expire_seconds
        self.self_registration_enabled = self_registration_enabled

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
        context: RequestContext | None = None,
    ) -> LoginResult:
        """Create a designer account and sign it in."""
        if not self.self_registration_enabled:
            raise Forbidden("Self-registration is disabled. Ask an administrator for an account.")
        validate_password(password)
        identity = Identity(
            email=email.strip().lower(),
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            role=SystemRole.designer,
            hashed_password=hash_password(password),
        )
        identity.id = await self.store.create(identity)
        logger.info("Registered user %s", identity.id)
        self.audit.record(
            AuditAction.CREATE_USER,
            AuditResource.user,
            actor=identity,
            resource_id=identity.id,
            details={"source": "self-registration", "role": identity.role.value},
            context=context,
        )
        return await self._complete_login(identity, context)

    async def login(self, email: str, password: str, context: RequestContext | None = None) -> LoginResult:
        identity = await authenticate_identity(self.store, email, password)
        if identity is None:
            self.audit.record(
                AuditAction.FAILED_LOGIN,
                AuditResource.auth,
                details={"email": email.strip().lower()},
                context=context,
            )
            raise Unauthorized("Invalid email or password.")

        if identity.two_factor_enabled:
            session_token = await self.two_factor.start(identity)
            logger.info("Login for user %s awaiting two-factor verification", identity.id)
            return LoginResult(identity=identity, session_token=session_token)
        return await self._complete_login(identity, context)

    async def resend_code(self, session_token: str) -> None:
        await self.two_factor.resend(session_token)

    async def verify_code(self, session_token: str, code: str, context: RequestContext | None = None) -> LoginResult:
        identity = await self.two_factor.verify(session_token, code)
        return await self._complete_login(identity, context)

    async def _complete_login(self, identity: Identity, context: RequestContext | None) -> LoginResult:
        """Issue an access/refresh pair, record the jti and stamp last_login."""
        refresh_token, token_id = issue_refresh_token(identity)
        stamped = _now_iso()

        updated = await self.store.mutate(
            identity.id,
            lambda current: {"refresh_tokens": [*current.refresh_tokens, token_id], "last_login": stamped},
        )
        await self.resolver.invalidate_identity(identity.id)
        self.audit.record(AuditAction.LOGIN, AuditResource.auth, actor=updated, resource_id=updated.id, context=context)
        tokens = TokenPair(
            access_token=issue_access_token(updated),
            refresh_token=refresh_token,
            expires_in=self.access_token_expire_seconds,
        )
        return LoginResult(identity=updated, tokens=tokens)

    # ------------------------------------------------------------------
    # Refresh and logout
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> str:
        """Exchange a listed refresh token for a new access token.

        The access token carries the identity's current role, so a refresh is
        how a role change reaches a client.
        """
        claims = verify_refresh_token(refresh_token)
        identity = await self.store.get_by_id(claims.subject_id)
        if identity is None or not identity.is_active or claims.token_id not in identity.refresh_tokens:
            raise Unauthorized("Invalid or expired refresh token.")
        return issue_access_token(identity)

    async def logout(self, identity: Identity, refresh_token: str, context: RequestContext | None = None) -> None:
        """Revoke one refresh token belonging to the authenticated identity."""
        claims = verify_refresh_token(refresh_token)
        if claims.subject_id != identity.id:
            raise Forbidden("This refresh token belongs to another user.")
        await self._revoke(claims.subject_id, claims.token_id)
        self.audit.record(AuditAction.LOGOUT, AuditResource.auth, actor=identity, resource_id=identity.id, context=context)

    async def logout_by_refresh(self, refresh_token: str, context: RequestContext | None = None) -> None:
        """Revoke a refresh token without an access token. Idempotent.

        An unverifiable token or an already-removed jti is a silent no-op.
        """
        try:
            claims = verify_refresh_token(refresh_token)
        except Unauthorized:
            logger.info("logout-by-refresh with an unverifiable token; nothing to revoke")
            return
        identity = await self._revoke(claims.subject_id, claims.token_id)
        if identity is not None:
            self.audit.record(
                AuditAction.LOGOUT, AuditResource.auth, actor=identity, resource_id=identity.id, context=context
            )

    async def _revoke(self, identity_id: int, token_id: str) -> Identity | None:
        def change(current: Identity) -> dict:
            if token_id not in current.refresh_tokens:
                return {}
            return {"refresh_tokens": [t for t in current.refresh_tokens if t != token_id]}

        try:
            identity = await self.store.mutate(identity_id, change)
        except NotFound:
            return None
        await self.resolver.invalidate_identity(identity_id)
        return identity

    # ------------------------------------------------------------------
    # Self-service profile
    # ------------------------------------------------------------------

    async def change_password(
        self,
        identity: Identity,
        current_password: str,
        new_password: str,
        context: RequestContext | None = None,
    ) -> None:
        """Replace the password and end every session of the identity."""
        stored = await self.store.get_by_id(identity.id)
        if stored is None or not stored.hashed_password or not verify_password(current_password, stored.hashed_password):
            raise ValidationFailed("Current password is incorrect.")
        validate_password(new_password)
        if verify_password(new_password, stored.hashed_password):
            raise ValidationFailed("New password must differ from the current password.")
        new_hash = hash_password(new_password)
        await self.store.mutate(identity.id, lambda _current: {"hashed_password": new_hash, "refresh_tokens": []})
        await self.resolver.invalidate_identity(identity.id)
        self.audit.record(
            AuditAction.CHANGE_PASSWORD, AuditResource.user, actor=identity, resource_id=identity.id, context=context
        )
        logger.info("Password changed for user %s; all refresh tokens revoked", identity.id)

    async def update_profile(
        self,
        identity: Identity,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        context: RequestContext | None = None,
    ) -> Identity:
        fields = {}
        if first_name is not None:
            fields["first_name"] = first_name.strip()
        if last_name is not None:
            fields["last_name"] = last_name.strip()
        if not fields:
            return identity
        updated = await self.store.mutate(identity.id, lambda _current: dict(fields))
        await self.resolver.invalidate_identity(identity.id)
        self.audit.record(
            AuditAction.UPDATE_USER,
            AuditResource.user,
            actor=identity,
            resource_id=identity.id,
            details={"fields": sorted(fields)},
            context=context,
        )
        return updated


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
