"""
auth/admin.py -- Administrative identity management.

Guards:
  [M4] An admin cannot deactivate, demote or delete themselves, and the last
       active admin cannot be deactivated, demoted or deleted by anyone.

Every mutation invalidates the identity's cache entries before returning and
queues an audit record. A system role change also lowers the user's stored
share entries to the new role's cap (ShareService.normalize_for_user), which
invalidates every document it touches.

Password resets and deactivation clear the refresh-token list, so existing
sessions end at their next refresh.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from audit.models import AuditAction, AuditResource
from audit.trail import AuditTrail
from auth.identity import IdentityResolver
from auth.models import NO_CHALLENGE, Identity, RequestContext, SystemRole
from auth.service import validate_password
from auth.store import IdentityStore
from auth.tokens import hash_password
from core.errors import NotFound, ValidationFailed

if TYPE_CHECKING:
    from documents.sharing import ShareService

logger = logging.getLogger("techpacker.auth.admin")


class AdminService:
    def __init__(
        self,
        store: IdentityStore,
        resolver: IdentityResolver,
        audit: AuditTrail,
        sharing: Optional["ShareService"] = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.audit = audit
        self.sharing = sharing

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, user_id: int) -> Identity:
        identity = await self.store.get_by_id(user_id)
        if identity is None:
            raise NotFound("User not found.")
        return identity

    async def list_users(
        self,
        *,
        role: SystemRole | None = None,
        is_active: bool | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Identity], int]:
        return await self.store.list_identities(role=role, is_active=is_active, search=search, page=page, limit=limit)

    async def stats(self) -> dict:
        distribution = await self.store.role_distribution()
        recent, total = await self.store.list_identities(page=1, limit=5)
        return {
            "total_users": total,
            "role_distribution": distribution,
            "recent_users": [identity.public_projection() for identity in recent],
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(
        self,
        actor: Identity,
        *,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: SystemRole = SystemRole.designer,
        context: RequestContext | None = None,
    ) -> Identity:
        validate_password(password)
        identity = Identity(
            email=email.strip().lower(),
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            role=SystemRole(role),
            hashed_password=hash_password(password),
        )
        identity.id = await self.store.create(identity)
        self.audit.record(
            AuditAction.CREATE_USER,
            AuditResource.user,
            actor=actor,
            resource_id=identity.id,
            details={"email": identity.email, "role": identity.role.value},
            context=context,
        )
        logger.info("Admin %s created user %s (%s)", actor.id, identity.id, identity.role.value)
        return await self.get(identity.id)

    async def update(
        self,
        actor: Identity,
        user_id: int,
        *,
        email: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        role: SystemRole | None = None,
        is_active: bool | None = None,
        context: RequestContext | None = None,
    ) -> Identity:
        target = await self.get(user_id)
        fields: dict = {}
        if email is not None and email.strip().lower() != target.email:
            fields["email"] = email.strip().lower()
        if first_name is not None:
            fields["first_name"] = first_name.strip()
        if last_name is not None:
            fields["last_name"] = last_name.strip()
        if is_active is not None and is_active != target.is_active:
            if not is_active:
                await self._guard_admin_loss(actor, target, "deactivate")
                fields["refresh_tokens"] = []
            fields["is_active"] = is_active
        role_changed = role is not None and SystemRole(role) is not target.role
        if role_changed:
            await self._guard_admin_loss(actor, target, "demote", new_role=SystemRole(role))
            fields["role"] = SystemRole(role)
        if not fields:
            return target

        updated = await self.store.mutate(user_id, lambda _current: dict(fields))
        await self.resolver.invalidate_identity(user_id)
        if role_changed:
            await self._normalize_shares(user_id, updated.role)
        self.audit.record(
            AuditAction.UPDATE_USER,
            AuditResource.user,
            actor=actor,
            resource_id=user_id,
            details={"fields": sorted(fields), "role": updated.role.value, "is_active": updated.is_active},
            context=context,
        )
        return updated

    async def change_role(
        self, actor: Identity, user_id: int, role: SystemRole, context: RequestContext | None = None
    ) -> Identity:
        target = await self.get(user_id)
        role = SystemRole(role)
        if role is target.role:
            return target
        await self._guard_admin_loss(actor, target, "demote", new_role=role)
        old_role = target.role
        updated = await self.store.mutate(user_id, lambda _current: {"role": role})
        await self.resolver.invalidate_identity(user_id)
        normalized = await self._normalize_shares(user_id, role)
        self.audit.record(
            AuditAction.CHANGE_ROLE,
            AuditResource.user,
            actor=actor,
            resource_id=user_id,
            details={"old_role": old_role.value, "new_role": role.value, "documents_normalized": normalized},
            context=context,
        )
        logger.info("Admin %s changed role of user %s: %s -> %s", actor.id, user_id, old_role.value, role.value)
        return updated

    async def set_two_factor(
        self, actor: Identity, user_id: int, enabled: bool, context: RequestContext | None = None
    ) -> Identity:
        await self.get(user_id)
        fields: dict = {"two_factor_enabled": bool(enabled)}
        if not enabled:
            fields["two_factor"] = NO_CHALLENGE
        updated = await self.store.mutate(user_id, lambda _current: dict(fields))
        await self.resolver.invalidate_identity(user_id)
        self.audit.record(
            AuditAction.UPDATE_USER_2FA,
            AuditResource.user,
            actor=actor,
            resource_id=user_id,
            details={"enabled": bool(enabled)},
            context=context,
        )
        return updated

    async def reset_password(
        self, actor: Identity, user_id: int, new_password: str, context: RequestContext | None = None
    ) -> None:
        await self.get(user_id)
        validate_password(new_password)
        new_hash = hash_password(new_password)
        await self.store.mutate(user_id, lambda _current: {"hashed_password": new_hash, "refresh_tokens": []})
        await self.resolver.invalidate_identity(user_id)
        self.audit.record(AuditAction.RESET_PASSWORD, AuditResource.user, actor=actor, resource_id=user_id, context=context)

    async def delete(self, actor: Identity, user_id: int, context: RequestContext | None = None) -> None:
        if actor.id == user_id:
            raise ValidationFailed("You cannot delete your own account.")
        target = await self.get(user_id)
        await self._guard_admin_loss(actor, target, "delete")
        if not await self.store.delete(user_id):
            raise NotFound("User not found.")
        await self.resolver.invalidate_identity(user_id)
        if self.sharing is not None:
            await self.sharing.forget_user(user_id)
        self.audit.record(
            AuditAction.DELETE_USER,
            AuditResource.user,
            actor=actor,
            resource_id=user_id,
            details={"email": target.email, "role": target.role.value},
            context=context,
        )
        logger.info("Admin %s deleted user %s", actor.id, user_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _guard_admin_loss(
        self, actor: Identity, target: Identity, verb: str, *, new_role: SystemRole | None = None
    ) -> None:
        """[M4] Block self-lockout and removal of the last active admin."""
        if target.role is not SystemRole.admin or not target.is_active:
            return
        if new_role is SystemRole.admin:
            return
        if actor.id == target.id:
            raise ValidationFailed(f"You cannot {verb} your own admin account.")
        if await self.store.count_active_admins() <= 1:
            raise ValidationFailed(f"Cannot {verb} the last active admin.")

    async def _normalize_shares(self, user_id: int, role: SystemRole) -> list[int]:
        if self.sharing is None:
            return []
        return await self.sharing.normalize_for_user(user_id, role)
