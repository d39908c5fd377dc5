"""
documents/sharing.py -- Grant, change and revoke per-document roles.

Rules enforced here, on top of the "share" action check:

  - the owner entry is never created, changed or revoked through sharing;
    owner is not an assignable role and the owner cannot be a share target
  - a share target must exist and be active
  - the requested role must be assignable for the target's system role
    (auth.access.is_role_assignable)

normalize_for_user() runs after an admin changes a user's system role: share
entries the new role may no longer hold are lowered to what it may hold.
The access engine already caps on every read, so normalization keeps the
stored table honest rather than being the thing that enforces the cap.

Every mutation invalidates document:{id}* and queues an audit record.


The read side (list_access, shareable_users, history) also requires "share":
the share table names every grantee, so view-only holders never see it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from audit.models import AuditAction, AuditPage, AuditResource
from audit.trail import AuditTrail
from auth.access import ROLE_CAP, Action, DocumentAccessService, is_role_assignable
from auth.identity import IdentityResolver
from auth.models import Identity, RequestContext, SystemRole
from auth.store import IdentityStore
from core.errors import NotFound, ValidationFailed
from documents.models import AccessSnapshot, DocumentRole, ShareEntry
from documents.store import DocumentStore

logger = logging.getLogger("techpacker.documents.sharing")


@dataclass
class ShareCandidate:
    """A user offered in the share dialog."""

    identity: Identity
    assignable_roles: list[DocumentRole]
    current_role: Optional[DocumentRole] = None

    def to_dict(self) -> dict:
        projection = self.identity.public_projection()
        return {
            "id": projection["id"],
            "email": projection["email"],
            "first_name": projection["first_name"],
            "last_name": projection["last_name"],
            "role": projection["role"],
            "assignable_roles": [r.value for r in self.assignable_roles],
            "current_role": self.current_role.value if self.current_role else None,
        }


def normalized_role(system_role: SystemRole, share_role: DocumentRole) -> DocumentRole:
    """The role a share entry is lowered to when system_role may not hold share_role."""
    if is_role_assignable(system_role, share_role):
        return share_role
    if share_role is DocumentRole.factory:
        return DocumentRole.viewer
    return ROLE_CAP[system_role]


class ShareService:
    def __init__(
        self,
        documents: DocumentStore,
        identities: IdentityStore,
        access: DocumentAccessService,
        resolver: IdentityResolver,
        audit: AuditTrail,
    ) -> None:
        self.documents = documents
        self.identities = identities
        self.access = access
        self.resolver = resolver
        self.audit = audit

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_access(self, actor: Identity, document_id: int) -> list[ShareEntry]:
        """The document's share table. Grantee IDs and roles are visible only to share holders."""
        snapshot, _ = await self.access.check(actor, document_id, Action.share)
        return snapshot.shares

    async def shareable_users(
        self,
        actor: Identity,
        document_id: int,
        *,
        search: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[ShareCandidate], int]:
        """Active users the document could be shared with, each with the roles it may hold.

        The owner is never a candidate. Users already on the share table are
        included with their current role so a client can offer a change.
        """
        snapshot, _ = await self.access.check(actor, document_id, Action.share)
        identities, total = await self.identities.list_identities(
            is_active=True,
            search=search,
            exclude_ids=[snapshot.document.owner_id],
            page=page,
            limit=limit,
        )
        candidates = []
        for identity in identities:
            existing = snapshot.share_for(identity.id)
            candidates.append(
                ShareCandidate(
                    identity=identity,
                    assignable_roles=[r for r in DocumentRole if is_role_assignable(identity.role, r)],
                    current_role=existing.role if existing else None,
                )
            )
        return candidates, total

    async def history(self, actor: Identity, document_id: int, *, page: int = 1, limit: int = 20) -> AuditPage:
        """Audit records about this document, newest first."""
        await self.access.check(actor, document_id, Action.share)
        return await self.audit.query(resource=AuditResource.techpack, resource_id=document_id, page=page, limit=limit)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def share(
        self,
        actor: Identity,
        document_id: int,
        target_user_id: int,
        role: DocumentRole,
        context: RequestContext | None = None,
    ) -> ShareEntry:
        """Grant role to target_user_id, or change it if an entry already exists."""
        snapshot, _ = await self.access.check(actor, document_id, Action.share)
        role = DocumentRole(role)
        await self._validate_target(snapshot, target_user_id, role)
        existing = snapshot.share_for(target_user_id)

        entry = await self.documents.upsert_share(
            ShareEntry(document_id=document_id, user_id=target_user_id, role=role, shared_by=actor.id)
        )
        await self.resolver.invalidate_document(document_id)
        self.audit.record(
            AuditAction.UPDATE_SHARE if existing else AuditAction.SHARE_TECHPACK,
            AuditResource.techpack,
            actor=actor,
            resource_id=document_id,
            details={
                "target_user_id": target_user_id,
                "role": role.value,
                "previous_role": existing.role.value if existing else None,
            },
            context=context,
        )
        return entry

    async def update_role(
        self,
        actor: Identity,
        document_id: int,
        target_user_id: int,
        role: DocumentRole,
        context: RequestContext | None = None,
    ) -> ShareEntry:
        """Change the role on an existing entry. Raises NotFound if there is none."""
        snapshot, _ = await self.access.check(actor, document_id, Action.share)
        existing = snapshot.share_for(target_user_id)
        if existing is None:
            raise NotFound("This user does not have access to the document.")
        role = DocumentRole(role)
        await self._validate_target(snapshot, target_user_id, role)

        entry = await self.documents.upsert_share(
            ShareEntry(document_id=document_id, user_id=target_user_id, role=role, shared_by=actor.id)
        )
        await self.resolver.invalidate_document(document_id)
        self.audit.record(
            AuditAction.UPDATE_SHARE,
            AuditResource.techpack,
            actor=actor,
            resource_id=document_id,
            details={"target_user_id": target_user_id, "role": role.value, "previous_role": existing.role.value},
            context=context,
        )
        return entry

    async def revoke(
        self,
        actor: Identity,
        document_id: int,
        target_user_id: int,
        context: RequestContext | None = None,
    ) -> None:
        snapshot, _ = await self.access.check(actor, document_id, Action.share)
        existing = snapshot.share_for(target_user_id)
        if target_user_id == snapshot.document.owner_id or (existing and existing.role is DocumentRole.owner):
            raise ValidationFailed("The document owner's access cannot be revoked.")
        if existing is None or not await self.documents.delete_share(document_id, target_user_id):
            raise NotFound("This user does not have access to the document.")
        await self.resolver.invalidate_document(document_id)
        self.audit.record(
            AuditAction.REVOKE_SHARE,
            AuditResource.techpack,
            actor=actor,
            resource_id=document_id,
            details={"target_user_id": target_user_id, "previous_role": existing.role.value},
            context=context,
        )

    async def normalize_for_user(self, user_id: int, new_role: SystemRole) -> list[int]:
        """Lower every non-owner share entry user_id holds to what new_role may hold.

        Returns the IDs of documents whose entries changed (their cache entries
        are already invalidated).
        """
        changed: list[int] = []
        for entry in await self.documents.shares_of_user(user_id):
            if entry.role is DocumentRole.owner:
                continue
            target = normalized_role(new_role, entry.role)
            if target is entry.role:
                continue
            await self.documents.upsert_share(
                ShareEntry(document_id=entry.document_id, user_id=user_id, role=target, shared_by=entry.shared_by)
            )
            await self.resolver.invalidate_document(entry.document_id)
            changed.append(entry.document_id)
        if changed:
            logger.info("Normalized %d share entr(ies) for user %s to role %s", len(changed), user_id, new_role.value)
        return changed

    async def forget_user(self, user_id: int) -> list[int]:
        """Drop every share entry held by a deleted user."""
        document_ids = await self.documents.delete_shares_of_user(user_id)
        for document_id in document_ids:
            await self.resolver.invalidate_document(document_id)
        return document_ids

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _validate_target(self, snapshot: AccessSnapshot, target_user_id: int, role: DocumentRole) -> None:
        if role is DocumentRole.owner:
            raise ValidationFailed("The owner role cannot be granted through sharing.")
        if target_user_id == snapshot.document.owner_id:
            raise ValidationFailed("The document owner's access cannot be changed.")
        existing = snapshot.share_for(target_user_id)
        if existing is not None and existing.role is DocumentRole.owner:
            raise ValidationFailed("The document owner's access cannot be changed.")
        target = await self.identities.get_by_id(target_user_id)
        if target is None or not target.is_active:
            raise NotFound("User not found or is inactive.")
        if not is_role_assignable(target.role, role):
            raise ValidationFailed(
                f"A {target.role.value} cannot be given the {role.value} role on a document.",
                details={"system_role": target.role.value, "requested_role": role.value},
            )
