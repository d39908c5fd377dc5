"""
documents/service.py -- Document lifecycle behind the access engine.

Every operation authorizes first (auth/access.py), mutates second, then
invalidates the document's cache entries and queues an audit record.

Creating a tech pack is limited to designers and system admins; everything
else is decided per document by the effective role.
"""

from __future__ import annotations

import logging

from audit.models import AuditAction, AuditResource
from audit.trail import AuditTrail
from auth.access import AccessDecision, Action, DocumentAccessService
from auth.identity import IdentityResolver
from auth.models import Identity, RequestContext, SystemRole
from core.errors import Forbidden, NotFound, ValidationFailed
from documents.models import Document
from documents.store import DocumentStore

logger = logging.getLogger("techpacker.documents")

_CREATOR_ROLES = frozenset({SystemRole.designer, SystemRole.admin})


def _clean_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationFailed("Document name is required.")
    if len(name) > 255:
        raise ValidationFailed("Document name must be at most 255 characters.")
    return name


class DocumentService:
    def __init__(
        self,
        documents: DocumentStore,
        access: DocumentAccessService,
        resolver: IdentityResolver,
        audit: AuditTrail,
    ) -> None:
        self.documents = documents
        self.access = access
        self.resolver = resolver
        self.audit = audit

    async def create(self, actor: Identity, name: str, context: RequestContext | None = None) -> Document:
        if actor.role not in _CREATOR_ROLES:
            raise Forbidden("Only designers and admins can create tech packs.")
        document = Document(name=_clean_name(name), owner_id=actor.id)
        document.id = await self.documents.create(document)
        created = await self.documents.get(document.id)
        self.audit.record(
            AuditAction.CREATE_TECHPACK,
            AuditResource.techpack,
            actor=actor,
            resource_id=document.id,
            details={"name": document.name},
            context=context,
        )
        logger.info("Document %s created by user %s", document.id, actor.id)
        return created or document

    async def get(self, actor: Identity, document_id: int) -> tuple[Document, AccessDecision]:
        snapshot, decision = await self.access.check(actor, document_id, Action.view)
        return snapshot.document, decision

    async def list_visible(self, actor: Identity) -> list[Document]:
        """Documents the actor can see. System admins see everything."""
        return await self.documents.list_for_user(None if actor.role is SystemRole.admin else actor.id)

    async def rename(
        self, actor: Identity, document_id: int, name: str, context: RequestContext | None = None
    ) -> Document:
        snapshot, _ = await self.access.check(actor, document_id, Action.edit)
        document = snapshot.document
        old_name = document.name
        document.name = _clean_name(name)
        if not await self.documents.save(document):
            raise NotFound("Document not found.")
        await self.resolver.invalidate_document(document_id)
        self.audit.record(
            AuditAction.UPDATE_TECHPACK,
            AuditResource.techpack,
            actor=actor,
            resource_id=document_id,
            details={"old_name": old_name, "new_name": document.name},
            context=context,
        )
        return await self.documents.get(document_id) or document

    async def delete(self, actor: Identity, document_id: int, context: RequestContext | None = None) -> None:
        snapshot, _ = await self.access.check(actor, document_id, Action.delete)
        if not await self.documents.delete(document_id):
            raise NotFound("Document not found.")
        await self.resolver.invalidate_document(document_id)
        self.audit.record(
            AuditAction.DELETE_TECHPACK,
            AuditResource.techpack,
            actor=actor,
            resource_id=document_id,
            details={"name": snapshot.document.name},
            context=context,
        )
        logger.info("Document %s deleted by user %s", document_id, actor.id)
