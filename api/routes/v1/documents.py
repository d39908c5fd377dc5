"""
api/routes/v1/documents.py -- Tech pack documents and sharing.

Routes (all require auth; per-document checks run in the services):
  GET    /api/v1/documents                          -- documents visible to the caller
  POST   /api/v1/documents                          -- create (designer, admin)
  GET    /api/v1/documents/{id}                     -- view
  PATCH  /api/v1/documents/{id}                     -- rename (edit)
  DELETE /api/v1/documents/{id}                     -- delete (owner)
  GET    /api/v1/documents/{id}/access              -- share table (share)
  GET    /api/v1/documents/{id}/shareable-users     -- share candidates (share)
  GET    /api/v1/documents/{id}/audit-logs          -- document audit history (share)
  PUT    /api/v1/documents/{id}/share               -- grant or change a role (share)
  PATCH  /api/v1/documents/{id}/share/{user_id}     -- change an existing role (share)
  DELETE /api/v1/documents/{id}/share/{user_id}     -- revoke (share)

Every document response carries the caller's effective role and allowed
actions so a client can render controls without a second request.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.models import DocumentCreate, DocumentPatch, ShareRequest, ShareRoleUpdate, envelope, pagination
from auth.access import AccessDecision, allowed_actions
from auth.dependencies import get_current_identity, request_context
from auth.models import Identity
from documents.models import Document, DocumentRole
from documents.service import DocumentService
from documents.sharing import ShareService

# Auth policy: every route depends on get_current_identity.
router = APIRouter(prefix="/documents")


def _documents(request: Request) -> DocumentService:
    return request.app.state.document_service


def _sharing(request: Request) -> ShareService:
    return request.app.state.share_service


def _document_payload(document: Document, decision: AccessDecision | None = None) -> dict:
    payload = {
        "id": document.id,
        "name": document.name,
        "owner_id": document.owner_id,
        "created_at": document.created_at,
        "updated_at": document.updated_at,
    }
    if decision is not None:
        payload["effective_role"] = decision.effective_role.value
        payload["actions"] = sorted(a.value for a in decision.actions)
    return payload


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@router.get("")
async def list_documents(request: Request, identity: Identity = Depends(get_current_identity)) -> JSONResponse:
    documents = await _documents(request).list_visible(identity)
    return envelope({"documents": [_document_payload(d) for d in documents]}, "Documents retrieved successfully.")


@router.post("", status_code=201)
async def create_document(
    request: Request, body: DocumentCreate, identity: Identity = Depends(get_current_identity)
) -> JSONResponse:
    document = await _documents(request).create(identity, body.name, request_context(request))
    owner = AccessDecision(DocumentRole.owner, allowed_actions(DocumentRole.owner), "owner")
    return envelope({"document": _document_payload(document, owner)}, "Document created successfully.", status_code=201)


@router.get("/{document_id}")
async def get_document(
    request: Request, document_id: int, identity: Identity = Depends(get_current_identity)
) -> JSONResponse:
    document, decision = await _documents(request).get(identity, document_id)
    return envelope({"document": _document_payload(document, decision)}, "Document retrieved successfully.")


@router.patch("/{document_id}")
async def rename_document(
    request: Request, document_id: int, body: DocumentPatch, identity: Identity = Depends(get_current_identity)
) -> JSONResponse:
    document = await _documents(request).rename(identity, document_id, body.name, request_context(request))
    return envelope({"document": _document_payload(document)}, "Document updated successfully.")


@router.delete("/{document_id}")
async def delete_document(
    request: Request, document_id: int, identity: Identity = Depends(get_current_identity)
) -> JSONResponse:
    await _documents(request).delete(identity, document_id, request_context(request))
    return envelope(message="Document deleted successfully.")


# ---------------------------------------------------------------------------
# Sharing
# ---------------------------------------------------------------------------


@router.get("/{document_id}/access")
async def list_access(
    request: Request, document_id: int, identity: Identity = Depends(get_current_identity)
) -> JSONResponse:
    entries = await _sharing(request).list_access(identity, document_id)
    return envelope({"access": [e.to_dict() for e in entries]}, "Access list retrieved successfully.")


@router.get("/{document_id}/shareable-users")
async def shareable_users(
    request: Request,
    document_id: int,
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
) -> JSONResponse:
    candidates, total = await _sharing(request).shareable_users(
        identity, document_id, search=search, page=page, limit=limit
    )
    return envelope(
        {"users": [c.to_dict() for c in candidates], "pagination": pagination(page, limit, total)},
        "Shareable users retrieved successfully.",
    )


@router.get("/{document_id}/audit-logs")
async def document_audit_logs(
    request: Request,
    document_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
) -> JSONResponse:
    result = await _sharing(request).history(identity, document_id, page=page, limit=limit)
    return envelope(
        {
            "logs": [record.to_dict() for record in result.records],
            "pagination": pagination(result.page, result.limit, result.total),
        },
        "Audit logs retrieved successfully.",
    )


@router.put("/{document_id}/share")
async def share_document(
    request: Request, document_id: int, body: ShareRequest, identity: Identity = Depends(get_current_identity)
) -> JSONResponse:
    entry = await _sharing(request).share(identity, document_id, body.user_id, body.role, request_context(request))
    return envelope({"share": entry.to_dict()}, "Document shared successfully.")


@router.patch("/{document_id}/share/{user_id}")
async def update_share(
    request: Request,
    document_id: int,
    user_id: int,
    body: ShareRoleUpdate,
    identity: Identity = Depends(get_current_identity),
) -> JSONResponse:
    entry = await _sharing(request).update_role(identity, document_id, user_id, body.role, request_context(request))
    return envelope({"share": entry.to_dict()}, "Share role updated successfully.")


@router.delete("/{document_id}/share/{user_id}")
async def revoke_share(
    request: Request, document_id: int, user_id: int, identity: Identity = Depends(get_current_identity)
) -> JSONResponse:
    await _sharing(request).revoke(identity, document_id, user_id, request_context(request))
    return envelope(message="Access revoked successfully.")
