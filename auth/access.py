"""
auth/access.py -- Role & access resolution for documents.

Two roles meet here:

    SystemRole    viewer < merchandiser < designer < admin   (on the identity)
    DocumentRole  owner > admin > editor > viewer = factory   (on the share entry)

The system role caps what a share role can do. EFFECTIVE_ROLE spells out
every (system role, share role) pair explicitly instead of deriving it from
level arithmetic, and no cell ever grants more than the share role itself:

                 owner   admin   editor  viewer  factory
    viewer       viewer  viewer  viewer  viewer  factory
    merchandiser editor  editor  editor  viewer  factory
    designer     owner   admin   editor  viewer  factory
    admin        owner   admin   editor  viewer  factory

authorize() resolves in a fixed order:

    1. system admin         -> granted, effective owner
    2. document owner_id    -> effective owner (the share table is not consulted)
    3. no share entry       -> Forbidden
    4. effective role       =  EFFECTIVE_ROLE[system][share]
    5. every requested action must allow the effective role, else Forbidden
       naming the actions that failed

authorize() is pure: callers load the document and share entry first.
DocumentAccessService is the I/O side: it fetches the document's access
snapshot through the cache (document:{id}:access) and falls back to the store.

Layer rule: reads documents/models.py and documents/store.py for the shape it
authorizes against; no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from auth.models import Identity, SystemRole
from cache.store import Cache, CacheKeys, CacheTTL
from core.errors import Forbidden, NotFound
from documents.models import AccessSnapshot, Document, DocumentRole, ShareEntry
from documents.store import DocumentStore

logger = logging.getLogger("techpacker.auth.access")


class Action(str, Enum):
    view = "view"
    edit = "edit"
    share = "share"
    delete = "delete"


ACTION_ROLES: dict[Action, frozenset[DocumentRole]] = {
    Action.view: frozenset(
        {DocumentRole.owner, DocumentRole.admin, DocumentRole.editor, DocumentRole.viewer, DocumentRole.factory}
    ),
    Action.edit: frozenset({DocumentRole.owner, DocumentRole.admin, DocumentRole.editor}),
    Action.share: frozenset({DocumentRole.owner, DocumentRole.admin}),
    Action.delete: frozenset({DocumentRole.owner}),
}

_O, _A, _E, _V, _F = (
    DocumentRole.owner,
    DocumentRole.admin,
    DocumentRole.editor,
    DocumentRole.viewer,
    DocumentRole.factory,
)

EFFECTIVE_ROLE: dict[SystemRole, dict[DocumentRole, DocumentRole]] = {
    SystemRole.viewer: {_O: _V, _A: _V, _E: _V, _V: _V, _F: _F},
    SystemRole.merchandiser: {_O: _E, _A: _E, _E: _E, _V: _V, _F: _F},
    SystemRole.designer: {_O: _O, _A: _A, _E: _E, _V: _V, _F: _F},
    SystemRole.admin: {_O: _O, _A: _A, _E: _E, _V: _V, _F: _F},
}

# Highest share role a system role may be granted through sharing.
ROLE_CAP: dict[SystemRole, DocumentRole] = {
    SystemRole.viewer: DocumentRole.viewer,
    SystemRole.merchandiser: DocumentRole.editor,
    SystemRole.designer: DocumentRole.owner,
    SystemRole.admin: DocumentRole.owner,
}

_ROLE_LEVEL: dict[DocumentRole, int] = {_O: 5, _A: 4, _E: 3, _V: 2, _F: 2}


def effective_role(system_role: SystemRole, share_role: DocumentRole) -> DocumentRole:
    return EFFECTIVE_ROLE[system_role][share_role]


def is_role_assignable(system_role: SystemRole, share_role: DocumentRole) -> bool:
    """Whether share_role may be granted to a user holding system_role.

    owner is never assignable (it belongs to the creator). Designers cannot
    be assigned factory even though factory ranks with viewer.
    """
    if share_role is DocumentRole.owner:
        return False
    if system_role is SystemRole.designer and share_role is DocumentRole.factory:
        return False
    return _ROLE_LEVEL[share_role] <= _ROLE_LEVEL[ROLE_CAP[system_role]]


def allowed_actions(role: DocumentRole) -> frozenset[Action]:
    return frozenset(action for action, roles in ACTION_ROLES.items() if role in roles)


@dataclass(frozen=True)
class AccessDecision:
    """Result of a successful authorization.

    via is "system_admin", "owner" or "share": which rule granted access.
    """

    effective_role: DocumentRole
    actions: frozenset[Action]
    via: str

    def allows(self, action: Action) -> bool:
        return action in self.actions


def authorize(
    identity: Identity,
    document: Document,
    share_entry: Optional[ShareEntry],
    actions: Iterable[Action],
) -> AccessDecision:
    """Decide whether identity may perform every one of actions on document.

    Raises Forbidden when access is denied. Never does I/O.
    """
    requested = [Action(a) for a in actions]

    if identity.role is SystemRole.admin:
        return AccessDecision(DocumentRole.owner, allowed_actions(DocumentRole.owner), "system_admin")
    if identity.id is not None and identity.id == document.owner_id:
        return AccessDecision(DocumentRole.owner, allowed_actions(DocumentRole.owner), "owner")
    if share_entry is None or share_entry.user_id != identity.id:
        raise Forbidden("You do not have access to this document.")

    role = effective_role(identity.role, share_entry.role)
    missing = [a.value for a in requested if role not in ACTION_ROLES[a]]
    if missing:
        raise Forbidden(
            f"Your role on this document does not allow: {', '.join(missing)}.",
            details={"missing_actions": missing, "effective_role": role.value},
        )
    return AccessDecision(role, allowed_actions(role), "share")


# ---------------------------------------------------------------------------
# I/O side
# ---------------------------------------------------------------------------


class DocumentAccessService:
    """Load a document's access snapshot (cache first) and authorize against it."""

    def __init__(self, documents: DocumentStore, cache: Optional[Cache], ttl_seconds: int = CacheTTL.SHORT) -> None:
        self.documents = documents
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def snapshot(self, document_id: int) -> AccessSnapshot:
        """Return the document and its share table. Raises NotFound."""
        cached = await self._cached(document_id)
        if cached is not None:
            return cached
        snapshot = await self.documents.snapshot(document_id)
        if snapshot is None:
            raise NotFound("Document not found.")
        await self._remember(document_id, snapshot)
        return snapshot

    async def check(self, identity: Identity, document_id: int, *actions: Action) -> tuple[AccessSnapshot, AccessDecision]:
        """Load and authorize in one step. Raises NotFound or Forbidden."""
        snapshot = await self.snapshot(document_id)
        share = snapshot.share_for(identity.id) if identity.id is not None else None
        decision = authorize(identity, snapshot.document, share, actions or (Action.view,))
        return snapshot, decision

    async def _cached(self, document_id: int) -> AccessSnapshot | None:
        if self.cache is None:
            return None
        try:
            data = await self.cache.get(CacheKeys.document_access(document_id))
            return AccessSnapshot.from_dict(data) if data else None
        except Exception as exc:  # noqa: BLE001 -- any cache fault is a miss
            logger.warning("Cache read failed for document %s; falling back to store: %s", document_id, exc)
            return None

    async def _remember(self, document_id: int, snapshot: AccessSnapshot) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(CacheKeys.document_access(document_id), snapshot.to_dict(), self.ttl_seconds)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Cache write failed for document %s: %s", document_id, exc)
