"""
documents/models.py -- Domain dataclasses for tech pack documents and shares.

These are pure data containers. Authorization rules that interpret them live
in auth/access.py; persistence lives in documents/store.py.

owner_id on the Document is authoritative. The share table also carries one
"owner" entry for the creator, but ownership checks never depend on it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class DocumentRole(str, Enum):
    """Per-document share role."""

    owner = "owner"
    admin = "admin"
    editor = "editor"
    viewer = "viewer"
    factory = "factory"


@dataclass
class Document:
    """A tech pack as seen by the access core: identity, name and owner.

    id is None before the record is written to the database.
    """

    name: str
    owner_id: int
    id: Optional[int] = None
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""


@dataclass
class ShareEntry:
    """One user's role on one document."""

    document_id: int
    user_id: int
    role: DocumentRole
    shared_by: Optional[int] = None
    shared_at: str = ""

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "user_id": self.user_id,
            "role": self.role.value,
            "shared_by": self.shared_by,
            "shared_at": self.shared_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ShareEntry":
        return cls(
            document_id=data["document_id"],
            user_id=data["user_id"],
            role=DocumentRole(data["role"]),
            shared_by=data.get("shared_by"),
            shared_at=data.get("shared_at", ""),
        )


@dataclass
class AccessSnapshot:
    """Everything authorization needs to know about a document.

    This is the shape cached under document:{id}:access.
    """

    document: Document
    shares: list[ShareEntry] = field(default_factory=list)

    def share_for(self, user_id: int) -> Optional[ShareEntry]:
        for entry in self.shares:
            if entry.user_id == user_id:
                return entry
        return None

    def to_dict(self) -> dict:
        return {
            "document": {
                "id": self.document.id,
                "name": self.document.name,
                "owner_id": self.document.owner_id,
                "created_at": self.document.created_at,
                "updated_at": self.document.updated_at,
            },
            "shares": [entry.to_dict() for entry in self.shares],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AccessSnapshot":
        doc = data["document"]
        return cls(
            document=Document(
                id=doc["id"],
                name=doc["name"],
                owner_id=doc["owner_id"],
                created_at=doc.get("created_at", ""),
                updated_at=doc.get("updated_at", ""),
            ),
            shares=[ShareEntry.from_dict(entry) for entry in data.get("shares", [])],
        )
