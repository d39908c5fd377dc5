"""
documents/store.py -- SQLAlchemy Core persistence for documents and shares.

Pattern: Repository + Data Mapper. DocumentStore is the repository; the
_row_to_* functions are the mappers. Service and route code never touches SQL.

Security: all queries use bound parameters. No f-strings in SQL.

Tables:
  documents         id, name, owner_id, created_at, updated_at
  document_shares   (document_id, user_id) unique, role, shared_by, shared_at

create() writes the document and its owner share entry in one transaction,
so a document never exists without exactly one owner entry. delete() removes
the share rows with it.

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, UniqueConstraint, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from documents.models import AccessSnapshot, Document, DocumentRole, ShareEntry

logger = logging.getLogger("techpacker.documents.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_documents = Table(
    "documents",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_shares = Table(
    "document_shares",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("document_id", Integer, nullable=False, index=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("role", String(20), nullable=False),
    Column("shared_by", Integer),
    Column("shared_at", String(32), nullable=False),
    UniqueConstraint("document_id", "user_id", name="uq_document_user"),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class DocumentStore:
    """Repository for Document and ShareEntry records.

    Usage:
        store = DocumentStore(engine)
        await store.init()
        doc_id = await store.create(Document(name="SS25 Jacket", owner_id=7))
        snapshot = await store.snapshot(doc_id)
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def init(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def get(self, document_id: int) -> Document | None:
        async with self.engine.connect() as conn:
            row = (await conn.execute(_documents.select().where(_documents.c.id == document_id))).fetchone()
        return _row_to_document(row) if row is not None else None

    async def create(self, document: Document) -> int:
        """Insert a document plus its owner share entry. Returns the new ID."""
        now = _now_iso()
        async with self.engine.begin() as conn:
            result = await conn.execute(
                _documents.insert().values(
                    name=document.name,
                    owner_id=document.owner_id,
                    created_at=now,
                    updated_at=now,
                )
            )
            document_id = result.inserted_primary_key[0]
            await conn.execute(
                _shares.insert().values(
                    document_id=document_id,
                    user_id=document.owner_id,
                    role=DocumentRole.owner.value,
                    shared_by=document.owner_id,
                    shared_at=now,
                )
            )
        return document_id

    async def save(self, document: Document) -> bool:
        """Persist the mutable fields of a document (its name). Returns True if found."""
        async with self.engine.begin() as conn:
            result = await conn.execute(
                _documents.update()
                .where(_documents.c.id == document.id)
                .values(name=document.name, updated_at=_now_iso())
            )
        return result.rowcount > 0

    async def delete(self, document_id: int) -> bool:
        """Delete a document and every share entry on it."""
        async with self.engine.begin() as conn:
            await conn.execute(_shares.delete().where(_shares.c.document_id == document_id))
            result = await conn.execute(_documents.delete().where(_documents.c.id == document_id))
        return result.rowcount > 0

    async def list_for_user(self, user_id: int | None) -> list[Document]:
        """Documents the user owns or is listed on, newest first.

        user_id=None returns every document (system admin view).
        """
        query = _documents.select().order_by(_documents.c.id.desc())
        if user_id is not None:
            shared = select(_shares.c.document_id).where(_shares.c.user_id == user_id)
            query = query.where(or_(_documents.c.owner_id == user_id, _documents.c.id.in_(shared)))
        async with self.engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [_row_to_document(r) for r in rows]

    async def snapshot(self, document_id: int) -> AccessSnapshot | None:
        """Load the document with its full share table, or None if it does not exist."""
        async with self.engine.connect() as conn:
            doc_row = (await conn.execute(_documents.select().where(_documents.c.id == document_id))).fetchone()
            if doc_row is None:
                return None
            share_rows = (
                await conn.execute(
                    _shares.select().where(_shares.c.document_id == document_id).order_by(_shares.c.id)
                )
            ).fetchall()
        return AccessSnapshot(document=_row_to_document(doc_row), shares=[_row_to_share(r) for r in share_rows])

    # ------------------------------------------------------------------
    # Shares
    # ------------------------------------------------------------------

    async def shares_for(self, document_id: int) -> list[ShareEntry]:
        async with self.engine.connect() as conn:
            rows = (
                await conn.execute(
                    _shares.select().where(_shares.c.document_id == document_id).order_by(_shares.c.id)
                )
            ).fetchall()
        return [_row_to_share(r) for r in rows]

    async def share_for(self, document_id: int, user_id: int) -> ShareEntry | None:
        async with self.engine.connect() as conn:
            row = (
                await conn.execute(
                    _shares.select().where((_shares.c.document_id == document_id) & (_shares.c.user_id == user_id))
                )
            ).fetchone()
        return _row_to_share(row) if row is not None else None

    async def shares_of_user(self, user_id: int) -> list[ShareEntry]:
        """Every share entry held by a user, across documents."""
        async with self.engine.connect() as conn:
            rows = (await conn.execute(_shares.select().where(_shares.c.user_id == user_id))).fetchall()
        return [_row_to_share(r) for r in rows]

    async def upsert_share(self, entry: ShareEntry) -> ShareEntry:
        """Insert or update the (document, user) entry. Returns the entry as written.

        Two writers racing on a new pair can both miss the update; the loser's
        insert hits uq_document_user and is replayed as an update.
        """
        shared_at = _now_iso()
        values = {"role": entry.role.value, "shared_by": entry.shared_by, "shared_at": shared_at}
        match = (_shares.c.document_id == entry.document_id) & (_shares.c.user_id == entry.user_id)
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(_shares.update().where(match).values(**values))
                if result.rowcount == 0:
                    await conn.execute(
                        _shares.insert().values(document_id=entry.document_id, user_id=entry.user_id, **values)
                    )
        except IntegrityError:
            logger.info(
                "Concurrent share insert for document %s user %s; applying as update",
                entry.document_id,
                entry.user_id,
            )
            async with self.engine.begin() as conn:
                await conn.execute(_shares.update().where(match).values(**values))
        return ShareEntry(
            document_id=entry.document_id,
            user_id=entry.user_id,
            role=entry.role,
            shared_by=entry.shared_by,
            shared_at=shared_at,
        )

    async def delete_share(self, document_id: int, user_id: int) -> bool:
        async with self.engine.begin() as conn:
            result = await conn.execute(
                _shares.delete().where((_shares.c.document_id == document_id) & (_shares.c.user_id == user_id))
            )
        return result.rowcount > 0

    async def delete_shares_of_user(self, user_id: int) -> list[int]:
        """Remove every share entry a user holds. Returns the affected document IDs."""
        async with self.engine.begin() as conn:
            rows = (await conn.execute(select(_shares.c.document_id).where(_shares.c.user_id == user_id))).fetchall()
            await conn.execute(_shares.delete().where(_shares.c.user_id == user_id))
        return [r[0] for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_document(row) -> Document:
    return Document(
        id=row.id,
        name=row.name,
        owner_id=row.owner_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_share(row) -> ShareEntry:
    return ShareEntry(
        document_id=row.document_id,
        user_id=row.user_id,
        role=DocumentRole(row.role),
        shared_by=row.shared_by,
        shared_at=row.shared_at,
    )
