"""
tests/test_document_store.py -- DocumentStore persistence.

Covers:
  - create() writes the owner share entry in the same transaction
  - upsert_share() inserts, then updates in place
  - a concurrent insert of the same (document, user) pair is applied as an
    update instead of surfacing IntegrityError
  - delete() removes share rows with the document

Fixtures used (from conftest.py):
  engine, document_store -- temp-file SQLite database
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from types import SimpleNamespace

from sqlalchemy import Update

from documents.models import Document, DocumentRole, ShareEntry
from documents.store import DocumentStore


class _RacingEngine:
    """Engine wrapper that replays the lost-update interleaving once.

    Before the first write transaction another writer commits the same
    (document, user) row, and that transaction's UPDATE is reported as
    matching nothing, so its INSERT hits the unique constraint.
    """

    def __init__(self, engine, competing_write) -> None:
        self._engine = engine
        self._competing_write = competing_write
        self.raced = False

    def connect(self):
        return self._engine.connect()

    @asynccontextmanager
    async def begin(self):
        if self.raced:
            async with self._engine.begin() as conn:
                yield conn
            return
        self.raced = True
        await self._competing_write()
        async with self._engine.begin() as conn:
            yield _UpdateMisses(conn)


class _UpdateMisses:
    def __init__(self, conn) -> None:
        self._conn = conn

    async def execute(self, statement, *args, **kwargs):
        if isinstance(statement, Update):
            return SimpleNamespace(rowcount=0)
        return await self._conn.execute(statement, *args, **kwargs)


async def test_create_writes_owner_entry(document_store):
    doc_id = await document_store.create(Document(name="SS25 Jacket", owner_id=7))

    snapshot = await document_store.snapshot(doc_id)
    assert snapshot.document.owner_id == 7
    assert [(s.user_id, s.role) for s in snapshot.shares] == [(7, DocumentRole.owner)]


async def test_upsert_share_inserts_then_updates(document_store):
    doc_id = await document_store.create(Document(name="Tee", owner_id=1))

    await document_store.upsert_share(ShareEntry(doc_id, 2, DocumentRole.viewer, shared_by=1))
    await document_store.upsert_share(ShareEntry(doc_id, 2, DocumentRole.editor, shared_by=1))

    shares = await document_store.shares_for(doc_id)
    assert len(shares) == 2
    assert (await document_store.share_for(doc_id, 2)).role is DocumentRole.editor


async def test_upsert_share_survives_concurrent_insert(engine, document_store):
    doc_id = await document_store.create(Document(name="Race", owner_id=1))

    async def competing_write():
        await document_store.upsert_share(ShareEntry(doc_id, 2, DocumentRole.viewer, shared_by=1))

    racing_engine = _RacingEngine(engine, competing_write)
    entry = await DocumentStore(racing_engine).upsert_share(ShareEntry(doc_id, 2, DocumentRole.editor, shared_by=1))

    assert racing_engine.raced
    assert entry.role is DocumentRole.editor
    assert (await document_store.share_for(doc_id, 2)).role is DocumentRole.editor
    assert len(await document_store.shares_for(doc_id)) == 2


async def test_delete_removes_shares(document_store):
    doc_id = await document_store.create(Document(name="Gone", owner_id=1))
    await document_store.upsert_share(ShareEntry(doc_id, 2, DocumentRole.viewer, shared_by=1))

    assert await document_store.delete(doc_id) is True
    assert await document_store.get(doc_id) is None
    assert await document_store.shares_for(doc_id) == []
    assert await document_store.shares_of_user(2) == []
