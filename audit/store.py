"""
audit/store.py -- SQLAlchemy Core persistence for audit records.

Pattern: Repository + Data Mapper, like the identity and document stores.
The table is append-only: this module exposes no update or delete.

Timestamps are stored as UTC ISO 8601 strings, so range filters compare them
lexicographically.

Layer rule: no imports from api/, auth/, documents/, or cache/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.ext.asyncio import AsyncEngine

from audit.models import AuditAction, AuditPage, AuditRecord, AuditResource

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", Integer, index=True),
    Column("actor_email", String(255), nullable=False, server_default=""),
    Column("action", String(40), nullable=False, index=True),
    Column("resource", String(20), nullable=False),
    Column("resource_id", String(64)),
    Column("details", Text, nullable=False, server_default="{}"),  # JSON object
    Column("ip_address", String(45)),
    Column("user_agent", String(512)),
    Column("timestamp", String(32), nullable=False, index=True),
)


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class AuditStore:
    """Repository for AuditRecord rows.

    Usage:
        store = AuditStore(engine)
        await store.init()
        await store.append(AuditRecord(action=AuditAction.LOGIN, resource=AuditResource.auth, actor_id=1))
        page = await store.query(actor_id=1, page=1, limit=20)
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def init(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def append(self, record: AuditRecord) -> int:
        """Insert one record and return its ID."""
        async with self.engine.begin() as conn:
            result = await conn.execute(
                _audit_logs.insert().values(
                    actor_id=record.actor_id,
                    actor_email=record.actor_email,
                    action=record.action.value,
                    resource=record.resource.value,
                    resource_id=record.resource_id,
                    details=json.dumps(record.details, default=str),
                    ip_address=record.ip_address,
                    user_agent=(record.user_agent or "")[:512] or None,
                    timestamp=record.timestamp or datetime.now(timezone.utc).isoformat(),
                )
            )
        return result.inserted_primary_key[0]

    async def query(
        self,
        *,
        actor_id: int | None = None,
        action: AuditAction | None = None,
        resource: AuditResource | None = None,
        resource_id: str | int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> AuditPage:
        """Return one page of records, newest first, with the total match count."""
        conditions = []
        if actor_id is not None:
            conditions.append(_audit_logs.c.actor_id == actor_id)
        if action is not None:
            conditions.append(_audit_logs.c.action == AuditAction(action).value)
        if resource is not None:
            conditions.append(_audit_logs.c.resource == AuditResource(resource).value)
        if resource_id is not None:
            conditions.append(_audit_logs.c.resource_id == str(resource_id))
        if start is not None:
            conditions.append(_audit_logs.c.timestamp >= _iso(start))
        if end is not None:
            conditions.append(_audit_logs.c.timestamp <= _iso(end))

        page = max(1, page)
        limit = max(1, limit)
        query = (
            _audit_logs.select()
            .where(*conditions)
            .order_by(_audit_logs.c.timestamp.desc(), _audit_logs.c.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            total = (await conn.execute(select(func.count()).select_from(_audit_logs).where(*conditions))).scalar() or 0
            rows = (await conn.execute(query)).fetchall()
        return AuditPage(records=[_row_to_record(r) for r in rows], page=page, limit=limit, total=total)


def _row_to_record(row) -> AuditRecord:
    return AuditRecord(
        id=row.id,
        actor_id=row.actor_id,
        actor_email=row.actor_email,
        action=AuditAction(row.action),
        resource=AuditResource(row.resource),
        resource_id=row.resource_id,
        details=json.loads(row.details or "{}"),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        timestamp=row.timestamp,
    )
