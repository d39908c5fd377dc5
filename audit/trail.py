"""
audit/trail.py -- Fire-and-forget audit writer.

record() never blocks the request and never raises into it. Records go onto
a bounded asyncio.Queue; one writer task, started in the application
lifespan, drains the queue into AuditStore.

Backpressure is explicit: when the queue is full the record is dropped and a
warning is logged. Write failures are logged and swallowed. Losing an audit
record is preferable to failing the action that produced it.

Lifecycle:
    trail = AuditTrail(AuditStore(engine), maxsize=settings.audit_queue_size)
    trail.start()               # lifespan startup
    trail.record(...)           # from any handler
    await trail.flush()         # wait until everything queued so far is written
    await trail.stop()          # lifespan shutdown: flush, then cancel the writer
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from audit.models import AuditAction, AuditPage, AuditRecord, AuditResource
from audit.store import AuditStore

logger = logging.getLogger("techpacker.audit")


class AuditTrail:
    def __init__(self, store: AuditStore, maxsize: int = 1000) -> None:
        self.store = store
        self.queue: asyncio.Queue[AuditRecord] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain(), name="audit-writer")

    async def flush(self) -> None:
        """Wait until every record queued so far has been written (or failed).

        Without a running writer the queue is drained inline.
        """
        if self._task is None or self._task.done():
            while not self.queue.empty():
                record = self.queue.get_nowait()
                try:
                    await self._write(record)
                finally:
                    self.queue.task_done()
            return
        await self.queue.join()

    async def stop(self) -> None:
        await self.flush()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self.dropped:
            logger.warning("Audit trail dropped %d record(s) during this run", self.dropped)

    async def _drain(self) -> None:
        """Writer loop. CancelledError from stop() unwinds it at queue.get()."""
        while True:
            record = await self.queue.get()
            try:
                await self._write(record)
            finally:
                self.queue.task_done()

    async def _write(self, record: AuditRecord) -> None:
        try:
            await self.store.append(record)
        except Exception:  # noqa: BLE001 -- audit failures never reach the caller
            logger.exception("Failed to write audit record %s", record.action.value)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(
        self,
        action: AuditAction,
        resource: AuditResource,
        *,
        actor: Any = None,
        resource_id: Any = None,
        details: Optional[dict] = None,
        context: Any = None,
    ) -> bool:
        """Queue one audit record. Returns False if it was dropped.

        actor is anything with id and email attributes (an Identity), or None.
        context is anything with ip_address and user_agent attributes.
        """
        entry = AuditRecord(
            action=action,
            resource=resource,
            actor_id=getattr(actor, "id", None),
            actor_email=getattr(actor, "email", "") or "",
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details or {},
            ip_address=getattr(context, "ip_address", None),
            user_agent=getattr(context, "user_agent", None),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        try:
            self.queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Audit queue full; dropped %s record for %s", action.value, entry.actor_email or "anonymous")
            return False
        return True

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

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
        return await self.store.query(
            actor_id=actor_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            start=start,
            end=end,
            page=page,
            limit=limit,
        )
