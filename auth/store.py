"""
auth/store.py -- SQLAlchemy Core persistence layer for identities.

Pattern: Repository + Data Mapper. IdentityStore is the repository;
_row_to_identity is the mapper. Service and route code never touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

  The two-factor code hash is only mapped into the Identity when the caller
  asks for it (include_challenge=True). Every other read gets NoChallenge in
  its place, so the hash cannot leak through a routine lookup.

Concurrency:
  Every row carries a version column. update() is a conditional write:

      UPDATE identities SET ..., version = version + 1
      WHERE id = :id AND version = :expected

  A write against a stale version matches no row and raises ConcurrentUpdate.
  mutate() wraps the read-modify-write cycle and retries it, which is what
  keeps concurrent logins/logouts from dropping or resurrecting refresh tokens
  and keeps the two-factor attempt counter honest.

Layer rule: no imports from api/, audit/, documents/, or cache/.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from auth.models import NO_CHALLENGE, Identity, PendingChallenge, SystemRole, TwoFactorState
from core.errors import ConcurrentUpdate, Conflict, NotFound

logger = logging.getLogger("techpacker.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default="designer"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("refresh_tokens", Text, nullable=False, server_default="[]"),  # JSON list of jti
    Column("two_factor_enabled", Boolean, nullable=False, server_default="0"),
    Column("two_factor_code_hash", Text),  # NULL = no pending challenge
    Column("two_factor_expires_at", String(32)),
    Column("two_factor_attempts", Integer, nullable=False, server_default="0"),
    Column("version", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

# Fields update() accepts. Keys match Identity attribute names.
_MUTABLE_FIELDS = {
    "email",
    "first_name",
    "last_name",
    "hashed_password",
    "role",
    "is_active",
    "refresh_tokens",
    "two_factor_enabled",
    "two_factor",
    "last_login",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _challenge_columns(state: TwoFactorState) -> dict:
    """Flatten the tagged two-factor variant into its three columns."""
    if isinstance(state, PendingChallenge):
        return {
            "two_factor_code_hash": state.code_hash,
            "two_factor_expires_at": state.expires_at.isoformat(),
            "two_factor_attempts": state.attempts,
        }
    return {"two_factor_code_hash": None, "two_factor_expires_at": None, "two_factor_attempts": 0}


def _to_columns(fields: dict) -> dict:
    unknown = set(fields) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown identity fields: {unknown!r}")
    values: dict = {}
    for name, value in fields.items():
        if name == "two_factor":
            values.update(_challenge_columns(value))
        elif name == "refresh_tokens":
            values["refresh_tokens"] = json.dumps(list(value))
        elif name == "role":
            values["role"] = SystemRole(value).value
        elif name == "email":
            values["email"] = value.strip().lower()
        else:
            values[name] = value
    return values


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for Identity records.

    Usage:
        store = IdentityStore(engine)
        await store.init()
        identity_id = await store.create(Identity(email="a@b.c", hashed_password=hash_password("pw")))
        identity = await store.get_by_id(identity_id)
    """

    def __init__(self, engine: AsyncEngine, max_retries: int = 5) -> None:
        self.engine = engine
        self.max_retries = max_retries

    async def init(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def has_users(self) -> bool:
        async with self.engine.connect() as conn:
            result = (await conn.execute(select(func.count()).select_from(_identities))).scalar()
        return (result or 0) > 0

    async def get_by_id(self, identity_id: int, *, include_challenge: bool = False) -> Identity | None:
        async with self.engine.connect() as conn:
            row = (await conn.execute(_identities.select().where(_identities.c.id == identity_id))).fetchone()
        return _row_to_identity(row, include_challenge) if row is not None else None

    async def get_by_email(self, email: str, *, include_challenge: bool = False) -> Identity | None:
        """Look up by email (case-insensitive: emails are stored lower-cased)."""
        async with self.engine.connect() as conn:
            row = (
                await conn.execute(_identities.select().where(_identities.c.email == email.strip().lower()))
            ).fetchone()
        return _row_to_identity(row, include_challenge) if row is not None else None

    async def list_identities(
        self,
        *,
        role: SystemRole | None = None,
        is_active: bool | None = None,
        search: str | None = None,
        exclude_ids: Iterable[int] = (),
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Identity], int]:
        """Return one page of identities (newest first) and the total match count."""
        conditions = []
        exclude_ids = [i for i in exclude_ids if i is not None]
        if exclude_ids:
            conditions.append(_identities.c.id.not_in(exclude_ids))
        if role is not None:
            conditions.append(_identities.c.role == role.value)
        if is_active is not None:
            conditions.append(_identities.c.is_active == is_active)
        if search:
            pattern = f"%{search.strip().lower()}%"
            conditions.append(
                _identities.c.email.like(pattern)
                | func.lower(_identities.c.first_name).like(pattern)
                | func.lower(_identities.c.last_name).like(pattern)
            )
        query = _identities.select().where(*conditions).order_by(_identities.c.id.desc())
        count_query = select(func.count()).select_from(_identities).where(*conditions)
        async with self.engine.connect() as conn:
            total = (await conn.execute(count_query)).scalar() or 0
            rows = (await conn.execute(query.offset((page - 1) * limit).limit(limit))).fetchall()
        return [_row_to_identity(r, False) for r in rows], total

    async def count_active_admins(self) -> int:
        """Used to prevent deactivating or deleting the last admin."""
        async with self.engine.connect() as conn:
            result = (
                await conn.execute(
                    select(func.count())
                    .select_from(_identities)
                    .where((_identities.c.role == SystemRole.admin.value) & (_identities.c.is_active.is_(True)))
                )
            ).scalar()
        return result or 0

    async def role_distribution(self) -> dict[str, int]:
        async with self.engine.connect() as conn:
            rows = (
                await conn.execute(select(_identities.c.role, func.count()).group_by(_identities.c.role))
            ).fetchall()
        return {role: count for role, count in rows}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, identity: Identity) -> int:
        """Insert a new identity and return its assigned ID.

        Raises Conflict if the email is already registered.
        """
        values = _to_columns(
            {
                "email": identity.email,
                "first_name": identity.first_name,
                "last_name": identity.last_name,
                "hashed_password": identity.hashed_password,
                "role": identity.role,
                "is_active": identity.is_active,
                "refresh_tokens": identity.refresh_tokens,
                "two_factor_enabled": identity.two_factor_enabled,
                "two_factor": identity.two_factor,
            }
        )
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(_identities.insert().values(**values, version=0, created_at=_now_iso()))
        except IntegrityError as exc:
            raise Conflict("A user with this email already exists.") from exc
        return result.inserted_primary_key[0]

    async def update(self, identity_id: int, expected_version: int, **fields) -> int:
        """Version-checked update. Returns the new version.

        Raises ConcurrentUpdate when the row's version no longer matches
        (or the row is gone), Conflict on a duplicate email.
        """
        values = _to_columns(fields)
        statement = (
            _identities.update()
            .where((_identities.c.id == identity_id) & (_identities.c.version == expected_version))
            .values(**values, version=_identities.c.version + 1)
        )
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(statement)
        except IntegrityError as exc:
            raise Conflict("Email already in use.") from exc
        if result.rowcount == 0:
            raise ConcurrentUpdate()
        return expected_version + 1

    async def mutate(
        self,
        identity_id: int,
        change: Callable[[Identity], dict],
        *,
        include_challenge: bool = False,
    ) -> Identity:
        """Run a read-modify-write cycle with optimistic retry.

        change receives the freshly loaded identity and returns the fields to
        write (an empty dict means nothing to write). It may be called more
        than once, so it must not have side effects beyond its return value.
        Exceptions raised by change propagate unchanged.

        Returns the identity as written. Raises NotFound if the identity does
        not exist, ConcurrentUpdate if every attempt lost the race.
        """
        for attempt in range(1, self.max_retries + 1):
            identity = await self.get_by_id(identity_id, include_challenge=include_challenge)
            if identity is None:
                raise NotFound("User not found.")
            fields = change(identity)
            if not fields:
                return identity
            try:
                version = await self.update(identity_id, identity.version, **fields)
            except ConcurrentUpdate:
                logger.info("Concurrent update on identity %s (attempt %d)", identity_id, attempt)
                continue
            if "role" in fields:
                fields["role"] = SystemRole(fields["role"])
            return replace(identity, **fields, version=version)
        raise ConcurrentUpdate()

    async def delete(self, identity_id: int) -> bool:
        """Permanently delete an identity. Returns True if a row was removed.

        Callers enforce the self-deletion and last-admin rules.
        """
        async with self.engine.begin() as conn:
            result = await conn.execute(_identities.delete().where(_identities.c.id == identity_id))
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row, include_challenge: bool) -> Identity:
    state: TwoFactorState = NO_CHALLENGE
    if include_challenge and row.two_factor_code_hash:
        state = PendingChallenge(
            code_hash=row.two_factor_code_hash,
            expires_at=datetime.fromisoformat(row.two_factor_expires_at),
            attempts=row.two_factor_attempts or 0,
        )
    return Identity(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        hashed_password=row.hashed_password,
        role=SystemRole(row.role),
        is_active=bool(row.is_active),
        refresh_tokens=json.loads(row.refresh_tokens or "[]"),
        two_factor_enabled=bool(row.two_factor_enabled),
        two_factor=state,
        version=row.version,
        created_at=row.created_at,
        last_login=row.last_login,
    )


