"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these types own the domain shape.

Two-factor state is a tagged variant rather than loose optional fields:
an identity either has NoChallenge or a PendingChallenge carrying the code
hash, its expiry and the failed-attempt counter. A counter without a hash
cannot be expressed.

Layer rule: no imports from api/, audit/, documents/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Union


class SystemRole(str, Enum):
    """System-wide role. Declaration order is privilege order (lowest first)."""

    viewer = "viewer"
    merchandiser = "merchandiser"
    designer = "designer"
    admin = "admin"

    @property
    def rank(self) -> int:
        return _ROLE_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SystemRole):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, SystemRole):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, SystemRole):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, SystemRole):
            return NotImplemented
        return self.rank >= other.rank


_ROLE_ORDER = list(SystemRole)

TOP_SYSTEM_ROLE = SystemRole.admin


@dataclass(frozen=True)
class NoChallenge:
    """No two-factor code outstanding."""


@dataclass(frozen=True)
class PendingChallenge:
    """An issued, unverified two-factor code.

    code_hash is the bcrypt hash of the plaintext code; the plaintext only
    ever exists in memory long enough to be dispatched.
    """

    code_hash: str
    expires_at: datetime
    attempts: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


TwoFactorState = Union[NoChallenge, PendingChallenge]

NO_CHALLENGE = NoChallenge()


@dataclass
class Identity:
    """An account that can authenticate against TechPacker.

    email is unique and stored lower-cased. hashed_password, refresh_tokens and
    the two_factor code hash are sensitive: they are never placed in a response
    body or in the cache projection (see public_projection()).

    refresh_tokens holds refresh token identifiers (jti claims), not the
    encoded tokens themselves.

    version is the optimistic-concurrency counter; the store increments it on
    every write and rejects writes made against a stale version.
    """

    email: str
    role: SystemRole = SystemRole.designer
    first_name: str = ""
    last_name: str = ""
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    refresh_tokens: list[str] = field(default_factory=list)
    two_factor_enabled: bool = False
    two_factor: TwoFactorState = NO_CHALLENGE
    version: int = 0
    created_at: str | None = None
    last_login: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def public_projection(self) -> dict:
        """Serializable view with every sensitive field removed.

        This is the only shape that leaves the store layer: it is what the
        identity cache holds and what user-facing responses are built from.
        """
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role.value,
            "is_active": self.is_active,
            "two_factor_enabled": self.two_factor_enabled,
            "created_at": self.created_at,
            "last_login": self.last_login,
        }

    @classmethod
    def from_projection(cls, data: dict) -> "Identity":
        """Rebuild a (secret-free) Identity from public_projection() output."""
        return cls(
            id=data["id"],
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            role=SystemRole(data["role"]),
            is_active=bool(data["is_active"]),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            created_at=data.get("created_at"),
            last_login=data.get("last_login"),
        )

    def with_challenge(self, state: TwoFactorState) -> "Identity":
        return replace(self, two_factor=state)


@dataclass(frozen=True)
class AccessClaims:
    """Verified claims of an access token. Role is as of issuance time."""

    subject_id: int
    role: SystemRole
    expires_at: datetime


@dataclass(frozen=True)
class RefreshClaims:
    subject_id: int
    token_id: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int


@dataclass(frozen=True)
class RequestContext:
    """Caller metadata attached to audit records."""

    ip_address: str | None = None
    user_agent: str | None = None
