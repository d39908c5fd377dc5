"""
auth/tokens.py -- JWT issuance/verification and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Three token kinds share one encoder but are
       told apart by a "type" claim and, for refresh tokens, by a separate
       signing key:
         access      {sub, role, type="access"}      signed with SECRET_KEY
         refresh     {sub, jti, type="refresh"}      signed with REFRESH_SECRET_KEY
         two-factor  {sub, type="two-factor"}        signed with SECRET_KEY
       Verification is a pure function of the token and the key: no I/O, so
       it runs on every request. Any failure raises Unauthorized.

  Access tokens are stateless. The role inside one is the role at issuance;
       a later role change shows up only after the holder refreshes.

  Refresh tokens carry a jti. Signature validity is necessary but not
       sufficient -- the jti must also be listed on the identity (checked by
       auth/service.py, which does the store round-trip).

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_identity() so response time
       does not reveal whether an email exists [C1].

Layer rule: no imports from api/, audit/, documents/, or cache/. Import from
core/ is allowed.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import AccessClaims, Identity, RefreshClaims, SystemRole
from core.config import get_settings
from core.errors import Unauthorized

if TYPE_CHECKING:
    from auth.store import IdentityStore

logger = logging.getLogger("techpacker.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"
TWO_FACTOR = "two-factor"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext secret.

    Also used for two-factor codes: a 6-digit code has little entropy, so the
    bcrypt work factor is what makes an offline guess of a leaked hash slow.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("techpacker_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _encode(claims: dict, key: str, expire_seconds: int) -> str:
    issued = _now()
    payload = {**claims, "iat": issued, "exp": issued + timedelta(seconds=expire_seconds)}
    return jwt.encode(payload, key, algorithm=_ALGORITHM)


def _decode(token: str, key: str, expected_type: str) -> dict:
    """Verify signature, expiry and type claim. Raises Unauthorized on any failure."""
    try:
        payload = jwt.decode(token, key, algorithms=[_ALGORITHM])
    except JWTError as exc:
        raise Unauthorized("Invalid or expired token.") from exc
    if payload.get("type") != expected_type or "sub" not in payload:
        raise Unauthorized("Invalid or expired token.")
    try:
        int(payload["sub"])
    except (TypeError, ValueError) as exc:
        raise Unauthorized("Invalid or expired token.") from exc
    return payload


def _expiry(payload: dict) -> datetime:
    return datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)


def issue_access_token(identity: Identity) -> str:
    """Encode a short-lived access token embedding the identity's current role."""
    return _encode(
        {"sub": str(identity.id), "role": identity.role.value, "type": ACCESS},
        _settings.secret_key,
        _settings.access_token_expire_seconds,
    )


def verify_access_token(token: str) -> AccessClaims:
    """Verify an access token without consulting the store."""
    payload = _decode(token, _settings.secret_key, ACCESS)
    try:
        role = SystemRole(payload.get("role"))
    except ValueError as exc:
        raise Unauthorized("Invalid or expired token.") from exc
    return AccessClaims(subject_id=int(payload["sub"]), role=role, expires_at=_expiry(payload))


def issue_refresh_token(identity: Identity) -> tuple[str, str]:
    """Encode a long-lived refresh token. Returns (token, jti).

    The caller must append jti to identity.refresh_tokens and persist it --
    an unlisted refresh token is rejected by the refresh flow.
    """
    token_id = uuid.uuid4().hex
    token = _encode(
        {"sub": str(identity.id), "jti": token_id, "type": REFRESH},
        _settings.refresh_secret_key,
        _settings.refresh_token_expire_seconds,
    )
    return token, token_id


def verify_refresh_token(token: str) -> RefreshClaims:
    """Verify a refresh token's signature and expiry (list membership is checked by the caller)."""
    payload = _decode(token, _settings.refresh_secret_key, REFRESH)
    token_id = payload.get("jti")
    if not token_id:
        raise Unauthorized("Invalid or expired token.")
    return RefreshClaims(subject_id=int(payload["sub"]), token_id=str(token_id), expires_at=_expiry(payload))


def issue_two_factor_token(identity: Identity) -> str:
    """Encode the ephemeral session token that binds a 2FA challenge to an identity."""
    return _encode(
        {"sub": str(identity.id), "type": TWO_FACTOR},
        _settings.secret_key,
        _settings.two_factor_token_expire_seconds,
    )


def verify_two_factor_token(token: str) -> int:
    """Return the subject id bound to a two-factor session token."""
    payload = _decode(token, _settings.secret_key, TWO_FACTOR)
    return int(payload["sub"])


# ---------------------------------------------------------------------------
# Credential check (constant-time) [C1]
# ---------------------------------------------------------------------------


async def authenticate_identity(store: IdentityStore, email: str, password: str) -> Identity | None:
    """Check an email/password pair with timing equalization.

    Always runs bcrypt whether or not the identity exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the Identity on success, None on any failure (including inactive).
    """
    identity = await store.get_by_email(email, include_challenge=True)
    if identity is None or identity.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, identity.hashed_password):
        return None
    if not identity.is_active:
        return None
    return identity
