"""
auth/two_factor.py -- Two-factor challenge state machine.

States live on the identity row (see auth/models.py):

    NoChallenge --start/resend--> Pending --verify ok------> NoChallenge (verified)
                                     |----expired---------> NoChallenge (CODE_EXPIRED)
                                     |----attempts >= max-> NoChallenge (TOO_MANY_ATTEMPTS)
                                     `----mismatch--------> Pending, attempts + 1 (INVALID_CODE)

Expiry is evaluated lazily on the next resend/verify; nothing runs on a timer.

Every transition goes through IdentityStore.mutate(), so the attempt counter
is incremented by a version-checked write. Two verifies racing on the same
challenge cannot both read attempts=N and both write N+1.

Only the bcrypt hash of a code is persisted. The plaintext exists in memory
long enough to reach the dispatcher and is never logged here.

Layer rule: no imports from api/, audit/, documents/, or cache/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from auth.dispatcher import CodeDispatcher
from auth.models import NO_CHALLENGE, Identity, PendingChallenge
from auth.store import IdentityStore
from auth.tokens import hash_password, issue_two_factor_token, verify_password, verify_two_factor_token
from core.errors import CodeExpired, DependencyUnavailable, InvalidCode, NoChallenge, RateLimited, Unauthorized

logger = logging.getLogger("techpacker.auth.two_factor")

CODE_DIGITS = 6


def generate_code() -> str:
    """Return a uniformly random zero-padded 6-digit code."""
    return f"{secrets.randbelow(10**CODE_DIGITS):0{CODE_DIGITS}d}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TwoFactorEngine:
    """Issue, resend and verify two-factor codes for an identity."""

    def __init__(
        self,
        store: IdentityStore,
        dispatcher: CodeDispatcher,
        *,
        code_ttl_seconds: int = 600,
        max_attempts: int = 5,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.code_ttl_seconds = code_ttl_seconds
        self.max_attempts = max_attempts

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start(self, identity: Identity) -> str:
        """Open a fresh Pending challenge and dispatch the code.

        Returns the two-factor session token the client presents to
        resend/verify. Any earlier challenge is replaced.
        """
        await self._issue(identity)
        return issue_two_factor_token(identity)

    async def resend(self, session_token: str) -> None:
        """Restart the challenge with a new code, expiry and zeroed counter.

        Allowed while Pending and after expiry. Raises NoChallenge when no
        challenge was ever opened (or one was already verified or reset).
        """
        identity = await self._load(session_token)
        if not isinstance(identity.two_factor, PendingChallenge):
            raise NoChallenge()
        await self._issue(identity)

    async def verify(self, session_token: str, code: str) -> Identity:
        """Check a code against the Pending challenge.

        Returns the identity with its challenge cleared on success; the caller
        issues tokens. Every failure path persists its state change before
        raising.
        """
        identity = await self._load(session_token)
        now = _now()
        outcome: dict = {}

        def change(current: Identity) -> dict:
            outcome.clear()
            state = current.two_factor
            if not isinstance(state, PendingChallenge):
                outcome["error"] = NoChallenge()
                return {}
            if state.is_expired(now):
                outcome["error"] = CodeExpired()
                return {"two_factor": NO_CHALLENGE}
            if state.attempts >= self.max_attempts:
                outcome["error"] = RateLimited()
                return {"two_factor": NO_CHALLENGE}
            if not verify_password(code, state.code_hash):
                outcome["error"] = InvalidCode()
                return {"two_factor": PendingChallenge(state.code_hash, state.expires_at, state.attempts + 1)}
            return {"two_factor": NO_CHALLENGE}

        updated = await self.store.mutate(identity.id, change, include_challenge=True)
        error = outcome.get("error")
        if error is not None:
            logger.info("Two-factor verification failed for user %s: %s", identity.id, error.error_code)
            raise error
        logger.info("Two-factor verification succeeded for user %s", identity.id)
        return updated

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, session_token: str) -> Identity:
        identity_id = verify_two_factor_token(session_token)
        identity = await self.store.get_by_id(identity_id, include_challenge=True)
        if identity is None or not identity.is_active:
            raise Unauthorized("Invalid or expired token.")
        return identity

    async def _issue(self, identity: Identity) -> None:
        code = generate_code()
        challenge = PendingChallenge(
            code_hash=hash_password(code),
            expires_at=_now() + timedelta(seconds=self.code_ttl_seconds),
            attempts=0,
        )
        await self.store.mutate(identity.id, lambda _current: {"two_factor": challenge}, include_challenge=True)

        try:
            delivered = await self.dispatcher.send_code(identity.email, code, identity.full_name)
        except Exception as exc:  # noqa: BLE001 -- any dispatcher fault is a delivery failure
            logger.error("Code dispatch raised for user %s: %s", identity.id, exc)
            delivered = False

        if not delivered:
            await self._rollback(identity.id, challenge)
            raise DependencyUnavailable("Could not send the verification code. Please try again.")
        logger.info("Two-factor code dispatched for user %s", identity.id)

    async def _rollback(self, identity_id: int, challenge: PendingChallenge) -> None:
        """Clear the challenge we just wrote, unless a newer one replaced it."""

        def change(current: Identity) -> dict:
            if current.two_factor == challenge:
                return {"two_factor": NO_CHALLENGE}
            return {}

        await self.store.mutate(identity_id, change, include_challenge=True)
