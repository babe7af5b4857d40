"""In-memory tracking of in-flight authorization attempts.

Maps anti-forgery ``state`` values to the owner that started the flow.
A state is single use: ``consume`` pops it, so a second callback with
the same value is always NotFound. Entries older than the timeout are
swept on every ``issue`` and by ``sweep_expired``.
"""

from __future__ import annotations

import secrets
import time
from typing import Callable

from ..logging_config import get_logger
from ..models import PendingAuthorization

logger = get_logger("oauth.state")

DEFAULT_STATE_TIMEOUT = 600.0

# 32 bytes -> 256 bits, rendered as 64 hex characters
STATE_BYTES = 32


class FlowStateTracker:
    """Pending authorization registry keyed by state."""

    def __init__(
        self,
        timeout: float = DEFAULT_STATE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout = timeout
        self._clock = clock
        self._pending: dict[str, PendingAuthorization] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def issue(
        self,
        owner_hint: str,
        *,
        code_verifier: str | None = None,
        redirect_uri: str | None = None,
    ) -> str:
        """Record a new pending authorization and return its state.

        ``redirect_uri`` is kept when the URL used a non-default redirect,
        since the code exchange must repeat it exactly.
        """
        self.sweep_expired()

        state = secrets.token_hex(STATE_BYTES)
        while state in self._pending:
            state = secrets.token_hex(STATE_BYTES)

        self._pending[state] = PendingAuthorization(
            state=state,
            owner_id=owner_hint,
            created_at=self._clock(),
            code_verifier=code_verifier,
            redirect_uri=redirect_uri,
        )
        logger.debug("Issued state for owner hint %s (%d pending)", owner_hint, len(self))
        return state

    def consume(self, state: str) -> PendingAuthorization | None:
        """Remove and return the entry for ``state``, or None if unknown.

        The entry is deleted even when it has already expired; callers use
        ``is_expired`` on the result to tell a stale attempt apart.
        """
        return self._pending.pop(state, None)

    def is_expired(self, pending: PendingAuthorization) -> bool:
        return self._clock() - pending.created_at > self.timeout

    def sweep_expired(self) -> int:
        """Drop entries older than the timeout; returns how many were removed."""
        expired = [s for s, p in self._pending.items() if self.is_expired(p)]
        for state in expired:
            del self._pending[state]
        if expired:
            logger.debug("Swept %d expired authorization states", len(expired))
        return len(expired)

    def clear(self) -> None:
        self._pending.clear()
