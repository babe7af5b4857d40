"""Per-owner OAuth token storage.

Expiry is checked lazily at read time against ``expires_at`` minus a
refresh buffer. Eviction timers are an optional extra: the store holds
no client credentials, so a timer can only drop the record and force the
next caller through a refresh or a new authorization.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable

import msgspec

from ..logging_config import get_logger
from ..models import TokenRecord
from .backends import TokenBackend

logger = get_logger("tokens.store")

DEFAULT_REFRESH_BUFFER = 300.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenStore:
    """Holds the current TokenRecord for each owner.

    Records are only ever replaced, never mutated. When a backend is
    configured every put/clear is written through before returning.

    Example:
        >>> store = TokenStore(FileTokenBackend("~/.config/salesforce-auth/tokens.json"))
        >>> await store.load()
        >>> await store.put("jane@example.com", record)
        >>> await store.get("jane@example.com")
    """

    def __init__(
        self,
        backend: TokenBackend | None = None,
        *,
        refresh_buffer: float = DEFAULT_REFRESH_BUFFER,
        eager_eviction: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backend = backend
        self.refresh_buffer = timedelta(seconds=refresh_buffer)
        self._eager_eviction = eager_eviction
        self._clock = clock
        self._records: dict[str, TokenRecord] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._eviction_tasks: set[asyncio.Task[None]] = set()

    @property
    def persistent(self) -> bool:
        return self._backend is not None

    async def load(self) -> int:
        """Rehydrate records from the backend; returns how many were loaded."""
        if self._backend is None:
            return 0
        try:
            records = await self._backend.load()
        except (OSError, ValueError, msgspec.DecodeError) as e:
            logger.error("Failed to load stored tokens, starting empty: %s", e)
            return 0

        self._records = dict(records)
        for owner_id, record in self._records.items():
            self._schedule_eviction(owner_id, record)
        return len(self._records)

    def is_expired(self, record: TokenRecord) -> bool:
        """True once ``now >= expires_at - refresh_buffer``.

        A record without ``expires_at`` never expires locally; the remote
        API is left to reject it.
        """
        if record.expires_at is None:
            return False
        expires_at = record.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return self._clock() >= expires_at - self.refresh_buffer

    async def put(self, owner_id: str, record: TokenRecord) -> TokenRecord:
        """Store ``record`` as the current record for ``owner_id``."""
        if record.owner_id != owner_id:
            record = msgspec.structs.replace(record, owner_id=owner_id)

        # Memory only changes once the backend has accepted the record
        if self._backend is not None:
            await self._backend.write(owner_id, record)

        self._records[owner_id] = record
        self._schedule_eviction(owner_id, record)

        logger.info(
            "Token stored: owner=%s, expires_at=%s, refreshable=%s",
            owner_id,
            record.expires_at.isoformat() if record.expires_at else "(none)",
            record.can_refresh,
        )
        return record

    async def get(self, owner_id: str) -> TokenRecord | None:
        """Current record for ``owner_id``, or None if absent or expired."""
        record = self._records.get(owner_id)
        if record is None:
            return None
        if self.is_expired(record):
            logger.info("Token expired for owner: %s", owner_id)
            return None
        return record

    def peek(self, owner_id: str) -> TokenRecord | None:
        """Raw record regardless of expiry, so its refresh token stays reachable."""
        return self._records.get(owner_id)

    async def clear(self, owner_id: str) -> bool:
        """Remove the record for ``owner_id``; returns True if one existed."""
        self._cancel_timer(owner_id)
        existed = self._records.pop(owner_id, None) is not None

        if self._backend is not None:
            await self._backend.delete(owner_id)

        if existed:
            logger.info("Token cleared for owner: %s", owner_id)
        return existed

    async def clear_expired(self) -> list[str]:
        expired = [o for o, r in list(self._records.items()) if self.is_expired(r)]
        for owner_id in expired:
            await self.clear(owner_id)
        if expired:
            logger.info("Cleared %d expired tokens", len(expired))
        return expired

    async def clear_all(self) -> None:
        for owner_id in list(self._records):
            await self.clear(owner_id)

    def list_owners(self) -> set[str]:
        return set(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def close(self) -> None:
        """Cancel eviction timers; records are left in place."""
        for owner_id in list(self._timers):
            self._cancel_timer(owner_id)
        for task in list(self._eviction_tasks):
            task.cancel()

    def _cancel_timer(self, owner_id: str) -> None:
        timer = self._timers.pop(owner_id, None)
        if timer is not None:
            timer.cancel()

    def _schedule_eviction(self, owner_id: str, record: TokenRecord) -> None:
        self._cancel_timer(owner_id)
        if not self._eager_eviction or record.expires_at is None:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        expires_at = record.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        delay = (expires_at - self.refresh_buffer - self._clock()).total_seconds()
        if delay <= 0:
            return

        self._timers[owner_id] = loop.call_later(
            delay, self._fire_eviction, owner_id, record
        )
        logger.debug("Eviction scheduled for owner %s in %ds", owner_id, round(delay))

    def _fire_eviction(self, owner_id: str, record: TokenRecord) -> None:
        self._timers.pop(owner_id, None)
        task = asyncio.ensure_future(self._evict(owner_id, record))
        self._eviction_tasks.add(task)
        task.add_done_callback(self._eviction_tasks.discard)

    async def _evict(self, owner_id: str, record: TokenRecord) -> None:
        # A refresh may have replaced the record since the timer was armed
        if self._records.get(owner_id) is not record:
            return
        logger.info("Scheduled eviction triggered for owner: %s", owner_id)
        await self.clear(owner_id)
