"""Session state: per-session turn serialization and cancellation.

Design decisions:
- One asyncio.Lock per session: turn N+1 waits until turn N is delivered.
  The lock is dropped once no turn holds or waits for it
- The running turn's CancellationToken is registered while it holds the
  lock, so cancel() always reaches the turn that is actually running
- Cancellation is cooperative; the orchestrator checks the token between
  tool calls and before each streamed chunk
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from discovery.models.errors import TurnCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Set once; observed by the running turn. ``owner`` is the caller that started it."""

    def __init__(self, owner: str | None = None) -> None:
        self.owner = owner
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelledError("Turn cancelled")


class _Slot:
    """A session's lock plus the number of turns holding or waiting for it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class SessionRegistry:
    """Locks and active cancellation tokens, keyed by session id.

    A session's slot exists only while some turn holds or waits for its lock.
    """

    def __init__(self) -> None:
        self._slots: dict[str, _Slot] = {}
        self._active: dict[str, CancellationToken] = {}

    @asynccontextmanager
    async def turn(self, session_id: str, owner: str | None = None) -> AsyncIterator[CancellationToken]:
        """Hold the session's lock for the duration of one turn."""
        slot = self._slots.setdefault(session_id, _Slot())
        slot.users += 1
        try:
            if slot.lock.locked():
                logger.info("Session %s busy; queued turn waits", session_id)
            async with slot.lock:
                token = CancellationToken(owner)
                self._active[session_id] = token
                try:
                    yield token
                finally:
                    if self._active.get(session_id) is token:
                        del self._active[session_id]
        finally:
            slot.users -= 1
            if not slot.users and self._slots.get(session_id) is slot:
                del self._slots[session_id]

    def active_token(self, session_id: str) -> CancellationToken | None:
        return self._active.get(session_id)

    def cancel(self, session_id: str) -> bool:
        """Cancel the session's running turn. False if nothing is running."""
        token = self._active.get(session_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Cancellation requested for session %s", session_id)
        return True

    def is_active(self, session_id: str) -> bool:
        return session_id in self._active

    def __len__(self) -> int:
        return len(self._slots)
