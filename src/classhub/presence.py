"""Presence tracking derived from live connection counts.

A user is online while at least one of their connections is open. Counts are
kept in memory and are authoritative; the profile's stored ``is_online`` and
``last_seen`` follow them on every 0->1 and 1->0 transition. All work for one
user happens under that user's shard lock, so concurrent connects and
disconnects from several tabs cannot lose updates. Unrelated users hash to
different shards and proceed in parallel.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from prometheus_client import Counter, Gauge

from . import identity, services
from .channel import Broadcaster, Subscription
from .config import settings
from .errors import DependencyFailure, Unauthorized

logger = logging.getLogger(__name__)

ONLINE_USERS = Gauge("presence_online_users", "Users with at least one live connection")
LIVE_CONNECTIONS = Gauge("presence_live_connections", "Open hub connections")
PRESENCE_WRITE_FAILURES = Counter(
    "presence_write_failures_total", "Presence transitions that failed to persist"
)

DEFAULT_SHARDS = 64


@dataclass(frozen=True)
class SessionHandle:
    """Token for one live connection of a user."""

    user_id: str
    handle_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    opened_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class PresenceChanged:
    user_id: str
    is_online: bool
    last_seen: datetime

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "is_online": self.is_online,
            "last_seen": self.last_seen.isoformat(),
        }


class PresenceTracker:
    """Reference-counted online state per user."""

    def __init__(
        self,
        shards: int = DEFAULT_SHARDS,
        timeout: Optional[float] = None,
        depth: Optional[int] = None,
    ):
        self._locks = [asyncio.Lock() for _ in range(shards)]
        self._handles: Dict[str, Set[str]] = {}
        self._timeout = timeout or settings.store_timeout_seconds
        self._events = Broadcaster("presence", depth)
        self._releases: Set[asyncio.Task] = set()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        return self._locks[zlib.crc32(user_id.encode("utf-8")) % len(self._locks)]

    async def _call_store(self, func, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise DependencyFailure(f"{func.__name__} timed out") from exc

    async def _persist(self, event: PresenceChanged) -> None:
        """Write a transition to the store; called with the user's shard lock held.

        A slow write is awaited to the end so that it cannot land after the
        next transition for the same user. The in-memory count stays
        authoritative when the write fails; the stored flag is corrected by
        the next transition or by reconcile().
        """
        write = asyncio.ensure_future(
            asyncio.to_thread(
                services.set_presence, event.user_id, event.is_online, event.last_seen
            )
        )
        try:
            await asyncio.wait_for(asyncio.shield(write), timeout=self._timeout)
            return
        except asyncio.TimeoutError:
            logger.warning(
                "presence write user=%s online=%s is slow, holding the shard until it lands",
                event.user_id,
                event.is_online,
            )
        except DependencyFailure:
            self._write_failed(event)
            return
        try:
            await asyncio.shield(write)
        except DependencyFailure:
            self._write_failed(event)

    def _write_failed(self, event: PresenceChanged) -> None:
        PRESENCE_WRITE_FAILURES.inc()
        logger.warning(
            "presence write failed user=%s online=%s; stored state may be stale",
            event.user_id,
            event.is_online,
            exc_info=True,
        )

    async def connect(self, user_id: str) -> SessionHandle:
        """Register a live connection for an authenticated identity."""
        if not user_id or not await self._call_store(identity.identity_exists, user_id):
            raise Unauthorized("Unknown identity")

        handle = SessionHandle(user_id=user_id)
        opening = asyncio.ensure_future(self._open(handle))
        try:
            await asyncio.shield(opening)
        except asyncio.CancelledError:
            # The caller never gets the handle, so release it once registered.
            opening.add_done_callback(lambda _: self._release_later(handle))
            raise
        return handle

    async def _open(self, handle: SessionHandle) -> None:
        user_id = handle.user_id
        async with self._lock_for(user_id):
            handles = self._handles.setdefault(user_id, set())
            handles.add(handle.handle_id)
            LIVE_CONNECTIONS.inc()
            if len(handles) == 1:
                ONLINE_USERS.inc()
                event = PresenceChanged(user_id, True, datetime.utcnow())
                await self._persist(event)
                self._events.dispatch(event)
                logger.info("user=%s online", user_id)

    def _release_later(self, handle: SessionHandle) -> None:
        task = asyncio.ensure_future(self.disconnect(handle))
        self._releases.add(task)
        task.add_done_callback(self._releases.discard)

    async def disconnect(self, handle: SessionHandle) -> bool:
        """Deregister a connection.

        Returns False when the handle was already closed, so the transport
        close and the client's going-away signal can both call this safely.
        """
        user_id = handle.user_id
        async with self._lock_for(user_id):
            handles = self._handles.get(user_id)
            if not handles or handle.handle_id not in handles:
                return False
            handles.discard(handle.handle_id)
            LIVE_CONNECTIONS.dec()
            if handles:
                return True
            del self._handles[user_id]
            ONLINE_USERS.dec()
            event = PresenceChanged(user_id, False, datetime.utcnow())
            await self._persist(event)
            self._events.dispatch(event)
            logger.info("user=%s offline", user_id)
        return True

    async def going_away(self, user_id: str, handle_id: str) -> bool:
        """Best-effort close signal sent by a client that is leaving."""
        return await self.disconnect(SessionHandle(user_id=user_id, handle_id=handle_id))

    def connection_count(self, user_id: str) -> int:
        return len(self._handles.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        return self.connection_count(user_id) > 0

    def online_users(self) -> List[str]:
        return sorted(self._handles)

    def subscribe(self) -> Subscription:
        """Stream of ``PresenceChanged`` events from now on."""
        return self._events.subscribe()

    async def reconcile(self) -> int:
        """Push the in-memory state to the store.

        Used at startup, when rows left online by a crashed process have no
        live connection behind them. Returns the number of rows flipped offline.
        """
        flipped = await self._call_store(
            services.reset_presence, self.online_users(), datetime.utcnow()
        )
        if flipped:
            logger.info("reconciled presence: %d stale online profiles cleared", flipped)
        return flipped

    def close(self) -> None:
        self._events.close_all()
