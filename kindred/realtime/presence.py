"""
Identity & Presence Registry

Maps users to their live connections. A user's last connection closing starts
an offline grace; reconnecting inside the grace cancels it so flaky networks do
not flap the online indicator. Registry state is process-local.
"""

from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set

from kindred.core.logging import get_logger, log_event
from kindred.core.time import utcnow
from kindred.realtime.rooms import Addressable
from kindred.realtime.timers import TimerRegistry

logger = get_logger(__name__)

StatusListener = Callable[[str, bool, datetime], Awaitable[None]]


class PresenceRegistry:
    def __init__(
        self,
        timers: TimerRegistry,
        grace_seconds: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._timers = timers
        self._grace_seconds = grace_seconds
        self._clock = clock
        # user_id -> conn ids
        self._connections: Dict[str, Set[str]] = {}
        # conn_id -> user_id
        self._owners: Dict[str, str] = {}
        # users whose last broadcast state is online
        self._announced: Set[str] = set()
        self._last_seen: Dict[str, datetime] = {}
        self._listeners: List[StatusListener] = []

    def subscribe(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    async def attach(self, conn: Addressable, user_id: str) -> bool:
        """Record a connection; returns True when the user transitions to online"""
        current = self._owners.get(conn.id)
        if current == user_id:
            return False
        if current is not None:
            self._forget(conn.id, current)

        self._owners[conn.id] = user_id
        self._connections.setdefault(user_id, set()).add(conn.id)
        self._timers.cancel(self._timer_owner(user_id), "offline")
        self._last_seen[user_id] = self._clock()

        if user_id in self._announced:
            return False
        self._announced.add(user_id)
        await self._notify(user_id, True)
        return True

    async def detach(self, conn: Addressable) -> None:
        user_id = self._owners.get(conn.id)
        if user_id is None:
            return
        self._forget(conn.id, user_id)
        self._last_seen[user_id] = self._clock()
        if self._connections.get(user_id):
            return
        self._timers.schedule(
            self._timer_owner(user_id),
            "offline",
            self._grace_seconds,
            lambda: self._go_offline(user_id),
        )

    async def _go_offline(self, user_id: str) -> None:
        if self._connections.get(user_id) or user_id not in self._announced:
            return
        self._announced.discard(user_id)
        await self._notify(user_id, False)

    def connections_of(self, user_id: str) -> List[str]:
        return sorted(self._connections.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def last_seen(self, user_id: str) -> Optional[datetime]:
        return self._last_seen.get(user_id)

    def _forget(self, conn_id: str, user_id: str) -> None:
        self._owners.pop(conn_id, None)
        conns = self._connections.get(user_id)
        if conns is not None:
            conns.discard(conn_id)
            if not conns:
                del self._connections[user_id]

    async def _notify(self, user_id: str, is_online: bool) -> None:
        last_seen = self._last_seen.get(user_id) or self._clock()
        log_event(logger, "presence.transition", user=user_id, online=is_online)
        for listener in self._listeners:
            try:
                await listener(user_id, is_online, last_seen)
            except Exception:
                logger.exception(f"Presence listener failed for user {user_id}")

    @staticmethod
    def _timer_owner(user_id: str) -> str:
        return f"presence:{user_id}"
