"""
Room Router

Rooms are string-keyed sets of connections:
- conversation:<id>  both chat participants
- session:<id>       both game players
- user:<id>          every connection of one user (direct addressing)

Emission is synchronous (it only enqueues on each connection's FIFO), so the
order of emit calls is the order frames leave each connection.
"""

from typing import Any, Dict, Iterable, List, Optional, Protocol, Set


class Addressable(Protocol):
    id: str
    user_id: str

    def send(self, event: str, data: Any) -> bool: ...


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def conversation_room(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def session_room(session_id: str) -> str:
    return f"session:{session_id}"


class RoomRouter:
    def __init__(self):
        # room -> conn_id -> connection
        self._rooms: Dict[str, Dict[str, Addressable]] = {}
        # conn_id -> rooms
        self._memberships: Dict[str, Set[str]] = {}

    def join(self, conn: Addressable, room: str) -> None:
        self._rooms.setdefault(room, {})[conn.id] = conn
        self._memberships.setdefault(conn.id, set()).add(room)

    def leave(self, conn: Addressable, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.pop(conn.id, None)
            if not members:
                del self._rooms[room]
        rooms = self._memberships.get(conn.id)
        if rooms is not None:
            rooms.discard(room)
            if not rooms:
                del self._memberships[conn.id]

    def leave_all(self, conn: Addressable) -> List[str]:
        rooms = sorted(self._memberships.get(conn.id, ()))
        for room in rooms:
            self.leave(conn, room)
        return rooms

    def members(self, room: str) -> List[Addressable]:
        return list(self._rooms.get(room, {}).values())

    def is_member(self, conn: Addressable, room: str) -> bool:
        return conn.id in self._rooms.get(room, {})

    def user_in_room(self, user_id: str, room: str, exclude: Optional[Addressable] = None) -> bool:
        return any(
            c.user_id == user_id and (exclude is None or c.id != exclude.id)
            for c in self._rooms.get(room, {}).values()
        )

    def emit_to_room(self, room: str, event: str, payload: Any) -> int:
        return self._emit(self.members(room), event, payload)

    def emit_to_room_except(self, room: str, conn: Addressable, event: str, payload: Any) -> int:
        return self._emit((c for c in self.members(room) if c.id != conn.id), event, payload)

    def emit_to_user(self, user_id: str, event: str, payload: Any) -> int:
        return self.emit_to_room(user_room(user_id), event, payload)

    @staticmethod
    def _emit(connections: Iterable[Addressable], event: str, payload: Any) -> int:
        delivered = 0
        for conn in connections:
            if conn.send(event, payload):
                delivered += 1
        return delivered
