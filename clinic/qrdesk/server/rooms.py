"""Room membership bookkeeping."""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Set

logger = logging.getLogger(__name__)


class RoomRegistry:
    """Room id -> connection ids, mutated only by join/leave/drop.

    Single event loop, no awaits inside: every method runs to completion
    before another handler can observe the maps.
    """

    def __init__(self) -> None:
        self._members: Dict[str, Set[str]] = defaultdict(set)
        self._rooms_of: Dict[str, Set[str]] = defaultdict(set)
        self._last_joined: Dict[str, str] = {}

    def join(self, conn_id: str, room_id: str) -> None:
        self._members[room_id].add(conn_id)
        self._rooms_of[conn_id].add(room_id)
        self._last_joined[conn_id] = room_id
        logger.debug("rooms.join: %s -> %s (%d members)", conn_id, room_id, len(self._members[room_id]))

    def leave(self, conn_id: str, room_id: str) -> bool:
        members = self._members.get(room_id)
        if not members or conn_id not in members:
            return False
        members.discard(conn_id)
        if not members:
            del self._members[room_id]
        rooms = self._rooms_of.get(conn_id)
        if rooms is not None:
            rooms.discard(room_id)
        if self._last_joined.get(conn_id) == room_id:
            self._last_joined.pop(conn_id, None)
        return True

    def drop(self, conn_id: str) -> Set[str]:
        """Remove a connection from every room it joined."""
        rooms = self._rooms_of.pop(conn_id, set())
        for room_id in rooms:
            members = self._members.get(room_id)
            if members is None:
                continue
            members.discard(conn_id)
            if not members:
                del self._members[room_id]
        self._last_joined.pop(conn_id, None)
        return rooms

    def members(self, room_id: str) -> Set[str]:
        return set(self._members.get(room_id, ()))

    def rooms_of(self, conn_id: str) -> Set[str]:
        return set(self._rooms_of.get(conn_id, ()))

    def last_joined(self, conn_id: str) -> str | None:
        return self._last_joined.get(conn_id)

    def is_member(self, conn_id: str, room_id: str) -> bool:
        return conn_id in self._members.get(room_id, ())


__all__ = ["RoomRegistry"]
