from typing import Dict, FrozenSet, List, Set
from ..utils.logger import setup_logger

logger = setup_logger('buddychat.rooms')

class RoomRegistry:
    """In-memory map of group ids to the transport sessions subscribed to them.

    Purely ephemeral: it is built empty at process start and never
    persisted, so clients re-subscribe after a reconnect. None of the
    methods await, which keeps every mutation atomic on the event loop.
    """

    def __init__(self):
        self._rooms: Dict[str, Set[str]] = {}
        self._by_session: Dict[str, Set[str]] = {}

    def subscribe(self, group_id: str, session_id: str) -> bool:
        """Add a session to a room.

        Returns:
            bool: True if newly subscribed, False if it already was
        """
        room = self._rooms.setdefault(group_id, set())
        if session_id in room:
            return False
        room.add(session_id)
        self._by_session.setdefault(session_id, set()).add(group_id)
        logger.debug(f"Session {session_id} subscribed to room {group_id} ({len(room)} in room)")
        return True

    def unsubscribe(self, group_id: str, session_id: str):
        room = self._rooms.get(group_id)
        if room is not None:
            room.discard(session_id)
            if not room:
                del self._rooms[group_id]
        groups = self._by_session.get(session_id)
        if groups is not None:
            groups.discard(group_id)
            if not groups:
                del self._by_session[session_id]

    def unsubscribe_all(self, session_id: str) -> List[str]:
        """Remove a session from every room it joined.

        Returns:
            List[str]: Group ids the session was removed from
        """
        groups = self._by_session.pop(session_id, set())
        for group_id in groups:
            room = self._rooms.get(group_id)
            if room is None:
                continue
            room.discard(session_id)
            if not room:
                del self._rooms[group_id]
        if groups:
            logger.debug(f"Session {session_id} left rooms {sorted(groups)}")
        return sorted(groups)

    def members_of(self, group_id: str) -> FrozenSet[str]:
        """Snapshot of the sessions currently in a room."""
        return frozenset(self._rooms.get(group_id, ()))

    def rooms_of(self, session_id: str) -> FrozenSet[str]:
        return frozenset(self._by_session.get(session_id, ()))

    def __len__(self):
        return len(self._rooms)
