import asyncio
from typing import Dict, List
from ..utils.logger import setup_logger

logger = setup_logger('buddychat.hub')

class Hub:
    """Outbound delivery for live transport sessions.

    Each connected session owns an asyncio Queue; whatever is put on it
    is streamed back to that client by the servicer. A session that is
    gone simply has no queue, so delivery to it is a no-op.
    """

    def __init__(self):
        """Initialize message hub.

        Attributes:
            queues (Dict[str, asyncio.Queue]): Maps session IDs to their outbound queues
            _lock (asyncio.Lock): Taken around every access to ``queues``; on a
                single event loop this only orders the awaits, it does not
                protect against other threads
        """
        self.queues: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()
        logger.info("Message Hub initialized")

    async def register_queue(self, session_id: str) -> asyncio.Queue:
        """Create and store the outbound queue for a new session."""
        async with self._lock:
            q = asyncio.Queue()
            self.queues[session_id] = q
            logger.info(f"Registered queue for session {session_id}")
            logger.debug(f"Active sessions: {list(self.queues.keys())}")
            return q

    async def remove_queue(self, session_id: str):
        """Drop a session's queue, typically when its stream closes."""
        async with self._lock:
            self.queues.pop(session_id, None)
            logger.info(f"Removed queue for session {session_id}")
            logger.debug(f"Remaining active sessions: {list(self.queues.keys())}")

    async def send_to_session(self, session_id: str, envelope: dict) -> bool:
        """Queue an envelope for one session if it is still connected.

        Args:
            session_id (str): Target session
            envelope (dict): Event envelope to deliver

        Returns:
            bool: True if queued, False if the session is not connected
        """
        async with self._lock:
            q = self.queues.get(session_id)

        if q is not None:
            q.put_nowait(envelope)
            logger.debug(f"Queued {envelope.get('event')} for session {session_id}")
            return True

        logger.warning(f"Failed to send {envelope.get('event')} to session {session_id} - not connected")
        return False

    async def send_to_sessions(self, session_ids: List[str], envelope: dict) -> int:
        """Deliver the same envelope to several sessions in the given order.

        Returns:
            int: Number of sessions the envelope was queued for
        """
        delivered = 0
        for session_id in session_ids:
            if await self.send_to_session(session_id, envelope):
                delivered += 1
        return delivered
