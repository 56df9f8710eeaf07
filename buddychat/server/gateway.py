import asyncio
from dataclasses import dataclass
from typing import Dict, Optional
from .models import UserIdentity, ChatMessage, ChatError, ValidationError, AuthorizationError
from .repo import GroupStore, UsersRepo
from .membership import MembershipService
from .rooms import RoomRegistry
from .hub import Hub
from . import protocol
from ..utils.logger import setup_logger
from ..utils.tasks import run_to_completion

logger = setup_logger('buddychat.gateway')


@dataclass
class Session:
    """A live transport session and the identity it authenticated as."""
    id: str
    user: UserIdentity


class ChatGateway:
    """Real-time boundary between transport sessions and the group store.

    Session lifecycle: ``connect`` -> any number of ``join-group``
    subscriptions -> ``disconnect`` (terminal). ``send-message`` events
    are persisted first and then fanned out to the room snapshot,
    sender included.

    Events coming from a connection never raise out of :meth:`handle`:
    failures are logged and answered with an ``error`` event sent to
    the originating session only.
    """

    def __init__(self, store: GroupStore, membership: MembershipService, rooms: RoomRegistry,
                 hub: Hub, users: Optional[UsersRepo] = None, history_limit: int = 50):
        self.store = store
        self.membership = membership
        self.rooms = rooms
        self.hub = hub
        self.users = users
        self.history_limit = history_limit
        self.sessions: Dict[str, Session] = {}
        self._publish_locks: Dict[str, asyncio.Lock] = {}

    def connect(self, session_id: str, user: UserIdentity) -> Session:
        session = Session(id=session_id, user=user)
        self.sessions[session_id] = session
        logger.info(f"Session {session_id} connected as {user.display_name} ({user.id})")
        return session

    def disconnect(self, session_id: str):
        """Forget a session and remove it from every room it joined."""
        left = self.rooms.unsubscribe_all(session_id)
        session = self.sessions.pop(session_id, None)
        who = session.user.id if session else "unknown"
        logger.info(f"Session {session_id} ({who}) disconnected, left {len(left)} room(s)")

    async def handle(self, session_id: str, event: str, data=None):
        """Dispatch one event received from a session.

        Events for sessions that are not connected (never were, or have
        disconnected) are dropped.
        """
        if session_id not in self.sessions:
            logger.warning(f"Dropping {event!r} from session {session_id}: not connected")
            return
        try:
            if event == protocol.JOIN_GROUP_EVENT:
                await self.join_group(session_id, data)
            elif event == protocol.SEND_MESSAGE:
                await self.send_message(session_id, data)
            else:
                raise ValidationError(f"Unknown event {event!r}")
        except ChatError as e:
            logger.warning(f"Dropped {event!r} from session {session_id}: {e}")
            await self._reject(session_id, event, data, e.code, str(e))
        except Exception:
            logger.exception(f"Unexpected failure handling {event!r} from session {session_id}")
            await self._reject(session_id, event, data, "internal", "Internal server error")

    async def join_group(self, session_id: str, group_id) -> bool:
        """Subscribe a session to a group's room.

        Only members of an existing group may subscribe. On success the
        session receives a ``joined-group`` event with recent history.

        Returns:
            bool: True if newly subscribed, False if it already was

        Raises:
            ValidationError: If group_id is not a non-empty string
            NotFound: If the group does not exist
            AuthorizationError: If the session's user is not a member
        """
        session = self.sessions[session_id]
        group_id = _require_group_id(group_id)
        group = self.store.get_group(group_id)
        if not self.membership.is_member(group_id, session.user):
            raise AuthorizationError(f"User {session.user.id} is not a member of group {group_id}")

        added = self.rooms.subscribe(group_id, session_id)
        logger.info(f"Session {session_id} joined room {group_id}")
        history = [
            protocol.message_payload(group_id, msg, self.display_name_of(msg.sender))
            for msg in self.store.recent_history(group_id, self.history_limit)
        ]
        await self.hub.send_to_session(session_id, protocol.envelope(protocol.JOINED_GROUP, {
            "groupId": group_id,
            "name": group.name,
            "history": history,
        }))
        return added

    async def send_message(self, session_id: str, data) -> ChatMessage:
        """Persist a message and fan it out to the group's room.

        The publish lock for the group spans both the append and the
        fan-out, so every subscriber sees messages in history order.
        Delivery is best-effort: sessions that left the room before the
        snapshot is taken do not get the message. Once accepted, the
        message is stored and fanned out even if the sending session goes
        away meanwhile.

        Raises:
            ValidationError: If groupId or message is missing or malformed
            NotFound: If the group does not exist
            AuthorizationError: If the session's user is not a member
            PersistenceError: If the message cannot be stored
        """
        session = self.sessions[session_id]
        if not isinstance(data, dict):
            raise ValidationError("send-message payload must be an object")
        group_id = _require_group_id(data.get("groupId"))
        text = data.get("message")
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("message must be non-empty text")

        self.store.get_group(group_id)
        if not self.membership.is_member(group_id, session.user):
            raise AuthorizationError(f"User {session.user.id} is not a member of group {group_id}")

        return await run_to_completion(self._publish(session, group_id, text))

    async def _publish(self, session: Session, group_id: str, text: str) -> ChatMessage:
        async with self._publish_lock(group_id):
            msg = await self.store.append_message(group_id, sender=session.user.id, text=text)
            targets = sorted(self.rooms.members_of(group_id))
            out = protocol.envelope(protocol.RECEIVE_MESSAGE,
                                    protocol.message_payload(group_id, msg, session.user.display_name))
            delivered = await self.hub.send_to_sessions(targets, out)
        logger.info(f"Message from {session.user.id} in group {group_id} delivered to {delivered}/{len(targets)} sessions")
        return msg

    def _publish_lock(self, group_id: str) -> asyncio.Lock:
        lock = self._publish_locks.get(group_id)
        if lock is None:
            lock = self._publish_locks[group_id] = asyncio.Lock()
        return lock

    def display_name_of(self, user_id: str) -> str:
        if self.users is not None:
            user = self.users.get(user_id)
            if user is not None:
                return user.display_name
        return user_id

    async def _reject(self, session_id: str, event: str, data, code: str, detail: str):
        """Tell the originating session, and nobody else, that its event failed."""
        group_id = None
        if isinstance(data, dict):
            group_id = data.get("groupId")
        elif isinstance(data, str):
            group_id = data
        await self.hub.send_to_session(session_id, protocol.envelope(protocol.ERROR, {
            "event": event,
            "groupId": group_id,
            "code": code,
            "detail": detail,
        }))


def _require_group_id(group_id) -> str:
    if not isinstance(group_id, str) or not group_id.strip():
        raise ValidationError("groupId must be a non-empty string")
    return group_id.strip()
