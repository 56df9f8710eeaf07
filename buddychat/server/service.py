import asyncio, contextlib, uuid
import grpc
from grpc import aio
from typing import AsyncIterable
from ..proto import chat_pb2, chat_pb2_grpc
from . import protocol
from .models import ChatError, NotFound, PersistenceError, ValidationError, AuthorizationError
from .repo import UsersRepo, GroupStore
from .membership import MembershipService
from .gateway import ChatGateway
from .hub import Hub
from ..utils.logger import setup_logger

logger = setup_logger('buddychat.server')

STATUS_FOR_ERROR = {
    NotFound: grpc.StatusCode.NOT_FOUND,
    ValidationError: grpc.StatusCode.INVALID_ARGUMENT,
    AuthorizationError: grpc.StatusCode.PERMISSION_DENIED,
    PersistenceError: grpc.StatusCode.UNAVAILABLE,
}

DEFAULT_HISTORY_LIMIT = 50


class ChatService(chat_pb2_grpc.ChatServiceServicer):
    """gRPC service implementation for group chat.

    Unary RPCs cover identity lookup and group management; ``OpenStream``
    is the real-time channel where every stream is one transport session
    driven through the ChatGateway.
    """

    def __init__(self, users_repo: UsersRepo, store: GroupStore, membership: MembershipService,
                 gateway: ChatGateway, hub: Hub):
        """Initialize chat service.

        Args:
            users_repo (UsersRepo): Identity directory
            store (GroupStore): Durable group store
            membership (MembershipService): Membership rules over the store
            gateway (ChatGateway): Real-time event handling
            hub (Hub): Outbound queues of live sessions
        """
        self.users = users_repo
        self.store = store
        self.membership = membership
        self.gateway = gateway
        self.hub = hub

    async def _abort(self, context: aio.ServicerContext, error: ChatError):
        await context.abort(STATUS_FOR_ERROR.get(type(error), grpc.StatusCode.UNKNOWN), str(error))

    async def RegisterUser(self, request: chat_pb2.RegisterRequest, context: aio.ServicerContext):
        """Register a new user.

        Returns:
            RegisterResponse: Contains the new user_id

        Raises:
            ALREADY_EXISTS: If display_name is already taken
            INVALID_ARGUMENT: If display_name is blank
        """
        display_name = request.display_name.strip()
        if display_name and self.users.find_by_display_name(display_name):
            logger.error(f"RegisterUser: User '{display_name}' registration failed (name already exists)")
            await context.abort(grpc.StatusCode.ALREADY_EXISTS, f"User {display_name} already exists")
        try:
            user = self.users.register(display_name)
        except ChatError as e:
            logger.error(f"RegisterUser: registration of '{display_name}' failed: {e}")
            await self._abort(context, e)
        logger.info(f"RegisterUser: User '{display_name}' registered successfully with ID '{user.id}'")
        return chat_pb2.RegisterResponse(user_id=user.id)

    async def LoginUser(self, request: chat_pb2.LoginRequest, context: aio.ServicerContext):
        """Resolve a display name to a user id.

        Only checks that the name exists; real authentication happens
        outside this service.
        """
        user = self.users.find_by_display_name(request.display_name)
        if not user:
            return chat_pb2.LoginResponse(success=False, error_message=f"User {request.display_name} not found")
        return chat_pb2.LoginResponse(success=True, user_id=user.id)

    async def CreateGroup(self, request: chat_pb2.CreateGroupRequest, context: aio.ServicerContext):
        """Create a group with the calling user as first member."""
        user = self.users.get(request.user_id)
        if user is None:
            return chat_pb2.CreateGroupResponse(success=False, error_message="Unknown user")
        try:
            group_id = await self.store.create_group(request.name, request.purpose, user)
        except ValidationError as e:
            logger.error(f"CreateGroup: Failed to create group for user '{user.id}': {e}")
            return chat_pb2.CreateGroupResponse(success=False, error_message=str(e))
        except PersistenceError as e:
            await self._abort(context, e)
        logger.info(f"CreateGroup: User '{user.id}' created group '{group_id}'")
        return chat_pb2.CreateGroupResponse(success=True, group_id=group_id)

    async def JoinGroup(self, request: chat_pb2.JoinGroupRequest, context: aio.ServicerContext):
        """Add the calling user to a group.

        Joining a group twice succeeds both times; ``added`` tells the
        caller whether membership changed.
        """
        user = self.users.get(request.user_id)
        if user is None:
            return chat_pb2.JoinGroupResponse(success=False, error_message="Unknown user")
        try:
            result = await self.membership.join(request.group_id, user)
        except NotFound:
            return chat_pb2.JoinGroupResponse(success=False, error_message="Group does not exist")
        except PersistenceError as e:
            await self._abort(context, e)
        return chat_pb2.JoinGroupResponse(success=True, added=result.added)

    async def SearchGroups(self, request: chat_pb2.SearchGroupsRequest, context: aio.ServicerContext):
        """Case-insensitive substring search over group names and purposes."""
        return chat_pb2.GroupList(groups=[protocol.group_to_pb(g) for g in self.store.search_groups(request.query)])

    async def ListUserGroups(self, request: chat_pb2.ListUserGroupsRequest, context: aio.ServicerContext):
        user = self.users.get(request.user_id)
        if user is None:
            return chat_pb2.GroupList()
        return chat_pb2.GroupList(groups=[protocol.group_to_pb(g) for g in self.membership.groups_of(user)])

    async def GetGroup(self, request: chat_pb2.GetGroupRequest, context: aio.ServicerContext):
        """Group details with its most recent ``limit`` messages.

        An unset ``limit`` means the last 50 messages, zero means all.

        Raises:
            NOT_FOUND: If the group does not exist
            INVALID_ARGUMENT: If limit is negative
        """
        limit = request.limit if request.HasField("limit") else DEFAULT_HISTORY_LIMIT
        if limit < 0:
            await self._abort(context, ValidationError(f"limit must not be negative, got {limit}"))
        try:
            group = self.store.get_group(request.group_id)
            history = self.store.recent_history(request.group_id, limit)
        except NotFound as e:
            await self._abort(context, e)
        return chat_pb2.GetGroupResponse(
            group=protocol.group_to_pb(group),
            history=[
                protocol.message_to_pb(protocol.message_payload(group.id, m, self.gateway.display_name_of(m.sender)))
                for m in history
            ],
        )

    async def OpenStream(self, request_iterator: AsyncIterable[chat_pb2.Envelope], context: aio.ServicerContext):
        """Bidirectional event stream for one transport session.

        Protocol Flow:
        1. Client sends ``connect`` with the user_id of a registered user
        2. Server registers an outbound queue and answers ``connected``
        3. Client events (``join-group``, ``send-message``) go to the gateway
        4. Queued events (``receive-message``, ``joined-group``, ``error``)
           are streamed back

        The stream ends when the client half-closes or cancels; either way
        the session is disconnected from every room. A message already
        being sent when that happens is still stored and fanned out.
        """
        try:
            first = await anext(request_iterator)
        except StopAsyncIteration:
            logger.warning("ChatStream: stream closed before connect")
            return

        user = None
        event, data = protocol.event_from_pb(first)
        if event == protocol.CONNECT and isinstance(data, dict):
            user = self.users.get(data["userId"])
        if user is None:
            logger.error("ChatStream: Invalid first envelope - not connect or unknown user_id")
            await context.abort(grpc.StatusCode.UNAUTHENTICATED, "First envelope must be connect with a registered user_id")

        session_id = uuid.uuid4().hex
        q = await self.hub.register_queue(session_id)
        self.gateway.connect(session_id, user)
        q.put_nowait(protocol.envelope(protocol.CONNECTED, {"sessionId": session_id, "userId": user.id}))

        async def reader():
            """Feed client events to the gateway, one at a time, in arrival order."""
            try:
                async for incoming in request_iterator:
                    await self.gateway.handle(session_id, *protocol.event_from_pb(incoming))
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"ChatStream: reader for session {session_id} failed")
            finally:
                q.put_nowait(None)

        reader_task = asyncio.create_task(reader())
        try:
            while True:
                out_msg = await q.get()
                if out_msg is None:
                    break
                yield protocol.envelope_to_pb(out_msg)
        finally:
            reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader_task
            self.gateway.disconnect(session_id)
            await self.hub.remove_queue(session_id)
            logger.info(f"ChatStream: Session '{session_id}' of user '{user.id}' closed")
