import unittest
import tempfile
import shutil
import asyncio
import grpc
from grpc import aio
from buddychat.proto import chat_pb2, chat_pb2_grpc
from buddychat.server.config import ServerConfig
from buddychat.server.main import build_service
from buddychat.server import protocol


class Aborted(Exception):
    def __init__(self, code, details):
        super().__init__(details)
        self.code = code
        self.details = details


class FakeContext:
    """Stands in for aio.ServicerContext; abort raises like the real one."""

    async def abort(self, code, details=""):
        raise Aborted(code, details)


class TestRPCGroups(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.service = build_service(ServerConfig(data_dir=self.temp_dir))
        self.context = FakeContext()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def call(self, method, request):
        return asyncio.run(getattr(self.service, method)(request, self.context))

    def register(self, name):
        return self.call("RegisterUser", chat_pb2.RegisterRequest(display_name=name)).user_id

    def create(self, user_id, name, purpose=""):
        return self.call("CreateGroup", chat_pb2.CreateGroupRequest(user_id=user_id, name=name, purpose=purpose))

    def test_register_and_login(self):
        user_id = self.register("alice")
        resp = self.call("LoginUser", chat_pb2.LoginRequest(display_name="alice"))
        self.assertTrue(resp.success)
        self.assertEqual(resp.user_id, user_id)
        self.assertFalse(self.call("LoginUser", chat_pb2.LoginRequest(display_name="nobody")).success)

    def test_register_duplicate_name_aborts(self):
        self.register("alice")
        with self.assertRaises(Aborted) as cm:
            self.call("RegisterUser", chat_pb2.RegisterRequest(display_name="alice"))
        self.assertEqual(cm.exception.code, grpc.StatusCode.ALREADY_EXISTS)
        with self.assertRaises(Aborted) as cm:
            self.call("RegisterUser", chat_pb2.RegisterRequest(display_name=""))
        self.assertEqual(cm.exception.code, grpc.StatusCode.INVALID_ARGUMENT)

    def test_create_join_and_list_user_groups_rpc(self):
        u1 = self.register("alice")
        u2 = self.register("bob")
        g1 = self.create(u1, "Hiking", "trails").group_id
        g2 = self.create(u2, "Chess").group_id

        first = self.call("JoinGroup", chat_pb2.JoinGroupRequest(user_id=u2, group_id=g1))
        second = self.call("JoinGroup", chat_pb2.JoinGroupRequest(user_id=u2, group_id=g1))
        self.assertEqual((first.success, first.added), (True, True))
        self.assertEqual((second.success, second.added), (True, False))

        resp = self.call("ListUserGroups", chat_pb2.ListUserGroupsRequest(user_id=u2))
        self.assertEqual([g.id for g in resp.groups], [g1, g2])
        self.assertEqual(list(resp.groups[0].member_ids), [u1, u2])

    def test_create_group_failures(self):
        u1 = self.register("alice")
        self.assertFalse(self.create("ghost", "X").success)
        resp = self.create(u1, " ")
        self.assertFalse(resp.success)
        self.assertIn("empty", resp.error_message)

    def test_join_missing_group_rpc(self):
        u1 = self.register("alice")
        resp = self.call("JoinGroup", chat_pb2.JoinGroupRequest(user_id=u1, group_id="missing"))
        self.assertFalse(resp.success)
        self.assertEqual(resp.error_message, "Group does not exist")

    def test_search_groups_rpc(self):
        u1 = self.register("alice")
        self.create(u1, "Board Games", "catan nights")
        self.create(u1, "Running", "5k on sundays")

        resp = self.call("SearchGroups", chat_pb2.SearchGroupsRequest(query="CATAN"))
        self.assertEqual([g.name for g in resp.groups], ["Board Games"])
        self.assertEqual(len(self.call("SearchGroups", chat_pb2.SearchGroupsRequest()).groups), 2)

    def test_get_group_rpc(self):
        u1 = self.register("alice")
        gid = self.create(u1, "Books").group_id
        asyncio.run(self.service.store.append_message(gid, u1, "first"))
        asyncio.run(self.service.store.append_message(gid, u1, "second"))

        resp = self.call("GetGroup", chat_pb2.GetGroupRequest(group_id=gid, limit=1))
        self.assertEqual(resp.group.name, "Books")
        self.assertEqual([(h.sender_name, h.text) for h in resp.history], [("alice", "second")])

        # Unset limit falls back to the default, zero means the whole history
        self.assertEqual(len(self.call("GetGroup", chat_pb2.GetGroupRequest(group_id=gid)).history), 2)
        self.assertEqual(len(self.call("GetGroup", chat_pb2.GetGroupRequest(group_id=gid, limit=0)).history), 2)

        with self.assertRaises(Aborted) as cm:
            self.call("GetGroup", chat_pb2.GetGroupRequest(group_id="missing"))
        self.assertEqual(cm.exception.code, grpc.StatusCode.NOT_FOUND)

    def test_get_group_negative_limit_is_invalid_argument(self):
        u1 = self.register("alice")
        gid = self.create(u1, "Books").group_id
        with self.assertRaises(Aborted) as cm:
            self.call("GetGroup", chat_pb2.GetGroupRequest(group_id=gid, limit=-5))
        self.assertEqual(cm.exception.code, grpc.StatusCode.INVALID_ARGUMENT)


async def _outgoing(q: asyncio.Queue):
    while True:
        item = await q.get()
        if item is None:
            return
        yield item


def _connect(user_id):
    return chat_pb2.Envelope(event=protocol.CONNECT, connect=chat_pb2.Connect(user_id=user_id))


def _join(group_id):
    return chat_pb2.Envelope(event=protocol.JOIN_GROUP_EVENT, group_id=group_id)


def _send(group_id, text):
    return chat_pb2.Envelope(event=protocol.SEND_MESSAGE, send=chat_pb2.SendMessage(group_id=group_id, message=text))


class TestStreamEndToEnd(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.service = build_service(ServerConfig(data_dir=self.temp_dir))
        self.server = aio.server()
        chat_pb2_grpc.add_ChatServiceServicer_to_server(self.service, self.server)
        port = self.server.add_insecure_port("127.0.0.1:0")
        await self.server.start()
        self.channel = aio.insecure_channel(f"127.0.0.1:{port}")
        self.stub = chat_pb2_grpc.ChatServiceStub(self.channel)

    async def asyncTearDown(self):
        await self.channel.close()
        await self.server.stop(None)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def read(self, call):
        return await asyncio.wait_for(call.read(), timeout=5)

    async def test_two_members_chat_over_streams(self):
        alice = (await self.stub.RegisterUser(chat_pb2.RegisterRequest(display_name="alice"))).user_id
        bob = (await self.stub.RegisterUser(chat_pb2.RegisterRequest(display_name="bob"))).user_id
        gid = (await self.stub.CreateGroup(chat_pb2.CreateGroupRequest(user_id=alice, name="Hiking"))).group_id
        await self.stub.JoinGroup(chat_pb2.JoinGroupRequest(user_id=bob, group_id=gid))

        alice_out, bob_out = asyncio.Queue(), asyncio.Queue()
        alice_call = self.stub.OpenStream(_outgoing(alice_out))
        bob_call = self.stub.OpenStream(_outgoing(bob_out))

        alice_out.put_nowait(_connect(alice))
        bob_out.put_nowait(_connect(bob))
        connected = await self.read(alice_call)
        self.assertEqual(connected.event, protocol.CONNECTED)
        self.assertEqual(connected.connected.user_id, alice)
        self.assertEqual((await self.read(bob_call)).event, protocol.CONNECTED)

        alice_out.put_nowait(_join(gid))
        bob_out.put_nowait(_join(gid))
        joined = await self.read(alice_call)
        self.assertEqual(joined.event, protocol.JOINED_GROUP)
        self.assertEqual(joined.joined.name, "Hiking")
        self.assertEqual((await self.read(bob_call)).event, protocol.JOINED_GROUP)

        alice_out.put_nowait(_send(gid, "hi"))
        for call in (alice_call, bob_call):
            env = await self.read(call)
            self.assertEqual(env.event, protocol.RECEIVE_MESSAGE)
            self.assertEqual(env.message.text, "hi")
            self.assertEqual(env.message.sender, alice)
            self.assertEqual(env.message.sender_name, "alice")

        alice_out.put_nowait(None)
        bob_out.put_nowait(None)
        self.assertIs(await self.read(alice_call), aio.EOF)
        self.assertIs(await self.read(bob_call), aio.EOF)
        self.assertEqual(await alice_call.code(), grpc.StatusCode.OK)
        self.assertEqual(await bob_call.code(), grpc.StatusCode.OK)

        self.assertEqual(self.service.gateway.sessions, {})
        self.assertEqual(self.service.gateway.rooms.members_of(gid), frozenset())
        self.assertEqual([m.text for m in self.service.store.get_group(gid).history], ["hi"])

    async def test_join_as_non_member_gets_error_event(self):
        alice = (await self.stub.RegisterUser(chat_pb2.RegisterRequest(display_name="alice"))).user_id
        bob = (await self.stub.RegisterUser(chat_pb2.RegisterRequest(display_name="bob"))).user_id
        gid = (await self.stub.CreateGroup(chat_pb2.CreateGroupRequest(user_id=alice, name="Hiking"))).group_id

        out = asyncio.Queue()
        call = self.stub.OpenStream(_outgoing(out))
        out.put_nowait(_connect(bob))
        await self.read(call)
        out.put_nowait(_join(gid))
        env = await self.read(call)
        self.assertEqual(env.event, protocol.ERROR)
        self.assertEqual((env.error.event, env.error.group_id, env.error.code),
                         (protocol.JOIN_GROUP_EVENT, gid, "forbidden"))
        out.put_nowait(None)
        self.assertIs(await self.read(call), aio.EOF)

    async def test_stream_without_connect_is_unauthenticated(self):
        out = asyncio.Queue()
        call = self.stub.OpenStream(_outgoing(out))
        out.put_nowait(_send("g", "hi"))
        self.assertEqual(await asyncio.wait_for(call.code(), timeout=5), grpc.StatusCode.UNAUTHENTICATED)
        out.put_nowait(None)


if __name__ == '__main__':
    unittest.main()
