import asyncio, json, os, time, uuid
from typing import Callable, Dict, Iterator, List, Optional, Iterable
from .models import UserIdentity, ChatMessage, Group, NotFound, PersistenceError, ValidationError
from ..utils.logger import setup_logger
from ..utils.tasks import run_to_completion

logger = setup_logger('buddychat.repo')


def _ensure_parent_dir(path: str):
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


def _truncate_torn_tail(path: str):
    """Cut a partial last line left by a crash, so the next append starts clean."""
    with open(path, "rb+") as f:
        data = f.read()
        if data and not data.endswith(b"\n"):
            keep = data.rfind(b"\n") + 1
            f.truncate(keep)
            logger.warning(f"Dropped {len(data) - keep} bytes of torn trailing record from {path}")


class UsersRepo:
    """Identity directory backed by a JSONL file.

    Resolves display names to durable ``UserIdentity`` records. It is a
    stand-in for the authentication collaborator: no passwords are kept.
    """

    def __init__(self, path: str):
        """Initialize users repository.

        Args:
            path (str): Path to JSONL file storing user data

        Side Effects:
            - Creates directory structure if not exists
            - Loads existing users from file
        """
        _ensure_parent_dir(path)
        self.path = path
        self.users_by_id: Dict[str, UserIdentity] = {}
        self._load()

    def _load(self):
        if not os.path.exists(self.path): return
        _truncate_torn_tail(self.path)
        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip(): continue
                try:
                    rec = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping unreadable user record at line {lineno} of {self.path}: {e}")
                    continue
                self.users_by_id[rec["id"]] = UserIdentity(id=rec["id"], display_name=rec["display_name"])

    def register(self, display_name: str) -> UserIdentity:
        """Create a new user with a fresh id.

        Args:
            display_name (str): Unique display name

        Returns:
            UserIdentity: The stored identity

        Raises:
            ValidationError: If the name is blank or already taken
            PersistenceError: If the users file cannot be written
        """
        display_name = (display_name or "").strip()
        if not display_name:
            raise ValidationError("Display name must not be empty")
        if self.find_by_display_name(display_name):
            logger.warning(f"Attempt to register existing user: {display_name}")
            raise ValidationError(f"User {display_name} already exists")

        user = UserIdentity(id=uuid.uuid4().hex[:12], display_name=display_name)
        line = json.dumps({"id": user.id, "display_name": user.display_name}, ensure_ascii=False)
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n"); f.flush(); os.fsync(f.fileno())
        except OSError as e:
            logger.error(f"Failed to store user {display_name}: {e}")
            raise PersistenceError(f"Could not store user {display_name}") from e
        self.users_by_id[user.id] = user
        logger.info(f"New user registered: {user.display_name} (ID: {user.id})")
        return user

    def get(self, user_id: str) -> Optional[UserIdentity]:
        return self.users_by_id.get(user_id)

    def all(self) -> Iterable[UserIdentity]:
        return self.users_by_id.values()

    def find_by_display_name(self, display_name: str) -> Optional[UserIdentity]:
        """Find user by display name (case sensitive)."""
        for user in self.users_by_id.values():
            if user.display_name == display_name:
                return user
        return None


class GroupSearch:
    """Lazy, restartable view over groups matching a query.

    Every iteration walks the groups afresh in creation order, so the
    same object can be iterated several times.
    """

    def __init__(self, store: "GroupStore", query: str):
        self._store = store
        self.query = (query or "").lower()

    def __iter__(self) -> Iterator[Group]:
        for group in list(self._store.groups_by_id.values()):
            if self.query in group.name.lower() or self.query in group.purpose.lower():
                yield group


class GroupStore:
    """Durable store of groups, their members and their chat history.

    State lives in an append-only JSONL log. Every mutation is written as
    a single record (``create``, ``member`` or ``message``) and the
    in-memory groups are rebuilt by replaying the log on start-up, so no
    write ever rewrites a whole group. Mutations of the same group are
    serialized by a per-group lock held across the awaited write.
    """

    def __init__(self, path: str):
        """Initialize the group store.

        Args:
            path (str): Path to the JSONL log

        Side Effects:
            - Creates directory structure if not exists
            - Replays existing records from the log
        """
        _ensure_parent_dir(path)
        self.path = path
        self.groups_by_id: Dict[str, Group] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._load()

    def _load(self):
        """Replay the log into memory.

        A partial last line torn by a crash mid-write is cut from the file
        first. Other records that cannot be parsed, that refer to unknown
        groups or that have an unknown ``op`` are skipped with a warning.
        """
        if not os.path.exists(self.path):
            return
        _truncate_torn_tail(self.path)
        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    rec = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping unreadable record at line {lineno} of {self.path}: {e}")
                    continue
                op = rec.get("op")
                if op == "create":
                    self.groups_by_id[rec["id"]] = Group(
                        id=rec["id"],
                        name=rec["name"],
                        purpose=rec.get("purpose", ""),
                        members=list(rec.get("members", [])),
                        created_ts=rec["created_ts"],
                    )
                    continue
                group = self.groups_by_id.get(rec.get("group_id"))
                if group is None:
                    logger.warning(f"Skipping {op} record for unknown group at line {lineno}")
                elif op == "member":
                    if rec["member"] not in group.members:
                        group.members.append(rec["member"])
                elif op == "message":
                    group.history.append(ChatMessage(rec["sender"], rec["text"], rec["timestamp"]))
                else:
                    logger.warning(f"Skipping unknown record type {op!r} at line {lineno}")
        logger.info(f"Loaded {len(self.groups_by_id)} groups from {self.path}")

    def _write(self, rec: dict):
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=False) + "\n")
            f.flush()
            os.fsync(f.fileno())

    async def _persist(self, rec: dict, apply: Callable[[], None]):
        """Append one record to the log, then ``apply`` it to memory.

        The write runs in a worker thread. Cancelling the caller does not
        interrupt it: once started, the record is written and applied, so
        the log and the in-memory groups never disagree.

        Raises:
            PersistenceError: If the write fails; nothing is applied
        """
        await run_to_completion(self._commit(rec, apply))

    async def _commit(self, rec: dict, apply: Callable[[], None]):
        try:
            await asyncio.to_thread(self._write, rec)
        except OSError as e:
            logger.error(f"Failed to persist {rec.get('op')} record: {e}")
            raise PersistenceError(f"Storage write failed: {e}") from e
        apply()

    def _lock_for(self, group_id: str) -> asyncio.Lock:
        lock = self._locks.get(group_id)
        if lock is None:
            lock = self._locks[group_id] = asyncio.Lock()
        return lock

    async def create_group(self, name: str, purpose: str, creator: UserIdentity) -> str:
        """Create a new chat group with the creator as its only member.

        Args:
            name (str): Display name of the group
            purpose (str): What the group is about
            creator (UserIdentity): First member

        Returns:
            str: Id of the new group

        Raises:
            ValidationError: If name is blank
            PersistenceError: If the log cannot be written
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Group name must not be empty")

        group = Group(
            id=uuid.uuid4().hex[:12],
            name=name,
            purpose=(purpose or "").strip(),
            members=[creator.id],  # Creator is first member
            created_ts=int(time.time() * 1000),
        )
        await self._persist({
            "op": "create",
            "id": group.id,
            "name": group.name,
            "purpose": group.purpose,
            "members": list(group.members),
            "created_ts": group.created_ts,
        }, lambda: self.groups_by_id.update({group.id: group}))
        logger.info(f"New group created: {group.name} ({group.id}) by user {creator.id}")
        return group.id

    def get_group(self, group_id: str) -> Group:
        """Get a group by its id.

        Raises:
            NotFound: If no such group exists
        """
        group = self.groups_by_id.get(group_id)
        if group is None:
            raise NotFound(f"Group {group_id} does not exist")
        return group

    def exists(self, group_id: str) -> bool:
        return group_id in self.groups_by_id

    async def append_message(self, group_id: str, sender: str, text: str) -> ChatMessage:
        """Append a message to a group's history and persist it.

        The timestamp is assigned here and never goes backwards within a
        group, even if the wall clock does. Delivery is not this method's
        concern.

        Args:
            group_id (str): Target group
            sender (str): Id of the publishing user
            text (str): Message payload

        Returns:
            ChatMessage: The appended message

        Raises:
            NotFound: If the group does not exist
            PersistenceError: If the log cannot be written; history is
                left unchanged
        """
        group = self.get_group(group_id)
        async with self._lock_for(group_id):
            ts = int(time.time() * 1000)
            if group.history and ts < group.history[-1].timestamp:
                ts = group.history[-1].timestamp
            msg = ChatMessage(sender=sender, text=text, timestamp=ts)
            await self._persist({"op": "message", "group_id": group_id, **msg.to_record()},
                                lambda: group.history.append(msg))
        logger.debug(f"Appended message #{len(group.history)} to group {group_id} from {sender}")
        return msg

    async def add_member(self, group_id: str, member: UserIdentity) -> Group:
        """Add a member to an existing group.

        Idempotent: a user who is already a member leaves the group
        unchanged and nothing is written.

        Raises:
            NotFound: If the group does not exist
            PersistenceError: If the log cannot be written
        """
        await self.ensure_member(group_id, member)
        return self.get_group(group_id)

    async def ensure_member(self, group_id: str, member: UserIdentity) -> bool:
        """Same as ``add_member`` but reports whether the user was added.

        Returns:
            bool: True if user was added, False if already a member
        """
        group = self.get_group(group_id)
        async with self._lock_for(group_id):
            if member.id in group.members:
                logger.debug(f"User {member.id} already in group {group_id}")
                return False
            await self._persist({"op": "member", "group_id": group_id, "member": member.id},
                                lambda: group.members.append(member.id))
        logger.info(f"Added user {member.id} to group {group_id}")
        return True

    def search_groups(self, query: str) -> GroupSearch:
        """Case-insensitive substring search over group name and purpose.

        An empty query matches every group.
        """
        return GroupSearch(self, query)

    def recent_history(self, group_id: str, limit: int = 50) -> List[ChatMessage]:
        """Return the newest ``limit`` messages of a group, oldest first.

        A ``limit`` of zero or less returns the whole history.

        Raises:
            NotFound: If the group does not exist
        """
        history = self.get_group(group_id).history
        return list(history[-limit:]) if limit > 0 else list(history)

    def get_user_groups(self, user_id: str) -> List[Group]:
        """Get all groups that a user is a member of, in creation order."""
        return [group for group in self.groups_by_id.values() if user_id in group.members]
