from dataclasses import dataclass
from typing import List
from .models import UserIdentity, Group, NotFound
from .repo import GroupStore
from ..utils.logger import setup_logger

logger = setup_logger('buddychat.membership')

@dataclass
class JoinResult:
    """Outcome of a join: the group as it now stands and whether it changed."""
    group: Group
    added: bool


class MembershipService:
    """Validates and mutates group membership on top of the GroupStore."""

    def __init__(self, store: GroupStore):
        self.store = store

    async def join(self, group_id: str, user: UserIdentity) -> JoinResult:
        """Make ``user`` a member of ``group_id``.

        Joining a group one already belongs to is a no-op, never an
        error, so a retried request cannot duplicate membership.

        Raises:
            NotFound: If the group does not exist
            PersistenceError: If the membership cannot be stored
        """
        added = await self.store.ensure_member(group_id, user)
        if not added:
            logger.debug(f"join: user {user.id} already member of {group_id}")
        return JoinResult(group=self.store.get_group(group_id), added=added)

    def is_member(self, group_id: str, user: UserIdentity) -> bool:
        """True if ``user`` belongs to the group; False for unknown groups."""
        try:
            return self.store.get_group(group_id).has_member(user.id)
        except NotFound:
            return False

    def members_of(self, group_id: str) -> List[str]:
        return list(self.store.get_group(group_id).members)

    def groups_of(self, user: UserIdentity) -> List[Group]:
        return self.store.get_user_groups(user.id)
