from dataclasses import dataclass, field
from typing import List

@dataclass(frozen=True)
class UserIdentity:
    """An authenticated user, as resolved by the identity directory.

    Attributes:
        id (str): Durable unique identifier for the user
        display_name (str): User's chosen display name
    """
    id: str
    display_name: str

@dataclass(frozen=True)
class ChatMessage:
    """A single entry of a group's chat history.

    Messages are immutable once accepted: history only ever grows.

    Attributes:
        sender (str): UserIdentity id of the member who published it
        text (str): Message payload
        timestamp (int): Server-assigned Unix timestamp in milliseconds
    """
    sender: str
    text: str
    timestamp: int

    def to_record(self) -> dict:
        return {"sender": self.sender, "text": self.text, "timestamp": self.timestamp}

@dataclass
class Group:
    """Represents a chat group in the system.

    Attributes:
        id (str): Opaque unique identifier, never changes
        name (str): Display name
        purpose (str): What the group is about
        members (List[str]): UserIdentity ids, each present at most once,
            in join order
        history (List[ChatMessage]): Append-only chat history, oldest first
        created_ts (int): Unix timestamp in milliseconds when group was created
    """
    id: str
    name: str
    purpose: str
    members: List[str] = field(default_factory=list)
    history: List[ChatMessage] = field(default_factory=list)
    created_ts: int = 0

    def has_member(self, user_id: str) -> bool:
        return user_id in self.members


class ChatError(Exception):
    """Base class for errors surfaced by the store, membership and gateway."""
    code = "error"

class NotFound(ChatError):
    """Referenced group (or user) does not exist."""
    code = "not_found"

class PersistenceError(ChatError):
    """Storage unavailable or write failed."""
    code = "persistence"

class ValidationError(ChatError):
    """Malformed payload, e.g. a missing groupId or message text."""
    code = "invalid"

class AuthorizationError(ChatError):
    """Caller is not a member of the group it addressed."""
    code = "forbidden"
