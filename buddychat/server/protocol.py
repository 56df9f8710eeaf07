"""Stream event names and conversion between envelopes and protobuf.

Inside the server an event is a plain ``{"event": str, "data": ...}``
envelope; ``chat_pb2.Envelope`` is only used on the wire.
"""
from ..proto import chat_pb2

# Client -> server events
CONNECT = "connect"
JOIN_GROUP_EVENT = "join-group"
SEND_MESSAGE = "send-message"

# Server -> client events
CONNECTED = "connected"
JOINED_GROUP = "joined-group"
RECEIVE_MESSAGE = "receive-message"
ERROR = "error"


def envelope(event: str, data=None) -> dict:
    return {"event": event, "data": data}


def message_payload(group_id: str, msg, sender_name: str = "") -> dict:
    """Body of a ``receive-message`` event (also used for history entries)."""
    return {
        "groupId": group_id,
        "message": msg.text,
        "sender": msg.sender,
        "senderName": sender_name,
        "timestamp": msg.timestamp,
    }


def group_to_pb(group) -> chat_pb2.Group:
    return chat_pb2.Group(
        id=group.id,
        name=group.name,
        purpose=group.purpose,
        member_ids=list(group.members),
        created_ts=group.created_ts,
    )


def message_to_pb(payload: dict) -> chat_pb2.ChatMessage:
    return chat_pb2.ChatMessage(
        group_id=payload["groupId"],
        text=payload["message"],
        sender=payload["sender"],
        sender_name=payload["senderName"],
        sent_ts=payload["timestamp"],
    )


def event_from_pb(env: chat_pb2.Envelope):
    """Split an incoming envelope into ``(event, data)`` for the gateway."""
    kind = env.WhichOneof("payload")
    if kind == "connect":
        data = {"userId": env.connect.user_id}
    elif kind == "group_id":
        data = env.group_id
    elif kind == "send":
        data = {"groupId": env.send.group_id, "message": env.send.message}
    else:
        data = None
    return env.event, data


def envelope_to_pb(out: dict) -> chat_pb2.Envelope:
    """Encode an outgoing server event."""
    event, data = out["event"], out.get("data") or {}
    if event == CONNECTED:
        return chat_pb2.Envelope(event=event, connected=chat_pb2.Connected(
            session_id=data["sessionId"], user_id=data["userId"]))
    if event == JOINED_GROUP:
        return chat_pb2.Envelope(event=event, joined=chat_pb2.JoinedGroup(
            group_id=data["groupId"], name=data["name"],
            history=[message_to_pb(h) for h in data["history"]]))
    if event == RECEIVE_MESSAGE:
        return chat_pb2.Envelope(event=event, message=message_to_pb(data))
    if event == ERROR:
        return chat_pb2.Envelope(event=event, error=chat_pb2.ErrorEvent(
            event=data.get("event") or "",
            group_id=str(data.get("groupId") or ""),
            code=data.get("code") or "",
            detail=data.get("detail") or ""))
    return chat_pb2.Envelope(event=event)
