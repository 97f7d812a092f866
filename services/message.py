import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from services.error import PayloadError

# Group and channel conversations carry this prefix on their id so they never
# collide with a direct chat that shares the same numeric identifier.
GROUP_MARKER = "-"

# "@<digits>" in text references a user by platform id
MENTION_PATTERN = re.compile(r"@(\d+)")


class MessageType(str, Enum):
    TEXT = "text"
    PHOTO = "photo"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    ANIMATION = "animation"
    VOICE = "voice"
    STICKER = "sticker"
    UNSUPPORTED = "unsupported"

    @classmethod
    def parse(cls, value) -> "MessageType":
        try:
            return cls(value)
        except ValueError:
            return cls.UNSUPPORTED


MEDIA_TYPES = frozenset(t for t in MessageType if t not in (MessageType.TEXT, MessageType.UNSUPPORTED))


class EnvelopeType(str, Enum):
    INIT = "init"
    PING = "ping"
    MESSAGE = "message"


def group_conversation_id(raw_id) -> str | int:
    """Mark *raw_id* as a group conversation id (already-negative ids are kept)."""
    if isinstance(raw_id, int):
        return raw_id if raw_id < 0 else -raw_id
    raw = str(raw_id)
    return raw if raw.startswith(GROUP_MARKER) else f"{GROUP_MARKER}{raw}"


def is_group_id(conversation_id) -> bool:
    return str(conversation_id).startswith(GROUP_MARKER)


@dataclass(frozen=True)
class User:
    id: str
    first_name: str
    last_name: str | None = None
    username: str = ""
    is_bot: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "username": self.username,
            "isBot": self.is_bot,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "User":
        if not isinstance(data, dict) or "id" not in data:
            raise PayloadError(f"invalid user: {data!r}")
        return cls(
            id=str(data["id"]),
            first_name=data.get("firstName") or "",
            last_name=data.get("lastName"),
            username=data.get("username") or "",
            is_bot=bool(data.get("isBot", False)),
        )


@dataclass(frozen=True)
class Conversation:
    id: str | int
    title: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "title": self.title}

    @classmethod
    def from_dict(cls, data: dict) -> "Conversation":
        if not isinstance(data, dict) or "id" not in data:
            raise PayloadError(f"invalid conversation: {data!r}")
        if not isinstance(data["id"], (str, int)) or isinstance(data["id"], bool):
            raise PayloadError(f"invalid conversation id: {data['id']!r}")
        return cls(id=data["id"], title=data.get("title") or "")


@dataclass(frozen=True)
class Extra:
    """Per-message attribute bag.

    ``original`` holds the native platform message this one was converted
    from; it is used for reply threading on the same platform and is never
    put on the wire. Keys the bridge does not know about are kept in
    ``other`` so they survive a round trip.
    """
    mentions: list[str] | None = None
    caption: str | None = None
    format: str | None = None
    preview: bool | None = None
    original: Any = field(default=None, repr=False, compare=False)
    other: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = dict(self.other)
        if self.mentions is not None:
            data["mentions"] = list(self.mentions)
        if self.caption is not None:
            data["caption"] = self.caption
        if self.format is not None:
            data["format"] = self.format
        if self.preview is not None:
            data["preview"] = self.preview
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> "Extra":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise PayloadError(f"invalid extra: {data!r}")
        known = ("mentions", "caption", "format", "preview", "originalMessage")
        mentions = data.get("mentions")
        return cls(
            mentions=[str(m) for m in mentions] if isinstance(mentions, list) else None,
            caption=data.get("caption"),
            format=data.get("format"),
            preview=data.get("preview"),
            other={k: v for k, v in data.items() if k not in known},
        )


@dataclass(frozen=True)
class Message:
    id: str
    conversation: Conversation
    sender: User
    content: Any
    type: MessageType
    timestamp: int
    reply: "Message | None" = None
    extra: Extra = field(default_factory=Extra)

    def depth(self) -> int:
        """Number of messages quoted below this one."""
        depth, current = 0, self.reply
        while current is not None:
            depth += 1
            current = current.reply
        return depth

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation": self.conversation.to_dict(),
            "sender": self.sender.to_dict(),
            "content": self.content,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "reply": self.reply.to_dict() if self.reply is not None else None,
            "extra": self.extra.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        if not isinstance(data, dict):
            raise PayloadError(f"invalid message: {data!r}")
        try:
            conversation = Conversation.from_dict(data["conversation"])
            sender = data.get("sender")
            reply = data.get("reply")
            timestamp = data.get("timestamp", data.get("date")) or 0
            return cls(
                id=str(data.get("id", "")),
                conversation=conversation,
                sender=User.from_dict(sender) if sender is not None else User(id="", first_name=""),
                content=data.get("content"),
                type=MessageType.parse(data.get("type")),
                timestamp=int(timestamp),
                reply=cls.from_dict(reply) if reply else None,
                extra=Extra.from_dict(data.get("extra")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PayloadError(f"invalid message: {e}") from e


# ----------------------------------------------------------------------
# Wire envelopes
# ----------------------------------------------------------------------

def make_init(bot: str, platform: str, user: User, config: dict) -> dict:
    return {
        "bot": bot,
        "platform": platform,
        "type": EnvelopeType.INIT.value,
        "user": user.to_dict(),
        "config": config,
    }


def make_ping(bot: str | None, platform: str) -> dict:
    return {"bot": bot, "platform": platform, "type": EnvelopeType.PING.value}


def make_message(bot: str, platform: str, message: Message) -> dict:
    return {
        "bot": bot,
        "platform": platform,
        "type": EnvelopeType.MESSAGE.value,
        "message": message.to_dict(),
    }


def encode_envelope(envelope: dict) -> str:
    return json.dumps(envelope, ensure_ascii=False)


def decode_envelope(raw: str | bytes) -> dict:
    """Parse one websocket frame; raises ``PayloadError`` when it is not an envelope."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
        raise PayloadError(f"frame is not JSON: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise PayloadError("frame is not an envelope object with a 'type'")
    return data
