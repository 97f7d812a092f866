from typing import TYPE_CHECKING, Any

import services.logger as log
from services.message import (
    Conversation,
    Extra,
    Message,
    MEDIA_TYPES,
    MessageType,
    group_conversation_id,
)

if TYPE_CHECKING:
    from drivers import BaseDriver

l = log.get_logger()

DEFAULT_MAX_REPLY_DEPTH = 8


class InboundConverter:
    """Turns native platform messages into canonical ``Message`` objects.

    Quoted messages are converted recursively into ``Message.reply``.  The
    walk stops at ``max_reply_depth`` levels or when a message id repeats,
    returning the chain built so far.  Errors raised by the driver (the
    platform SDK) propagate to the caller.
    """

    def __init__(self, driver: "BaseDriver", max_reply_depth: int = DEFAULT_MAX_REPLY_DEPTH):
        self.driver = driver
        self.max_reply_depth = max_reply_depth

    async def convert(self, native) -> Message:
        message = await self._convert(native, depth=0, seen=set())
        try:
            await self.driver.mark_read(native)
        except Exception as e:
            l.debug(f"mark_read failed for {message.id}: {e}")
        return message

    async def _convert(self, native, depth: int, seen: set[str]) -> Message:
        msg_id = self.driver.message_id(native)
        seen.add(msg_id)

        sender = await self.driver.get_sender(native)
        conversation = await self._conversation(native, sender)

        kind = self.driver.classify(native)
        if kind is MessageType.VIDEO and self.driver.is_animated(native):
            kind = MessageType.ANIMATION
        content, extra = await self._content(kind, native)

        reply = None
        quoted = await self.driver.get_quoted(native)
        if quoted is not None:
            quoted_id = self.driver.message_id(quoted)
            if quoted_id in seen:
                l.warning(f"Quote cycle at message {quoted_id}, chain cut at depth {depth}")
            elif depth >= self.max_reply_depth:
                l.warning(f"Quote chain of {msg_id} exceeds {self.max_reply_depth} levels, truncated")
            else:
                reply = await self._convert(quoted, depth + 1, seen)

        return Message(
            id=msg_id,
            conversation=conversation,
            sender=sender,
            content=content,
            type=kind,
            timestamp=self.driver.timestamp(native),
            reply=reply,
            extra=extra,
        )

    async def _conversation(self, native, sender) -> Conversation:
        chat = await self.driver.get_chat(native)
        if chat.is_group:
            return Conversation(group_conversation_id(chat.id), chat.name)
        title = " ".join(p for p in (sender.first_name, sender.last_name) if p) or chat.name
        return Conversation(chat.id, title)

    async def _content(self, kind: MessageType, native) -> tuple[Any, Extra]:
        match kind:
            case MessageType.TEXT:
                return self._text(native)
            case _ if kind in MEDIA_TYPES:
                return await self._media(native)
            case MessageType.UNSUPPORTED:
                return None, Extra(original=native)
            case _:
                raise ValueError(f"unhandled message type {kind!r}")

    def _text(self, native) -> tuple[str, Extra]:
        mentions = self.driver.mentions(native)
        return self.driver.text(native), Extra(mentions=mentions or None, original=native)

    async def _media(self, native) -> tuple[str | None, Extra]:
        content = await self.driver.download_media(native)
        return content, Extra(caption=self.driver.caption(native) or None, original=native)
