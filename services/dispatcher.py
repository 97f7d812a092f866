from typing import TYPE_CHECKING

import services.logger as log
from drivers import ChatState
from services.markup import translate
from services.media import MediaResolver
from services.message import MEDIA_TYPES, MENTION_PATTERN, Message, MessageType, is_group_id

if TYPE_CHECKING:
    from drivers import BaseDriver

l = log.get_logger()


def find_mentions(text: str) -> list[str]:
    """User ids referenced in *text*, in order of appearance."""
    return MENTION_PATTERN.findall(text or "")


def _pre_states(kind: MessageType) -> list[ChatState]:
    if kind in (MessageType.AUDIO, MessageType.VOICE):
        return [ChatState.RECORDING]
    return [ChatState.TYPING, ChatState.SEEN]


class OutboundDispatcher:
    """Renders canonical messages from the backend as platform send calls.

    Content that cannot be sent (empty text, unresolvable media, unsupported
    kinds) is dropped quietly.  Errors raised by the driver while sending
    propagate after the chat state has been cleared.
    """

    def __init__(self, driver: "BaseDriver", media: MediaResolver | None = None):
        self.driver = driver
        self.media = media or MediaResolver()

    async def dispatch(self, message: Message):
        conversation_id = message.conversation.id
        chat = self.driver.chat_locator(conversation_id, is_group_id(conversation_id))

        for state in _pre_states(message.type):
            await self._signal(chat, state)
        try:
            await self._send(chat, message)
        finally:
            await self._signal(chat, ChatState.CLEAR)

    async def _signal(self, chat, state: ChatState):
        try:
            await self.driver.send_chat_state(chat, state)
        except Exception as e:
            l.debug(f"chat state {state.value} for {chat} failed: {e}")

    async def _send(self, chat, message: Message):
        match message.type:
            case MessageType.TEXT:
                await self._send_text(chat, message)
            case _ if message.type in MEDIA_TYPES:
                await self._send_media(chat, message)
            case MessageType.UNSUPPORTED:
                l.debug(f"Not sending message {message.id}: type unsupported")
            case _:
                raise ValueError(f"unhandled message type {message.type!r}")

    def _reply_to(self, message: Message) -> str | None:
        return str(message.reply.id) if message.reply is not None else None

    async def _send_text(self, chat, message: Message):
        content = message.content
        if not isinstance(content, str) or not content.strip():
            l.debug(f"Dropping empty text message {message.id}")
            return

        text, formatted = translate(content, message.extra.format, self.driver.dialect)
        text = text.strip()
        if not text:
            return

        mentions = [self.driver.mention_target(uid) for uid in find_mentions(text)]
        await self.driver.send_text(
            chat,
            text,
            formatted=formatted,
            mentions=mentions,
            preview=bool(message.extra.preview),
            reply_to=self._reply_to(message),
        )

    async def _send_media(self, chat, message: Message):
        media = await self.media.resolve(message.content)
        if media is None:
            l.warning(f"Dropping {message.type.value} message {message.id}: cannot resolve media content")
            return

        caption, formatted = None, False
        if message.extra.caption:
            caption, formatted = translate(message.extra.caption, message.extra.format, self.driver.dialect)
            caption = caption.strip() or None

        await self.driver.send_media(
            chat,
            message.type,
            media,
            caption=caption,
            formatted=formatted,
            reply_to=self._reply_to(message),
        )
