# Telegram driver via python-telegram-bot (v21+).
# Uses long-polling to receive messages and the bot API to send.
#
# Config keys (under telegram):
#   bot_token     – Telegram bot token from @BotFather (required)
#
# Conversation ids are Telegram chat ids; group and channel ids are already
# negative on Telegram, which is the bridge's group marker.

import asyncio
import html
import io

from telegram import LinkPreviewOptions, ReplyParameters, Update
from telegram import Message as TgMessage
from telegram.constants import ChatAction, ChatType, MessageEntityType, ParseMode
from telegram.ext import Application, ContextTypes, MessageHandler, filters

import services.logger as log
from services.config_schema import _DriverConfig
from services.markup import Dialect
from services.media import MediaFile
from services.message import MENTION_PATTERN, MessageType, User
from drivers import BaseDriver, ChatInfo, ChatState
from drivers.registry import register


class TelegramConfig(_DriverConfig):
    bot_token: str

l = log.get_logger()

_CHAT_ACTIONS = {
    ChatState.TYPING: ChatAction.TYPING,
    ChatState.RECORDING: ChatAction.RECORD_VOICE,
}


@register("telegram", TelegramConfig)
class TelegramDriver(BaseDriver[TelegramConfig]):

    platform = "telegram"
    dialect = Dialect.HTML

    def __init__(self, config: TelegramConfig, bridge, store=None):
        super().__init__(config, bridge, store)
        self._app: Application | None = None
        self._stop = asyncio.Event()

    @property
    def bot(self):
        if self._app is None:
            raise RuntimeError("Telegram session not started")
        return self._app.bot

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        self._app = Application.builder().token(self.config.bot_token).build()
        self._app.add_handler(MessageHandler(
            filters.UpdateType.MESSAGE | filters.UpdateType.CHANNEL_POST, self._on_message
        ))

        # async-with handles initialize() / shutdown() automatically
        async with self._app:
            await self._app.start()
            await self._app.updater.start_polling(allowed_updates=Update.ALL_TYPES)
            l.info("Telegram polling started")
            try:
                await self.bridge.on_platform_ready()
                await self._stop.wait()
            finally:
                await self._app.updater.stop()
                await self._app.stop()

    async def stop(self):
        self._stop.set()

    async def get_me(self) -> User:
        me = await self.bot.get_me()
        return User(
            id=str(me.id),
            first_name=me.first_name,
            last_name=me.last_name,
            username=me.username or str(me.id),
            is_bot=True,
        )

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        msg = update.effective_message
        if msg is None:
            return
        if self.store is not None:
            self.store.save(self.platform, str(msg.chat_id), str(msg.message_id), msg.to_dict())
        await self.bridge.on_platform_message(msg)

    def message_id(self, native) -> str:
        return str(native.message_id)

    def timestamp(self, native) -> int:
        return int(native.date.timestamp())

    def classify(self, native) -> MessageType:
        if native.text is not None:
            return MessageType.TEXT
        # Animations also carry a document, so they are checked first
        if native.animation is not None:
            return MessageType.VIDEO
        if native.photo:
            return MessageType.PHOTO
        if native.sticker is not None:
            return MessageType.STICKER
        if native.voice is not None:
            return MessageType.VOICE
        if native.audio is not None:
            return MessageType.AUDIO
        if native.video is not None or native.video_note is not None:
            return MessageType.VIDEO
        if native.document is not None:
            return MessageType.DOCUMENT
        return MessageType.UNSUPPORTED

    def is_animated(self, native) -> bool:
        return native.animation is not None

    def text(self, native) -> str:
        return native.text or ""

    def caption(self, native) -> str | None:
        return native.caption

    def mentions(self, native) -> list[str]:
        """User ids mentioned in *native*.

        The Bot API only attaches a user to ``text_mention`` entities.  An
        ``@username`` mention is resolved against the users this update
        carries (sender, quoted sender, new members); when none matches, the
        bare username is recorded instead of an id.
        """
        known = {}
        quoted = native.reply_to_message
        for user in [native.from_user, quoted.from_user if quoted else None, *(native.new_chat_members or ())]:
            if user is not None and user.username:
                known[user.username.lower()] = str(user.id)

        found = []
        entities = native.parse_entities([MessageEntityType.MENTION, MessageEntityType.TEXT_MENTION])
        for entity, value in entities.items():
            if entity.type == MessageEntityType.TEXT_MENTION and entity.user is not None:
                found.append(str(entity.user.id))
            else:
                username = value.lstrip("@")
                found.append(known.get(username.lower(), username))
        return found

    async def get_chat(self, native) -> ChatInfo:
        chat = native.chat
        is_group = chat.type != ChatType.PRIVATE
        name = chat.title if is_group else chat.full_name
        return ChatInfo(id=str(chat.id), name=name or str(chat.id), is_group=is_group)

    async def get_sender(self, native) -> User:
        user = native.from_user
        if user is None:
            # Channel posts and anonymous admins speak as a chat
            chat = native.sender_chat or native.chat
            return User(
                id=str(chat.id),
                first_name=chat.title or chat.full_name or str(chat.id),
                username=chat.username or str(chat.id),
            )
        return User(
            id=str(user.id),
            first_name=user.first_name,
            last_name=user.last_name,
            username=user.username or str(user.id),
            is_bot=user.is_bot,
        )

    async def download_media(self, native) -> str | None:
        attachment = self._attachment(native)
        if attachment is None:
            return None
        f = await attachment.get_file()
        return f.file_path

    @staticmethod
    def _attachment(native):
        if native.photo:
            return max(native.photo, key=lambda p: p.file_size or 0)
        for name in ("animation", "sticker", "voice", "audio", "video", "video_note", "document"):
            attachment = getattr(native, name, None)
            if attachment is not None:
                return attachment
        return None

    async def get_quoted(self, native):
        quoted = native.reply_to_message
        if quoted is None:
            return None
        # The Bot API embeds only one level; the stored copy knows what it quoted
        if quoted.reply_to_message is None and self.store is not None:
            stored = self.store.load(self.platform, str(quoted.chat_id), str(quoted.message_id))
            if stored is not None:
                return TgMessage.de_json(stored, self._app.bot if self._app else None)
        return quoted

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    def chat_locator(self, conversation_id, is_group: bool):
        try:
            return int(conversation_id)
        except (TypeError, ValueError):
            # "@channelusername"
            return str(conversation_id)

    def mention_target(self, user_id: str) -> str:
        return f"tg://user?id={user_id}"

    async def send_chat_state(self, chat, state: ChatState):
        action = _CHAT_ACTIONS.get(state)
        if action is not None:
            await self.bot.send_chat_action(chat_id=chat, action=action)

    @staticmethod
    def _reply_parameters(reply_to: str | None) -> ReplyParameters | None:
        if reply_to and str(reply_to).isdigit():
            return ReplyParameters(message_id=int(reply_to), allow_sending_without_reply=True)
        return None

    async def send_text(self, chat, text, *, formatted=False, mentions=None, preview=False, reply_to=None):
        parse_mode = ParseMode.HTML if formatted else None
        if mentions:
            if not formatted:
                text = html.escape(text, quote=False)
                parse_mode = ParseMode.HTML
            targets = iter(mentions)
            text = MENTION_PATTERN.sub(
                lambda m: f'<a href="{next(targets, self.mention_target(m.group(1)))}">{m.group(0)}</a>', text
            )

        await self.bot.send_message(
            chat_id=chat,
            text=text,
            parse_mode=parse_mode,
            link_preview_options=LinkPreviewOptions(is_disabled=not preview),
            reply_parameters=self._reply_parameters(reply_to),
        )

    async def send_media(self, chat, kind, media, *, caption=None, formatted=False, reply_to=None):
        if isinstance(media, MediaFile):
            payload = io.BytesIO(media.data)
            payload.name = media.filename
        else:
            payload = media  # file_id or URL, Telegram resolves it

        common = {"chat_id": chat, "reply_parameters": self._reply_parameters(reply_to)}
        if kind is MessageType.STICKER:
            await self.bot.send_sticker(sticker=payload, **common)
            return

        common["caption"] = caption
        common["parse_mode"] = ParseMode.HTML if formatted and caption else None
        match kind:
            case MessageType.PHOTO:
                await self.bot.send_photo(photo=payload, **common)
            case MessageType.ANIMATION:
                await self.bot.send_animation(animation=payload, **common)
            case MessageType.VIDEO:
                await self.bot.send_video(video=payload, **common)
            case MessageType.VOICE:
                await self.bot.send_voice(voice=payload, **common)
            case MessageType.AUDIO:
                await self.bot.send_audio(audio=payload, **common)
            case _:
                await self.bot.send_document(document=payload, **common)
