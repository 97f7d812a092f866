# WhatsApp driver via an Evolution API (v2) gateway.
# Receive: webhook HTTP server (aiohttp) — Evolution POSTs events to our
#          endpoint (enable MESSAGES_UPSERT and CONNECTION_UPDATE).
# Send:    HTTP calls to the Evolution REST API.
#
# Config keys (under whatsapp):
#   api_url       – Evolution API base URL, e.g. "http://localhost:8080" (required)
#   api_key       – Evolution API key (required)
#   instance      – Evolution instance name (required)
#   webhook_host  – Interface to listen on (default "0.0.0.0")
#   webhook_port  – Port to listen on for incoming webhooks (default 8081)
#   webhook_path  – HTTP path for the webhook endpoint (default "/whatsapp/webhook")
#   media_dir     – Where downloaded media is written (default "<data>/media")
#   mark_read     – Send read receipts for incoming messages (default true)
#
# Conversation ids are the user part of the JID; groups carry the "-" marker
# ("-1203630xxxx" ↔ "1203630xxxx@g.us", "5511999999999" ↔ "5511999999999@s.whatsapp.net").

import asyncio
import base64
import binascii
import mimetypes
from pathlib import Path

import aiohttp
from aiohttp import web

import services.logger as log
import services.media as media
import services.util as u
from services.config_schema import CoercedBool, _DriverConfig
from services.markup import Dialect
from services.media import MediaFile
from services.message import MessageType, User
from drivers import BaseDriver, ChatInfo, ChatState
from drivers.registry import register


class WhatsAppConfig(_DriverConfig):
    api_url:      str
    api_key:      str
    instance:     str
    webhook_host: str         = "0.0.0.0"
    webhook_port: int         = 8081
    webhook_path: str         = "/whatsapp/webhook"
    media_dir:    str         = ""
    mark_read:    CoercedBool = True

l = log.get_logger()

_GROUP_SUFFIX = "@g.us"
_USER_SUFFIX = "@s.whatsapp.net"

_TEXT_KEYS = ("conversation", "extendedTextMessage")

_MEDIA_KINDS = {
    "imageMessage": MessageType.PHOTO,
    "documentMessage": MessageType.DOCUMENT,
    "documentWithCaptionMessage": MessageType.DOCUMENT,
    "videoMessage": MessageType.VIDEO,
    "stickerMessage": MessageType.STICKER,
}

_PRESENCE = {
    ChatState.TYPING: "composing",
    ChatState.RECORDING: "recording",
    ChatState.CLEAR: "paused",
}

_MEDIATYPE = {
    MessageType.PHOTO: "image",
    MessageType.VIDEO: "video",
    MessageType.ANIMATION: "video",
    MessageType.AUDIO: "audio",
    MessageType.DOCUMENT: "document",
}


def _user_part(jid: str | None) -> str:
    return (jid or "").split("@", 1)[0].split(":", 1)[0]


def _inner(native: dict) -> tuple[str | None, dict]:
    """Return ``(message_key, body)`` of the first content entry of *native*."""
    message = native.get("message") or {}
    for key, body in message.items():
        if key in _TEXT_KEYS or key in _MEDIA_KINDS or key == "audioMessage":
            if key == "documentWithCaptionMessage":
                body = ((body or {}).get("message") or {}).get("documentMessage") or {}
            return key, body if isinstance(body, dict) else {"text": body}
    return None, {}


def _context_info(native: dict) -> dict:
    _, body = _inner(native)
    return body.get("contextInfo") or native.get("contextInfo") or {}


@register("whatsapp", WhatsAppConfig)
class WhatsAppDriver(BaseDriver[WhatsAppConfig]):

    platform = "whatsapp"
    dialect = Dialect.WHATSAPP

    def __init__(self, config: WhatsAppConfig, bridge, store=None):
        super().__init__(config, bridge, store)
        self._session: aiohttp.ClientSession | None = None
        self._runner: web.AppRunner | None = None
        self._stop = asyncio.Event()
        self._ready = False
        self._fatal: Exception | None = None
        self._group_names: dict[str, str] = {}
        # Latest incoming message key per chat, used for "seen" receipts
        self._last_inbound: dict[str, dict] = {}
        self._media_dir = config.media_dir or str(Path(u.get_data_path()) / "media")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        self._session = aiohttp.ClientSession(headers={"apikey": self.config.api_key})

        app = web.Application()
        app.router.add_post(self.config.webhook_path, self._handle_webhook)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.webhook_host, self.config.webhook_port)
        await site.start()
        l.info(f"WhatsApp webhook listening on :{self.config.webhook_port}{self.config.webhook_path}")

        try:
            if await self._connection_state() == "open":
                await self._on_ready()
            else:
                l.info(f"WhatsApp instance '{self.config.instance}' not connected yet, waiting for pairing")
            await self._stop.wait()
            if self._fatal is not None:
                raise self._fatal
        finally:
            await self._runner.cleanup()
            await self._session.close()
            self._session = None

    async def stop(self):
        self._stop.set()

    async def _on_ready(self):
        if self._ready:
            return
        self._ready = True
        l.info("WhatsApp client is ready!")
        await self.bridge.on_platform_ready()

    async def get_me(self) -> User:
        data = await self._get("instance/fetchInstances", params={"instanceName": self.config.instance})
        item = data[0] if isinstance(data, list) and data else data or {}
        inst = item.get("instance", item)
        number = _user_part(inst.get("ownerJid") or inst.get("owner"))
        return User(
            id=number,
            first_name=inst.get("profileName") or number,
            last_name=None,
            username=number,
            is_bot=False,
        )

    async def set_presence(self, available: bool, status: str | None = None):
        if self._session is None:
            return
        await self._post(f"instance/setPresence/{self.config.instance}",
                         {"presence": "available" if available else "unavailable"})
        if status:
            await self._post(f"chat/updateProfileStatus/{self.config.instance}", {"status": status})

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.config.api_url.rstrip('/')}/{path}"

    async def _get(self, path: str, params: dict | None = None):
        if self._session is None:
            raise RuntimeError("WhatsApp session not started")
        async with self._session.get(self._url(path), params=params) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)

    async def _post(self, path: str, body: dict):
        if self._session is None:
            raise RuntimeError("WhatsApp session not started")
        async with self._session.post(self._url(path), json=body) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)

    async def _connection_state(self) -> str | None:
        try:
            data = await self._get(f"instance/connectionState/{self.config.instance}")
        except aiohttp.ClientError as e:
            l.warning(f"WhatsApp connection state unavailable: {e}")
            return None
        return (data.get("instance") or data).get("state")

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    async def _handle_webhook(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            l.warning("WhatsApp webhook: invalid JSON received")
            return web.Response(status=400)

        event = str(payload.get("event", "")).lower().replace("_", ".")
        data = payload.get("data") or {}

        if event == "connection.update":
            if data.get("state") == "open":
                try:
                    await self._on_ready()
                except Exception as e:
                    self._fatal = e
                    self._stop.set()
            return web.json_response({"ok": True})

        if event != "messages.upsert":
            return web.json_response({"ok": True})

        for native in data if isinstance(data, list) else [data]:
            key = native.get("key") or {}
            # Our own outgoing messages are echoed back as events
            if key.get("fromMe") or not key.get("id"):
                continue
            chat_jid = key.get("remoteJid", "")
            self._last_inbound[chat_jid] = key
            if self.store is not None:
                self.store.save(self.platform, chat_jid, key["id"], native)
            try:
                await self.bridge.on_platform_message(native)
            except Exception as e:
                l.error(f"WhatsApp message {key['id']} not forwarded: {e}")

        return web.json_response({"ok": True})

    def message_id(self, native) -> str:
        return str((native.get("key") or {}).get("id", ""))

    def timestamp(self, native) -> int:
        ts = native.get("messageTimestamp") or 0
        if isinstance(ts, dict):  # protobuf Long
            ts = ts.get("low", 0)
        try:
            return int(ts)
        except (TypeError, ValueError):
            return 0

    def classify(self, native) -> MessageType:
        key, body = _inner(native)
        if key in _TEXT_KEYS:
            return MessageType.TEXT
        if key == "audioMessage":
            return MessageType.VOICE if body.get("ptt") else MessageType.AUDIO
        return _MEDIA_KINDS.get(key, MessageType.UNSUPPORTED)

    def is_animated(self, native) -> bool:
        key, body = _inner(native)
        return key == "videoMessage" and bool(body.get("gifPlayback"))

    def text(self, native) -> str:
        message = native.get("message") or {}
        if isinstance(message.get("conversation"), str):
            return message["conversation"]
        return (message.get("extendedTextMessage") or {}).get("text", "")

    def caption(self, native) -> str | None:
        _, body = _inner(native)
        return body.get("caption")

    def mentions(self, native) -> list[str]:
        return [_user_part(jid) for jid in _context_info(native).get("mentionedJid") or []]

    async def get_chat(self, native) -> ChatInfo:
        jid = (native.get("key") or {}).get("remoteJid", "")
        if jid.endswith(_GROUP_SUFFIX):
            return ChatInfo(id=_user_part(jid), name=await self._group_name(jid), is_group=True)
        return ChatInfo(id=_user_part(jid), name=native.get("pushName") or _user_part(jid), is_group=False)

    async def _group_name(self, jid: str) -> str:
        if jid not in self._group_names:
            data = await self._get(f"group/findGroupInfos/{self.config.instance}", params={"groupJid": jid})
            self._group_names[jid] = (data or {}).get("subject") or _user_part(jid)
        return self._group_names[jid]

    async def get_sender(self, native) -> User:
        key = native.get("key") or {}
        jid = key.get("participant") or key.get("remoteJid", "")
        number = _user_part(jid)
        return User(
            id=number,
            first_name=native.get("pushName") or number,
            last_name=None,
            username=number,
            is_bot=False,
        )

    async def download_media(self, native) -> str | None:
        _, body = _inner(native)
        message = native.get("message") or {}
        if message.get("mediaUrl"):
            return message["mediaUrl"]

        encoded = message.get("base64")
        mime = body.get("mimetype", "")
        if not encoded:
            data = await self._post(
                f"chat/getBase64FromMediaMessage/{self.config.instance}",
                {"message": {"key": native.get("key")}, "convertToMp4": False},
            )
            encoded = data.get("base64")
            mime = data.get("mimetype") or mime
        if not encoded:
            return None
        try:
            raw = base64.b64decode(encoded)
        except (binascii.Error, ValueError) as e:
            l.error(f"WhatsApp media of {self.message_id(native)} is not valid base64: {e}")
            return None

        mime = mime.split(";", 1)[0].strip()
        name = body.get("fileName") or (self.message_id(native) + (mimetypes.guess_extension(mime) or ".bin"))
        return media.save_media(raw, name, self._media_dir)

    async def get_quoted(self, native):
        context = _context_info(native)
        quoted_id = context.get("stanzaId")
        if not quoted_id or not context.get("quotedMessage"):
            return None
        chat_jid = (native.get("key") or {}).get("remoteJid", "")
        if self.store is not None:
            stored = self.store.load(self.platform, chat_jid, quoted_id)
            if stored is not None:
                return stored
        return {
            "key": {"remoteJid": chat_jid, "id": quoted_id, "participant": context.get("participant")},
            "message": context["quotedMessage"],
            "messageTimestamp": 0,
        }

    async def mark_read(self, native):
        if not self.config.mark_read:
            return
        key = native.get("key") or {}
        await self._post(f"chat/markMessageAsRead/{self.config.instance}", {
            "readMessages": [{"remoteJid": key.get("remoteJid"), "fromMe": False, "id": key.get("id")}],
        })

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    def chat_locator(self, conversation_id, is_group: bool) -> str:
        cid = str(conversation_id)
        if is_group:
            return f"{cid.lstrip('-')}{_GROUP_SUFFIX}"
        return f"{cid}{_USER_SUFFIX}"

    def mention_target(self, user_id: str) -> str:
        return f"{user_id}{_USER_SUFFIX}"

    async def send_chat_state(self, chat, state: ChatState):
        if state is ChatState.SEEN:
            key = self._last_inbound.get(chat)
            if key is not None and self.config.mark_read:
                await self.mark_read({"key": key})
            return
        await self._post(f"chat/sendPresence/{self.config.instance}", {
            "number": chat,
            "presence": _PRESENCE[state],
            "delay": 1200,
        })

    def _quoted(self, chat: str, reply_to: str | None) -> dict | None:
        if not reply_to:
            return None
        quoted = {"key": {"id": reply_to}}
        if self.store is not None:
            stored = self.store.load(self.platform, chat, reply_to)
            if stored is not None:
                quoted = {"key": stored.get("key") or {"id": reply_to}, "message": stored.get("message")}
        return quoted

    async def send_text(self, chat, text, *, formatted=False, mentions=None, preview=False, reply_to=None):
        body = {"number": chat, "text": text, "linkPreview": preview}
        if mentions:
            body["mentioned"] = mentions
        quoted = self._quoted(chat, reply_to)
        if quoted is not None:
            body["quoted"] = quoted
        await self._post(f"message/sendText/{self.config.instance}", body)

    async def send_media(self, chat, kind, media, *, caption=None, formatted=False, reply_to=None):
        if isinstance(media, MediaFile):
            payload = base64.b64encode(media.data).decode()
            mime, filename = media.mime, media.filename
        else:
            payload, mime, filename = media, None, None

        body: dict = {"number": chat}
        quoted = self._quoted(chat, reply_to)
        if quoted is not None:
            body["quoted"] = quoted

        match kind:
            case MessageType.VOICE:
                body["audio"] = payload
                await self._post(f"message/sendWhatsAppAudio/{self.config.instance}", body)
            case MessageType.STICKER:
                body["sticker"] = payload
                await self._post(f"message/sendSticker/{self.config.instance}", body)
            case _:
                body.update({"mediatype": _MEDIATYPE.get(kind, "document"), "media": payload})
                if mime:
                    body["mimetype"] = mime
                if filename:
                    body["fileName"] = filename
                if caption:
                    body["caption"] = caption
                await self._post(f"message/sendMedia/{self.config.instance}", body)
