from __future__ import annotations

import asyncio
import json

import pytest

from drivers import BaseDriver, ChatInfo, ChatState
from services.config_schema import BridgeConfig, Settings
from services.markup import Dialect
from services.message import MessageType, User


def native_message(
    msg_id: str = "m1",
    *,
    text: str | None = "hello",
    kind: MessageType = MessageType.TEXT,
    chat_id: str = "123",
    chat_name: str = "Alice",
    group: bool = False,
    sender_id: str = "123",
    quoted: dict | None = None,
    mentions: list[str] | None = None,
    animated: bool = False,
    caption: str | None = None,
    timestamp: int = 1700000000,
) -> dict:
    return {
        "id": msg_id,
        "text": text,
        "type": kind,
        "chat": ChatInfo(id=chat_id, name=chat_name, is_group=group),
        "sender": User(id=sender_id, first_name="Alice", last_name="Smith", username="alice"),
        "quoted": quoted,
        "mentions": mentions or [],
        "animated": animated,
        "caption": caption,
        "ts": timestamp,
    }


class FakeDriver(BaseDriver):
    """In-memory driver recording every platform call."""

    platform = "fake"
    dialect = Dialect.WHATSAPP

    def __init__(self, config=None, bridge=None, store=None):
        super().__init__(config, bridge, store)
        self.calls: list[tuple] = []
        self.started = 0
        self.stopped = 0
        self.fail_send: Exception | None = None
        self.fail_mark_read = False
        self._stop = asyncio.Event()

    async def start(self):
        self.started += 1
        await self._stop.wait()

    async def stop(self):
        self.stopped += 1
        self._stop.set()

    async def get_me(self) -> User:
        return User(id="999", first_name="Polaris", username="polaris_bot", is_bot=True)

    async def set_presence(self, available, status=None):
        self.calls.append(("presence", available, status))

    def message_id(self, native):
        return native["id"]

    def timestamp(self, native):
        return native["ts"]

    def classify(self, native):
        return native["type"]

    def is_animated(self, native):
        return native["animated"]

    def text(self, native):
        return native["text"]

    def caption(self, native):
        return native["caption"]

    def mentions(self, native):
        return native["mentions"]

    async def get_chat(self, native):
        return native["chat"]

    async def get_sender(self, native):
        return native["sender"]

    async def download_media(self, native):
        self.calls.append(("download", native["id"]))
        return f"{native['id']}.bin"

    async def get_quoted(self, native):
        return native["quoted"]

    async def mark_read(self, native):
        self.calls.append(("read", native["id"]))
        if self.fail_mark_read:
            raise RuntimeError("read receipts disabled")

    def chat_locator(self, conversation_id, is_group):
        cid = str(conversation_id)
        return f"{cid.lstrip('-')}@g.us" if is_group else f"{cid}@c.us"

    def mention_target(self, user_id):
        return f"{user_id}@c.us"

    async def send_chat_state(self, chat, state: ChatState):
        self.calls.append(("state", chat, state))

    async def send_text(self, chat, text, *, formatted=False, mentions=None, preview=False, reply_to=None):
        self.calls.append(("text", chat, text, {
            "formatted": formatted, "mentions": mentions, "preview": preview, "reply_to": reply_to,
        }))
        if self.fail_send is not None:
            raise self.fail_send

    async def send_media(self, chat, kind, media, *, caption=None, formatted=False, reply_to=None):
        self.calls.append(("media", chat, kind, media, {"caption": caption, "reply_to": reply_to}))
        if self.fail_send is not None:
            raise self.fail_send

    def sends(self) -> list[tuple]:
        return [c for c in self.calls if c[0] in ("text", "media")]

    def states(self) -> list[ChatState]:
        return [c[2] for c in self.calls if c[0] == "state"]


class FakeWebSocket:
    """Stands in for a websockets client connection."""

    def __init__(self, frames=(), close_code: int | None = 1000):
        self.frames = list(frames)
        self.sent: list[str] = []
        self.close_code = close_code
        self.close_calls = 0

    async def send(self, data: str):
        self.sent.append(data)

    async def close(self):
        self.close_calls += 1

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for frame in self.frames:
            yield frame

    def envelopes(self) -> list[dict]:
        return [json.loads(s) for s in self.sent]


@pytest.fixture
def settings() -> Settings:
    return Settings(server="ws://backend.test/ws", platform="fake", config=BridgeConfig(prefix="/"))


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()
