from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from pydantic import BaseModel

from services.markup import Dialect
from services.message import MessageType, User

if TYPE_CHECKING:
    from services.bridge import Bridge
    from services.db import MessageStore
    from services.media import MediaFile

T = TypeVar("T", bound=BaseModel)


class ChatState(str, Enum):
    """Advisory chat-state signals; drivers map them to whatever the platform has."""
    TYPING = "typing"
    RECORDING = "recording"
    SEEN = "seen"
    CLEAR = "clear"


@dataclass(frozen=True)
class ChatInfo:
    id: str
    name: str
    is_group: bool


class BaseDriver(ABC, Generic[T]):
    """Abstract adapter around one platform SDK session.

    The bridge, the inbound converter and the outbound dispatcher only talk
    to the platform through these methods, so everything above this layer is
    platform-agnostic.  ``native`` arguments are the SDK's own message
    objects and are opaque to callers.
    """

    platform: str = ""
    dialect: Dialect = Dialect.HTML

    def __init__(self, config: T, bridge: "Bridge", store: "MessageStore | None" = None):
        self.config: T = config
        self.bridge = bridge
        self.store = store

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    async def start(self):
        """Open the platform session and run until ``stop()`` is called.

        Must call ``bridge.on_platform_ready()`` once the session is usable and
        ``bridge.on_platform_message(native)`` for every incoming message."""

    @abstractmethod
    async def stop(self):
        """End the platform session; safe to call more than once."""

    @abstractmethod
    async def get_me(self) -> User:
        """Identity of the account this session is logged in as."""

    async def set_presence(self, available: bool, status: str | None = None):
        """Publish online/offline presence and a status line, where supported."""

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    @abstractmethod
    def message_id(self, native) -> str: ...

    @abstractmethod
    def timestamp(self, native) -> int: ...

    @abstractmethod
    def classify(self, native) -> MessageType: ...

    def is_animated(self, native) -> bool:
        return False

    @abstractmethod
    def text(self, native) -> str: ...

    def caption(self, native) -> str | None:
        return None

    def mentions(self, native) -> list[str]:
        return []

    @abstractmethod
    async def get_chat(self, native) -> ChatInfo: ...

    @abstractmethod
    async def get_sender(self, native) -> User: ...

    @abstractmethod
    async def download_media(self, native) -> str | None:
        """Fetch the media of *native* and return a filename, path or URL."""

    @abstractmethod
    async def get_quoted(self, native) -> Any | None:
        """The native message *native* quotes, if any."""

    async def mark_read(self, native):
        """Mark the chat of *native* as read, where supported."""

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    @abstractmethod
    def chat_locator(self, conversation_id, is_group: bool) -> Any:
        """Platform address for a canonical conversation id."""

    @abstractmethod
    def mention_target(self, user_id: str) -> str: ...

    async def send_chat_state(self, chat, state: ChatState):
        """Show a chat-state indicator, where supported."""

    @abstractmethod
    async def send_text(
        self,
        chat,
        text: str,
        *,
        formatted: bool = False,
        mentions: list[str] | None = None,
        preview: bool = False,
        reply_to: str | None = None,
    ): ...

    @abstractmethod
    async def send_media(
        self,
        chat,
        kind: MessageType,
        media: "MediaFile | str",
        *,
        caption: str | None = None,
        formatted: bool = False,
        reply_to: str | None = None,
    ): ...
