import asyncio
import errno
import re
from enum import Enum

import websockets
import websockets.exceptions

import services.logger as log
from services.config_schema import Settings
from services.converter import InboundConverter
from services.db import MessageStore
from services.dispatcher import OutboundDispatcher
from services.error import PayloadError, TransportError, catch_and_log, raise_and_log
from services.media import MediaResolver
from services.message import (
    EnvelopeType,
    Message,
    User,
    decode_envelope,
    encode_envelope,
    make_init,
    make_message,
    make_ping,
)

l = log.get_logger()

# "Multiple exceptions: [Errno 111] ..., [Errno 111] ..." from dual-stack hosts
_ERRNO_PATTERN = re.compile(r"\[Errno (\d+)\]")

# Seconds to wait for the platform session to wind down after stop()
_DRIVER_STOP_TIMEOUT = 10


def _is_refused(e: OSError) -> bool:
    """True when every address the server resolved to refused the connection."""
    if isinstance(e, ConnectionRefusedError) or e.errno == errno.ECONNREFUSED:
        return True
    codes = _ERRNO_PATTERN.findall(str(e))
    return bool(codes) and all(int(c) == errno.ECONNREFUSED for c in codes)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class Bridge:
    """
    Pairs one platform session with one backend websocket.

    Created once at startup and handed to the driver, which calls
    ``on_platform_ready`` and ``on_platform_message``.  Frames from the
    backend are handled one at a time, so a dispatch completes before the
    next frame is read.  Any closure of the websocket ends the bridge;
    restarting is left to the process supervisor.
    """

    def __init__(
        self,
        settings: Settings,
        driver_cls: type,
        driver_config,
        store: MessageStore | None = None,
        media: MediaResolver | None = None,
    ):
        self.settings = settings
        self.platform = settings.platform
        self.state = ConnectionState.DISCONNECTED
        self.user: User | None = None
        self.ws = None

        self.driver = driver_cls(driver_config, self, store)
        self.converter = InboundConverter(self.driver, settings.max_reply_depth)
        self.dispatcher = OutboundDispatcher(self.driver, media)
        self.store = store

        self.stopped = asyncio.Event()
        self._heartbeat: asyncio.Task | None = None
        self._driver_task: asyncio.Task | None = None
        self._shutdown_task: asyncio.Task | None = None
        self._shutting_down = False

    @property
    def bot(self) -> str | None:
        return self.user.username if self.user else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self):
        """Connect, serve until the transport closes, then tear down.

        Raises ``TransportError`` when the backend cannot be reached for a
        reason other than a refused connection.
        """
        if not await self._connect():
            return

        self._start_heartbeat()
        self._driver_task = asyncio.create_task(self._run_driver(), name=f"driver/{self.platform}")
        try:
            await self._listen()
        finally:
            await self.shutdown()
            await self._wait_driver()

    async def _connect(self) -> bool:
        while not self._shutting_down:
            self.state = ConnectionState.CONNECTING
            l.debug(f"Connecting to {self.settings.server}")
            try:
                self.ws = await websockets.connect(self.settings.server)
            except OSError as e:
                self.state = ConnectionState.DISCONNECTED
                if not _is_refused(e):
                    raise_and_log(f"Connection to {self.settings.server} failed: {e}", TransportError)
                l.info("Waiting for server to be available...")
                await asyncio.sleep(self.settings.retry_interval)
                continue
            except (websockets.exceptions.InvalidURI, websockets.exceptions.InvalidHandshake) as e:
                self.state = ConnectionState.DISCONNECTED
                raise_and_log(f"Connection to {self.settings.server} failed: {e}", TransportError)
            self.state = ConnectionState.OPEN
            l.info(f"Connected to {self.settings.server}")
            return True
        return False

    async def _listen(self):
        try:
            async for raw in self.ws:
                await self.handle_frame(raw)
        except websockets.exceptions.ConnectionClosed:
            pass
        except OSError as e:
            l.error(f"Websocket transport error: {e}")
        await self._on_close(self.ws.close_code)

    async def _on_close(self, code: int | None):
        if code == 1005:
            l.warning("Disconnected")
        elif code == 1006:
            l.warning("Terminated")
        else:
            l.info(f"Connection closed (code {code})")
        await self.shutdown(f"websocket closed ({code})")

    async def _run_driver(self):
        try:
            await self.driver.start()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            l.critical(f"Platform session '{self.platform}' failed: {e}")
            await self.shutdown("platform session failed")
            return
        if not self._shutting_down:
            l.warning(f"Platform session '{self.platform}' ended")
            await self.shutdown("platform session ended")

    async def _wait_driver(self):
        task = self._driver_task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), _DRIVER_STOP_TIMEOUT)
        except asyncio.TimeoutError:
            l.warning("Platform session did not stop in time, cancelling")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def close(self, reason: str = "shutdown requested"):
        """Schedule ``shutdown`` from synchronous code such as signal handlers."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self.shutdown(reason))

    async def shutdown(self, reason: str = ""):
        """Tear the bridge down; only the first call has any effect."""
        if self._shutting_down:
            return
        self._shutting_down = True
        self.state = ConnectionState.CLOSING
        l.warning("Close server" + (f": {reason}" if reason else ""))

        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

        try:
            await self.driver.set_presence(False, "Offline")
        except Exception as e:
            l.debug(f"Releasing presence failed: {e}")
        try:
            await self.driver.stop()
        except Exception as e:
            l.error(f"Stopping platform session failed: {e}")

        if self.ws is not None:
            try:
                await self.ws.close()
            except (websockets.exceptions.WebSocketException, OSError) as e:
                l.debug(f"Closing websocket failed: {e}")

        self.state = ConnectionState.DISCONNECTED
        self.stopped.set()

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _start_heartbeat(self):
        if self._heartbeat is None:
            self._heartbeat = asyncio.create_task(self._heartbeat_loop(), name="heartbeat")

    async def _heartbeat_loop(self):
        while self.state is ConnectionState.OPEN:
            await asyncio.sleep(self.settings.ping_interval)
            await self.ping()

    async def ping(self):
        l.debug("ping")
        await self.send(make_ping(self.bot, self.platform))

    # ------------------------------------------------------------------
    # Backend side
    # ------------------------------------------------------------------

    async def send(self, envelope: dict):
        if self.ws is None or self.state is not ConnectionState.OPEN:
            l.warning(f"Not connected, {envelope.get('type')} envelope dropped")
            return
        try:
            await self.ws.send(encode_envelope(envelope))
        except websockets.exceptions.ConnectionClosed as e:
            l.warning(f"Send failed, connection closed: {e}")

    async def handle_frame(self, raw):
        """Handle one frame from the backend; only ``message`` envelopes are dispatched."""
        try:
            envelope = decode_envelope(raw)
        except PayloadError as e:
            l.warning(f"Ignoring malformed frame: {e}")
            return

        if envelope["type"] != EnvelopeType.MESSAGE.value:
            l.debug(f"Ignoring '{envelope['type']}' envelope")
            return

        try:
            message = Message.from_dict(envelope.get("message"))
        except PayloadError as e:
            l.warning(f"Ignoring message envelope: {e}")
            return

        l.info(f"Dispatching {message.type.value} message to {message.conversation.id}")
        try:
            await self.dispatcher.dispatch(message)
        except Exception as e:
            l.error(f"Failed to dispatch message {message.id} to {message.conversation.id}: {e}")

    # ------------------------------------------------------------------
    # Platform side
    # ------------------------------------------------------------------

    async def on_platform_ready(self):
        """Announce the bot to the backend once the platform session is usable."""
        self.user = await self.driver.get_me()
        prefix = self.settings.config.prefix
        await self.driver.set_presence(True, f"{prefix}help")
        await self.send(make_init(self.user.username, self.platform, self.user, self.settings.config.model_dump()))
        l.info(f"Connected as @{self.user.username}")
        if self.store is not None:
            self.store.prune()

    async def on_platform_message(self, native):
        """Convert one platform message and forward it; SDK errors propagate."""
        with catch_and_log(f"{self.platform} inbound message"):
            message = await self.converter.convert(native)
        l.debug(f"Forwarding {message.type.value} message {message.id} from {message.conversation.id}")
        await self.send(make_message(self.bot, self.platform, message))
