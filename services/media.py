# Media resolution shared by the outbound dispatcher and the drivers.
#
# Outbound ``content`` for a media message is one of:
#   - a local file path          → read from disk
#   - an http(s):// URL          → downloaded (size-capped)
#   - anything else              → an opaque platform reference (e.g. a
#                                  Telegram file_id) passed through untouched

import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import aiohttp

import services.logger as log

l = log.get_logger()

_DEFAULT_MAX = 50 * 1024 * 1024  # 50 MB

_session: aiohttp.ClientSession | None = None


@dataclass(frozen=True)
class MediaFile:
    """Media bytes ready to be uploaded to a platform."""
    data: bytes
    filename: str
    mime: str = "application/octet-stream"


def _get_session() -> aiohttp.ClientSession:
    global _session
    if _session is None or _session.closed:
        _session = aiohttp.ClientSession()
    return _session


async def close_session():
    global _session
    if _session is not None and not _session.closed:
        await _session.close()
    _session = None


async def fetch(url: str, max_bytes: int = _DEFAULT_MAX) -> tuple[bytes, str] | None:
    """
    Download *url* up to *max_bytes*.

    Returns ``(data, content_type)`` on success, or ``None`` if the file is
    oversized, the URL is empty, or the download fails.
    """
    if not url:
        return None

    session = _get_session()

    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=60)) as resp:
            resp.raise_for_status()
            cl = resp.headers.get("Content-Length")
            if cl and cl.isdigit() and int(cl) > max_bytes:
                l.debug(f"media.fetch: skipping {url!r} — Content-Length {cl} > {max_bytes}")
                return None
            chunks: list[bytes] = []
            total = 0
            async for chunk in resp.content.iter_chunked(65536):
                total += len(chunk)
                if total > max_bytes:
                    l.debug(f"media.fetch: {url!r} exceeded {max_bytes} bytes, aborting")
                    return None
                chunks.append(chunk)
            return b"".join(chunks), resp.content_type or "application/octet-stream"

    except (aiohttp.ClientError, TimeoutError) as e:
        l.error(f"media.fetch failed for {url!r}: {e}")
        return None


def filename_for(name: str, content_type: str) -> str:
    """Return a sane filename given an optional hint and a MIME type."""
    if name:
        return name
    _fallback = {
        "image/jpeg":  "photo.jpg",
        "image/png":   "photo.png",
        "image/gif":   "image.gif",
        "image/webp":  "sticker.webp",
        "video/mp4":   "video.mp4",
        "video/webm":  "video.webm",
        "audio/ogg":   "voice.ogg",
        "audio/mpeg":  "audio.mp3",
        "audio/aac":   "audio.aac",
        "application/pdf": "document.pdf",
    }
    return _fallback.get(content_type, "attachment.bin")


def save_media(data: bytes, filename: str, directory: str) -> str:
    """Write downloaded media under *directory* and return its path."""
    os.makedirs(directory, exist_ok=True)
    # Never trust a platform-supplied name as a path
    path = Path(directory) / Path(filename).name
    path.write_bytes(data)
    return str(path)


class MediaResolver:
    """Turns outbound ``content`` into something a driver can send."""

    def __init__(self, max_bytes: int = _DEFAULT_MAX):
        self.max_bytes = max_bytes

    async def resolve(self, content) -> MediaFile | str | None:
        """Return a MediaFile, an opaque reference string, or ``None`` when unresolvable."""
        if isinstance(content, bytes):
            return MediaFile(content, "attachment.bin")
        if not isinstance(content, str) or not content.strip():
            return None
        content = content.strip()

        if content.startswith(("http://", "https://")):
            result = await fetch(content, self.max_bytes)
            if result is None:
                return None
            data, mime = result
            name = Path(urlparse(content).path).name
            return MediaFile(data, filename_for(name, mime), mime)

        if content.startswith("/") or content.startswith("file://"):
            path = Path(content.removeprefix("file://"))
            if not path.is_file():
                l.warning(f"media: local file not found: {path}")
                return None
            if path.stat().st_size > self.max_bytes:
                l.warning(f"media: {path} exceeds {self.max_bytes} bytes")
                return None
            mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
            return MediaFile(path.read_bytes(), path.name, mime)

        return content
