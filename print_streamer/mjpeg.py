"""Parse ``multipart/x-mixed-replace`` MJPEG streams into JPEG frames."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from contextlib import aclosing
from pathlib import Path
from typing import AsyncIterator, List, Optional

import httpx

from .cancellation import CancellationToken
from .config import ReadConfig
from .errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

SOI = b"\xff\xd8"
EOI = b"\xff\xd9"
MAX_HEADER_BYTES = 8192
DEFAULT_MAX_FRAME_BYTES = 4 * 1024 * 1024

_CONTENT_LENGTH = re.compile(rb"^content-length\s*:\s*(\d+)\s*$", re.IGNORECASE | re.MULTILINE)

SEEK = "seek"
HEADERS = "headers"
BODY_LENGTH = "body_length"
BODY_SCAN = "body_scan"
DISCARD = "discard"


def parse_boundary(content_type: Optional[str]) -> Optional[str]:
    """Return the ``boundary`` parameter of a multipart content type, if any."""
    if not content_type:
        return None
    for param in content_type.split(";")[1:]:
        name, _, value = param.strip().partition("=")
        if name.strip().lower() == "boundary":
            value = value.strip().strip('"')
            return value or None
    return None


class MjpegFrameExtractor:
    """Incremental MJPEG parser.

    Bytes are pushed with :meth:`feed`; complete frames come back as they are
    found. When the part headers carry ``Content-Length`` the body is sliced
    by length, otherwise the payload is delimited by the JPEG SOI/EOI markers.
    Markers may be split across feeds. A frame growing past
    ``max_frame_bytes`` or a part that ends without an EOI is dropped and
    counted in :attr:`skipped`.
    """

    def __init__(self, boundary: Optional[str] = None, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES):
        self.delimiter = b"--" + boundary.lstrip("-").encode("latin-1") if boundary else None
        self.max_frame_bytes = max_frame_bytes
        self.frames = 0
        self.skipped = 0
        self.bytes_fed = 0
        self._buffer = bytearray()
        self._state = SEEK
        self._length = 0
        self._scan_from = 2

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> List[bytes]:
        self.bytes_fed += len(data)
        self._buffer += data
        out: List[bytes] = []
        handlers = {
            SEEK: self._seek,
            HEADERS: self._headers,
            BODY_LENGTH: self._body_length,
            BODY_SCAN: self._body_scan,
            DISCARD: self._discard,
        }
        while handlers[self._state](out):
            pass
        self.frames += len(out)
        return out

    def _skip(self, why: str) -> None:
        self.skipped += 1
        logger.debug("Skipping MJPEG part: %s", why)

    def _enter_scan(self) -> None:
        self._state = BODY_SCAN
        self._scan_from = 2

    def _seek(self, out: List[bytes]) -> bool:
        buf = self._buffer
        soi = buf.find(SOI)
        delim = buf.find(self.delimiter) if self.delimiter else -1
        if delim != -1 and (soi == -1 or delim < soi):
            del buf[: delim + len(self.delimiter)]
            self._state = HEADERS
            return True
        if soi != -1:
            del buf[:soi]
            self._enter_scan()
            return True
        keep = max(len(self.delimiter) - 1 if self.delimiter else 1, 1)
        if len(buf) > keep:
            del buf[:-keep]
        return False

    def _headers(self, out: List[bytes]) -> bool:
        buf = self._buffer
        ends = [(buf.find(sep), len(sep)) for sep in (b"\r\n\r\n", b"\n\n")]
        ends = [(pos, size) for pos, size in ends if pos != -1]
        soi = buf.find(SOI)
        if ends:
            term, size = min(ends)
        else:
            term, size = -1, 0

        if soi != -1 and (term == -1 or soi < term):
            # part without headers
            del buf[:soi]
            self._enter_scan()
            return True
        if term == -1:
            if len(buf) > MAX_HEADER_BYTES:
                self._skip("part headers too long")
                del buf[:-1]
                self._state = SEEK
                return True
            return False

        headers = bytes(buf[:term])
        del buf[: term + size]
        match = _CONTENT_LENGTH.search(headers)
        if match is None:
            self._state = SEEK
            return True
        length = int(match.group(1))
        if length > self.max_frame_bytes:
            self._skip(f"declared length {length} exceeds {self.max_frame_bytes}")
            self._length = length
            self._state = DISCARD
            return True
        self._length = length
        self._state = BODY_LENGTH
        return True

    def _body_length(self, out: List[bytes]) -> bool:
        buf = self._buffer
        if len(buf) < self._length:
            return False
        body = bytes(buf[: self._length])
        del buf[: self._length]
        self._state = SEEK
        if self.delimiter:
            cut = body.find(self.delimiter)
            if cut != -1:
                # declared length ran into the next part
                buf[0:0] = body[cut:]
                body = body[:cut]
        start = body.find(SOI)
        end = body.rfind(EOI)
        if start == -1 or end < start + 2:
            self._skip("part body is not a complete JPEG")
            return True
        out.append(body[start : end + 2])
        return True

    def _body_scan(self, out: List[bytes]) -> bool:
        buf = self._buffer
        eoi = buf.find(EOI, self._scan_from)
        delim = -1
        if self.delimiter:
            delim = buf.find(self.delimiter, max(2, self._scan_from - len(self.delimiter) + 1))
        if delim != -1 and (eoi == -1 or delim < eoi):
            self._skip("boundary before end of image")
            del buf[:delim]
            self._state = SEEK
            return True
        if eoi != -1:
            out.append(bytes(buf[: eoi + 2]))
            del buf[: eoi + 2]
            self._state = SEEK
            return True
        if len(buf) > self.max_frame_bytes:
            self._skip(f"frame exceeds {self.max_frame_bytes} bytes")
            nxt = buf.find(SOI, 2)
            if nxt == -1:
                del buf[:-1]
                self._state = SEEK
            else:
                del buf[:nxt]
                self._enter_scan()
            return True
        self._scan_from = max(2, len(buf) - 1)
        return False

    def _discard(self, out: List[bytes]) -> bool:
        buf = self._buffer
        if not buf:
            return False
        dropped = min(len(buf), self._length)
        del buf[:dropped]
        self._length -= dropped
        if self._length == 0:
            self._state = SEEK
            return True
        return False


def is_http_source(source: Optional[str]) -> bool:
    return bool(source) and source.startswith(("http://", "https://"))


async def iter_frames(
    client: httpx.AsyncClient, url: str, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES
) -> AsyncIterator[bytes]:
    """Yield frames from the MJPEG stream at ``url`` until the server closes it."""
    try:
        async with client.stream("GET", url) as response:
            if response.status_code != 200:
                raise UpstreamUnavailableError(f"MJPEG source {url} returned HTTP {response.status_code}")
            boundary = parse_boundary(response.headers.get("content-type"))
            extractor = MjpegFrameExtractor(boundary, max_frame_bytes)
            async for chunk in response.aiter_bytes():
                for frame in extractor.feed(chunk):
                    yield frame
    except httpx.HTTPError as exc:
        raise UpstreamUnavailableError(f"MJPEG source {url} unavailable: {exc}") from exc


async def grab_frame(
    client: httpx.AsyncClient, url: str, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES
) -> bytes:
    """Return the first complete frame from ``url``."""
    async with aclosing(iter_frames(client, url, max_frame_bytes)) as frames:
        async for frame in frames:
            return frame
    raise UpstreamUnavailableError(f"MJPEG source {url} closed before a frame arrived")


async def probe_source(
    client: httpx.AsyncClient, source: str, timeout: float = 10.0, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES
) -> None:
    """Raise UpstreamUnavailableError unless ``source`` can produce a frame."""
    if not is_http_source(source):
        if not os.path.exists(source):
            raise UpstreamUnavailableError(f"Video source {source} does not exist")
        return
    try:
        frame = await asyncio.wait_for(grab_frame(client, source, max_frame_bytes), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise UpstreamUnavailableError(f"No frame from {source} within {timeout:.0f}s") from exc
    logger.info("MJPEG source %s is up (first frame %d bytes)", source, len(frame))


async def read_frames(
    client: httpx.AsyncClient,
    source: str,
    config: ReadConfig,
    cancel: CancellationToken,
    max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
) -> int:
    """Read frames until cancelled or the source closes, saving every Nth frame."""
    directory = Path(config.directory)
    directory.mkdir(parents=True, exist_ok=True)
    count = 0
    async with aclosing(iter_frames(client, source, max_frame_bytes)) as frames:
        async for frame in frames:
            if cancel.cancelled:
                break
            count += 1
            logger.debug("Frame %d: %d bytes", count, len(frame))
            if count % config.save_every == 0:
                path = directory / f"frame_{count:06d}.jpg"
                path.write_bytes(frame)
                logger.info("Saved frame %d (%d bytes) to %s", count, len(frame), path)
    logger.info("Read %d frames from %s", count, source)
    return count
