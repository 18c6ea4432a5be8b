"""Supervise the ffmpeg process that pushes the camera feed to the ingestion URL."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Sequence

from .cancellation import CancellationToken
from .config import EncoderConfig
from .errors import EncoderError

logger = logging.getLogger(__name__)


@dataclass
class EncoderExit:
    returncode: Optional[int]
    stderr_tail: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.cancelled or self.returncode == 0

    def to_error(self) -> EncoderError:
        return EncoderError(self.returncode, self.stderr_tail)


def redact(text: str, ingestion_url: Optional[str]) -> str:
    """Mask the stream key (last path segment of the ingestion URL)."""
    if not ingestion_url:
        return text
    key = ingestion_url.rstrip("/").rsplit("/", 1)[-1]
    if not key or key == ingestion_url:
        return text
    return text.replace(key, "****")


class EncoderSupervisor:
    """Launches ffmpeg, forwards its stderr to the log and reports its exit."""

    name = "ffmpeg"

    def __init__(self, config: EncoderConfig):
        self.config = config
        self.process: Optional[asyncio.subprocess.Process] = None

    def build_command(self, source: Optional[str], ingestion_url: str, test_source: bool = False) -> List[str]:
        fps = self.config.fps
        bitrate = self.config.bitrate_kbps
        args = [self.config.path, "-hide_banner", "-nostdin", "-loglevel", self.config.log_level]

        if test_source:
            args += ["-re", "-f", "lavfi", "-i", f"{self.config.test_pattern}:rate={fps}"]
        elif source and source.startswith("/dev/"):
            args += ["-f", "v4l2", "-framerate", str(fps), "-i", source]
        elif source and source.startswith(("http://", "https://")):
            args += [
                "-re",
                "-reconnect",
                "1",
                "-reconnect_streamed",
                "1",
                "-reconnect_delay_max",
                "2",
                "-f",
                "mjpeg",
                "-i",
                source,
            ]
        else:
            args += ["-re", "-i", source or ""]

        args += [
            "-an",
            "-c:v",
            "libx264",
            "-preset",
            "veryfast",
            "-tune",
            "zerolatency",
            "-pix_fmt",
            "yuv420p",
            "-r",
            str(fps),
            "-g",
            str(fps * 2),
            "-b:v",
            f"{bitrate}k",
            "-maxrate",
            f"{bitrate}k",
            "-bufsize",
            f"{bitrate * 2}k",
            "-f",
            "flv",
            ingestion_url,
        ]
        return args

    async def start(
        self,
        source: Optional[str],
        ingestion_url: str,
        cancel: CancellationToken,
        test_source: bool = False,
        command: Optional[Sequence[str]] = None,
    ) -> "asyncio.Task[EncoderExit]":
        """Launch the encoder and return a task that resolves with its exit.

        ``command`` replaces the generated ffmpeg arguments.
        """
        args = list(command) if command is not None else self.build_command(source, ingestion_url, test_source)
        logger.info("Launching %s: %s", self.name, redact(" ".join(args), ingestion_url))
        self.process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        return asyncio.create_task(self._supervise(self.process, cancel, ingestion_url))

    async def _pump_stderr(self, stream: asyncio.StreamReader, tail: Deque[str], ingestion_url: str) -> None:
        async for raw in stream:
            line = redact(raw.decode("utf-8", errors="replace").rstrip(), ingestion_url)
            if line:
                tail.append(line)
                logger.info("[%s] %s", self.name, line)

    async def _supervise(
        self, process: asyncio.subprocess.Process, cancel: CancellationToken, ingestion_url: str
    ) -> EncoderExit:
        tail: Deque[str] = deque(maxlen=self.config.stderr_tail_lines)
        pump = asyncio.create_task(self._pump_stderr(process.stderr, tail, ingestion_url))
        exited = asyncio.create_task(process.wait())
        stop = asyncio.create_task(cancel.wait())
        cancelled = False
        try:
            done, _ = await asyncio.wait({exited, stop}, return_when=asyncio.FIRST_COMPLETED)
            if exited not in done:
                cancelled = True
                await self._terminate(process, exited)
            returncode = await exited
            try:
                await asyncio.wait_for(pump, timeout=2.0)
            except asyncio.TimeoutError:
                logger.debug("%s stderr still open after exit", self.name)
        finally:
            stop.cancel()
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            for task in (pump, exited):
                if not task.done():
                    task.cancel()

        result = EncoderExit(returncode=returncode, stderr_tail=list(tail), cancelled=cancelled)
        if result.ok:
            logger.info("%s exited with code %s%s", self.name, returncode, " after stop" if cancelled else "")
        else:
            logger.error("%s exited with code %s", self.name, returncode)
        return result

    async def _terminate(self, process: asyncio.subprocess.Process, exited: "asyncio.Task[int]") -> None:
        """Ask ffmpeg to finish, then kill it after the grace period."""
        try:
            if os.name == "posix":
                process.send_signal(signal.SIGINT)
            else:
                process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(asyncio.shield(exited), timeout=self.config.stop_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("%s did not stop within %.1fs; killing", self.name, self.config.stop_grace_seconds)
            try:
                process.kill()
            except ProcessLookupError:
                pass
