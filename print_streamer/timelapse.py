"""Time-lapse frame sessions and video assembly."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import os
import re
import shutil
import threading
from collections import deque
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dateutil.tz import tzutc

from .config import TimelapseConfig
from .errors import EncoderError, StreamerError
from .models import utcnow

logger = logging.getLogger(__name__)

FRAME_PATTERN = "frame_%06d.jpg"
FRAME_GLOB = "frame_*.jpg"
_FRAME_NAME = re.compile(r"frame_\d{6}\.jpg")


class FrameSink:
    """Writes numbered frames into one session directory until stopped."""

    def __init__(self, name: str, directory: Path):
        self.name = name
        self.directory = directory
        self.started_at = utcnow()
        self.last_frame_at: Optional[dt.datetime] = None
        self._count = 0
        self._accepting = True
        self._lock = threading.Lock()

    @classmethod
    def create(cls, root: str | os.PathLike, name: str) -> "FrameSink":
        """Create ``root/name``, or ``root/name_k`` for the smallest free ``k >= 1``."""
        root = Path(root)
        root.mkdir(parents=True, exist_ok=True)
        candidate = root / name
        suffix = 0
        while True:
            try:
                candidate.mkdir()
                break
            except FileExistsError:
                suffix += 1
                candidate = root / f"{name}_{suffix}"
        logger.info("Started timelapse session %s in %s", name, candidate)
        return cls(name, candidate)

    @property
    def frame_count(self) -> int:
        return self._count

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def video_path(self) -> Path:
        return self.directory / f"{self.directory.name}.mp4"

    def write(self, data: bytes) -> Optional[Path]:
        """Persist one frame. Returns None once the sink has been stopped."""
        with self._lock:
            if not self._accepting:
                return None
            path = self.directory / (FRAME_PATTERN % self._count)
            path.write_bytes(data)
            self._count += 1
            self.last_frame_at = utcnow()
            return path

    def stop(self) -> int:
        with self._lock:
            self._accepting = False
            return self._count


async def assemble_video(
    directory: Path, output: Path, fps: int, ffmpeg_path: str = "ffmpeg", tail_lines: int = 20
) -> Path:
    """Encode ``frame_%06d.jpg`` in ``directory`` into an mp4 at ``output``."""
    args = [
        ffmpeg_path,
        "-y",
        "-hide_banner",
        "-loglevel",
        "error",
        "-framerate",
        str(fps),
        "-start_number",
        "0",
        "-i",
        str(directory / FRAME_PATTERN),
        "-c:v",
        "libx264",
        "-preset",
        "medium",
        "-crf",
        "18",
        "-pix_fmt",
        "yuv420p",
        "-movflags",
        "+faststart",
        str(output),
    ]
    logger.info("Assembling timelapse video: %s", " ".join(args))
    process = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    _, stderr = await process.communicate()
    tail = deque((line for line in stderr.decode("utf-8", errors="replace").splitlines() if line), maxlen=tail_lines)
    if process.returncode != 0:
        raise EncoderError(process.returncode, list(tail))
    logger.info("Timelapse video written to %s", output)
    return output


def validate_name(name: str) -> str:
    name = (name or "").strip()
    if not name or name in (".", "..") or "/" in name or "\\" in name or ".." in name or name.startswith("."):
        raise ValueError(f"Invalid timelapse name {name!r}")
    return name


class TimelapseManager:
    """Keeps active frame sessions and captures a frame for each on a schedule."""

    def __init__(
        self,
        config: TimelapseConfig,
        capture: Callable[[], Awaitable[bytes]],
        scheduler: AsyncIOScheduler,
        ffmpeg_path: str = "ffmpeg",
    ):
        self.config = config
        self.root = Path(config.directory)
        self.capture_frame = capture
        self.scheduler = scheduler
        self.ffmpeg_path = ffmpeg_path
        self.sessions: Dict[str, FrameSink] = {}

    @staticmethod
    def _job_id(name: str) -> str:
        return f"timelapse:{name}"

    def start(self, name: str) -> FrameSink:
        """Start a session; the returned sink's directory name is the session name."""
        sink = FrameSink.create(self.root, validate_name(name))
        name = sink.directory.name
        self.sessions[name] = sink
        self.scheduler.add_job(
            self.capture,
            trigger="interval",
            seconds=self.config.period_seconds,
            args=[name],
            id=self._job_id(name),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=dt.datetime.now(tzutc()),
        )
        return sink

    async def capture(self, name: str) -> Optional[Path]:
        sink = self.sessions.get(name)
        if sink is None or not sink.accepting:
            return None
        try:
            frame = await self.capture_frame()
        except StreamerError as exc:
            logger.warning("Timelapse %s capture failed: %s", name, exc)
            return None
        return await asyncio.to_thread(sink.write, frame)

    async def stop(self, name: str) -> Optional[Path]:
        """Stop capturing and assemble the video. Returns None when no frames were captured."""
        name = validate_name(name)
        sink = self.sessions.pop(name, None)
        if sink is None:
            raise ValueError(f"Timelapse {name} is not running")
        try:
            self.scheduler.remove_job(self._job_id(name))
        except JobLookupError:
            logger.debug("No capture job for %s", name)
        count = sink.stop()
        if count == 0:
            logger.warning("Timelapse %s stopped without frames", name)
            return None
        return await assemble_video(sink.directory, sink.video_path, self.config.fps, self.ffmpeg_path)

    def shutdown(self) -> None:
        for name, sink in list(self.sessions.items()):
            sink.stop()
            try:
                self.scheduler.remove_job(self._job_id(name))
            except JobLookupError:
                logger.debug("No capture job for %s", name)
        self.sessions.clear()

    def list_sessions(self) -> List[Dict[str, Any]]:
        active = {sink.directory.resolve(): sink for sink in self.sessions.values()}
        entries: List[Dict[str, Any]] = []
        if not self.root.is_dir():
            return entries
        for directory in sorted(path for path in self.root.iterdir() if path.is_dir()):
            sink = active.get(directory.resolve())
            frames = sorted(directory.glob(FRAME_GLOB))
            if sink is not None:
                frame_count = sink.frame_count
                start_time: Optional[dt.datetime] = sink.started_at
                last_frame_time = sink.last_frame_at
            else:
                frame_count = len(frames)
                start_time = _mtime(frames[0]) if frames else None
                last_frame_time = _mtime(frames[-1]) if frames else None
            entries.append(
                {
                    "name": directory.name,
                    "is_active": sink is not None,
                    "frame_count": frame_count,
                    "start_time": start_time,
                    "last_frame_time": last_frame_time,
                    "video_files": sorted(path.name for path in directory.glob("*.mp4")),
                }
            )
        return entries

    def resolve_file(self, name: str, filename: str) -> Path:
        """Path of a file inside a session directory; FileNotFoundError if outside or missing."""
        try:
            validate_name(name)
        except ValueError as exc:
            raise FileNotFoundError(name) from exc
        base = (self.root / name).resolve()
        target = (base / filename).resolve()
        if not target.is_relative_to(base) or not target.is_file():
            raise FileNotFoundError(filename)
        return target

    def session_directory(self, name: str) -> Path:
        """Existing directory of a session, active or finished; FileNotFoundError otherwise."""
        try:
            name = validate_name(name)
        except ValueError as exc:
            raise FileNotFoundError(name) from exc
        directory = self.root / name
        if not directory.is_dir() or not directory.resolve().is_relative_to(self.root.resolve()):
            raise FileNotFoundError(name)
        return directory

    def is_active(self, name: str) -> bool:
        return name in self.sessions

    def list_frames(self, name: str) -> List[str]:
        return sorted(path.name for path in self.session_directory(name).glob(FRAME_GLOB))

    def delete(self, name: str) -> None:
        directory = self.session_directory(name)
        if self.is_active(directory.name):
            raise ValueError("Cannot delete active timelapse")
        shutil.rmtree(directory)
        logger.info("Deleted timelapse %s", directory.name)

    def delete_frame(self, name: str, filename: str) -> int:
        """Delete one frame and renumber the rest so indices stay contiguous.

        Returns the number of frames left.
        """
        path = self.resolve_file(name, filename)
        directory = path.parent
        if not _FRAME_NAME.fullmatch(path.name):
            raise ValueError("Only frame .jpg files can be deleted")
        if self.is_active(directory.name):
            raise ValueError("Cannot delete frames while timelapse is active")
        path.unlink()
        remaining = sorted(directory.glob(FRAME_GLOB))
        for index, frame in enumerate(remaining):
            target = directory / (FRAME_PATTERN % index)
            if frame != target:
                frame.rename(target)
        logger.info("Deleted %s from timelapse %s; %d frame(s) left", filename, directory.name, len(remaining))
        return len(remaining)

    async def generate(self, name: str) -> Path:
        """Assemble the session's current frames into its video without stopping it."""
        directory = self.session_directory(name)
        if not any(directory.glob(FRAME_GLOB)):
            raise ValueError("No frames found")
        output = directory / f"{directory.name}.mp4"
        return await assemble_video(directory, output, self.config.fps, self.ffmpeg_path)


def _mtime(path: Path) -> dt.datetime:
    return dt.datetime.fromtimestamp(path.stat().st_mtime, tz=tzutc())
