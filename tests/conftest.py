"""
Test Configuration
==================

Pytest fixtures and fakes shared by the print streamer tests.
"""

import asyncio
import itertools
import random
import stat
from dataclasses import replace
from typing import Dict, List

import pytest

from print_streamer.config import BroadcastConfig, PollingConfig, ReuseConfig
from print_streamer.errors import InvalidTransitionError, NotFoundError, RedundantTransitionError
from print_streamer.models import Broadcast, BroadcastRequest, IngestionEndpoint
from print_streamer.polling import PollingManager


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class NoSleepPollingManager(PollingManager):
    """Polling manager whose waits advance the fake clock instead of sleeping."""

    def __init__(self, config, clock: FakeClock, **kwargs):
        super().__init__(config, clock=clock, **kwargs)
        self.fake_clock = clock
        self.pauses: List[float] = []

    async def _pause(self, delay, cancel):
        cancel.raise_if_cancelled()
        self.pauses.append(delay)
        self.fake_clock.advance(delay)
        await asyncio.sleep(0)


class FakePlatform:
    """In-memory stand-in for the YouTube live streaming API."""

    def __init__(self, auto_active: bool = False):
        self.broadcasts: Dict[str, Broadcast] = {}
        self.streams: Dict[str, IngestionEndpoint] = {}
        self.bound: Dict[str, str] = {}
        self.calls: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.stream_statuses: List[str] = []
        self.auto_active = auto_active
        self._ids = itertools.count(1)

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        queue = self.failures.get(method)
        if queue:
            raise queue.pop(0)

    async def create_broadcast(self, request: BroadcastRequest) -> Broadcast:
        self._enter("create_broadcast")
        broadcast = Broadcast(
            broadcast_id=f"bc{next(self._ids)}",
            title=request.title,
            description=request.description,
            privacy_status=request.privacy_status,
            category_id=request.category_id,
        )
        self.broadcasts[broadcast.broadcast_id] = broadcast
        return replace(broadcast)

    async def create_stream(self, title: str, transport: str) -> IngestionEndpoint:
        self._enter("create_stream")
        stream_id = f"st{next(self._ids)}"
        endpoint = IngestionEndpoint(
            stream_id=stream_id,
            ingestion_address="rtmp://a.rtmp.youtube.com/live2",
            stream_name=f"key-{stream_id}",
            transport=transport,
        )
        self.streams[stream_id] = endpoint
        return replace(endpoint)

    async def bind(self, broadcast_id: str, stream_id: str) -> None:
        self._enter("bind")
        self.bound[broadcast_id] = stream_id
        self.broadcasts[broadcast_id].life_cycle_status = "ready"
        self.streams[stream_id].stream_status = "active" if self.auto_active else "ready"

    async def get_broadcast(self, broadcast_id: str) -> Broadcast:
        self._enter("get_broadcast")
        if broadcast_id not in self.broadcasts:
            raise NotFoundError(f"Broadcast {broadcast_id} not found", status=404)
        return replace(self.broadcasts[broadcast_id])

    async def get_stream(self, stream_id: str, transport: str = "rtmp") -> IngestionEndpoint:
        self._enter("get_stream")
        if stream_id not in self.streams:
            raise NotFoundError(f"Stream {stream_id} not found", status=404)
        if self.stream_statuses:
            self.streams[stream_id].stream_status = self.stream_statuses.pop(0)
        return replace(self.streams[stream_id], transport=transport)

    async def transition(self, broadcast_id: str, status: str) -> Broadcast:
        self._enter("transition")
        if broadcast_id not in self.broadcasts:
            raise NotFoundError(f"Broadcast {broadcast_id} not found", status=404)
        broadcast = self.broadcasts[broadcast_id]
        if broadcast.life_cycle_status == status:
            raise RedundantTransitionError("redundant", reason="redundantTransition", status=403)
        if status == "complete" and broadcast.life_cycle_status != "live":
            raise InvalidTransitionError("invalid", reason="invalidTransition", status=403)
        broadcast.life_cycle_status = status
        return replace(broadcast)

    async def delete_broadcast(self, broadcast_id: str) -> None:
        self._enter("delete_broadcast")
        if self.broadcasts.pop(broadcast_id, None) is None:
            raise NotFoundError(f"Broadcast {broadcast_id} not found", status=404)

    async def delete_stream(self, stream_id: str) -> None:
        self._enter("delete_stream")
        self.streams.pop(stream_id, None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def polling_config():
    """Polling settings with jitter disabled so intervals are exact."""
    return PollingConfig(max_jitter_seconds=0.0)


@pytest.fixture
def polling(polling_config, clock):
    return NoSleepPollingManager(polling_config, clock, rng=random.Random(7))


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def broadcast_config():
    return BroadcastConfig(title="Benchy", description="Printing a benchy")


@pytest.fixture
def reuse_config(tmp_path):
    return ReuseConfig(enabled=True, store_file=str(tmp_path / "reuse.json"))


def jpeg(payload: bytes = b"pixels") -> bytes:
    """A minimal byte string framed by JPEG start and end markers."""
    return b"\xff\xd8" + payload + b"\xff\xd9"


def multipart(frames, boundary: str = "frame", content_length: bool = True) -> bytes:
    body = b""
    for frame in frames:
        body += f"--{boundary}\r\nContent-Type: image/jpeg\r\n".encode()
        if content_length:
            body += f"Content-Length: {len(frame)}\r\n".encode()
        body += b"\r\n" + frame + b"\r\n"
    return body


def fake_ffmpeg(tmp_path, exit_code: int = 0) -> str:
    """A shell script standing in for ffmpeg: touches its last argument, or fails."""
    script = tmp_path / ("ffmpeg-ok" if exit_code == 0 else "ffmpeg-fail")
    if exit_code == 0:
        body = '#!/bin/sh\nfor last; do :; done\n: > "$last"\n'
    else:
        body = f"#!/bin/sh\necho 'Invalid data found when processing input' >&2\nexit {exit_code}\n"
    script.write_text(body)
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return str(script)
