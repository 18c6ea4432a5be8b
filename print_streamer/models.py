"""Domain models for broadcast sessions."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser
from dateutil.tz import tzutc

# lifeCycleStatus values from which a broadcast can still go live
REUSABLE_LIFECYCLES = frozenset({"created", "ready", "testing"})
LIVE_LIFECYCLES = frozenset({"live", "liveStarting"})
TERMINAL_LIFECYCLES = frozenset({"complete", "revoked"})

# streamStatus -> health signal
_HEALTH = {
    "active": "active",
    "ready": "ready",
    "created": "inactive",
    "inactive": "inactive",
    "error": "bad",
}


def utcnow() -> dt.datetime:
    return dt.datetime.now(tzutc())


@dataclass
class BroadcastRequest:
    title: str
    description: str
    privacy_status: str
    category_id: Optional[str] = None
    context: str = "default"


@dataclass
class Broadcast:
    broadcast_id: str
    title: str = ""
    description: str = ""
    privacy_status: str = "unlisted"
    life_cycle_status: str = "created"
    category_id: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.life_cycle_status in LIVE_LIFECYCLES

    @property
    def is_terminal(self) -> bool:
        return self.life_cycle_status in TERMINAL_LIFECYCLES


@dataclass
class IngestionEndpoint:
    stream_id: str
    ingestion_address: str
    stream_name: str
    transport: str = "rtmp"
    stream_status: str = "created"

    @property
    def ingestion_url(self) -> str:
        return f"{self.ingestion_address.rstrip('/')}/{self.stream_name}"

    @property
    def redacted_url(self) -> str:
        """Ingestion URL safe for logs: the stream key is masked."""
        return f"{self.ingestion_address.rstrip('/')}/****"

    @property
    def health(self) -> str:
        return _HEALTH.get(self.stream_status, "inactive")


@dataclass
class StreamSession:
    broadcast: Broadcast
    ingestion: IngestionEndpoint
    requested: BroadcastRequest
    reused: bool = False
    ingestion_active: bool = False
    status: str = "configured"
    started_at: Optional[dt.datetime] = None
    ended_at: Optional[dt.datetime] = None
    end_result: Optional[str] = None
    log: List[str] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.broadcast.broadcast_id

    def append_log(self, message: str) -> None:
        timestamp = utcnow().isoformat()
        self.log.append(f"[{timestamp}] {message}")

    def to_status(self) -> Dict[str, Any]:
        return {
            "broadcastId": self.broadcast.broadcast_id,
            "streamId": self.ingestion.stream_id,
            "title": self.broadcast.title,
            "privacy": self.broadcast.privacy_status,
            "lifeCycleStatus": self.broadcast.life_cycle_status,
            "status": self.status,
            "reused": self.reused,
            "ingestionActive": self.ingestion_active,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
            "logTail": self.log[-10:],
        }


@dataclass
class BroadcastRecord:
    """A persisted broadcast/stream pair that may be reused by a later session."""

    context: str
    broadcast_id: str
    stream_id: str
    ingestion_address: str
    stream_name: str
    transport: str = "rtmp"
    created_at: dt.datetime = field(default_factory=utcnow)

    def age_hours(self, now: Optional[dt.datetime] = None) -> float:
        now = now or utcnow()
        return (now - self.created_at).total_seconds() / 3600.0

    def to_dict(self) -> Dict[str, str]:
        return {
            "context": self.context,
            "broadcastId": self.broadcast_id,
            "streamId": self.stream_id,
            "ingestionAddress": self.ingestion_address,
            "streamName": self.stream_name,
            "transport": self.transport,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BroadcastRecord":
        created_at = date_parser.isoparse(data["createdAt"])
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=tzutc())
        return cls(
            context=data["context"],
            broadcast_id=data["broadcastId"],
            stream_id=data["streamId"],
            ingestion_address=data["ingestionAddress"],
            stream_name=data["streamName"],
            transport=data.get("transport", "rtmp"),
            created_at=created_at,
        )


@dataclass
class PollingStats:
    requests: int = 0
    cache_hits: int = 0
    rate_limit_waits: int = 0
    idle: bool = False


@dataclass
class PollResult:
    matched: bool
    last_value: Any = None
    attempts: int = 0
