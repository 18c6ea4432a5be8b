"""YouTube API client wrapper."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Protocol

import google.oauth2.credentials
import google_auth_httplib2
import googleapiclient.discovery
import httplib2
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.errors import HttpError

from .errors import (
    AuthorizationError,
    DuplicateBroadcastError,
    InvalidTransitionError,
    NotFoundError,
    PlatformError,
    QuotaExceededError,
    RedundantTransitionError,
    StreamerError,
    TransientPlatformError,
)
from .models import Broadcast, BroadcastRequest, IngestionEndpoint, utcnow

logger = logging.getLogger(__name__)

QUOTA_REASONS = {"quotaExceeded", "dailyLimitExceeded"}
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "backendError", "internalError"}
AUTH_REASONS = {"authError", "unauthorized", "insufficientPermissions", "forbidden"}
INVALID_TRANSITION_REASONS = {"invalidTransition", "errorStreamInactive", "invalidLifeCycleStatus"}


class BroadcastPlatform(Protocol):
    """The narrow set of platform capabilities the broadcast controller needs."""

    async def create_broadcast(self, request: BroadcastRequest) -> Broadcast: ...

    async def create_stream(self, title: str, transport: str) -> IngestionEndpoint: ...

    async def bind(self, broadcast_id: str, stream_id: str) -> None: ...

    async def get_broadcast(self, broadcast_id: str) -> Broadcast: ...

    async def get_stream(self, stream_id: str, transport: str = "rtmp") -> IngestionEndpoint: ...

    async def transition(self, broadcast_id: str, status: str) -> Broadcast: ...

    async def delete_broadcast(self, broadcast_id: str) -> None: ...

    async def delete_stream(self, stream_id: str) -> None: ...


def _error_reasons(exc: HttpError) -> List[str]:
    try:
        payload = json.loads(exc.content.decode("utf-8"))
    except (AttributeError, UnicodeDecodeError, ValueError):
        return []
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return []
    return [item.get("reason", "") for item in error.get("errors", []) if isinstance(item, dict)]


def translate_error(exc: Exception) -> StreamerError:
    """Map google client exceptions onto the streamer error hierarchy."""
    if isinstance(exc, StreamerError):
        return exc
    if isinstance(exc, RefreshError):
        return AuthorizationError(f"Credentials rejected: {exc}")
    if isinstance(exc, (TransportError, httplib2.HttpLib2Error, OSError)):
        return TransientPlatformError(f"Network error: {exc}", reason="network")
    if not isinstance(exc, HttpError):
        return PlatformError(str(exc))

    status = int(exc.resp.status)
    reasons = set(_error_reasons(exc))
    reason = next(iter(sorted(reasons)), None)
    message = f"YouTube API error {status}: {exc}"

    if reasons & QUOTA_REASONS:
        return QuotaExceededError(message, reason=reason, status=status)
    if status == 429 or status >= 500 or reasons & RATE_LIMIT_REASONS:
        return TransientPlatformError(message, reason=reason, status=status)
    if status == 401 or (status == 403 and reasons & AUTH_REASONS):
        return AuthorizationError(message)
    if "redundantTransition" in reasons:
        return RedundantTransitionError(message, reason="redundantTransition", status=status)
    if reasons & INVALID_TRANSITION_REASONS:
        return InvalidTransitionError(message, reason=reason, status=status)
    if status == 404 or any(item.endswith("NotFound") for item in reasons):
        return NotFoundError(message, reason=reason, status=status)
    if status == 409 or any("duplicate" in item.lower() for item in reasons):
        return DuplicateBroadcastError(message, reason=reason, status=status)
    return PlatformError(message, reason=reason, status=status)


def _broadcast_from(item: Dict[str, Any]) -> Broadcast:
    snippet = item.get("snippet", {})
    status = item.get("status", {})
    return Broadcast(
        broadcast_id=item["id"],
        title=snippet.get("title", ""),
        description=snippet.get("description", ""),
        privacy_status=status.get("privacyStatus", "unlisted"),
        life_cycle_status=status.get("lifeCycleStatus", "created"),
    )


def _stream_from(item: Dict[str, Any], transport: str) -> IngestionEndpoint:
    ingestion = item.get("cdn", {}).get("ingestionInfo", {})
    address_key = "rtmpsIngestionAddress" if transport == "rtmps" else "ingestionAddress"
    return IngestionEndpoint(
        stream_id=item["id"],
        ingestion_address=ingestion.get(address_key) or ingestion.get("ingestionAddress", ""),
        stream_name=ingestion.get("streamName", ""),
        transport=transport,
        stream_status=item.get("status", {}).get("streamStatus", "created"),
    )


class YouTubeStreamingClient:
    """Wrapper around YouTube Data API for live streaming operations.

    Requests are executed on worker threads, each with its own authorized
    ``httplib2.Http`` because that object is not thread safe.
    """

    def __init__(self, credentials: google.oauth2.credentials.Credentials, timeout: float = 60.0):
        self.credentials = credentials
        self.timeout = timeout
        self.service = self._build_service()

    def _build_service(self):
        return googleapiclient.discovery.build("youtube", "v3", credentials=self.credentials, cache_discovery=False)

    def _execute_sync(self, build: Callable[[], Any]) -> Any:
        http = google_auth_httplib2.AuthorizedHttp(self.credentials, http=httplib2.Http(timeout=self.timeout))
        try:
            return build().execute(http=http)
        except (HttpError, RefreshError, TransportError, httplib2.HttpLib2Error, OSError) as exc:
            raise translate_error(exc) from exc

    async def _execute(self, build: Callable[[], Any]) -> Any:
        return await asyncio.to_thread(self._execute_sync, build)

    async def create_broadcast(self, request: BroadcastRequest) -> Broadcast:
        body = {
            "snippet": {
                "title": request.title,
                "description": request.description,
                "scheduledStartTime": utcnow().isoformat(),
            },
            "status": {"privacyStatus": request.privacy_status, "selfDeclaredMadeForKids": False},
            "contentDetails": {"enableAutoStart": True, "enableAutoStop": True},
        }
        response = await self._execute(
            lambda: self.service.liveBroadcasts().insert(part="snippet,status,contentDetails", body=body)
        )
        broadcast = _broadcast_from(response)
        logger.info("Created broadcast %s (%s)", broadcast.broadcast_id, broadcast.privacy_status)
        if request.category_id:
            await self._set_category(broadcast, request.category_id)
        return broadcast

    async def _set_category(self, broadcast: Broadcast, category_id: str) -> None:
        body = {
            "id": broadcast.broadcast_id,
            "snippet": {
                "title": broadcast.title,
                "description": broadcast.description,
                "categoryId": category_id,
            },
        }
        try:
            await self._execute(lambda: self.service.videos().update(part="snippet", body=body))
        except PlatformError as exc:
            logger.warning("Could not set category %s on %s: %s", category_id, broadcast.broadcast_id, exc)
            return
        broadcast.category_id = category_id

    async def create_stream(self, title: str, transport: str = "rtmp") -> IngestionEndpoint:
        body = {
            "snippet": {"title": title},
            "cdn": {"frameRate": "variable", "ingestionType": "rtmp", "resolution": "variable"},
            "contentDetails": {"isReusable": False},
        }
        response = await self._execute(
            lambda: self.service.liveStreams().insert(part="snippet,cdn,contentDetails,status", body=body)
        )
        endpoint = _stream_from(response, transport)
        logger.info("Created stream %s at %s", endpoint.stream_id, endpoint.redacted_url)
        return endpoint

    async def bind(self, broadcast_id: str, stream_id: str) -> None:
        await self._execute(
            lambda: self.service.liveBroadcasts().bind(part="id,contentDetails", id=broadcast_id, streamId=stream_id)
        )
        logger.info("Bound broadcast %s to stream %s", broadcast_id, stream_id)

    async def get_broadcast(self, broadcast_id: str) -> Broadcast:
        response = await self._execute(
            lambda: self.service.liveBroadcasts().list(part="id,snippet,status", id=broadcast_id)
        )
        items = response.get("items", [])
        if not items:
            raise NotFoundError(f"Broadcast {broadcast_id} not found", reason="liveBroadcastNotFound", status=404)
        return _broadcast_from(items[0])

    async def get_stream(self, stream_id: str, transport: str = "rtmp") -> IngestionEndpoint:
        response = await self._execute(
            lambda: self.service.liveStreams().list(part="id,snippet,cdn,status", id=stream_id)
        )
        items = response.get("items", [])
        if not items:
            raise NotFoundError(f"Stream {stream_id} not found", reason="liveStreamNotFound", status=404)
        item = items[0]
        issues = item.get("status", {}).get("healthStatus", {}).get("configurationIssues", [])
        if issues:
            logger.debug(
                "Stream %s configuration issues: %s",
                stream_id,
                "; ".join(issue.get("description", "") for issue in issues),
            )
        return _stream_from(item, transport)

    async def transition(self, broadcast_id: str, status: str) -> Broadcast:
        response = await self._execute(
            lambda: self.service.liveBroadcasts().transition(
                part="id,snippet,status", id=broadcast_id, broadcastStatus=status
            )
        )
        logger.info("Transitioned broadcast %s to %s", broadcast_id, status)
        return _broadcast_from(response)

    async def delete_broadcast(self, broadcast_id: str) -> None:
        await self._execute(lambda: self.service.liveBroadcasts().delete(id=broadcast_id))
        logger.info("Deleted broadcast %s", broadcast_id)

    async def delete_stream(self, stream_id: str) -> None:
        await self._execute(lambda: self.service.liveStreams().delete(id=stream_id))
        logger.info("Deleted stream %s", stream_id)
