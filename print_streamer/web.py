"""FastAPI application exposing the camera proxy, polling and timelapse controls."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .cancellation import CancellationToken
from .config import AppConfig
from .errors import Cancelled, StreamerError
from .mjpeg import is_http_source
from .polling import PollingManager
from .stream_manager import StreamingManager
from .timelapse import TimelapseManager

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
}

INDEX_HTML = """<!doctype html>
<html>
<head><title>{title}</title></head>
<body>
<h1>{title}</h1>
<img src="/stream" alt="camera" style="max-width:100%">
<p>
<button onclick="fetch('/api/live/start',{{method:'POST'}})">Go live</button>
<button onclick="fetch('/api/live/stop',{{method:'POST'}})">End live</button>
<button onclick="fetch('/api/youtube/polling/clear-cache',{{method:'POST'}})">Clear polling cache</button>
</p>
<p><a href="/api/live/status">Live status</a> | <a href="/api/youtube/polling/status">Polling status</a>
| <a href="/api/timelapses">Timelapses</a></p>
</body>
</html>
"""


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PollingStatusPayload(CamelModel):
    requests: int
    cache_hits: int = Field(..., alias="cacheHits")
    rate_limit_waits: int = Field(..., alias="rateLimitWaits")
    idle: bool


class TimelapseInfoPayload(CamelModel):
    name: str
    is_active: bool = Field(..., alias="isActive")
    frame_count: int = Field(..., alias="frameCount")
    start_time: Optional[dt.datetime] = Field(None, alias="startTime")
    last_frame_time: Optional[dt.datetime] = Field(None, alias="lastFrameTime")
    video_files: List[str] = Field(default_factory=list, alias="videoFiles")


@dataclass
class AppServices:
    config: AppConfig
    polling: PollingManager
    timelapse: TimelapseManager
    scheduler: AsyncIOScheduler
    http: httpx.AsyncClient
    cancel: CancellationToken
    streaming: Optional[StreamingManager] = None


def create_app(services: AppServices) -> FastAPI:
    config = services.config
    app = FastAPI(title=config.project_name)

    @app.get("/", response_class=HTMLResponse)
    async def index():
        return HTMLResponse(INDEX_HTML.format(title=config.project_name))

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/stream")
    async def stream():
        source = config.stream.source
        if not is_http_source(source):
            raise HTTPException(status_code=502, detail="Stream source is not an HTTP MJPEG stream")
        request = services.http.build_request("GET", source)
        try:
            upstream = await services.http.send(request, stream=True)
        except httpx.HTTPError as exc:
            logger.warning("Upstream %s unavailable: %s", source, exc)
            raise HTTPException(status_code=502, detail="Upstream unavailable") from exc
        if upstream.status_code != 200:
            await upstream.aclose()
            raise HTTPException(status_code=502, detail=f"Upstream returned {upstream.status_code}")

        chunks = upstream.aiter_bytes()
        try:
            first = await chunks.__anext__()
        except (StopAsyncIteration, httpx.HTTPError) as exc:
            await upstream.aclose()
            raise HTTPException(status_code=502, detail="Upstream closed before sending data") from exc

        async def next_chunk() -> Optional[bytes]:
            try:
                return await chunks.__anext__()
            except StopAsyncIteration:
                return None

        async def body():
            try:
                yield first
                while True:
                    chunk = await services.cancel.race(next_chunk())
                    if chunk is None:
                        break
                    yield chunk
            except Cancelled:
                logger.debug("Stream proxy closed for shutdown")
            except httpx.HTTPError as exc:
                logger.info("Upstream stream ended: %s", exc)
            except asyncio.CancelledError:
                logger.debug("Stream client disconnected")
                raise
            finally:
                await upstream.aclose()

        media_type = upstream.headers.get("content-type", "multipart/x-mixed-replace")
        return StreamingResponse(body(), media_type=media_type, headers=NO_CACHE_HEADERS)

    @app.get("/api/youtube/polling/status")
    async def polling_status() -> Dict[str, Any]:
        stats = services.polling.snapshot()
        payload = PollingStatusPayload(
            requests=stats.requests,
            cache_hits=stats.cache_hits,
            rate_limit_waits=stats.rate_limit_waits,
            idle=stats.idle,
        )
        return payload.model_dump(by_alias=True)

    @app.post("/api/youtube/polling/clear-cache")
    async def clear_cache() -> Dict[str, Any]:
        services.polling.clear_cache()
        return {"success": True}

    @app.get("/api/timelapses")
    async def list_timelapses() -> List[Dict[str, Any]]:
        return [
            TimelapseInfoPayload(**entry).model_dump(by_alias=True, mode="json")
            for entry in services.timelapse.list_sessions()
        ]

    @app.post("/api/timelapses/{name}/start")
    async def start_timelapse(name: str) -> Dict[str, Any]:
        try:
            sink = services.timelapse.start(name)
        except (ValueError, OSError) as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "sessionName": sink.directory.name}

    @app.post("/api/timelapses/{name}/stop")
    async def stop_timelapse(name: str) -> Dict[str, Any]:
        try:
            video = await services.timelapse.stop(name)
        except (ValueError, OSError, StreamerError) as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "videoPath": str(video) if video else None}

    @app.delete("/api/timelapses/{name}")
    async def delete_timelapse(name: str):
        try:
            services.timelapse.delete(name)
        except FileNotFoundError:
            return JSONResponse({"success": False, "error": "Timelapse not found"}, status_code=404)
        except ValueError as exc:
            return JSONResponse({"success": False, "error": str(exc)}, status_code=400)
        return {"success": True}

    @app.get("/api/timelapses/{name}/frames")
    async def list_timelapse_frames(name: str):
        try:
            frames = services.timelapse.list_frames(name)
        except FileNotFoundError:
            return JSONResponse({"success": False, "error": "Timelapse not found"}, status_code=404)
        return {"success": True, "frames": frames}

    @app.post("/api/timelapses/{name}/generate")
    async def generate_timelapse(name: str):
        try:
            video = await services.timelapse.generate(name)
        except FileNotFoundError:
            return JSONResponse({"success": False, "error": "Timelapse not found"}, status_code=404)
        except ValueError as exc:
            return JSONResponse({"success": False, "error": str(exc)}, status_code=400)
        except (OSError, StreamerError) as exc:
            logger.error("Timelapse %s video generation failed: %s", name, exc)
            return JSONResponse({"success": False, "error": str(exc)}, status_code=500)
        return {"success": True, "videoPath": str(video)}

    @app.get("/api/timelapses/{name}/frames/{filename}")
    async def timelapse_file(name: str, filename: str):
        try:
            path = services.timelapse.resolve_file(name, filename)
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404) from exc
        return FileResponse(path)

    @app.delete("/api/timelapses/{name}/frames/{filename}")
    async def delete_timelapse_frame(name: str, filename: str):
        try:
            remaining = services.timelapse.delete_frame(name, filename)
        except FileNotFoundError:
            return JSONResponse({"success": False, "error": "File not found"}, status_code=404)
        except ValueError as exc:
            return JSONResponse({"success": False, "error": str(exc)}, status_code=400)
        return {"success": True, "remainingFrames": remaining}

    @app.get("/api/live/status")
    async def live_status() -> Dict[str, Any]:
        if services.streaming is None:
            return {"enabled": False, "running": False, "session": None, "lastError": None}
        return {"enabled": True, **services.streaming.get_status()}

    @app.post("/api/live/start")
    async def live_start() -> Dict[str, Any]:
        if services.streaming is None:
            raise HTTPException(status_code=503, detail="YouTube OAuth is not configured")
        if not services.streaming.start_background():
            raise HTTPException(status_code=409, detail="A live session is already running")
        return {"success": True}

    @app.post("/api/live/stop")
    async def live_stop() -> Dict[str, Any]:
        if services.streaming is None:
            raise HTTPException(status_code=503, detail="YouTube OAuth is not configured")
        stopped = await services.streaming.stop_stream("stop requested over HTTP")
        return {"success": stopped}

    @app.on_event("startup")
    async def startup_event() -> None:
        if not services.scheduler.running:
            services.scheduler.start()
        if services.streaming is not None and config.stream.start_in_serve:
            logger.info("Starting live session alongside the HTTP server")
            services.streaming.start_background()
        logger.info("Print streamer listening for requests.")

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        services.timelapse.shutdown()
        if services.streaming is not None:
            await services.streaming.stop_stream("server shutdown")
        if services.scheduler.running:
            services.scheduler.shutdown(wait=False)

    return app
