"""Command-line entry point: mode dispatch, signal handling and exit codes."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

import google.oauth2.credentials
import httpx
import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dateutil.tz import tzutc

from .auth import TokenStore, authorize, describe
from .broadcast_controller import BroadcastController
from .cancellation import CancellationToken
from .config import AppConfig, load_config
from .encoder import EncoderSupervisor
from .errors import AuthorizationError, Cancelled, ConfigError, SessionError, UpstreamUnavailableError
from .mjpeg import grab_frame, probe_source, read_frames
from .polling import PollingManager
from .reuse_store import ReuseStore
from .stream_manager import StreamingManager
from .timelapse import TimelapseManager
from .web import AppServices, create_app
from .youtube_client import YouTubeStreamingClient

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_AUTH = 2
EXIT_UPSTREAM = 3
EXIT_SESSION = 4

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    for noisy in ("googleapiclient.discovery_cache", "httpx", "apscheduler.executors.default"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def install_signal_handlers(cancel: CancellationToken) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, cancel.cancel)
        except (NotImplementedError, RuntimeError):
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(cancel.cancel))


def make_http_client() -> httpx.AsyncClient:
    # MJPEG responses never finish; only bound connecting
    return httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0), follow_redirects=True)


async def _authorize(config: AppConfig) -> google.oauth2.credentials.Credentials:
    store = TokenStore(config.oauth.token_directory)
    credentials = await asyncio.to_thread(authorize, config.oauth, store)
    logger.info("Authorized with YouTube (%s)", describe(credentials))
    return credentials


def build_streaming(
    config: AppConfig,
    credentials: google.oauth2.credentials.Credentials,
    polling: PollingManager,
    cancel: CancellationToken,
) -> StreamingManager:
    platform = YouTubeStreamingClient(credentials, timeout=config.polling.max_interval_seconds)
    store = ReuseStore(config.reuse.store_file)
    controller = BroadcastController(platform, polling, config.broadcast, config.reuse, store)
    return StreamingManager(config, controller, EncoderSupervisor(config.encoder), cancel)


async def run_serve(config: AppConfig, cancel: CancellationToken) -> int:
    polling = PollingManager(config.polling, cancel=cancel)
    streaming: Optional[StreamingManager] = None
    if config.oauth.configured:
        try:
            credentials = await _authorize(config)
        except AuthorizationError as exc:
            logger.error("Live streaming disabled: %s", exc)
        else:
            streaming = build_streaming(config, credentials, polling, cancel)
    else:
        logger.info("YouTube OAuth not configured; serving the camera only")

    async with make_http_client() as http:
        scheduler = AsyncIOScheduler(timezone=tzutc())
        timelapse = TimelapseManager(
            config.timelapse,
            lambda: grab_frame(http, config.stream.source, config.stream.max_frame_bytes),
            scheduler,
            ffmpeg_path=config.encoder.path,
        )
        services = AppServices(
            config=config,
            polling=polling,
            timelapse=timelapse,
            scheduler=scheduler,
            http=http,
            cancel=cancel,
            streaming=streaming,
        )
        app = create_app(services)
        server = uvicorn.Server(uvicorn.Config(app, host=config.serve.host, port=config.serve.port, log_config=None))

        serving = asyncio.create_task(server.serve())
        stopping = asyncio.create_task(cancel.wait())
        await asyncio.wait({serving, stopping}, return_when=asyncio.FIRST_COMPLETED)
        server.should_exit = True
        stopping.cancel()
        await serving
        cancel.cancel()
    return EXIT_OK


async def run_stream(config: AppConfig, cancel: CancellationToken, test_source: bool = False) -> int:
    if not test_source:
        async with make_http_client() as http:
            await probe_source(http, config.stream.source, max_frame_bytes=config.stream.max_frame_bytes)
    credentials = await _authorize(config)
    polling = PollingManager(config.polling, cancel=cancel)
    streaming = build_streaming(config, credentials, polling, cancel)
    session = await streaming.run_session(test_source=test_source)
    stats = polling.snapshot()
    logger.info(
        "Session %s finished (%s); %d platform requests, %d cache hits",
        session.session_id,
        session.end_result,
        stats.requests,
        stats.cache_hits,
    )
    return EXIT_OK


async def run_read(config: AppConfig, cancel: CancellationToken) -> int:
    async with make_http_client() as http:
        try:
            await cancel.race(read_frames(http, config.stream.source, config.read, cancel, config.stream.max_frame_bytes))
        except Cancelled:
            logger.info("Reader stopped")
    return EXIT_OK


async def run_poll(config: AppConfig, cancel: CancellationToken) -> int:
    """Observe the stored broadcast for the configured context until cancelled."""
    credentials = await _authorize(config)
    polling = PollingManager(config.polling, cancel=cancel)
    platform = YouTubeStreamingClient(credentials, timeout=config.polling.max_interval_seconds)
    store = ReuseStore(config.reuse.store_file)
    controller = BroadcastController(platform, polling, config.broadcast, config.reuse, store)

    record = store.get(config.broadcast.context)
    if record is None:
        logger.warning("No stored broadcast for context %s in %s", config.broadcast.context, store.path)
        return EXIT_OK

    try:
        while True:
            broadcast = await controller.read_broadcast(record.broadcast_id)
            stream = await controller.read_stream(record.stream_id, record.transport)
            stats = polling.snapshot()
            logger.info(
                "Broadcast %s %s/%s, stream %s; requests=%d cacheHits=%d rateLimitWaits=%d idle=%s",
                broadcast.broadcast_id,
                broadcast.life_cycle_status,
                broadcast.privacy_status,
                stream.health,
                stats.requests,
                stats.cache_hits,
                stats.rate_limit_waits,
                stats.idle,
            )
            await polling.sleep(polling.next_interval(1))
    except Cancelled:
        logger.info("Polling stopped")
    return EXIT_OK


async def run(config: AppConfig) -> int:
    cancel = CancellationToken()
    install_signal_handlers(cancel)
    logger.info("Starting in %s mode", config.mode)
    try:
        if config.mode == "serve":
            return await run_serve(config, cancel)
        if config.mode == "stream":
            return await run_stream(config, cancel)
        if config.mode == "testsrc":
            return await run_stream(config, cancel, test_source=True)
        if config.mode == "read":
            return await run_read(config, cancel)
        return await run_poll(config, cancel)
    except AuthorizationError as exc:
        logger.error("Authorization failed: %s", exc)
        return EXIT_AUTH
    except UpstreamUnavailableError as exc:
        logger.error("Camera unavailable: %s", exc)
        return EXIT_UPSTREAM
    except SessionError as exc:
        logger.error("Live session failed: %s", exc)
        return EXIT_SESSION
    except Cancelled:
        logger.info("Cancelled")
        return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    try:
        config = load_config(argv)
    except ConfigError as exc:
        configure_logging("INFO")
        logger.error("Configuration error: %s", exc)
        return EXIT_CONFIG
    configure_logging(config.log_level)
    logger.debug("Working directory %s", Path.cwd())
    try:
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
