"""Manage live sessions with ffmpeg and YouTube Live."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from .broadcast_controller import BroadcastController
from .cancellation import CancellationToken
from .config import AppConfig
from .encoder import EncoderExit, EncoderSupervisor
from .errors import Cancelled, PlatformError, SessionError, StreamerError, TransientPlatformError
from .models import StreamSession, utcnow
from .polling import PollingManager

logger = logging.getLogger(__name__)


class StreamingManager:
    """Coordinates the broadcast controller, the encoder and session monitoring."""

    def __init__(
        self,
        config: AppConfig,
        controller: BroadcastController,
        encoder: EncoderSupervisor,
        cancel: Optional[CancellationToken] = None,
    ):
        self.config = config
        self.controller = controller
        self.encoder = encoder
        self.cancel = cancel or CancellationToken()
        self.current: Optional[StreamSession] = None
        self.last_error: Optional[str] = None
        self._session_cancel: Optional[CancellationToken] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def polling(self) -> PollingManager:
        return self.controller.polling

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_session(self, test_source: bool = False) -> StreamSession:
        """Run one live session end to end.

        Raises SessionError when the session fails; the broadcast is ended on
        every path once it exists.
        """
        cancel = self.cancel.child()
        self._session_cancel = cancel
        try:
            session = await self.controller.create_session(cancel=cancel)
        except (Cancelled, SessionError):
            raise
        except PlatformError as exc:
            raise SessionError(_reason(exc), f"Could not create broadcast: {exc}") from exc
        self.current = session

        encoder_task: Optional[asyncio.Task] = None
        exit_result: Optional[EncoderExit] = None
        failure: Optional[SessionError] = None
        try:
            source = None if test_source else self.config.stream.source
            try:
                encoder_task = await self.encoder.start(
                    source, session.ingestion.ingestion_url, cancel, test_source=test_source
                )
            except OSError as exc:
                raise SessionError("encoder_failed", f"Could not launch {self.encoder.name}: {exc}") from exc
            session.started_at = utcnow()
            session.status = "starting"
            session.append_log(f"Encoder started, pushing to {session.ingestion.redacted_url}.")

            broadcast_config = self.config.broadcast
            timeout = (
                broadcast_config.test_ingestion_timeout_seconds
                if test_source
                else broadcast_config.ingestion_timeout_seconds
            )
            active = await self._unless_encoder_exits(
                self.controller.wait_for_ingestion(session.session_id, timeout, cancel=cancel), encoder_task
            )
            if not active:
                raise SessionError("ingestion_timeout", f"Ingestion did not become active within {timeout:.0f}s")

            live = await self._unless_encoder_exits(
                self.controller.transition_to_live_when_ready(session.session_id, cancel=cancel), encoder_task
            )
            if not live:
                raise SessionError("transition_failed", "Broadcast could not be transitioned to live")

            logger.info("Broadcast %s is live", session.session_id)
            await self._keep_alive(session, encoder_task, cancel)
        except Cancelled:
            logger.info("Session %s cancelled", session.session_id)
            session.append_log("Session cancelled.")
        except SessionError as exc:
            failure = exc
        except StreamerError as exc:
            failure = SessionError(_reason(exc), str(exc))
            failure.__cause__ = exc
        finally:
            cancel.cancel()
            if encoder_task is not None:
                exit_result = await encoder_task
            await self.controller.end_session(session.session_id)
            self._session_cancel = None

        if failure is None and exit_result is not None and not exit_result.ok:
            error = exit_result.to_error()
            failure = SessionError("encoder_failed", str(error))
            failure.__cause__ = error
        if failure is not None:
            session.status = "failed"
            session.append_log(f"Session failed: {failure}")
            self.last_error = str(failure)
            logger.error("Session %s failed (%s): %s", session.session_id, failure.reason, failure)
            raise failure
        return session

    async def _unless_encoder_exits(self, awaitable, encoder_task: asyncio.Task) -> Any:
        """Await ``awaitable`` but abandon it if the encoder exits first."""
        work = asyncio.ensure_future(awaitable)
        try:
            await asyncio.wait({work, encoder_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        if work.done():
            return work.result()
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, StreamerError):
            logger.debug("Abandoned wait after encoder exit")
        result: EncoderExit = encoder_task.result()
        if result.cancelled:
            raise Cancelled("encoder stopped")
        raise SessionError("encoder_exited", str(result.to_error()))

    async def _keep_alive(self, session: StreamSession, encoder_task: asyncio.Task, cancel: CancellationToken) -> None:
        """Read the broadcast at the idle interval until the encoder exits, the platform ends it, or cancel."""
        while True:
            pace = asyncio.ensure_future(self.polling.sleep(self.polling.idle_interval(), cancel=cancel))
            try:
                await asyncio.wait({encoder_task, pace}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                if not pace.done():
                    pace.cancel()
            if pace.done() and not pace.cancelled() and pace.exception() is not None:
                logger.debug("Keep-alive wait interrupted: %s", pace.exception())
            if encoder_task.done() or cancel.cancelled:
                return
            try:
                broadcast = await self.controller.read_broadcast(session.session_id, cancel=cancel)
            except TransientPlatformError as exc:
                logger.warning("Keep-alive read failed: %s", exc)
                continue
            session.broadcast.life_cycle_status = broadcast.life_cycle_status
            if broadcast.is_terminal:
                logger.info("Broadcast %s is %s on the platform", session.session_id, broadcast.life_cycle_status)
                session.append_log(f"Broadcast {broadcast.life_cycle_status} on the platform.")
                return

    # -- background sessions (serve mode) -------------------------------------

    def start_background(self, test_source: bool = False) -> bool:
        if self.running:
            return False
        self.last_error = None
        self._task = asyncio.create_task(self._run_background(test_source))
        return True

    async def _run_background(self, test_source: bool) -> None:
        try:
            await self.run_session(test_source=test_source)
        except SessionError as exc:
            logger.error("Background session ended with failure: %s", exc)
        except Cancelled:
            logger.info("Background session cancelled")
        except StreamerError as exc:
            self.last_error = str(exc)
            logger.error("Background session could not start: %s", exc)

    async def stop_stream(self, reason: str = "manual stop") -> bool:
        if not self.running:
            return False
        logger.info("Stopping live session: %s", reason)
        if self._session_cancel is not None:
            self._session_cancel.cancel()
        else:
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.debug("Background session task cancelled before it started")
        return True

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "session": self.current.to_status() if self.current else None,
            "lastError": self.last_error,
        }


def _reason(exc: StreamerError) -> str:
    reason = getattr(exc, "reason", None)
    return reason or type(exc).__name__
