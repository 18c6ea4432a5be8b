"""Broadcast lifecycle: create, wait for ingestion, go live, end."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from .cancellation import CancellationToken
from .config import BroadcastConfig, ReuseConfig
from .errors import (
    InvalidTransitionError,
    NotFoundError,
    RedundantTransitionError,
    SessionError,
    StreamerError,
    TransientPlatformError,
)
from .models import (
    REUSABLE_LIFECYCLES,
    Broadcast,
    BroadcastRecord,
    BroadcastRequest,
    IngestionEndpoint,
    StreamSession,
    utcnow,
)
from .polling import PollingManager
from .reuse_store import ReuseStore
from .youtube_client import BroadcastPlatform

logger = logging.getLogger(__name__)


class BroadcastController:
    """Drives broadcast and ingestion resources through the platform.

    All reads go through the polling manager; the controller only advances
    ``ready -> live`` and ``live -> complete`` itself.
    """

    def __init__(
        self,
        platform: BroadcastPlatform,
        polling: PollingManager,
        config: BroadcastConfig,
        reuse_config: Optional[ReuseConfig] = None,
        reuse_store: Optional[ReuseStore] = None,
    ):
        self.platform = platform
        self.polling = polling
        self.config = config
        self.reuse_config = reuse_config or ReuseConfig(enabled=False)
        self.reuse_store = reuse_store
        self.sessions: Dict[str, StreamSession] = {}
        self._ended: Dict[str, str] = {}

    def default_request(self) -> BroadcastRequest:
        return BroadcastRequest(
            title=self.config.title,
            description=self.config.description,
            privacy_status=self.config.privacy,
            category_id=self.config.category_id,
            context=self.config.context,
        )

    def _session(self, session_id: str) -> StreamSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionError("unknown_session", f"Unknown session {session_id!r}")
        return session

    async def read_broadcast(self, broadcast_id: str, cancel: Optional[CancellationToken] = None) -> Broadcast:
        return await self.polling.observe(
            "broadcast", broadcast_id, lambda: self.platform.get_broadcast(broadcast_id), cancel=cancel
        )

    async def read_stream(
        self, stream_id: str, transport: str = "rtmp", cancel: Optional[CancellationToken] = None
    ) -> IngestionEndpoint:
        return await self.polling.observe(
            "stream", stream_id, lambda: self.platform.get_stream(stream_id, transport), cancel=cancel
        )

    # -- creation -----------------------------------------------------------

    async def create_session(
        self, request: Optional[BroadcastRequest] = None, cancel: Optional[CancellationToken] = None
    ) -> StreamSession:
        request = request or self.default_request()
        session = await self._reuse(request, cancel)
        if session is None:
            session = await self._create(request, cancel)
        session.append_log("Session reused." if session.reused else "Session configured and bound.")
        self.sessions[session.session_id] = session
        self._ended.pop(session.session_id, None)
        return session

    def _forget(self, record: BroadcastRecord, why: str) -> None:
        logger.info("Not reusing broadcast %s: %s", record.broadcast_id, why)
        if self.reuse_store is not None:
            self.reuse_store.remove(context=record.context)

    async def _reuse(self, request: BroadcastRequest, cancel: Optional[CancellationToken]) -> Optional[StreamSession]:
        if not self.reuse_config.enabled or self.reuse_store is None:
            return None
        record = self.reuse_store.get(request.context)
        if record is None:
            return None
        if record.age_hours() >= self.reuse_config.window_hours:
            self._forget(record, f"older than {self.reuse_config.window_hours}h")
            return None
        try:
            broadcast = await self.read_broadcast(record.broadcast_id, cancel=cancel)
            endpoint = await self.read_stream(record.stream_id, record.transport, cancel=cancel)
        except NotFoundError:
            self._forget(record, "broadcast or stream no longer exists")
            return None
        except TransientPlatformError as exc:
            self._forget(record, f"probe failed ({exc})")
            return None
        if broadcast.life_cycle_status not in REUSABLE_LIFECYCLES:
            self._forget(record, f"lifecycle is {broadcast.life_cycle_status}")
            return None
        if self.reuse_config.only_unlisted_or_private and broadcast.privacy_status == "public":
            self._forget(record, "broadcast is public")
            return None

        if not endpoint.ingestion_address:
            endpoint.ingestion_address = record.ingestion_address
        if not endpoint.stream_name:
            endpoint.stream_name = record.stream_name
        logger.info("Reusing broadcast %s (%s)", broadcast.broadcast_id, broadcast.life_cycle_status)
        return StreamSession(broadcast=broadcast, ingestion=endpoint, requested=request, reused=True)

    async def _create(self, request: BroadcastRequest, cancel: Optional[CancellationToken]) -> StreamSession:
        broadcast = await self.polling.execute(
            "create-broadcast", lambda: self.platform.create_broadcast(request), retry=False, cancel=cancel
        )
        endpoint: Optional[IngestionEndpoint] = None
        try:
            endpoint = await self.polling.execute(
                "create-stream",
                lambda: self.platform.create_stream(f"{request.title} ingestion", self.config.transport),
                retry=False,
                cancel=cancel,
            )
            await self.polling.execute(
                "bind", lambda: self.platform.bind(broadcast.broadcast_id, endpoint.stream_id), cancel=cancel
            )
        except BaseException:
            await self._rollback(broadcast, endpoint)
            raise

        if self.reuse_config.enabled and self.reuse_store is not None:
            self.reuse_store.put(
                BroadcastRecord(
                    context=request.context,
                    broadcast_id=broadcast.broadcast_id,
                    stream_id=endpoint.stream_id,
                    ingestion_address=endpoint.ingestion_address,
                    stream_name=endpoint.stream_name,
                    transport=endpoint.transport,
                )
            )
        return StreamSession(broadcast=broadcast, ingestion=endpoint, requested=request)

    async def _delete_stream(self, stream_id: str, cancel: CancellationToken) -> None:
        await self.polling.execute(
            "delete-stream", lambda: self.platform.delete_stream(stream_id), retry=False, cancel=cancel
        )

    async def _delete_broadcast(self, broadcast_id: str, cancel: CancellationToken) -> None:
        await self.polling.execute(
            "delete-broadcast", lambda: self.platform.delete_broadcast(broadcast_id), retry=False, cancel=cancel
        )

    async def _rollback(self, broadcast: Broadcast, endpoint: Optional[IngestionEndpoint]) -> None:
        logger.warning("Rolling back partially created broadcast %s", broadcast.broadcast_id)
        # cleanup runs even when creation was interrupted by cancellation
        cancel = CancellationToken()
        if endpoint is not None:
            try:
                await self._delete_stream(endpoint.stream_id, cancel)
            except StreamerError as exc:
                logger.warning("Rollback could not delete stream %s: %s", endpoint.stream_id, exc)
        try:
            await self._delete_broadcast(broadcast.broadcast_id, cancel)
        except StreamerError as exc:
            logger.warning("Rollback could not delete broadcast %s: %s", broadcast.broadcast_id, exc)

    # -- going live ---------------------------------------------------------

    async def wait_for_ingestion(
        self, session_id: str, timeout: float, cancel: Optional[CancellationToken] = None
    ) -> bool:
        """Wait until the bound stream reports ``active``. False on timeout or a bad stream."""
        session = self._session(session_id)
        ingestion = session.ingestion
        logger.info("Waiting up to %.0fs for ingestion on stream %s", timeout, ingestion.stream_id)
        result = await self.polling.wait_until_rising_edge(
            "stream",
            ingestion.stream_id,
            lambda: self.platform.get_stream(ingestion.stream_id, ingestion.transport),
            predicate=lambda endpoint: endpoint.health == "active",
            timeout=timeout,
            abort=lambda endpoint: endpoint.health == "bad",
            cancel=cancel,
        )
        if result.last_value is not None:
            ingestion.stream_status = result.last_value.stream_status
        session.ingestion_active = result.matched
        if result.matched:
            session.append_log(f"Ingestion active after {result.attempts} read(s).")
        else:
            session.append_log(f"Ingestion not active (last status {ingestion.stream_status}).")
            logger.warning("Ingestion for %s not active (status %s)", session_id, ingestion.stream_status)
        return result.matched

    async def transition_to_live_when_ready(
        self,
        session_id: str,
        timeout: Optional[float] = None,
        attempts: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> bool:
        """Move the broadcast to ``live`` once ingestion has been seen active.

        Rejections caused by the broadcast not being ready yet are retried up to
        ``attempts`` times within ``timeout`` seconds.
        """
        session = self._session(session_id)
        timeout = self.config.transition_timeout_seconds if timeout is None else timeout
        attempts = self.config.transition_attempts if attempts is None else attempts
        deadline = self.polling.now() + timeout

        if not session.ingestion_active:
            if not await self.wait_for_ingestion(session_id, timeout, cancel=cancel):
                logger.warning("Not transitioning %s: ingestion never became active", session_id)
                return False

        for attempt in range(1, attempts + 1):
            broadcast = await self.read_broadcast(session_id, cancel=cancel)
            session.broadcast.life_cycle_status = broadcast.life_cycle_status
            if broadcast.is_live:
                logger.info("Broadcast %s already %s", session_id, broadcast.life_cycle_status)
                return self._mark_live(session)
            if broadcast.is_terminal:
                logger.warning("Broadcast %s is %s; cannot go live", session_id, broadcast.life_cycle_status)
                return False

            logger.info("Attempt %d to transition broadcast %s to live", attempt, session_id)
            try:
                updated = await self.polling.execute(
                    "transition", lambda: self.platform.transition(session_id, "live"), cancel=cancel
                )
            except RedundantTransitionError:
                logger.info("Broadcast %s was already live", session_id)
                return self._mark_live(session)
            except InvalidTransitionError as exc:
                logger.warning("Transition attempt %d for %s rejected: %s", attempt, session_id, exc)
            else:
                session.broadcast.life_cycle_status = updated.life_cycle_status
                return self._mark_live(session)
            finally:
                self.polling.invalidate("broadcast", session_id)

            remaining = deadline - self.polling.now()
            if attempt == attempts or remaining <= 0:
                break
            await self.polling.sleep(min(self.polling.next_interval(attempt), remaining), cancel=cancel)

        logger.warning("Giving up on transitioning %s to live", session_id)
        session.append_log("Transition to live failed.")
        return False

    def _mark_live(self, session: StreamSession) -> bool:
        session.status = "live"
        session.append_log("Broadcast is live.")
        return True

    # -- ending -------------------------------------------------------------

    async def end_session(self, session_id: Optional[str]) -> str:
        """Best-effort transition to ``complete``. Safe to call more than once.

        Returns the outcome: ``complete``, ``revoked``, ``gone``, ``failed`` or
        ``noop`` for an empty id.
        """
        if not session_id:
            logger.debug("end_session called without a broadcast id; nothing to end")
            return "noop"
        if session_id in self._ended:
            return self._ended[session_id]

        # shutdown must not be blocked by the process-wide cancel token
        cancel = CancellationToken()
        try:
            await self.polling.execute(
                "transition", lambda: self.platform.transition(session_id, "complete"), retry=False, cancel=cancel
            )
            outcome = "complete"
        except RedundantTransitionError:
            outcome = "complete"
        except InvalidTransitionError:
            outcome = await self._discard(session_id, cancel)
        except NotFoundError:
            outcome = "gone"
        except StreamerError as exc:
            logger.error("Could not end broadcast %s: %s", session_id, exc)
            outcome = "failed"
        finally:
            self.polling.invalidate("broadcast", session_id)

        self._ended[session_id] = outcome
        if self.reuse_store is not None:
            self.reuse_store.remove(broadcast_id=session_id)
        session = self.sessions.get(session_id)
        if session is not None:
            session.status = "ended"
            session.ended_at = utcnow()
            session.end_result = outcome
            session.append_log(f"Session ended: {outcome}.")
        logger.info("Ended broadcast %s: %s", session_id, outcome)
        return outcome

    async def _discard(self, session_id: str, cancel: CancellationToken) -> str:
        """The broadcast never went live; delete it and its stream instead."""
        session = self.sessions.get(session_id)
        if session is not None:
            try:
                await self._delete_stream(session.ingestion.stream_id, cancel)
            except StreamerError as exc:
                logger.warning("Could not delete stream %s: %s", session.ingestion.stream_id, exc)
        try:
            await self._delete_broadcast(session_id, cancel)
        except NotFoundError:
            return "gone"
        except StreamerError as exc:
            logger.error("Could not delete broadcast %s: %s", session_id, exc)
            return "failed"
        return "revoked"
