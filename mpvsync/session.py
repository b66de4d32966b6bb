import asyncio
import logging
import time
from typing import Callable, Optional
from .config import settings
from .dispatcher import CommandDispatcher
from .engine import SyncEngine
from .errors import Cancelled, ConnectionLost, DispatchError, EngineRejected, NotConnected, SyncError
from .models import EngineMessage, SessionStatus, Source, SyncSession, SyncStats, Verb
from .observer import PropertyObserver

logger = logging.getLogger(__name__)

class SyncSessionManager:
    """
    Wires a connected transport to the dispatcher, observer and engine, and
    runs the drift and heartbeat loops for the lifetime of one connection.
    """

    def __init__(self, session: Optional[SyncSession] = None, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        session = session or SyncSession()
        self.dispatcher = CommandDispatcher(session.rate_limit_windows, clock=clock)
        self.engine = SyncEngine(self.dispatcher, session=session, clock=clock)
        self.observer = PropertyObserver(self.engine, clock=clock)
        self.transport = None
        self.started = False
        self.last_heartbeat = 0.0
        self._drift_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    async def start(self, transport):
        if self.started:
            raise SyncError("Sync session already started")
        if not transport.connected:
            raise NotConnected("Transport is not connected")

        self.transport = transport
        transport.add_message_listener(self._on_message)
        transport.add_disconnect_listener(self._on_transport_disconnected)
        self.dispatcher.attach(transport)
        self.dispatcher.start()
        self.observer.reset()
        self.engine.activate()
        self.started = True
        self.last_heartbeat = self.clock()

        try:
            await self.observer.subscribe(self.dispatcher)
        except DispatchError:
            await self.stop()
            raise

        self._drift_task = asyncio.create_task(self._drift_loop())
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("Sync session started")

    async def stop(self):
        tasks = [t for t in (self._drift_task, self._heartbeat_task) if t is not None]
        self._drift_task = None
        self._heartbeat_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self.dispatcher.stop()
        self.engine.deactivate()
        self.observer.reset()

        transport = self.transport
        self.transport = None
        if transport is not None:
            transport.remove_message_listener(self._on_message)
            transport.remove_disconnect_listener(self._on_transport_disconnected)
        self.dispatcher.detach()

        if self.started:
            logger.info("Sync session stopped")
        self.started = False

    def reset(self):
        # The observer's snapshot is kept: mpv will not resend unchanged properties
        self.engine.reset(remote=self.observer.state)
        self.dispatcher.reset_stats()
        logger.info("Sync stats and playback states reset")

    @property
    def status(self) -> SessionStatus:
        if not self.started or not self.engine.active:
            return SessionStatus.DISCONNECTED
        if self.transport is None or not self.transport.connected:
            return SessionStatus.DISCONNECTED
        if (self.dispatcher.sample_count >= settings.STATUS_MIN_SAMPLES
                and self.dispatcher.success_rate() < settings.STATUS_DEGRADED_SUCCESS_RATE):
            return SessionStatus.DEGRADED
        if self.clock() - self.last_heartbeat > 2 * settings.HEARTBEAT_INTERVAL_SECONDS:
            return SessionStatus.DEGRADED
        return SessionStatus.CONNECTED

    def get_stats(self) -> SyncStats:
        d = self.dispatcher.stats
        return self.engine.session.stats.model_copy(update={
            "commands_sent": d.commands_sent,
            "duplicates_blocked": d.duplicates_blocked,
            "timeouts": d.timeouts,
            "failures": d.failures,
            "avg_response_ms": d.avg_response_ms,
            "leader": self.engine.leader,
            "status": self.status,
        })

    def _on_message(self, message: EngineMessage):
        self.last_heartbeat = self.clock()
        self.dispatcher.on_message(message)
        self.observer.on_message(message)

    def _on_transport_disconnected(self, reason: str):
        self.dispatcher.fail_all(ConnectionLost, reason)
        self.engine.on_disconnected(reason)

    async def _drift_loop(self):
        while True:
            try:
                await self.engine.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in drift loop: {e}", exc_info=True)
            await asyncio.sleep(settings.SYNC_INTERVAL_SECONDS)

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(settings.HEARTBEAT_INTERVAL_SECONDS)
            if not self.dispatcher.connected:
                continue
            try:
                await self.dispatcher.call(Verb.GET_PROPERTY, settings.HEARTBEAT_PROPERTY, source=Source.API)
            except EngineRejected as e:
                # mpv answered, which is all the heartbeat needs
                logger.debug(f"Heartbeat property unavailable: {e.error}")
            except Cancelled:
                return
            except DispatchError as e:
                logger.warning(f"Heartbeat failed: {e}")
