import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional, Tuple, Type
from .config import settings
from .errors import (
    Cancelled, ConnectionLost, DispatchError, EngineError, EngineRejected,
    NotConnected, Timeout, TransportError,
)
from .models import (
    Command, DispatchStats, EngineMessage, Priority, Reply, Source,
    default_rate_limit_windows, validate_args,
)

logger = logging.getLogger(__name__)

@dataclass
class _Pending:
    command: Command
    future: "asyncio.Future[Reply]"
    reply: Optional["asyncio.Future[Any]"] = None


class CommandDispatcher:
    """
    Serializes commands to the transport: one in flight at a time, urgent
    before normal, FIFO within a class. Duplicate commands inside their
    rate-limit window resolve as no-ops without touching the wire.
    """

    def __init__(self, rate_limit_windows: Optional[Dict[str, float]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.rate_limit_windows = rate_limit_windows if rate_limit_windows is not None else default_rate_limit_windows()
        self.clock = clock
        self.stats = DispatchStats()
        self._transport = None
        self._urgent: Deque[_Pending] = deque()
        self._normal: Deque[_Pending] = deque()
        self._in_flight: Dict[int, _Pending] = {}
        self._last_sent: Dict[str, Tuple[Any, float]] = {}
        self._outcomes: Deque[bool] = deque(maxlen=settings.STATUS_WINDOW_SIZE)
        self._latency_samples = 0
        self._wakeup = asyncio.Event()
        self._worker: Optional[asyncio.Task] = None

    # Wiring

    def attach(self, transport):
        self._transport = transport

    def detach(self):
        self._transport = None

    @property
    def connected(self) -> bool:
        return self._transport is not None and self._transport.connected

    @property
    def queued(self) -> int:
        return len(self._urgent) + len(self._normal)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def start(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def stop(self):
        """Fail everything pending with Cancelled and stop the worker."""
        self.fail_all(Cancelled, "dispatcher stopped")
        worker = self._worker
        self._worker = None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._last_sent.clear()

    def reset_stats(self):
        self.stats = DispatchStats()
        self._outcomes.clear()
        self._latency_samples = 0

    # Submission

    def submit(self, command: Command) -> "asyncio.Future[Reply]":
        """
        Queue ``command`` and return a future for its reply.

        Raises EngineError for invalid commands and NotConnected when no
        connected transport is attached; neither reaches the queue.
        """
        if not isinstance(command, Command):
            raise EngineError(f"Expected a Command, got {type(command).__name__}")
        validate_args(command.verb, command.args)
        if not self.connected:
            raise NotConnected("mpv is not connected")

        future = asyncio.get_running_loop().create_future()
        if self._is_duplicate(command):
            self._block(command, future)
            return future

        pending = _Pending(command, future)
        if command.priority is Priority.URGENT:
            self._urgent.append(pending)
        else:
            self._normal.append(pending)
        self._wakeup.set()
        return future

    async def call(self, verb, *args, priority=None, source=Source.API, timeout: Optional[float] = None) -> Reply:
        command = Command.create(verb, *args, priority=priority, source=source, timeout=timeout)
        return await self.submit(command)

    def on_message(self, message: EngineMessage):
        """Resolve the in-flight command a reply belongs to."""
        if message.request_id is None:
            return
        pending = self._in_flight.get(message.request_id)
        if pending is None or pending.reply is None or pending.reply.done():
            logger.debug(f"Ignoring reply for unknown request {message.request_id}")
            return
        if message.error == "success":
            pending.reply.set_result(message.data)
        else:
            pending.reply.set_exception(EngineRejected(message.error or "unknown error", message.request_id))

    def fail_all(self, error_type: Type[DispatchError], reason: str):
        """Fail the in-flight command and everything queued behind it."""
        failed = 0
        for pending in list(self._in_flight.values()):
            if pending.reply is not None and not pending.reply.done():
                pending.reply.set_exception(error_type(reason))
            failed += self._settle(pending.future, error=error_type(reason))
        while self._urgent or self._normal:
            pending = self._urgent.popleft() if self._urgent else self._normal.popleft()
            failed += self._settle(pending.future, error=error_type(reason))
        if failed:
            self.stats.failures += failed
            logger.info(f"Failed {failed} pending command(s): {error_type.__name__}: {reason}")

    # Health

    def success_rate(self) -> float:
        if not self._outcomes:
            return 1.0
        return sum(self._outcomes) / len(self._outcomes)

    @property
    def sample_count(self) -> int:
        return len(self._outcomes)

    # Internals

    def _is_duplicate(self, command: Command) -> bool:
        key = command.dedup_key
        if key is None or key not in self._last_sent:
            return False
        value, sent_at = self._last_sent[key]
        if self.clock() - sent_at >= self.rate_limit_windows.get(key, 0.0):
            return False
        if key == "seek":
            return abs(command.dedup_value - value) < settings.SYNC_POSITION_EPSILON_SECONDS
        return command.dedup_value == value

    def _block(self, command: Command, future: "asyncio.Future[Reply]"):
        self.stats.duplicates_blocked += 1
        logger.debug(f"Suppressed duplicate {command.verb.value} {list(command.args)} from {command.source.value}")
        future.set_result(Reply(command_id=command.id, verb=command.verb, deduplicated=True))

    @staticmethod
    def _settle(future: "asyncio.Future[Reply]", result: Optional[Reply] = None,
                error: Optional[BaseException] = None) -> int:
        if future.done():
            return 0
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)
        return 1

    def _next(self) -> Optional[_Pending]:
        while self._urgent or self._normal:
            pending = self._urgent.popleft() if self._urgent else self._normal.popleft()
            if not pending.future.done():
                return pending
        return None

    async def _run(self):
        while True:
            pending = self._next()
            if pending is None:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            try:
                await self._dispatch(pending)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Unexpected error dispatching command {pending.command.id}: {e}", exc_info=True)
                self._settle(pending.future, error=DispatchError(str(e)))

    async def _dispatch(self, pending: _Pending):
        command = pending.command
        if self._is_duplicate(command):
            self._block(command, pending.future)
            return

        transport = self._transport
        if transport is None or not transport.connected:
            self.stats.failures += 1
            self._settle(pending.future, error=ConnectionLost("mpv connection lost before dispatch"))
            return

        pending.reply = asyncio.get_running_loop().create_future()
        self._in_flight[command.id] = pending
        sent_at = self.clock()
        started = time.perf_counter()
        try:
            await transport.send(command.to_wire())
            self.stats.commands_sent += 1
            data = await asyncio.wait_for(pending.reply, timeout=command.timeout)
        except asyncio.TimeoutError:
            self.stats.timeouts += 1
            self._outcomes.append(False)
            logger.warning(f"Command {command.id} ({command.verb.value}) timed out after {command.timeout:.2f}s")
            self._settle(pending.future, error=Timeout(f"{command.verb.value} timed out after {command.timeout:.2f}s"))
        except ConnectionLost as e:
            self._outcomes.append(False)
            self._settle(pending.future, error=e)
        except TransportError as e:
            self.stats.failures += 1
            self._outcomes.append(False)
            self._settle(pending.future, error=ConnectionLost(str(e)))
        except DispatchError as e:
            if isinstance(e, EngineRejected):
                self.stats.failures += 1
                logger.warning(f"mpv rejected {command.verb.value} {list(command.args)}: {e.error}")
            self._outcomes.append(False)
            self._settle(pending.future, error=e)
        else:
            latency = time.perf_counter() - started
            self._record_latency(latency)
            self._outcomes.append(True)
            if command.dedup_key is not None:
                self._last_sent[command.dedup_key] = (command.dedup_value, sent_at)
            self._settle(pending.future, result=Reply(
                command_id=command.id, verb=command.verb, data=data, latency_s=latency
            ))
        finally:
            self._in_flight.pop(command.id, None)

    def _record_latency(self, latency: float):
        self._latency_samples += 1
        ms = latency * 1000.0
        self.stats.avg_response_ms += (ms - self.stats.avg_response_ms) / self._latency_samples
