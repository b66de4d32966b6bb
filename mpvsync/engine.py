import asyncio
import logging
import math
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from .config import settings
from .errors import ConnectionLost, DispatchError, EngineError
from .models import Command, Leader, PlaybackState, Priority, Region, Reply, Source, SyncSession, SyncStats, Verb

logger = logging.getLogger(__name__)

CorrectionListener = Callable[[PlaybackState], None]
DisconnectListener = Callable[[str], None]

def _require_number(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise EngineError(f"{name} must be a finite number, got {value!r}")
    return float(value)

class SyncEngine:
    """
    Keeps the local waveform player and the remote mpv player in lock-step.

    Exactly one side leads at a time. Local user actions make the waveform the
    leader; meaningful changes observed in mpv that this engine did not cause
    make mpv the leader. Drift is only ever corrected on the follower side.

    Every command the engine sends is remembered per dedup key so that the
    property-change it provokes is recognised as an echo rather than a new
    remote action.
    """

    def __init__(self, dispatcher, session: Optional[SyncSession] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.dispatcher = dispatcher
        self.session = session or SyncSession()
        self.clock = clock
        self.local = PlaybackState()
        self.remote = PlaybackState()
        self._sent: Dict[str, Tuple[Any, float]] = {}
        self._settle_until = 0.0
        self._tasks: Set[asyncio.Task] = set()
        self._correction_listeners: List[CorrectionListener] = []
        self._disconnect_listeners: List[DisconnectListener] = []

    @property
    def leader(self) -> Leader:
        return self.session.leader

    @property
    def active(self) -> bool:
        return self.session.leader is not Leader.IDLE

    def add_correction_listener(self, listener: CorrectionListener):
        self._correction_listeners.append(listener)

    def add_disconnect_listener(self, listener: DisconnectListener):
        self._disconnect_listeners.append(listener)

    # Lifecycle

    def activate(self):
        self.session.leader = Leader.LOCAL
        self.session.lock_until = 0.0
        self._settle_until = 0.0
        logger.info("Sync session active, waveform leads")

    def deactivate(self):
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self.session.leader = Leader.IDLE
        self.session.lock_until = 0.0
        self.session.active_region = None
        self.local = PlaybackState()
        self.remote = PlaybackState()
        self._sent.clear()
        self._settle_until = 0.0

    def reset(self, remote: Optional[PlaybackState] = None):
        """
        Zero stats and the local state; the leader and connection are untouched.

        mpv only reports a property when it changes, so callers that still hold
        mpv's last known state pass it as ``remote`` instead of losing it.
        """
        self.session.stats = SyncStats()
        self.session.active_region = None
        self.local = PlaybackState()
        self.remote = remote if remote is not None else PlaybackState()
        self._sent.clear()
        self._settle_until = 0.0

    def snapshot(self) -> Dict[str, Any]:
        now = self.clock()
        return {
            "leader": self.session.leader.value,
            "locked": self.session.locked(now),
            "drift": abs(self.local.position_at(now) - self.remote.position_at(now)),
            "local": self.local.model_dump(),
            "remote": self.remote.model_dump(),
            "active_region": self.session.active_region.model_dump() if self.session.active_region else None,
        }

    # Local (waveform) entry points

    def on_local_seek(self, position: float):
        position = self._clamp(_require_number("position", position))
        now = self.clock()
        self.local = self.local.evolve(now, position=position)
        region = self.session.active_region
        if region is not None and not region.start <= position < region.end:
            self.session.active_region = None
        self._claim_local(now)
        self._forward(Verb.SEEK, position, "absolute")

    def on_local_play(self):
        now = self.clock()
        self.local = self.local.evolve(now, position=self.local.position_at(now), playing=True)
        self._claim_local(now)
        self._forward(Verb.PLAY)

    def on_local_pause(self):
        now = self.clock()
        self.local = self.local.evolve(now, position=self.local.position_at(now), playing=False)
        self.session.active_region = None
        self._claim_local(now)
        self._forward(Verb.PAUSE)

    def on_local_speed_change(self, speed: float):
        speed = _require_number("speed", speed)
        if speed <= 0:
            raise EngineError(f"speed must be positive, got {speed}")
        now = self.clock()
        self.local = self.local.evolve(now, position=self.local.position_at(now), speed=speed)
        self._forward(Verb.SET_SPEED, speed)

    def on_local_volume_change(self, volume: float):
        volume = int(round(min(100.0, max(0.0, _require_number("volume", volume)))))
        now = self.clock()
        self.local = self.local.evolve(now, position=self.local.position_at(now), volume=volume)
        self._forward(Verb.SET_VOLUME, volume)

    def on_local_progress(self, position: float):
        """Playback time reported by the waveform while it plays; not a user action."""
        position = self._clamp(_require_number("position", position))
        self.local = self.local.evolve(self.clock(), position=position)

    async def play_region(self, start: float, end: float):
        """Seek both sides to ``start`` and play; the tick pauses both at ``end``."""
        start = _require_number("start", start)
        end = _require_number("end", end)
        if start < 0 or end <= start:
            raise EngineError(f"Invalid region {start}-{end}")

        duration = self._duration()
        if duration is not None:
            # position_at never passes the duration, so a later end would never be reached
            end = min(end, duration)
            if end <= start:
                raise EngineError(f"Region {start}-{end} starts past the end of the media")

        now = self.clock()
        start = self._clamp(start)
        was_playing = self.local.playing
        self.local = self.local.evolve(now, position=start, playing=True)
        self.session.active_region = Region(start=start, end=end)
        self._claim_local(now)
        if not self.active or not self.dispatcher.connected:
            return

        try:
            await self._issue(Verb.SEEK, start, "absolute", source=Source.USER)
            if not was_playing:
                await self._issue(Verb.PLAY, source=Source.USER)
        except ConnectionLost as e:
            self._handle_connection_lost(str(e))
            raise

    # Remote (mpv) entry points

    def on_remote_state_changed(self, state: PlaybackState):
        if state.updated_at <= self.remote.updated_at:
            logger.debug("Discarding stale remote state")
            return
        previous = self.remote
        self.remote = state
        now = self.clock()

        if state.duration is not None and state.duration != self.local.duration:
            self.local = self.local.evolve(now, position=min(self.local.position_at(now), state.duration),
                                           duration=state.duration)

        if not self.active or previous.updated_at == 0.0:
            # First report after connecting is a baseline, not a change
            return

        confirmed_seek = False
        if state.position != previous.position:
            allowance = (now - previous.updated_at) * state.speed if state.playing else 0.0
            confirmed_seek = self._confirm("seek", state.position, now, allowance)
        flipped = state.playing != previous.playing
        confirmed_pause = flipped and self._confirm("pause", not state.playing, now)

        jumped = abs(state.position - previous.position_at(state.updated_at)) > settings.SYNC_REMOTE_JUMP_SECONDS
        meaningful = (jumped and not confirmed_seek) or (flipped and not confirmed_pause)

        if not meaningful:
            self._mirror_settings(state, previous, now)
            return

        if self.session.locked(now):
            logger.debug("Remote change inside transition lock, leader unchanged")
            return

        logger.info(f"mpv-initiated change detected (jump={jumped}, play/pause={flipped}), mpv leads")
        self._set_leader(Leader.REMOTE, now)
        self._correct_local(now)

    def on_disconnected(self, reason: str):
        self._handle_connection_lost(reason)

    # Drift loop

    async def tick(self):
        """One pass of drift detection; corrects only the follower side."""
        if not self.active:
            return
        now = self.clock()
        if self.session.locked(now) or now < self._settle_until:
            return
        if self.remote.updated_at == 0.0:
            # mpv has not reported anything yet
            return
        if await self._check_region_end(now):
            return

        drift = abs(self.local.position_at(now) - self.remote.position_at(now))
        self.session.stats.last_accuracy = drift
        if drift <= self.session.drift_threshold:
            return

        self.session.stats.drift_corrections += 1
        if self.session.leader is Leader.LOCAL:
            await self._correct_remote(now, drift)
        else:
            logger.info(f"Drift {drift:.3f}s, moving waveform to mpv at {self.remote.position_at(now):.3f}s")
            self._correct_local(now)

    # Internals

    def _duration(self) -> Optional[float]:
        return self.remote.duration if self.remote.duration is not None else self.local.duration

    def _clamp(self, position: float) -> float:
        position = max(0.0, position)
        duration = self._duration()
        if duration is not None:
            position = min(position, duration)
        return position

    def _set_leader(self, leader: Leader, now: float):
        if self.session.leader is not leader:
            logger.debug(f"Leader {self.session.leader.value} -> {leader.value}")
        self.session.leader = leader
        self.session.lock_until = now + settings.SYNC_TRANSITION_LOCK_SECONDS

    def _claim_local(self, now: float):
        if self.active:
            self._set_leader(Leader.LOCAL, now)

    def _forward(self, verb: Verb, *args):
        if not self.active or not self.dispatcher.connected:
            return
        self._spawn(self._issue(verb, *args, source=Source.USER))

    def _spawn(self, coro):
        task = asyncio.create_task(self._guard(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, coro):
        try:
            await coro
        except ConnectionLost as e:
            self._handle_connection_lost(str(e))
        except DispatchError as e:
            logger.warning(f"Forwarding to mpv failed: {e}")

    async def _issue(self, verb: Verb, *args, source: Source, priority: Optional[Priority] = None) -> Reply:
        command = Command.create(verb, *args, priority=priority, source=source)
        key = command.dedup_key
        if key is not None:
            self._sent[key] = (command.dedup_value, self.clock())
        reply = await self.dispatcher.submit(command)
        if key is not None and not reply.deduplicated:
            self._sent[key] = (command.dedup_value, self.clock())
        return reply

    def _confirm(self, key: str, value: Any, now: float, allowance: float = 0.0) -> bool:
        """True when ``value`` is the echo of a command this engine just sent."""
        record = self._sent.get(key)
        if record is None:
            return False
        sent_value, sent_at = record
        if now - sent_at > settings.SYNC_ECHO_GRACE_SECONDS:
            return False
        if key == "seek":
            matched = abs(value - sent_value) <= settings.SYNC_POSITION_EPSILON_SECONDS + allowance
        else:
            matched = value == sent_value
        if matched:
            del self._sent[key]
            self.session.stats.echoes_suppressed += 1
        return matched

    def _mirror_settings(self, state: PlaybackState, previous: PlaybackState, now: float):
        changes = {}
        if state.speed != previous.speed and state.speed != self.local.speed and not self._confirm("speed", state.speed, now):
            changes["speed"] = state.speed
        if state.volume != previous.volume and state.volume != self.local.volume and not self._confirm("volume", state.volume, now):
            changes["volume"] = state.volume
        if changes:
            self.local = self.local.evolve(now, position=self.local.position_at(now), **changes)
            self._emit_correction(self.local)

    def _correct_local(self, now: float):
        self.local = self.local.evolve(
            now,
            position=self.remote.position_at(now),
            playing=self.remote.playing,
            speed=self.remote.speed,
        )
        self._emit_correction(self.local)

    async def _correct_remote(self, now: float, drift: float):
        target = self.local.position_at(now)
        want_playing = self.local.playing
        logger.info(f"Drift {drift:.3f}s, moving mpv to waveform at {target:.3f}s")
        try:
            await self._issue(Verb.SEEK, target, "absolute", source=Source.SYNC_CORRECTION, priority=Priority.NORMAL)
            if self.remote.playing != want_playing:
                verb = Verb.PLAY if want_playing else Verb.PAUSE
                await self._issue(verb, source=Source.SYNC_CORRECTION, priority=Priority.NORMAL)
        except ConnectionLost as e:
            self._handle_connection_lost(str(e))
        except DispatchError as e:
            self.session.stats.correction_failures += 1
            logger.warning(f"Drift correction failed: {e}")
        finally:
            self._settle_until = self.clock() + settings.SYNC_ECHO_GRACE_SECONDS

    async def _check_region_end(self, now: float) -> bool:
        region = self.session.active_region
        if region is None:
            return False
        leading = self.remote if self.session.leader is Leader.REMOTE else self.local
        if not leading.playing or leading.position_at(now) < region.end:
            return False

        logger.info(f"Region {region.start:.2f}-{region.end:.2f}s finished, pausing both players")
        self.session.active_region = None
        self.local = self.local.evolve(now, position=self._clamp(region.end), playing=False)
        self._emit_correction(self.local)
        try:
            await self._issue(Verb.PAUSE, source=Source.SYNC_CORRECTION)
        except ConnectionLost as e:
            self._handle_connection_lost(str(e))
        except DispatchError as e:
            self.session.stats.correction_failures += 1
            logger.warning(f"Region pause failed: {e}")
        return True

    def _handle_connection_lost(self, reason: str):
        if not self.active:
            return
        logger.warning(f"mpv connection lost ({reason}), sync session idle")
        now = self.clock()
        self.session.leader = Leader.IDLE
        self.session.lock_until = 0.0
        self.session.active_region = None
        self.local = self.local.evolve(now, position=self.local.position_at(now), playing=False)
        self.remote = self.remote.evolve(now, position=self.remote.position_at(now), playing=False)
        self._sent.clear()
        for listener in list(self._disconnect_listeners):
            try:
                listener(reason)
            except Exception as e:
                logger.error(f"Disconnect listener failed: {e}", exc_info=True)

    def _emit_correction(self, state: PlaybackState):
        for listener in list(self._correction_listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Correction listener failed: {e}", exc_info=True)
