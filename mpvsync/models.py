import itertools
import math
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field
from .config import settings
from .errors import EngineError

class Verb(str, Enum):
    SEEK = "seek"
    PLAY = "play"
    PAUSE = "pause"
    SET_SPEED = "set_speed"
    SET_VOLUME = "set_volume"
    OBSERVE = "observe"
    GET_PROPERTY = "get_property"

class Priority(str, Enum):
    URGENT = "urgent"
    NORMAL = "normal"

class Source(str, Enum):
    USER = "user"
    SYNC_CORRECTION = "sync-correction"
    API = "api"

class Leader(str, Enum):
    IDLE = "idle"
    LOCAL = "local"
    REMOTE = "remote"

class SessionStatus(str, Enum):
    CONNECTED = "connected"
    DEGRADED = "degraded"
    DISCONNECTED = "disconnected"

SEEK_MODES = ("absolute", "relative", "absolute-percent")
URGENT_VERBS = {Verb.SEEK, Verb.PLAY, Verb.PAUSE}

# Minimum step between two stamps of the same state
STAMP_STEP = 1e-6


def default_rate_limit_windows() -> Dict[str, float]:
    return {
        "seek": settings.RATE_LIMIT_SEEK_SECONDS,
        "pause": settings.RATE_LIMIT_PAUSE_SECONDS,
        "speed": settings.RATE_LIMIT_SPEED_SECONDS,
        "volume": settings.RATE_LIMIT_VOLUME_SECONDS,
    }


class PlaybackState(BaseModel):
    model_config = ConfigDict(frozen=True)

    position: float = Field(default=0.0, ge=0)
    playing: bool = False
    speed: float = Field(default=1.0, gt=0)
    volume: int = Field(default=100, ge=0, le=100)
    duration: Optional[float] = None
    updated_at: float = 0.0

    def position_at(self, now: float) -> float:
        """Position extrapolated to ``now`` while playing."""
        pos = self.position
        if self.playing and now > self.updated_at:
            pos += (now - self.updated_at) * self.speed
        if self.duration is not None:
            pos = min(pos, self.duration)
        return pos

    def evolve(self, now: float, **changes) -> "PlaybackState":
        """
        Returns a validated copy with ``changes`` applied and a stamp that is
        strictly newer than this one, even if the clock did not move.
        """
        data = self.model_dump()
        data.update(changes)
        data["updated_at"] = max(now, self.updated_at + STAMP_STEP)
        return PlaybackState(**data)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)

def _expect_arity(verb: "Verb", args: Tuple[Any, ...], count: int, shape: str):
    if len(args) != count:
        raise EngineError(f"{verb.value} takes exactly {shape}, got {len(args)} argument(s)")

def validate_args(verb: Verb, args: Tuple[Any, ...]):
    if verb is Verb.SEEK:
        _expect_arity(verb, args, 2, "(position, mode)")
        position, mode = args
        if not _is_number(position):
            raise EngineError(f"seek position must be a number, got {position!r}")
        if mode not in SEEK_MODES:
            raise EngineError(f"seek mode must be one of {SEEK_MODES}, got {mode!r}")
        if mode != "relative" and position < 0:
            raise EngineError(f"seek position must be >= 0, got {position}")
    elif verb in (Verb.PLAY, Verb.PAUSE):
        _expect_arity(verb, args, 0, "no arguments")
    elif verb is Verb.SET_SPEED:
        _expect_arity(verb, args, 1, "(speed,)")
        if not _is_number(args[0]) or args[0] <= 0:
            raise EngineError(f"speed must be a positive number, got {args[0]!r}")
    elif verb is Verb.SET_VOLUME:
        _expect_arity(verb, args, 1, "(volume,)")
        volume = args[0]
        if isinstance(volume, bool) or not isinstance(volume, int) or not 0 <= volume <= 100:
            raise EngineError(f"volume must be an integer in 0..100, got {volume!r}")
    elif verb is Verb.OBSERVE:
        _expect_arity(verb, args, 2, "(observer_id, property)")
        if isinstance(args[0], bool) or not isinstance(args[0], int):
            raise EngineError(f"observer id must be an integer, got {args[0]!r}")
        if not isinstance(args[1], str) or not args[1]:
            raise EngineError(f"property name must be a non-empty string, got {args[1]!r}")
    elif verb is Verb.GET_PROPERTY:
        _expect_arity(verb, args, 1, "(property,)")
        if not isinstance(args[0], str) or not args[0]:
            raise EngineError(f"property name must be a non-empty string, got {args[0]!r}")


_command_ids = itertools.count(1)

class Command(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    verb: Verb
    args: Tuple[Any, ...] = ()
    priority: Priority
    source: Source = Source.API
    created_at: float
    timeout: float  # seconds allowed once written to the transport

    @classmethod
    def create(cls, verb, *args, priority=None, source=Source.API, timeout: Optional[float] = None) -> "Command":
        try:
            verb = Verb(verb)
        except ValueError:
            raise EngineError(f"Unknown verb: {verb!r}") from None
        validate_args(verb, args)

        if priority is None:
            priority = Priority.URGENT if verb in URGENT_VERBS else Priority.NORMAL
        priority = Priority(priority)
        if timeout is None:
            timeout = (settings.COMMAND_TIMEOUT_URGENT_SECONDS if priority is Priority.URGENT
                       else settings.COMMAND_TIMEOUT_NORMAL_SECONDS)

        return cls(
            id=next(_command_ids),
            verb=verb,
            args=tuple(args),
            priority=priority,
            source=Source(source),
            created_at=time.monotonic(),
            timeout=timeout,
        )

    @property
    def dedup_key(self) -> Optional[str]:
        """
        Commands sharing a key are compared for duplicate suppression.
        play and pause share one key so that play, pause, play never collapses.
        """
        if self.verb is Verb.SEEK:
            return "seek" if self.args[1] == "absolute" else None
        if self.verb in (Verb.PLAY, Verb.PAUSE):
            return "pause"
        if self.verb is Verb.SET_SPEED:
            return "speed"
        if self.verb is Verb.SET_VOLUME:
            return "volume"
        return None

    @property
    def dedup_value(self) -> Any:
        if self.verb in (Verb.PLAY, Verb.PAUSE):
            return self.verb is Verb.PAUSE
        if self.verb in (Verb.SEEK, Verb.SET_SPEED, Verb.SET_VOLUME):
            return self.args[0]
        return None

    def wire_command(self) -> List[Any]:
        if self.verb is Verb.SEEK:
            cmd = ["seek", self.args[0], self.args[1]]
            if settings.SEEK_PRECISION:
                cmd.append(settings.SEEK_PRECISION)
            return cmd
        if self.verb is Verb.PLAY:
            return ["set_property", "pause", False]
        if self.verb is Verb.PAUSE:
            return ["set_property", "pause", True]
        if self.verb is Verb.SET_SPEED:
            return ["set_property", "speed", self.args[0]]
        if self.verb is Verb.SET_VOLUME:
            return ["set_property", "volume", self.args[0]]
        if self.verb is Verb.OBSERVE:
            return ["observe_property", self.args[0], self.args[1]]
        return ["get_property", self.args[0]]

    def to_wire(self) -> Dict[str, Any]:
        return {"command": self.wire_command(), "request_id": self.id}


class Reply(BaseModel):
    command_id: int
    verb: Verb
    data: Any = None
    deduplicated: bool = False
    latency_s: float = 0.0


class EngineMessage(BaseModel):
    """One line received from mpv: a command reply or an event."""
    model_config = ConfigDict(extra="allow")

    request_id: Optional[int] = None
    event: Optional[str] = None
    name: Optional[str] = None
    data: Any = None
    error: Optional[str] = None

    @property
    def is_property_change(self) -> bool:
        return self.event == "property-change"


class Region(BaseModel):
    start: float
    end: float


class DispatchStats(BaseModel):
    commands_sent: int = 0
    duplicates_blocked: int = 0
    timeouts: int = 0
    failures: int = 0
    avg_response_ms: float = 0.0


class SyncStats(BaseModel):
    commands_sent: int = 0
    duplicates_blocked: int = 0
    drift_corrections: int = 0
    last_accuracy: float = 0.0
    timeouts: int = 0
    failures: int = 0
    avg_response_ms: float = 0.0
    echoes_suppressed: int = 0
    correction_failures: int = 0
    leader: Leader = Leader.IDLE
    status: SessionStatus = SessionStatus.DISCONNECTED


class SyncSession(BaseModel):
    leader: Leader = Leader.IDLE
    lock_until: float = 0.0
    drift_threshold: float = Field(default_factory=lambda: settings.SYNC_DRIFT_THRESHOLD_SECONDS)
    rate_limit_windows: Dict[str, float] = Field(default_factory=default_rate_limit_windows)
    stats: SyncStats = Field(default_factory=SyncStats)
    active_region: Optional[Region] = None

    def locked(self, now: float) -> bool:
        return now < self.lock_until
