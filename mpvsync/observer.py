import logging
import time
from typing import Any, Callable, Dict, Optional
from pydantic import ValidationError
from .models import EngineMessage, PlaybackState, Source, Verb

logger = logging.getLogger(__name__)

# mpv property -> observer id used in observe_property
WATCHED_PROPERTIES: Dict[str, int] = {
    "time-pos": 1,
    "duration": 2,
    "pause": 3,
    "speed": 4,
    "volume": 5,
}

class PropertyObserver:
    """
    Translates mpv ``property-change`` events into remote PlaybackState
    snapshots for the engine. Holds no sync policy.
    """

    def __init__(self, engine, clock: Callable[[], float] = time.monotonic):
        self.engine = engine
        self.clock = clock
        self.state = PlaybackState()

    async def subscribe(self, dispatcher):
        for name, observer_id in WATCHED_PROPERTIES.items():
            await dispatcher.call(Verb.OBSERVE, observer_id, name, source=Source.API)
        logger.info(f"Observing mpv properties: {', '.join(WATCHED_PROPERTIES)}")

    def reset(self):
        self.state = PlaybackState()

    def on_message(self, message: EngineMessage):
        if not message.is_property_change or message.name not in WATCHED_PROPERTIES:
            return
        if message.data is None:
            # Property unavailable (no file loaded, or mpv is idle)
            return

        changes = self._translate(message.name, message.data)
        if changes is None:
            return

        now = self.clock()
        if now < self.state.updated_at:
            logger.debug(f"Discarding stale {message.name} update")
            return
        try:
            new_state = self.state.evolve(now, **changes)
        except ValidationError as e:
            logger.warning(f"Ignoring out-of-range {message.name}={message.data!r}: {e.errors()[0]['msg']}")
            return

        self.state = new_state
        self.engine.on_remote_state_changed(new_state)

    def _translate(self, name: str, data: Any) -> Optional[Dict[str, Any]]:
        try:
            if name == "time-pos":
                return {"position": max(0.0, float(data))}
            if name == "duration":
                return {"duration": float(data)}
            if name == "pause":
                return {"playing": not bool(data)}
            if name == "speed":
                return {"speed": float(data)}
            if name == "volume":
                return {"volume": min(100, max(0, int(round(float(data)))))}
        except (TypeError, ValueError):
            logger.warning(f"Ignoring malformed {name} value {data!r}")
        return None
