import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple
from ..errors import WriteError
from ..models import EngineMessage
from .transport import BaseTransport

logger = logging.getLogger(__name__)

class LoopbackTransport(BaseTransport):
    """
    In-memory stand-in for an mpv process.

    Keeps a property table, answers commands with mpv-shaped replies and emits
    ``property-change`` events for observed properties. Used for DRY_RUN and tests.

    respond:     answer commands at all (False simulates a hung engine)
    echo:        emit property-change events after a command changes a property
    reply_delay: seconds between receiving a command and answering it
    reject:      wire command name -> error string returned instead of success
    """

    def __init__(self, *, respond: bool = True, echo: bool = True, reply_delay: float = 0.0,
                 reject: Optional[Dict[str, str]] = None, duration: Optional[float] = None):
        super().__init__()
        self.respond = respond
        self.echo = echo
        self.reply_delay = reply_delay
        self.reject = dict(reject or {})
        self.properties: Dict[str, Any] = {
            "time-pos": 0.0,
            "pause": True,
            "speed": 1.0,
            "volume": 100.0,
            "duration": duration,
        }
        self.observed: Dict[str, int] = {}
        self.sent: List[Dict[str, Any]] = []
        self._handles: List[asyncio.Handle] = []

    async def connect(self):
        if not self.connected:
            self._mark_connected()
            logger.info("Connected to loopback mpv")

    async def send(self, payload: Dict[str, Any]):
        if not self.connected:
            raise WriteError("loopback mpv not connected")
        self.sent.append(payload)
        if not self.respond:
            return
        loop = asyncio.get_running_loop()
        if self.reply_delay > 0:
            handle = loop.call_later(self.reply_delay, self._process, payload)
        else:
            handle = loop.call_soon(self._process, payload)
        self._handles.append(handle)

    async def close(self):
        self.drop("closed")

    def drop(self, reason: str = "connection reset"):
        """Simulate the mpv side going away."""
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
        self._mark_disconnected(reason)

    def sent_commands(self) -> List[List[Any]]:
        return [payload["command"] for payload in self.sent]

    def emit_property(self, name: str, value: Any):
        """Simulate a change made directly in mpv (keyboard, OSC, scripts)."""
        self.properties[name] = value
        self._emit_change(name, value)

    def emit_raw(self, obj: Dict[str, Any]):
        self._emit_message(EngineMessage.model_validate(obj))

    def _process(self, payload: Dict[str, Any]):
        if not self.connected:
            return
        command = payload.get("command") or []
        error, data, changes = self._execute(command)
        self.emit_raw({"request_id": payload.get("request_id"), "error": error, "data": data})
        if self.echo:
            for name, value in changes:
                self._emit_change(name, value)

    def _execute(self, command: List[Any]) -> Tuple[str, Any, List[Tuple[str, Any]]]:
        name = command[0] if command else None
        if name in self.reject:
            return self.reject[name], None, []

        if name == "seek" and len(command) >= 3:
            target, mode = float(command[1]), command[2]
            duration = self.properties.get("duration")
            if mode == "relative":
                target += self.properties.get("time-pos") or 0.0
            elif mode == "absolute-percent":
                if duration is None:
                    return "property unavailable", None, []
                target = duration * target / 100.0
            target = max(0.0, target if duration is None else min(target, duration))
            self.properties["time-pos"] = target
            return "success", None, [("time-pos", target)]

        if name == "set_property" and len(command) == 3:
            prop, value = command[1], command[2]
            changed = self.properties.get(prop) != value
            self.properties[prop] = value
            return "success", None, [(prop, value)] if changed else []

        if name == "get_property" and len(command) == 2:
            value = self.properties.get(command[1])
            if value is None:
                return "property unavailable", None, []
            return "success", value, []

        if name == "observe_property" and len(command) == 3:
            self.observed[command[2]] = command[1]
            # mpv reports the current value right after observe_property
            return "success", None, [(command[2], self.properties.get(command[2]))]

        return "invalid parameter", None, []

    def _emit_change(self, name: str, value: Any):
        if name not in self.observed:
            return
        self.emit_raw({"event": "property-change", "id": self.observed[name], "name": name, "data": value})
