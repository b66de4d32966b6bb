import asyncio
import logging
from typing import Any, Callable, Dict, List
from ..models import EngineMessage

logger = logging.getLogger(__name__)

MessageListener = Callable[[EngineMessage], None]
DisconnectListener = Callable[[str], None]

class BaseTransport:
    """
    Listener bookkeeping shared by the concrete transports.

    Subclasses own the physical channel and call ``_emit_message`` for every
    parsed inbound line and ``_mark_disconnected`` exactly when the channel drops.
    """

    def __init__(self):
        self._message_listeners: List[MessageListener] = []
        self._disconnect_listeners: List[DisconnectListener] = []
        self._closed = asyncio.Event()
        self._closed.set()

    @property
    def connected(self) -> bool:
        return not self._closed.is_set()

    async def connect(self):
        raise NotImplementedError

    async def send(self, payload: Dict[str, Any]):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError

    async def wait_closed(self):
        await self._closed.wait()

    def add_message_listener(self, listener: MessageListener):
        self._message_listeners.append(listener)

    def remove_message_listener(self, listener: MessageListener):
        if listener in self._message_listeners:
            self._message_listeners.remove(listener)

    def add_disconnect_listener(self, listener: DisconnectListener):
        self._disconnect_listeners.append(listener)

    def remove_disconnect_listener(self, listener: DisconnectListener):
        if listener in self._disconnect_listeners:
            self._disconnect_listeners.remove(listener)

    def _mark_connected(self):
        self._closed = asyncio.Event()

    def _emit_message(self, message: EngineMessage):
        for listener in list(self._message_listeners):
            try:
                listener(message)
            except Exception as e:
                logger.error(f"Message listener failed: {e}", exc_info=True)

    def _mark_disconnected(self, reason: str):
        if self._closed.is_set():
            return
        self._closed.set()
        logger.info(f"mpv channel disconnected: {reason}")
        for listener in list(self._disconnect_listeners):
            try:
                listener(reason)
            except Exception as e:
                logger.error(f"Disconnect listener failed: {e}", exc_info=True)
