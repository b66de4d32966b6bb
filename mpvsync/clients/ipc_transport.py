import asyncio
import json
import logging
from typing import Any, Dict, Optional
from pydantic import ValidationError
from ..config import settings
from ..errors import TransportError, WriteError
from ..models import EngineMessage
from .transport import BaseTransport

logger = logging.getLogger(__name__)

READ_LIMIT_BYTES = 1024 * 1024

class IpcTransport(BaseTransport):
    """Line-delimited JSON client for mpv's ``--input-ipc-server`` unix socket."""

    def __init__(self, path: Optional[str] = None):
        super().__init__()
        self.path = path or settings.MPV_SOCKET_PATH
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()

    async def connect(self):
        if self.connected:
            return
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_unix_connection(self.path, limit=READ_LIMIT_BYTES),
                timeout=settings.MPV_CONNECT_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out connecting to mpv at {self.path}") from e
        except OSError as e:
            raise TransportError(f"Could not connect to mpv at {self.path}: {e}") from e

        self._mark_connected()
        self._read_task = asyncio.create_task(self._read_loop())
        logger.info(f"Connected to mpv IPC at {self.path}")

    async def send(self, payload: Dict[str, Any]):
        if not self.connected or self._writer is None:
            raise WriteError("mpv IPC socket not connected")
        try:
            line = json.dumps(payload) + "\n"
        except (TypeError, ValueError) as e:
            raise WriteError(f"Payload is not JSON serializable: {e}") from e

        async with self._write_lock:
            try:
                self._writer.write(line.encode("utf-8"))
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                self._mark_disconnected(f"write failed: {e}")
                raise WriteError(f"Failed to write to mpv: {e}") from e

    async def close(self):
        task = self._read_task
        self._read_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_writer()
        self._mark_disconnected("closed")

    async def _close_writer(self):
        writer = self._writer
        self._writer = None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error while closing mpv socket: {e}")

    async def _read_loop(self):
        reason = "eof"
        try:
            while True:
                try:
                    raw = await self._reader.readline()
                except ValueError as e:
                    # Line over READ_LIMIT_BYTES; the stream already discarded it
                    logger.warning(f"Dropping oversized mpv message: {e}")
                    continue
                if not raw:
                    break
                self._handle_line(raw)
        except (ConnectionError, OSError) as e:
            reason = f"read failed: {e}"
        finally:
            if self._read_task is not None:
                # Remote side went away on its own
                self._read_task = None
                await self._close_writer()
                self._mark_disconnected(reason)

    def _handle_line(self, raw: bytes):
        text = raw.decode("utf-8", errors="replace").strip()
        if not text:
            return
        try:
            obj = json.loads(text)
            if not isinstance(obj, dict):
                raise ValueError(f"expected a JSON object, got {type(obj).__name__}")
            message = EngineMessage.model_validate(obj)
        except (ValueError, ValidationError) as e:
            logger.warning(f"Dropping malformed mpv message {text[:200]!r}: {e}")
            return
        self._emit_message(message)
