import logging
import httpx
from typing import Any, Dict, Optional
from ..config import settings

logger = logging.getLogger(__name__)

class ControlClient:
    """HTTP client the waveform side uses to report local events and read sync status."""

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        base_url = base_url or f"http://{settings.HTTP_SERVER_HOST}:{settings.HTTP_SERVER_PORT}"
        self.client = client or httpx.AsyncClient(
            base_url=base_url.rstrip('/'),
            timeout=settings.REQUEST_TIMEOUT_SECONDS
        )

    async def close(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def _post(self, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        resp = await self.client.post(path, json=body)
        if resp.status_code >= 400:
            logger.warning(f"POST {path} failed: {resp.status_code} {resp.text}")
        resp.raise_for_status()
        return resp.json()

    async def _get(self, path: str) -> Any:
        resp = await self.client.get(path)
        resp.raise_for_status()
        return resp

    async def seek(self, time: float) -> Dict[str, Any]:
        return await self._post("/local/seek", {"time": time})

    async def play(self) -> Dict[str, Any]:
        return await self._post("/local/play")

    async def pause(self) -> Dict[str, Any]:
        return await self._post("/local/pause")

    async def progress(self, time: float) -> Dict[str, Any]:
        return await self._post("/local/progress", {"time": time})

    async def set_speed(self, speed: float) -> Dict[str, Any]:
        return await self._post("/local/speed", {"speed": speed})

    async def set_volume(self, volume: float) -> Dict[str, Any]:
        return await self._post("/local/volume", {"volume": volume})

    async def play_region(self, start: float, end: float) -> Dict[str, Any]:
        return await self._post("/region/play", {"start": start, "end": end})

    async def command(self, verb: str, *args, priority: Optional[str] = None) -> Dict[str, Any]:
        """Sends a raw mpv command through the dispatcher, like the frontend's mpv-command call."""
        body: Dict[str, Any] = {"verb": verb, "args": list(args)}
        if priority is not None:
            body["priority"] = priority
        return await self._post("/command", body)

    async def reset(self) -> Dict[str, Any]:
        return await self._post("/reset")

    async def health(self) -> str:
        resp = await self._get("/healthz")
        return resp.json().get("status")

    async def status(self) -> Dict[str, Any]:
        resp = await self._get("/status")
        return resp.json()

    async def metrics(self) -> str:
        resp = await self._get("/metrics")
        return resp.text
