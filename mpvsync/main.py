import asyncio
import logging
import signal
import sys
import uvicorn

from .config import settings
from .clients.ipc_transport import IpcTransport
from .clients.loopback import LoopbackTransport
from .errors import DispatchError, TransportError
from .session import SyncSessionManager
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

logger = logging.getLogger("main")

class SyncService:
    def __init__(self):
        self.running = True
        self.session = SyncSessionManager()

        # Link session to server module
        server.bind(self.session)

    def make_transport(self):
        if settings.DRY_RUN:
            return LoopbackTransport()
        return IpcTransport(settings.MPV_SOCKET_PATH)

    async def connection_loop(self):
        delay = settings.RECONNECT_INITIAL_DELAY_SECONDS
        while self.running:
            transport = self.make_transport()
            try:
                await transport.connect()
                await self.session.start(transport)
                delay = settings.RECONNECT_INITIAL_DELAY_SECONDS
                await transport.wait_closed()
                logger.warning("mpv connection closed")
            except (TransportError, DispatchError) as e:
                logger.warning(f"Could not sync with mpv: {e}")
            except Exception as e:
                logger.error(f"Error in connection loop: {e}", exc_info=True)
            finally:
                await self.session.stop()
                await transport.close()

            if not self.running:
                break
            logger.info(f"Reconnecting to mpv in {delay:.1f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, settings.RECONNECT_MAX_DELAY_SECONDS)

    async def start(self):
        tasks = [asyncio.create_task(self.connection_loop())]

        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host=settings.HTTP_SERVER_HOST, port=settings.HTTP_SERVER_PORT, log_level="warning")
            server_task = uvicorn.Server(config).serve()
            tasks.append(asyncio.create_task(server_task))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            self.running = False
            await self.session.stop()

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

def run():
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = SyncService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")

if __name__ == "__main__":
    run()
