import asyncio
import logging
import signal
import sys
import uvicorn
import time

from .config import settings
from .state import JsonProgressStore, StoreWriteError
from .clients.abs_client import ABSClient
from .engine import ProgressSync
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("main")

def log_notification(text: str):
    logger.warning(f"[NOTICE] {text}")

class SyncService:
    def __init__(self):
        self.running = True
        self.store = JsonProgressStore(settings.STATE_PATH)
        self.abs = ABSClient()
        self.sync = ProgressSync(self.abs, self.store, notifier=log_notification)

        server.progress_sync = self.sync

    async def run_batch(self):
        result = await self.sync.sync_all_pending()
        now = time.time()
        server.last_batch_at = now
        self.store.record_batch(result, now)
        for error in result.errors:
            logger.warning(error)
        return result

    async def sync_loop(self):
        while self.running:
            start_time = time.time()
            try:
                await self.run_batch()
            except Exception as e:
                logger.error(f"Error in sync loop: {e}", exc_info=True)

            if settings.RUN_ONCE:
                break

            elapsed = time.time() - start_time
            sleep_time = max(1, settings.SYNC_INTERVAL_SECONDS - elapsed)
            await asyncio.sleep(sleep_time)

    async def start(self):
        await self.abs.initialize()

        tasks = [asyncio.create_task(self.sync_loop())]

        if settings.HTTP_SERVER_ENABLED and not settings.RUN_ONCE:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            tasks.append(asyncio.create_task(uvicorn.Server(config).serve()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            await self.abs.close()
            try:
                self.store.save()
            except StoreWriteError as e:
                logger.error(f"Final progress save failed: {e}")

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

if __name__ == "__main__":
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = SyncService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
