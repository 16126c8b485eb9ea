import asyncio
import logging
import signal
import uvicorn
import time
from typing import List, Optional

from pydantic import ValidationError

from .config import settings
from .state import StateStore
from .catalog import Catalog
from .clients.cms_client import CMSClient
from .downloader import Downloader
from .engine import SyncEngine
from .events import EventHub, PlaybackChanged
from .errors import FormatError, TransportError
from .models import DeviceInfo, PollOutcome
from .poller import ChangePoller
from .scheduler import PlaybackScheduler
from . import server

logger = logging.getLogger("main")

KEY_DEVICE = "device_info"

def setup_logging():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # Silence noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

class SignageService:
    """
    Owns the store, catalog, CMS client and loops for one device. Built at
    process start, torn down with stop().
    """

    def __init__(self, store: Optional[StateStore] = None, client: Optional[CMSClient] = None):
        self.store = store or StateStore(settings.STATE_PATH)
        self.client = client or CMSClient()
        self.catalog = Catalog(self.store)
        self.events = EventHub()
        self.downloader = Downloader(self.catalog, self.client)
        self.engine = SyncEngine(self.catalog, self.client, self.downloader, self.events, device=self.get_device)
        self.poller = ChangePoller(self.store, self.client, self.engine, before_tick=self.refresh_device)
        self.scheduler = PlaybackScheduler(self.catalog, device=self.get_device)
        self.stop_event = asyncio.Event()
        self.started_at = time.time()
        self._playing: Optional[PlaybackChanged] = None
        self._tasks: List[asyncio.Task] = []

    def get_device(self) -> Optional[DeviceInfo]:
        raw = self.store.get(KEY_DEVICE)
        if raw is None:
            return None
        try:
            return DeviceInfo.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Stored device record is invalid: {e}")
            return None

    async def refresh_device(self):
        """Re-read this device's record; the last known one is kept on failure."""
        if not settings.DEVICE_ID:
            return
        try:
            device = await self.client.find_device(settings.DEVICE_ID)
        except (TransportError, FormatError) as e:
            logger.warning(f"Could not refresh device record: {e}")
            return
        if device is None:
            logger.warning(f"Device {settings.DEVICE_ID} is not registered with the CMS")
            return
        if settings.DEVICE_NAME and device.device_name != settings.DEVICE_NAME:
            logger.warning(f"CMS device name '{device.device_name}' differs from configured '{settings.DEVICE_NAME}'")
        previous = self.get_device()
        if previous is None or previous.active != device.active:
            logger.info(f"Device {device.device_id} active={device.active}")
        self.store.put(KEY_DEVICE, device.model_dump())

    def check_playback(self) -> PlaybackChanged:
        playlist, paths = self.scheduler.current()
        current = PlaybackChanged(playlist_id=playlist.id if playlist else None, paths=paths or [])
        if current != self._playing:
            if playlist is None:
                logger.info("No playlist scheduled for current time")
            else:
                logger.info(f"Now playing playlist {playlist.id} ({len(current.paths)} of {len(playlist.video_ids)} videos ready)")
            self._playing = current
            self.events.publish(current)
        return current

    async def playback_loop(self):
        while not self.stop_event.is_set():
            try:
                self.check_playback()
            except Exception as e:
                logger.error(f"Error in playback check: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=settings.PLAYBACK_CHECK_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                pass

    async def initial_sync(self):
        await self.refresh_device()
        outcome = await self.poller.poll_once(force=True)
        if outcome != PollOutcome.SYNCED:
            logger.warning(f"Initial sync did not complete ({outcome.value}), serving cached catalog")
        self.check_playback()

    async def sync_now(self) -> PollOutcome:
        """Manual refresh; rejected with BUSY while another sync runs."""
        outcome = await self.poller.poll_once(force=True)
        if outcome != PollOutcome.BUSY:
            self.check_playback()
        return outcome

    async def start(self):
        server.service = self
        try:
            await self.initial_sync()
        except Exception as e:
            logger.error(f"Initial sync crashed: {e}", exc_info=True)

        self._tasks = [
            asyncio.create_task(self.poller.run(self.stop_event)),
            asyncio.create_task(self.playback_loop()),
        ]

        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            self._tasks.append(asyncio.create_task(uvicorn.Server(config).serve()))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            pass
        finally:
            await self.client.close()

    def stop(self):
        logger.info("Stopping service...")
        self.stop_event.set()
        for task in self._tasks:
            task.cancel()

async def run():
    service = SignageService()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, service.stop)
    await service.start()

if __name__ == "__main__":
    setup_logging()
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
