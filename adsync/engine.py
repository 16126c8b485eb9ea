import logging
from typing import Callable, List, Optional
from .catalog import Catalog
from .clients.cms_client import CMSClient
from .config import settings
from .downloader import Downloader
from .events import EventHub
from .manifest import filter_for_device, parse_manifest
from .models import DeviceInfo, DownloadFailure, SyncReport

logger = logging.getLogger(__name__)

class SyncEngine:
    """
    One full reconciliation: fetch + parse the manifest, merge it into the
    catalog, then fill download gaps. Transport and format errors propagate
    to the caller before the catalog is touched.
    """

    def __init__(
        self,
        catalog: Catalog,
        client: CMSClient,
        downloader: Downloader,
        events: Optional[EventHub] = None,
        device: Callable[[], Optional[DeviceInfo]] = lambda: None,
    ):
        self.catalog = catalog
        self.client = client
        self.downloader = downloader
        self.events = events
        self.device = device

    async def run(self) -> SyncReport:
        document = await self.client.get_manifest()
        playlists, videos = parse_manifest(document)

        if settings.DEVICE_FILTER_ENABLED:
            device = self.device()
            if device is None:
                logger.warning("Device filter enabled but no device record is known, keeping all playlists")
            playlists, videos = filter_for_device(playlists, videos, device)

        self.catalog.merge(playlists, videos)
        self.catalog.revalidate_files()
        report = await self.download_pending()
        report.playlists = len(playlists)
        report.videos = len(videos)

        if settings.PURGE_ORPHANED_MEDIA:
            self.catalog.purge_orphans(str(self.downloader.media_dir))
        return report

    async def download_pending(self) -> SyncReport:
        report = SyncReport()
        failures: List[DownloadFailure] = []
        pending = self.catalog.list_undownloaded()

        async for event in self.downloader.sync_downloads(pending, on_error=failures.append):
            if self.events is not None:
                self.events.publish(event)
            if event.video_id and not any(f.video_id == event.video_id for f in failures):
                report.downloaded.append(event.video_id)
            logger.info(f"Download progress: {event.completed}/{event.total} ({event.percent}%)")

        report.failed = failures
        report.success = not failures or not settings.SYNC_REQUIRE_ALL_DOWNLOADS
        if failures:
            logger.warning(f"{len(failures)} videos failed to download: {[f.video_id for f in failures]}")
        return report
