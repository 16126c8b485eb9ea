import os
import tempfile
import unittest
import httpx
from adsync.catalog import Catalog
from adsync.clients.cms_client import CMSClient
from adsync.config import settings
from adsync.downloader import Downloader
from adsync.engine import SyncEngine
from adsync.errors import TransportError
from adsync.events import EventHub
from adsync.models import DeviceInfo, ProgressEvent
from adsync.state import StateStore

def manifest(*playlists):
    return {"data": list(playlists)}

def playlist(pid, file_ids, device=None):
    return {
        "id": pid,
        "beginTime": "08:00:00",
        "endTime": "20:00:00",
        "device": device,
        "assets": [
            {"media_assets_id": {"title": fid, "fileUrl": "https://cdn.example.com",
                                 "file": {"id": fid, "filename_disk": f"{fid}.mp4"}}}
            for fid in file_ids
        ],
    }

class TestSyncEngine(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.catalog = Catalog(StateStore(os.path.join(self.tmp.name, "state.json"), persist=False))
        self.document = manifest(playlist(1, ["a", "b"]))
        self.manifest_status = 200
        self.broken = set()
        self.media_requests = []

        def handler(request):
            if request.url.path == settings.MANIFEST_PATH:
                return httpx.Response(self.manifest_status, json=self.document)
            self.media_requests.append(request.url.path)
            if request.url.path.lstrip("/") in self.broken:
                return httpx.Response(404)
            return httpx.Response(200, content=b"bytes")

        self.client = CMSClient(base_url="https://cms.example.com", token="", transport=httpx.MockTransport(handler))
        self.downloader = Downloader(self.catalog, self.client, media_dir=os.path.join(self.tmp.name, "movies"),
                                     max_attempts=2, backoff_base=0)
        self.events = EventHub()
        self.device = None
        self.engine = SyncEngine(self.catalog, self.client, self.downloader, self.events, device=lambda: self.device)
        self._filter = settings.DEVICE_FILTER_ENABLED
        self._purge = settings.PURGE_ORPHANED_MEDIA

    async def asyncTearDown(self):
        settings.DEVICE_FILTER_ENABLED = self._filter
        settings.PURGE_ORPHANED_MEDIA = self._purge
        await self.client.close()
        self.tmp.cleanup()

    async def test_full_sync(self):
        queue = self.events.subscribe()
        report = await self.engine.run()

        self.assertTrue(report.success)
        self.assertEqual(report.playlists, 1)
        self.assertEqual(report.videos, 2)
        self.assertEqual(sorted(report.downloaded), ["a", "b"])
        self.assertEqual(self.catalog.list_undownloaded(), [])
        self.assertEqual(queue.qsize(), 2)
        self.assertIsInstance(self.events.latest["ProgressEvent"], ProgressEvent)
        self.assertTrue(self.events.latest["ProgressEvent"].done)

    async def test_second_sync_only_fetches_new(self):
        await self.engine.run()
        self.media_requests.clear()

        self.document = manifest(playlist(1, ["a", "c"]))
        report = await self.engine.run()
        self.assertTrue(report.success)
        self.assertEqual(self.media_requests, ["/c.mp4"])
        self.assertEqual({v.id for v in self.catalog.videos}, {"a", "c"})

    async def test_failed_download_fails_sync(self):
        self.broken = {"b.mp4"}
        report = await self.engine.run()
        self.assertFalse(report.success)
        self.assertEqual([f.video_id for f in report.failed], ["b"])
        self.assertEqual(report.downloaded, ["a"])

    async def test_manifest_error_leaves_catalog(self):
        await self.engine.run()
        before = self.catalog.snapshot()

        self.manifest_status = 500
        with self.assertRaises(TransportError):
            await self.engine.run()
        self.assertEqual(self.catalog.snapshot(), before)

    async def test_device_filter(self):
        settings.DEVICE_FILTER_ENABLED = True
        self.device = DeviceInfo(device_id="abc", device_name="Lobby")
        self.document = manifest(
            playlist(1, ["a"], device={"device_id": "abc", "device_name": "Lobby"}),
            playlist(2, ["b"], device={"device_id": "other", "device_name": "Hall"}),
        )
        report = await self.engine.run()
        self.assertEqual(report.playlists, 1)
        self.assertEqual([v.id for v in self.catalog.videos], ["a"])

    async def test_purge_after_sync(self):
        settings.PURGE_ORPHANED_MEDIA = True
        await self.engine.run()
        self.document = manifest(playlist(1, ["a"]))
        await self.engine.run()
        self.assertEqual(sorted(os.listdir(self.downloader.media_dir)), ["video_a.mp4"])

if __name__ == '__main__':
    unittest.main()
