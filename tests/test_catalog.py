import os
import tempfile
import unittest
from adsync.catalog import Catalog
from adsync.errors import IntegrityError
from adsync.manifest import parse_manifest
from adsync.models import Playlist, Video
from adsync.state import StateStore

def video(vid, url=None, name=None):
    return Video(id=vid, name=name or vid, url=url or f"https://cdn.example.com/{vid}.mp4")

class TestCatalog(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.state_path = os.path.join(self.tmp.name, "state.json")
        self.store = StateStore(self.state_path, persist=True)
        self.catalog = Catalog(self.store)

    def tearDown(self):
        self.tmp.cleanup()

    def write_media(self, name, content=b"data"):
        path = os.path.join(self.tmp.name, name)
        with open(path, "wb") as f:
            f.write(content)
        return path

    def test_merge_preserves_download_state(self):
        self.catalog.merge(
            [Playlist(id="1", start_time="08:00", end_time="09:00", video_ids=["a", "b"])],
            [video("a"), video("b")],
        )
        self.catalog.mark_downloaded("a", "/media/video_a.mp4")
        self.catalog.mark_downloaded("b", "/media/video_b.mp4")

        # New manifest: "a" kept with a new URL, "b" gone, "c" new
        self.catalog.merge(
            [Playlist(id="2", start_time="10:00", end_time="11:00", video_ids=["a", "c"])],
            [video("a", url="https://cdn.example.com/a-v2.mp4", name="Renamed"), video("c")],
        )

        by_id = {v.id: v for v in self.catalog.videos}
        self.assertEqual(set(by_id), {"a", "c"})
        self.assertTrue(by_id["a"].downloaded)
        self.assertEqual(by_id["a"].local_path, "/media/video_a.mp4")
        self.assertEqual(by_id["a"].url, "https://cdn.example.com/a-v2.mp4")
        self.assertEqual(by_id["a"].name, "Renamed")
        self.assertFalse(by_id["c"].downloaded)
        self.assertIsNone(by_id["c"].local_path)
        self.assertEqual([p.id for p in self.catalog.playlists], ["2"])

    def test_removed_video_does_not_come_back_downloaded(self):
        self.catalog.merge([], [video("a")])
        self.catalog.mark_downloaded("a", "/media/video_a.mp4")
        self.catalog.merge([], [])
        self.catalog.merge([], [video("a")])
        self.assertFalse(self.catalog.get_video("a").downloaded)

    def test_manifest_download_flags_are_ignored(self):
        incoming = video("a").model_copy(update={"downloaded": True, "local_path": "/elsewhere"})
        self.catalog.merge([], [incoming])
        self.assertEqual([v.id for v in self.catalog.list_undownloaded()], ["a"])

    def test_flat_manifest_keeps_referenced_records(self):
        self.catalog.merge(
            [Playlist(id="1", start_time="08:00", end_time="20:00", video_ids=["a", "b"])],
            [video("a"), video("b")],
        )
        self.catalog.mark_downloaded("a", "/media/video_a.mp4")

        # Flat playlists carry only videoIds
        playlists, videos = parse_manifest([
            {"id": 1, "startTime": "08:00", "endTime": "20:00", "videoIds": ["a", "ghost"]},
        ])
        self.assertEqual(videos, [])
        self.catalog.merge(playlists, videos)

        a = self.catalog.get_video("a")
        self.assertTrue(a.downloaded)
        self.assertEqual(a.local_path, "/media/video_a.mp4")
        self.assertEqual([v.id for v in self.catalog.videos], ["a"])
        self.assertIsNone(self.catalog.get_video("ghost"))

    def test_commit_rewrites_state_once(self):
        saves = []
        original = self.store._save
        def counting_save():
            saves.append(1)
            original()
        self.store._save = counting_save

        self.catalog.merge([Playlist(id="1", start_time="08:00", end_time="09:00", video_ids=["a"])], [video("a")])
        self.assertEqual(len(saves), 1)

        reopened = StateStore(self.state_path)
        self.assertEqual(len(reopened.get("playlists")), 1)
        self.assertEqual(len(reopened.get("videos")), 1)

    def test_list_undownloaded_and_mark(self):
        self.catalog.merge([], [video("a"), video("b")])
        self.assertEqual({v.id for v in self.catalog.list_undownloaded()}, {"a", "b"})

        self.catalog.mark_downloaded("a", "/media/video_a.mp4")
        self.assertEqual([v.id for v in self.catalog.list_undownloaded()], ["b"])

    def test_mark_unknown_video(self):
        with self.assertRaises(IntegrityError):
            self.catalog.mark_downloaded("ghost", "/media/ghost.mp4")

    def test_persists_across_instances(self):
        self.catalog.merge(
            [Playlist(id="1", start_time="22:00", end_time="08:00", video_ids=["a"])],
            [video("a")],
        )
        self.catalog.mark_downloaded("a", "/media/video_a.mp4")

        reopened = Catalog(StateStore(self.state_path))
        self.assertEqual(reopened.playlists[0].start_time, "22:00")
        self.assertTrue(reopened.get_video("a").downloaded)

    def test_corrupt_collection_starts_empty(self):
        self.store.put("videos", [{"name": "no id or url"}])
        self.assertEqual(Catalog(self.store).videos, [])

    def test_snapshot_is_stable_during_writes(self):
        self.catalog.merge([], [video("a")])
        before = self.catalog.snapshot()
        self.catalog.mark_downloaded("a", "/media/video_a.mp4")

        self.assertFalse(before.videos[0].downloaded)
        self.assertTrue(self.catalog.snapshot().videos[0].downloaded)

    def test_revalidate_files(self):
        present = self.write_media("video_a.mp4")
        empty = self.write_media("video_b.mp4", b"")
        self.catalog.merge([], [video("a"), video("b"), video("c")])
        self.catalog.mark_downloaded("a", present)
        self.catalog.mark_downloaded("b", empty)
        self.catalog.mark_downloaded("c", os.path.join(self.tmp.name, "missing.mp4"))

        reset = self.catalog.revalidate_files()
        self.assertEqual(sorted(reset), ["b", "c"])
        self.assertEqual({v.id for v in self.catalog.list_undownloaded()}, {"b", "c"})
        self.assertTrue(self.catalog.get_video("a").downloaded)

    def test_purge_orphans(self):
        kept = self.write_media("video_a.mp4")
        self.write_media("video_a.mp4.part")
        self.write_media("video_old.mp4")
        self.write_media("unrelated.txt")
        self.catalog.merge([], [video("a")])
        self.catalog.mark_downloaded("a", kept)

        removed = self.catalog.purge_orphans(self.tmp.name)
        self.assertEqual(removed, ["video_old.mp4"])
        self.assertTrue(os.path.exists(kept))
        self.assertTrue(os.path.exists(os.path.join(self.tmp.name, "unrelated.txt")))

if __name__ == '__main__':
    unittest.main()
