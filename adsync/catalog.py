import logging
import os
import threading
from pathlib import Path
from typing import Iterable, List, Optional

from pydantic import TypeAdapter, ValidationError

from .errors import IntegrityError
from .models import CatalogSnapshot, Playlist, Video
from .state import StateStore

logger = logging.getLogger(__name__)

KEY_VIDEOS = "videos"
KEY_PLAYLISTS = "playlists"

_videos_adapter = TypeAdapter(List[Video])
_playlists_adapter = TypeAdapter(List[Playlist])

def media_filename(video_id: str) -> str:
    return f"video_{video_id}.mp4"

def file_ready(path: Optional[str]) -> bool:
    """True when a local media file exists and is non-empty."""
    if not path:
        return False
    try:
        return os.path.getsize(path) > 0
    except OSError:
        return False

class Catalog:
    """
    Local record of playlists, videos and per-video download state.

    Collections are stored whole in the durable store. Mutations take the
    writer lock and publish a new immutable snapshot; readers only ever see
    the last committed snapshot.
    """

    def __init__(self, store: StateStore):
        self.store = store
        self._write_lock = threading.Lock()
        self._snapshot = CatalogSnapshot(
            playlists=tuple(self._load(KEY_PLAYLISTS, _playlists_adapter)),
            videos=tuple(self._load(KEY_VIDEOS, _videos_adapter)),
        )

    def _load(self, key: str, adapter: TypeAdapter) -> list:
        raw = self.store.get(key)
        if raw is None:
            return []
        try:
            return adapter.validate_python(raw)
        except ValidationError as e:
            logger.error(f"Stored '{key}' collection is unreadable, starting empty: {e}")
            return []

    def _commit(self, playlists: Iterable[Playlist], videos: Iterable[Video]):
        # Caller holds the write lock
        playlists = tuple(playlists)
        videos = tuple(videos)
        self.store.put_many({
            KEY_PLAYLISTS: _playlists_adapter.dump_python(list(playlists), mode="json"),
            KEY_VIDEOS: _videos_adapter.dump_python(list(videos), mode="json"),
        })
        self._snapshot = CatalogSnapshot(playlists=playlists, videos=videos)

    def snapshot(self) -> CatalogSnapshot:
        return self._snapshot

    @property
    def playlists(self) -> List[Playlist]:
        return [p.model_copy() for p in self._snapshot.playlists]

    @property
    def videos(self) -> List[Video]:
        return [v.model_copy() for v in self._snapshot.videos]

    def get_video(self, video_id: str) -> Optional[Video]:
        for v in self._snapshot.videos:
            if v.id == video_id:
                return v.model_copy()
        return None

    def merge(self, new_playlists: List[Playlist], new_videos: List[Video]):
        """
        Replace the catalog with a freshly parsed manifest. Download state of
        videos whose id survives is carried over; everything else is dropped.

        A manifest may reference ids without declaring them (flat playlists
        with only ``videoIds``). Those keep their existing record, download
        state included.
        """
        with self._write_lock:
            existing = self._snapshot.video_map()
            merged: List[Video] = []
            kept = 0
            for video in new_videos:
                record = video.model_copy(update={"downloaded": False, "local_path": None})
                previous = existing.get(video.id)
                if previous is not None and previous.downloaded:
                    record = record.model_copy(update={
                        "downloaded": True,
                        "local_path": previous.local_path,
                    })
                    kept += 1
                merged.append(record)

            known = {v.id for v in merged}
            for playlist in new_playlists:
                missing = []
                for vid in playlist.video_ids:
                    if vid in known:
                        continue
                    previous = existing.get(vid)
                    if previous is None:
                        missing.append(vid)
                        continue
                    merged.append(previous)
                    known.add(vid)
                    if previous.downloaded:
                        kept += 1
                if missing:
                    logger.warning(f"Playlist {playlist.id} references unknown videos {missing}")

            dropped = len(set(existing) - known)
            self._commit((p.model_copy() for p in new_playlists), merged)
            logger.info(
                f"Catalog merged: {len(new_playlists)} playlists, {len(merged)} videos "
                f"({kept} already downloaded, {dropped} dropped)"
            )

    def list_undownloaded(self) -> List[Video]:
        return [v.model_copy() for v in self._snapshot.videos if not v.downloaded]

    def mark_downloaded(self, video_id: str, local_path: str):
        with self._write_lock:
            videos = list(self._snapshot.videos)
            for i, v in enumerate(videos):
                if v.id == video_id:
                    videos[i] = v.model_copy(update={"downloaded": True, "local_path": local_path})
                    break
            else:
                raise IntegrityError(f"Cannot mark unknown video {video_id} as downloaded", video_id=video_id)
            self._commit(self._snapshot.playlists, videos)
        logger.debug(f"Marked video {video_id} downloaded at {local_path}")

    def revalidate_files(self) -> List[str]:
        """Reset download state for videos whose file is missing or empty."""
        with self._write_lock:
            reset = []
            videos = []
            for v in self._snapshot.videos:
                if v.downloaded and not file_ready(v.local_path):
                    reset.append(v.id)
                    v = v.model_copy(update={"downloaded": False, "local_path": None})
                videos.append(v)
            if reset:
                logger.warning(f"Media files missing for {reset}, scheduling re-download")
                self._commit(self._snapshot.playlists, videos)
        return reset

    def purge_orphans(self, media_dir: str) -> List[str]:
        """Delete cached media files that no catalog video owns."""
        directory = Path(media_dir)
        if not directory.is_dir():
            return []
        owned = set()
        for v in self._snapshot.videos:
            owned.add(media_filename(v.id))
            owned.add(media_filename(v.id) + ".part")
            if v.local_path:
                owned.add(os.path.basename(v.local_path))
        removed = []
        for path in directory.glob("video_*"):
            if path.name in owned:
                continue
            try:
                path.unlink()
                removed.append(path.name)
            except OSError as e:
                logger.warning(f"Could not remove orphaned media {path}: {e}")
        if removed:
            logger.info(f"Removed {len(removed)} orphaned media files")
        return removed
