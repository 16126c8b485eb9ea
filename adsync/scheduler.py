"""
Playback scheduler.

A playlist is eligible during ``[start_time, end_time)`` at minute
resolution. Windows whose start is after their end wrap past midnight;
windows whose start equals their end never match. When several active
playlists match, the lowest ``order`` wins (unset order sorts last) and
ties go to the lowest id.
"""
import logging
from datetime import datetime, time
from typing import Callable, List, Optional, Tuple, Union

from .catalog import Catalog
from .models import CatalogSnapshot, DeviceInfo, Playlist

logger = logging.getLogger(__name__)

Clock = Union[time, datetime]

def parse_clock(value: str) -> time:
    return datetime.strptime(value, "%H:%M").time()

def _minute(now: Clock) -> time:
    if isinstance(now, datetime):
        now = now.time()
    return now.replace(second=0, microsecond=0, tzinfo=None)

def window_contains(start: time, end: time, now: Clock) -> bool:
    now = _minute(now)
    if start < end:
        return start <= now < end
    if start > end:
        return now >= start or now < end
    return False

def _id_key(playlist_id: str) -> Tuple[int, Union[int, str]]:
    # Numeric ids compare numerically so "9" sorts before "10"
    if playlist_id.isdigit():
        return 0, int(playlist_id)
    return 1, playlist_id

def _priority(playlist: Playlist):
    order = playlist.order
    return (order is None, order if order is not None else 0, _id_key(playlist.id))

def matching_playlists(playlists, now: Clock) -> List[Playlist]:
    """Active playlists whose window contains ``now``, best first."""
    matches = []
    for playlist in playlists:
        if not playlist.active:
            continue
        try:
            start = parse_clock(playlist.start_time)
            end = parse_clock(playlist.end_time)
        except ValueError as e:
            logger.error(f"Error parsing times of playlist {playlist.id}: {e}")
            continue
        if window_contains(start, end, now):
            matches.append(playlist)
    return sorted(matches, key=_priority)

def resolve_paths(playlist: Playlist, snapshot: CatalogSnapshot) -> List[str]:
    videos = snapshot.video_map()
    paths = []
    for video_id in playlist.video_ids:
        video = videos.get(video_id)
        if video is None:
            logger.warning(f"Playlist {playlist.id} references unknown video {video_id}, dropping it")
            continue
        if not video.downloaded or not video.local_path:
            logger.debug(f"Video {video_id} not downloaded yet, skipping")
            continue
        paths.append(video.local_path)
    return paths

def select_playlist(snapshot: CatalogSnapshot, now: Clock) -> Optional[Playlist]:
    matches = matching_playlists(snapshot.playlists, now)
    if len(matches) > 1:
        logger.debug(f"{len(matches)} playlists overlap at {_minute(now)}, picked {matches[0].id}")
    return matches[0] if matches else None

def select_active(snapshot: CatalogSnapshot, now: Clock) -> Optional[List[str]]:
    """
    Ordered local file paths to play at ``now``.

    Returns None when no playlist is scheduled, and a possibly empty list
    when one is scheduled but nothing of it is playable yet.
    """
    playlist = select_playlist(snapshot, now)
    if playlist is None:
        return None
    return resolve_paths(playlist, snapshot)

class PlaybackScheduler:
    """Catalog-bound scheduler with device gating, as used by the service."""

    def __init__(self, catalog: Catalog, device: Callable[[], Optional[DeviceInfo]] = lambda: None, clock: Callable[[], datetime] = datetime.now):
        self.catalog = catalog
        self.device = device
        self.clock = clock

    def current(self, now: Optional[Clock] = None) -> Tuple[Optional[Playlist], Optional[List[str]]]:
        device = self.device()
        if device is not None and not device.active:
            logger.debug(f"Device {device.device_id} is inactive, nothing scheduled")
            return None, None

        # One snapshot for the whole decision, concurrent merges can't tear it
        snapshot = self.catalog.snapshot()
        playlist = select_playlist(snapshot, now if now is not None else self.clock())
        if playlist is None:
            return None, None
        return playlist, resolve_paths(playlist, snapshot)
