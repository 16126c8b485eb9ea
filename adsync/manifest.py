"""
Translate CMS documents into catalog records.

Two manifest shapes are accepted: the enveloped CMS response
(``{"data": [...]}`` with nested assets) and a flat list of playlists
carrying ``videoIds``. Bad entries are skipped with a warning; only a
document whose top-level shape is unrecognized raises ``FormatError``.
"""
import json
import logging
from functools import partial
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from .config import settings
from .errors import FormatError
from .models import ChangelogEntry, DeviceInfo, Playlist, Video

logger = logging.getLogger(__name__)

Document = Union[str, bytes, list, dict]

UNTITLED = "Untitled Video"

# A playlist without bounds runs all day
DEFAULT_START = "00:00"
DEFAULT_END = "23:59"

def join_url(base: str, filename: str) -> str:
    """Join a base URL and a file name with exactly one slash."""
    return f"{base.rstrip('/')}/{filename.lstrip('/')}"

def _bound(entry: Dict[str, Any], key: str, default: str) -> Any:
    value = entry.get(key)
    return default if value is None else value

def _decode(document: Document) -> Any:
    if isinstance(document, (str, bytes)):
        try:
            return json.loads(document)
        except ValueError as e:
            raise FormatError(f"Manifest is not valid JSON: {e}") from e
    return document

def parse_manifest(document: Document, assets_base_url: Optional[str] = None) -> Tuple[List[Playlist], List[Video]]:
    data = _decode(document)
    base_url = assets_base_url or settings.assets_base_url

    if isinstance(data, dict):
        entries = data.get("data")
        if not isinstance(entries, list):
            raise FormatError("Manifest object has no 'data' list")
        parse_entry = partial(_parse_enveloped_entry, base_url=base_url)
    elif isinstance(data, list):
        entries = data
        parse_entry = _parse_flat_entry
    else:
        raise FormatError(f"Unsupported manifest document: {type(data).__name__}")

    playlists: List[Playlist] = []
    videos: Dict[str, Video] = {}
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            logger.warning(f"Skipping manifest entry #{index}: not an object")
            continue
        try:
            playlist = parse_entry(entry, videos)
        except (ValidationError, ValueError, TypeError, KeyError) as e:
            logger.warning(f"Skipping playlist entry #{index} (id={entry.get('id')}): {e}")
            continue
        playlists.append(playlist)

    logger.info(f"Parsed {len(playlists)} playlists and {len(videos)} videos from manifest")
    return playlists, list(videos.values())

def _parse_enveloped_entry(entry: Dict[str, Any], videos: Dict[str, Video], base_url: str) -> Playlist:
    playlist_id = entry["id"]
    if isinstance(playlist_id, bool) or not isinstance(playlist_id, (int, str)):
        raise ValueError(f"invalid playlist id {playlist_id!r}")
    playlist_id = str(playlist_id)

    video_ids = []
    for position, asset in enumerate(entry.get("assets") or []):
        video = _parse_asset(asset, base_url)
        if video is None:
            logger.warning(f"Skipping asset #{position} in playlist {playlist_id}")
            continue
        # First occurrence of a shared asset wins
        videos.setdefault(video.id, video)
        video_ids.append(video.id)

    device = entry.get("device") or {}
    return Playlist(
        id=playlist_id,
        start_time=_bound(entry, "beginTime", DEFAULT_START),
        end_time=_bound(entry, "endTime", DEFAULT_END),
        active=entry.get("active") is not False,
        order=entry.get("order"),
        video_ids=video_ids,
        title=entry.get("title"),
        portrait=entry.get("portrait") is not False,
        device_id=device.get("device_id") if isinstance(device, dict) else None,
        device_name=device.get("device_name") if isinstance(device, dict) else None,
    )

def _parse_asset(asset: Any, base_url: str) -> Optional[Video]:
    if not isinstance(asset, dict):
        return None
    media = asset.get("media_assets_id")
    if not isinstance(media, dict):
        return None
    file_info = media.get("file")
    if not isinstance(file_info, dict):
        return None
    file_id = file_info.get("id")
    filename = file_info.get("filename_disk")
    if not file_id or not filename:
        return None

    try:
        return Video(
            id=str(file_id),
            name=media.get("title") or UNTITLED,
            url=join_url(media.get("fileUrl") or base_url, filename),
            order=asset.get("order"),
            start_time=media.get("startTime"),
            duration=media.get("duration"),
        )
    except ValidationError as e:
        logger.warning(f"Invalid asset {file_id}: {e}")
        return None

def _parse_flat_entry(entry: Dict[str, Any], videos: Dict[str, Video]) -> Playlist:
    for raw in entry.get("videos") or []:
        try:
            video = Video(
                id=str(raw["id"]),
                name=raw.get("name") or UNTITLED,
                url=raw["url"],
                order=raw.get("order"),
            )
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            logger.warning(f"Skipping embedded video in playlist {entry.get('id')}: {e}")
            continue
        videos.setdefault(video.id, video)

    video_ids = entry.get("videoIds") or []
    if not isinstance(video_ids, list):
        raise ValueError("videoIds must be a list")

    return Playlist(
        id=str(entry["id"]),
        start_time=_bound(entry, "startTime", DEFAULT_START),
        end_time=_bound(entry, "endTime", DEFAULT_END),
        active=entry.get("active") is not False,
        order=entry.get("order"),
        video_ids=[str(v) for v in video_ids],
        title=entry.get("title"),
        portrait=entry.get("portrait") is not False,
        device_id=entry.get("device_id"),
        device_name=entry.get("device_name"),
    )

def filter_for_device(playlists: List[Playlist], videos: List[Video], device: Optional[DeviceInfo]) -> Tuple[List[Playlist], List[Video]]:
    """
    Keep playlists bound to this device and the videos they reference.
    Playlists without a device binding are dropped.
    """
    if device is None:
        return playlists, videos

    kept = []
    for p in playlists:
        if p.device_name is not None and p.device_id == device.device_id and p.device_name == device.device_name:
            kept.append(p)
        else:
            logger.debug(f"Playlist {p.id} targets device {p.device_id}, skipping")

    referenced = {vid for p in kept for vid in p.video_ids}
    kept_videos = [v for v in videos if v.id in referenced]
    logger.info(f"Device filter kept {len(kept)} of {len(playlists)} playlists")
    return kept, kept_videos

def parse_changelog(document: Document) -> Optional[ChangelogEntry]:
    """Return the newest changelog entry, or None when the log is empty."""
    data = _decode(document)
    if not isinstance(data, dict) or not isinstance(data.get("data"), list):
        raise FormatError("Changelog response has no 'data' list")
    entries = data["data"]
    if not entries:
        return None

    try:
        entry = ChangelogEntry.model_validate(entries[0])
    except ValidationError as e:
        raise FormatError(f"Invalid changelog entry: {e}") from e
    if not entry.date_created.strip():
        raise FormatError("Changelog entry has an empty date_created")
    return entry

def _as_text(value: Any) -> str:
    # mapLocation arrives either as WKT text or as a GeoJSON object
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)

def parse_device(document: Document) -> Optional[DeviceInfo]:
    """Return the first device record of a ``{"data": [...]}`` response."""
    data = _decode(document)
    if not isinstance(data, dict) or not isinstance(data.get("data"), list):
        raise FormatError("Device response has no 'data' list")
    if not data["data"]:
        return None

    raw = data["data"][0]
    try:
        return DeviceInfo(
            id=raw.get("id", 0),
            device_id=raw.get("device_id") or "",
            device_name=raw.get("device_name") or "",
            location=raw.get("location") or "",
            active=raw.get("active") is not False,
            map_location=_as_text(raw.get("mapLocation")),
        )
    except (AttributeError, ValidationError) as e:
        raise FormatError(f"Invalid device record: {e}") from e
