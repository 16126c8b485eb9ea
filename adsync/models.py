from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional, Tuple

def normalize_clock(value: str) -> str:
    """Validate a time-of-day string and truncate it to HH:MM."""
    if not isinstance(value, str):
        raise ValueError(f"time of day must be a string, got {type(value).__name__}")
    parts = value.strip().split(":")
    if len(parts) < 2 or len(parts) > 3:
        raise ValueError(f"invalid time of day: {value!r}")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(f"invalid time of day: {value!r}") from None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"time of day out of range: {value!r}")
    return f"{hour:02d}:{minute:02d}"

class Video(BaseModel):
    id: str
    name: str = ""
    url: str
    local_path: Optional[str] = None
    downloaded: bool = False
    order: Optional[int] = None

    # Trimming hints from the CMS, kept for the player
    start_time: Optional[int] = None
    duration: Optional[int] = None

class Playlist(BaseModel):
    id: str
    start_time: str
    end_time: str
    active: bool = True
    order: Optional[int] = None
    video_ids: List[str] = Field(default_factory=list)

    title: Optional[str] = None
    portrait: bool = True
    device_id: Optional[str] = None
    device_name: Optional[str] = None

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _clock(cls, v):
        return normalize_clock(v)

class DeviceInfo(BaseModel):
    id: int = 0
    device_id: str = ""
    device_name: str = ""
    location: str = ""
    active: bool = True
    map_location: str = ""

class ChangelogEntry(BaseModel):
    id: int
    date_created: str
    date_updated: Optional[str] = None
    log: Optional[str] = None

class ChangelogMarker(BaseModel):
    id: int
    date_created: str
    synced_at: float = 0.0

    def matches(self, entry: ChangelogEntry) -> bool:
        return self.id == entry.id and self.date_created == entry.date_created

class CatalogSnapshot(BaseModel):
    """Immutable view of the last committed catalog."""
    model_config = ConfigDict(frozen=True)

    playlists: Tuple[Playlist, ...] = ()
    videos: Tuple[Video, ...] = ()

    def video_map(self):
        return {v.id: v for v in self.videos}

class ProgressEvent(BaseModel):
    completed: int
    total: int
    percent: int
    failed: int = 0
    video_id: Optional[str] = None
    done: bool = False

class DownloadFailure(BaseModel):
    video_id: str
    url: str
    attempts: int
    error: str

class SyncReport(BaseModel):
    playlists: int = 0
    videos: int = 0
    downloaded: List[str] = Field(default_factory=list)
    failed: List[DownloadFailure] = Field(default_factory=list)
    success: bool = False

class PollerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    SYNCING = "syncing"

class PollOutcome(str, Enum):
    NO_CHANGE = "no_change"
    SYNCED = "synced"
    SYNC_FAILED = "sync_failed"
    TRANSPORT_ERROR = "transport_error"
    FORMAT_ERROR = "format_error"
    BUSY = "busy"
