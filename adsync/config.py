from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # CMS
    CMS_BASE_URL: str = "http://localhost:8055"
    CMS_TOKEN: Optional[str] = None
    MANIFEST_PATH: str = "/items/media_playlist"
    MANIFEST_FIELDS: str = (
        "id,title,active,order,beginTime,endTime,portrait,"
        "device.device_id,device.device_name,"
        "assets.order,assets.media_assets_id.id,assets.media_assets_id.title,"
        "assets.media_assets_id.fileUrl,assets.media_assets_id.file.id,"
        "assets.media_assets_id.file.filename_disk,"
        "assets.media_assets_id.startTime,assets.media_assets_id.duration"
    )
    CHANGELOG_PATH: str = "/items/changelog"
    DEVICE_PATH: str = "/items/play_device"

    # Device
    DEVICE_ID: Optional[str] = None
    DEVICE_NAME: Optional[str] = None
    DEVICE_FILTER_ENABLED: bool = False

    # Persistence
    STATE_PATH: str = "/data/state.json"
    PERSIST_ENABLED: bool = True
    MEDIA_DIR: str = "/data/movies"
    PURGE_ORPHANED_MEDIA: bool = False

    # Polling / playback
    POLL_INTERVAL_SECONDS: int = 60
    PLAYBACK_CHECK_INTERVAL_SECONDS: int = 30
    SYNC_REQUIRE_ALL_DOWNLOADS: bool = True

    # Downloads
    DOWNLOAD_CONCURRENCY: int = 2
    DOWNLOAD_MAX_ATTEMPTS: int = 3
    DOWNLOAD_BACKOFF_BASE_SECONDS: float = 2.0
    DOWNLOAD_BACKOFF_MAX_SECONDS: float = 60.0
    DOWNLOAD_CHUNK_SIZE: int = 256 * 1024
    DOWNLOAD_TIMEOUT_SECONDS: int = 300

    # System
    LOG_LEVEL: str = "INFO"
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: int = 30

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @property
    def assets_base_url(self) -> str:
        return f"{self.CMS_BASE_URL.rstrip('/')}/assets"

settings = Settings()
