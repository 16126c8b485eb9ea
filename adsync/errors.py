from typing import Optional


class AdSyncError(Exception):
    """Base class for failures raised by the sync core."""


class FormatError(AdSyncError):
    """A manifest or changelog document has an unrecognized shape."""


class TransportError(AdSyncError):
    """A network request failed or returned a non-success status."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class IntegrityError(AdSyncError):
    """A playlist or update references a video id the catalog does not know."""

    def __init__(self, message: str, video_id: Optional[str] = None):
        super().__init__(message)
        self.video_id = video_id
