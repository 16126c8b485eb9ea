import logging
import httpx
from typing import Any, Dict, Optional
from ..config import settings
from ..errors import FormatError, TransportError
from ..manifest import parse_changelog, parse_device
from ..models import ChangelogEntry, DeviceInfo

logger = logging.getLogger(__name__)

class CMSClient:
    """
    Read-only client for the content management API: playlist manifest,
    changelog, device record and media bytes.
    """

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        headers = {"Accept": "application/json"}
        token = token if token is not None else settings.CMS_TOKEN
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.client = httpx.AsyncClient(
            base_url=(base_url or settings.CMS_BASE_URL).rstrip('/'),
            headers=headers,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            follow_redirects=True,
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            resp = await self.client.get(path, params=params)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"GET {path} returned HTTP {e.response.status_code}",
                url=str(e.request.url),
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"GET {path} failed: {e}", url=path) from e

        try:
            return resp.json()
        except ValueError as e:
            raise FormatError(f"GET {path} returned invalid JSON: {e}") from e

    async def get_manifest(self) -> Any:
        """Raw manifest document; parsing is left to the caller."""
        return await self._get_json(settings.MANIFEST_PATH, params={"fields": settings.MANIFEST_FIELDS})

    async def get_latest_changelog(self) -> Optional[ChangelogEntry]:
        data = await self._get_json(
            settings.CHANGELOG_PATH,
            params={"limit": 1, "sort": "-date_created"},
        )
        return parse_changelog(data)

    async def find_device(self, device_id: str) -> Optional[DeviceInfo]:
        data = await self._get_json(
            settings.DEVICE_PATH,
            params={"filter[device_id][_eq]": device_id, "limit": 1},
        )
        return parse_device(data)

    def stream(self, url: str, headers: Optional[Dict[str, str]] = None):
        """
        Streaming GET for media bytes. Media URLs are absolute and may live
        on another host, so the shared client is used without base_url.
        """
        return self.client.stream(
            "GET",
            url,
            headers=headers,
            timeout=httpx.Timeout(settings.DOWNLOAD_TIMEOUT_SECONDS, connect=settings.REQUEST_TIMEOUT_SECONDS),
        )
