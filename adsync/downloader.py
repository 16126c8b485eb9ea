"""
Download orchestrator.

Fetches every not-yet-downloaded video into ``MEDIA_DIR/video_{id}.mp4``
with a bounded number of concurrent transfers. Bytes go to a ``.part``
file first; a leftover ``.part`` from an interrupted run is resumed with a
Range request when the server supports it. Progress is exposed as an
async iterator of ``ProgressEvent``; per-video failures go to ``on_error``.
"""
import asyncio
import logging
import os
import random
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional, Tuple

import httpx

from .catalog import Catalog, file_ready, media_filename
from .clients.cms_client import CMSClient
from .config import settings
from .errors import IntegrityError, TransportError
from .models import DownloadFailure, ProgressEvent, Video

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[DownloadFailure], None]

class Downloader:
    def __init__(
        self,
        catalog: Catalog,
        client: CMSClient,
        media_dir: Optional[str] = None,
        concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
    ):
        self.catalog = catalog
        self.client = client
        self.media_dir = Path(media_dir or settings.MEDIA_DIR)
        self.concurrency = max(1, concurrency or settings.DOWNLOAD_CONCURRENCY)
        self.max_attempts = max(1, max_attempts or settings.DOWNLOAD_MAX_ATTEMPTS)
        self.backoff_base = settings.DOWNLOAD_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.backoff_max = settings.DOWNLOAD_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max

    def media_path(self, video_id: str) -> Path:
        return self.media_dir / media_filename(video_id)

    async def sync_downloads(self, videos: List[Video], on_error: Optional[ErrorCallback] = None) -> AsyncIterator[ProgressEvent]:
        pending = [v for v in videos if not v.downloaded]
        total = len(pending)
        if total == 0:
            logger.info("All videos already downloaded")
            yield ProgressEvent(completed=0, total=0, percent=100, done=True)
            return

        self.media_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Downloading {total} videos with {self.concurrency} workers")

        semaphore = asyncio.Semaphore(self.concurrency)
        tasks = [asyncio.create_task(self._download(v, semaphore)) for v in pending]
        completed = 0
        failed = 0
        try:
            for next_done in asyncio.as_completed(tasks):
                video, failure = await next_done
                completed += 1
                if failure is not None:
                    failed += 1
                    if on_error is not None:
                        on_error(failure)
                yield ProgressEvent(
                    completed=completed,
                    total=total,
                    percent=completed * 100 // total,
                    failed=failed,
                    video_id=video.id,
                    done=completed == total,
                )
        finally:
            # Consumer went away or we were cancelled: abandon in-flight transfers.
            # Their .part files stay on disk for the next attempt.
            unfinished = [t for t in tasks if not t.done()]
            for t in unfinished:
                t.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)
                logger.info(f"Abandoned {len(unfinished)} in-flight downloads")

        logger.info(f"Download pass finished: {completed - failed} ok, {failed} failed")

    async def _download(self, video: Video, semaphore: asyncio.Semaphore) -> Tuple[Video, Optional[DownloadFailure]]:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            # Slot is held per attempt, not across the backoff sleep
            async with semaphore:
                try:
                    path = await self._fetch(video)
                    self.catalog.mark_downloaded(video.id, str(path))
                    return video, None
                except IntegrityError as e:
                    # Video vanished from the catalog while we were fetching it
                    logger.warning(f"Downloaded {video.id} but catalog no longer has it: {e}")
                    return video, DownloadFailure(video_id=video.id, url=video.url, attempts=attempt, error=str(e))
                except (TransportError, OSError) as e:
                    last_error = e

            if attempt < self.max_attempts:
                delay = self._backoff(attempt)
                logger.warning(
                    f"Download of {video.id} failed (attempt {attempt}/{self.max_attempts}): {last_error}. "
                    f"Retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        logger.error(f"Giving up on {video.id} after {self.max_attempts} attempts: {last_error}")
        return video, DownloadFailure(
            video_id=video.id,
            url=video.url,
            attempts=self.max_attempts,
            error=str(last_error),
        )

    def _backoff(self, attempt: int) -> float:
        delay = min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)
        return delay + random.uniform(0, delay / 4)

    async def _fetch(self, video: Video) -> Path:
        final = self.media_path(video.id)
        if file_ready(str(final)):
            logger.info(f"Found existing file for {video.id}, skipping fetch")
            return final

        part = final.with_name(final.name + ".part")
        resume_from = part.stat().st_size if part.exists() else 0
        headers = {"Accept": "*/*"}
        if resume_from:
            headers["Range"] = f"bytes={resume_from}-"

        expected = None
        written = 0
        try:
            async with self.client.stream(video.url, headers=headers) as resp:
                resp.raise_for_status()
                if resume_from and resp.status_code == 206:
                    mode = "ab"
                    logger.info(f"Resuming {video.id} from byte {resume_from}")
                else:
                    if resume_from:
                        logger.info(f"Server ignored range request for {video.id}, restarting")
                    resume_from = 0
                    mode = "wb"

                length = resp.headers.get("Content-Length")
                if length and length.isdigit():
                    expected = resume_from + int(length)

                written = resume_from
                with open(part, mode) as f:
                    async for chunk in resp.aiter_bytes(settings.DOWNLOAD_CHUNK_SIZE):
                        f.write(chunk)
                        written += len(chunk)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 416:
                # Stale partial file, start over next attempt
                part.unlink(missing_ok=True)
            raise TransportError(
                f"HTTP {e.response.status_code} for {video.url}",
                url=video.url,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Fetching {video.url} failed: {e}", url=video.url) from e

        if expected is not None and written < expected:
            raise TransportError(f"Incomplete download of {video.id} ({written}/{expected} bytes)", url=video.url)
        if written == 0:
            part.unlink(missing_ok=True)
            raise TransportError(f"Empty response body for {video.id}", url=video.url)

        os.replace(part, final)
        logger.info(f"Downloaded {video.id} ({written} bytes) to {final}")
        return final
