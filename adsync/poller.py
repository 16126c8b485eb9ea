"""
Changelog-driven re-sync.

    IDLE -> POLLING -> NO_CHANGE -> IDLE
                    -> CHANGED -> SYNCING -> IDLE

The marker only moves after a sync that fully succeeded, so a failed
poll or a partial sync is retried on the next tick.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from .clients.cms_client import CMSClient
from .config import settings
from .engine import SyncEngine
from .errors import FormatError, TransportError
from .models import ChangelogEntry, ChangelogMarker, PollOutcome, PollerState, SyncReport
from .state import StateStore

logger = logging.getLogger(__name__)

KEY_MARKER = "changelog_marker"

class ChangePoller:
    def __init__(
        self,
        store: StateStore,
        client: CMSClient,
        engine: SyncEngine,
        interval: Optional[int] = None,
        before_tick: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.store = store
        self.client = client
        self.engine = engine
        self.interval = interval or settings.POLL_INTERVAL_SECONDS
        self.before_tick = before_tick
        self.state = PollerState.IDLE
        self.last_outcome: Optional[PollOutcome] = None
        self.last_report: Optional[SyncReport] = None
        self.last_poll_at = 0.0
        self.last_success_at = 0.0
        self.sync_count = 0
        self._busy = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    @property
    def marker(self) -> Optional[ChangelogMarker]:
        raw = self.store.get(KEY_MARKER)
        if raw is None:
            return None
        try:
            return ChangelogMarker.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Stored changelog marker is invalid, ignoring it: {e}")
            return None

    def _advance(self, entry: ChangelogEntry):
        marker = ChangelogMarker(id=entry.id, date_created=entry.date_created, synced_at=time.time())
        self.store.put(KEY_MARKER, marker.model_dump())
        logger.info(f"Changelog marker advanced to #{entry.id} ({entry.date_created})")

    async def poll_once(self, force: bool = False) -> PollOutcome:
        """
        One poll. ``force`` syncs even when the changelog is unchanged or
        unreachable (manual refresh, startup).
        """
        if self._busy.locked():
            logger.info("Poll or sync already in progress, rejecting trigger")
            return PollOutcome.BUSY

        async with self._busy:
            try:
                outcome = await self._poll(force)
            finally:
                self.state = PollerState.IDLE
            self.last_outcome = outcome
            self.last_poll_at = time.time()
            if outcome in (PollOutcome.NO_CHANGE, PollOutcome.SYNCED):
                self.last_success_at = self.last_poll_at
            return outcome

    async def _poll(self, force: bool) -> PollOutcome:
        self.state = PollerState.POLLING
        entry: Optional[ChangelogEntry] = None
        try:
            entry = await self.client.get_latest_changelog()
        except TransportError as e:
            # Not "no change": the marker stays put and the next tick tries again
            logger.warning(f"Changelog poll failed: {e}")
            if not force:
                return PollOutcome.TRANSPORT_ERROR
        except FormatError as e:
            logger.error(f"Changelog response unusable: {e}")
            if not force:
                return PollOutcome.FORMAT_ERROR

        marker = self.marker
        if not force:
            if entry is None:
                logger.debug("Changelog is empty, nothing to compare")
                return PollOutcome.NO_CHANGE
            if marker is not None and marker.matches(entry):
                logger.debug(f"No change since changelog #{marker.id}")
                return PollOutcome.NO_CHANGE
            logger.info(
                f"Changelog changed: {marker.id if marker else None} -> #{entry.id} ({entry.date_created})"
            )
        else:
            logger.info("Forced sync requested")

        self.state = PollerState.SYNCING
        try:
            report = await self.engine.run()
        except (TransportError, FormatError) as e:
            logger.warning(f"Sync aborted, keeping previous catalog: {e}")
            return PollOutcome.SYNC_FAILED

        self.sync_count += 1
        self.last_report = report
        if not report.success:
            logger.warning("Sync finished with failed downloads, marker not advanced")
            return PollOutcome.SYNC_FAILED

        if entry is not None:
            self._advance(entry)
        logger.info(f"Sync complete: {report.playlists} playlists, {report.videos} videos")
        return PollOutcome.SYNCED

    async def run(self, stop_event: asyncio.Event):
        logger.info(f"Change poller started, interval {self.interval}s")
        while not stop_event.is_set():
            start_time = time.time()
            try:
                if self.before_tick is not None:
                    await self.before_tick()
                outcome = await self.poll_once()
                logger.debug(f"Poll outcome: {outcome.value}")
            except Exception as e:
                logger.error(f"Error in poll loop: {e}", exc_info=True)

            # Wait for remainder of interval
            elapsed = time.time() - start_time
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, self.interval - elapsed))
            except asyncio.TimeoutError:
                pass
        logger.info("Change poller stopped")
