"""
events.py – fan-out channel for service events

Progress and playback changes are published here; consumers (the HTTP
API, a player adapter) subscribe explicitly and read from their own
queue instead of registering callbacks on the service.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

class PlaybackChanged(BaseModel):
    playlist_id: Optional[str] = None
    paths: List[str] = []

class EventHub:
    def __init__(self, maxsize: int = 100):
        self.maxsize = maxsize
        self._subscribers: List[asyncio.Queue] = []
        self.latest: Dict[str, Any] = {}

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: BaseModel):
        """Non-blocking; a slow subscriber loses its oldest events."""
        self.latest[type(event).__name__] = event
        for queue in self._subscribers:
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.debug("Subscriber queue full, dropped oldest event")
            queue.put_nowait(event)
