import json
import logging
import os
import fcntl
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional
from .config import settings

logger = logging.getLogger(__name__)

class StateStore:
    """
    Opaque durable key-value store. Values are JSON documents; the whole
    mapping lives in a single file and is rewritten atomically on each put.
    """

    def __init__(self, path: str, persist: Optional[bool] = None):
        self.path = Path(path)
        self.persist = settings.PERSIST_ENABLED if persist is None else persist
        self.read_only = False
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._load()

    def _load(self):
        if not self.path.exists():
            logger.info(f"No state file found at {self.path}, creating new.")
            return

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            self._data = data
        except Exception as e:
            logger.error(f"Failed to load state: {e}. Starting fresh.", exc_info=True)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def keys(self) -> List[str]:
        return list(self._data.keys())

    def put(self, key: str, value: Any):
        with self._lock:
            self._data[key] = value
            self._save()

    def put_many(self, values: Dict[str, Any]):
        """Set several keys with a single rewrite of the state file."""
        with self._lock:
            self._data.update(values)
            self._save()

    def delete(self, key: str):
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._save()

    def _save(self):
        if not self.persist or self.read_only:
            return

        tmp_path = self.path.with_suffix('.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Atomic write pattern with locking
            with open(tmp_path, 'w') as f:
                try:
                    fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    logger.warning("Could not acquire lock for state save. Skipping save cycle.")
                    return

                try:
                    json.dump(self._data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

            os.replace(tmp_path, self.path)

        except OSError as e:
            logger.error(f"Failed to save state to {self.path}: {e}")
            # Keep serving from memory for the rest of this run
            self.read_only = True
