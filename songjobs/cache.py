# songjobs/cache.py
import time
import datetime
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from songjobs.schemas import StatusSnapshot


@dataclass
class CacheEntry:
    snapshot: StatusSnapshot
    expires_at: float
    version: datetime.datetime


class StatusCache:
    """Short-TTL cache of resolved status snapshots, keyed by request id.

    Never authoritative. An entry is only served while it is unexpired AND its
    version matches the record's current updated_at, so a store write that
    slips in between invalidate() and set() still wins.
    """

    def __init__(self, ttl_seconds: float = 1.5, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, request_id: str, version: Optional[datetime.datetime] = None) -> Optional[StatusSnapshot]:
        with self._lock:
            entry = self._entries.get(request_id)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at or (version is not None and entry.version != version):
                del self._entries[request_id]
                return None
            return entry.snapshot.model_copy()

    def set(self, snapshot: StatusSnapshot):
        with self._lock:
            now = self._clock()
            expired = [rid for rid, e in self._entries.items() if now >= e.expires_at]
            for rid in expired:
                del self._entries[rid]
            self._entries[snapshot.id] = CacheEntry(
                snapshot=snapshot.model_copy(),
                expires_at=now + self.ttl_seconds,
                version=snapshot.updated_at,
            )

    def invalidate(self, request_id: str) -> bool:
        with self._lock:
            return self._entries.pop(request_id, None) is not None

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def peek(self, request_id: str) -> Optional[Dict]:
        """Debug view of an entry without expiring it."""
        with self._lock:
            entry = self._entries.get(request_id)
            if entry is None:
                return None
            return {
                "expiresIn": round(entry.expires_at - self._clock(), 3),
                "version": entry.version.isoformat(),
                "payload": entry.snapshot.to_json(),
            }
