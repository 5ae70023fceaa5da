"""Per-session usage cache.

Maps a session id to the most recent usage record seen for it. Bounded,
least-recently-used entries are evicted first, so a long-running gateway
doesn't grow without limit across many short sessions.
"""

import threading
from collections import OrderedDict
from typing import Any

DEFAULT_MAX_SESSIONS = 100


class SessionUsageCache:
    """Bounded LRU mapping of session id -> latest usage record.

    Each operation holds the lock for its whole duration, so a reader sees
    either the old record or the new one, never a half-applied update.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SESSIONS):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._data: "OrderedDict[str, Any]" = OrderedDict()
        self._lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._max_size

    def put(self, session_id: str, usage: Any) -> None:
        """Insert or overwrite the usage record for a session."""
        with self._lock:
            self._data[session_id] = usage
            self._data.move_to_end(session_id)
            while len(self._data) > self._max_size:
                self._data.popitem(last=False)

    def get(self, session_id: str) -> Any | None:
        """Return the latest usage record for a session, or None."""
        with self._lock:
            if session_id not in self._data:
                return None
            self._data.move_to_end(session_id)
            return self._data[session_id]

    def resize(self, max_size: int) -> None:
        """Change the bound, evicting the oldest sessions if needed."""
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        with self._lock:
            self._max_size = max_size
            while len(self._data) > self._max_size:
                self._data.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


# Shared by every request the gateway serves
session_usage_cache = SessionUsageCache()
