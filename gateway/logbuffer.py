"""
Moorage - Gateway Log Buffer
===============================
Fixed-capacity ring buffer holding the most recent lines emitted by the
gateway process.

Every entry gets a sequence id that is strictly increasing and never
reused, so pollers can ask for "everything after id K" and resume without
duplicates. When the buffer is full the oldest entry is evicted; a poller
that fell behind simply sees a gap.

Entry format:
    {
        "id": 42,
        "timestamp": "2026-02-08T12:00:00+00:00",
        "stream": "output",
        "text": "listening on 127.0.0.1:18789"
    }

Usage:
    logs = LogBuffer(capacity=1000)
    logs.append("output", "hello")
    page = logs.since(0)   # {"entries": [...], "lastId": 1}
"""

import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any


class LogBuffer:
    """
    Thread-safe ring buffer of gateway log entries.

    Append and trim happen under one lock, and readers get a copy, so a
    poller never observes a half-evicted buffer.

    Attributes:
        capacity: Maximum number of entries retained.
        last_id:  Id of the most recently appended entry (0 if none yet).
    """

    def __init__(self, capacity: int = 1000):
        if capacity < 1:
            raise ValueError("Log buffer capacity must be at least 1")
        self.capacity = capacity
        self.last_id = 0
        self._entries: deque[dict[str, Any]] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, stream: str, text: str) -> dict[str, Any]:
        """
        Append one line and return the stored entry.

        Args:
            stream: "output" or "error".
            text:   The line, without its trailing newline.
        """
        with self._lock:
            self.last_id += 1
            entry = {
                "id": self.last_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "stream": stream,
                "text": text,
            }
            self._entries.append(entry)
            return dict(entry)

    def since(self, since_id: int = 0) -> dict[str, Any]:
        """
        Return every buffered entry with an id greater than `since_id`.

        `lastId` is the newest buffered id, or `since_id` itself when the
        buffer is empty, so callers can feed it straight back in.
        """
        with self._lock:
            entries = [dict(e) for e in self._entries if e["id"] > since_id]
            last_id = self._entries[-1]["id"] if self._entries else since_id
        return {"entries": entries, "lastId": last_id}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
