"""Thread-safe request log for the /logs and /stats endpoints."""

from __future__ import annotations

import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone

SUCCESS = "success"
ERROR = "error"


class RequestLog:
    """Ring buffer of per-request entries, oldest dropped first.

    In memory only; nothing survives a restart.
    """

    def __init__(self, max_entries: int = 100) -> None:
        self.start_time: float = time.time()
        self.max_entries = max_entries
        self._entries: deque[dict] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    @staticmethod
    def new_request_id() -> str:
        return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    def record(
        self,
        *,
        api: str,
        model: str,
        tier: str,
        latency_ms: float,
        chars: int = 0,
        error: str | None = None,
        request_id: str | None = None,
    ) -> dict:
        """Append an entry (thread-safe) and return a copy of it.

        ``tier`` is ``"sync"``, ``"stream"`` or ``"error"``; an entry with an
        ``error`` is recorded with status ``"error"``.
        """
        entry = {
            "id": request_id or self.new_request_id(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "api": api,
            "model": model,
            "tier": tier,
            "latency_ms": round(latency_ms, 1),
            "chars": chars,
            "status": ERROR if error else SUCCESS,
        }
        if error:
            entry["error"] = error
        with self._lock:
            self._entries.append(entry)
        return dict(entry)

    def entries(self, limit: int = 50, status: str | None = None) -> list[dict]:
        """Newest *limit* entries, oldest first, optionally filtered by status."""
        with self._lock:
            selected = [
                dict(e) for e in self._entries
                if status not in (SUCCESS, ERROR) or e["status"] == status
            ]
        if limit <= 0:
            return []
        return selected[-limit:]

    def tail(self, count: int = 20) -> list[dict]:
        return self.entries(limit=count)

    @property
    def total(self) -> int:
        with self._lock:
            return len(self._entries)
