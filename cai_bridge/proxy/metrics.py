"""Thread-safe event collector for bridge requests."""

from __future__ import annotations

import statistics
import threading
import time
from collections import Counter, deque
from datetime import datetime, timezone


class ProxyMetrics:
    """Collects structured events from the completion pipeline.

    Keeps the most recent *max_events* events; ``snapshot()`` aggregates
    them for the health endpoint.
    """

    def __init__(self, max_events: int = 5000) -> None:
        self.start_time: float = time.time()
        self._events: deque[dict] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def record(self, event: dict) -> None:
        """Append an event (thread-safe). Adds ``ts`` when missing."""
        with self._lock:
            event = dict(event)
            if "ts" not in event:
                event["ts"] = datetime.now(timezone.utc).isoformat()
            self._events.append(event)

    def snapshot(self) -> dict:
        with self._lock:
            requests = [e for e in self._events if e.get("type") == "request"]
            errors = [e for e in self._events if e.get("type") == "upstream_error"]

            latencies = [r["elapsed_ms"] for r in requests if "elapsed_ms" in r]
            classifications = Counter(r.get("classification", "") for r in requests)
            sync_modes = Counter(r.get("sync_mode", "") for r in requests)
            sources = Counter(r.get("session_source", "") for r in requests)

            return {
                "uptime_s": round(time.time() - self.start_time, 1),
                "total_requests": len(requests),
                "upstream_errors": len(errors),
                "retries": sum(max(0, r.get("attempts", 1) - 1) for r in requests),
                "latency_ms": {
                    "avg": round(statistics.mean(latencies), 1) if latencies else 0,
                    "median": round(statistics.median(latencies), 1) if latencies else 0,
                    "max": max(latencies) if latencies else 0,
                },
                "classifications": dict(classifications),
                "sync_modes": dict(sync_modes),
                "session_sources": dict(sources),
            }
