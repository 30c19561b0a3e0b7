"""Read-only monitoring over the rate limit store.

Metrics and activity are derived from stored attempts and violations.
Latency samples are kept in-process, capped per identifier, and are advisory
only. Every query failure returns an empty/default result and is logged.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict, deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional

from app.logic.abuse_guard import RateLimitStore, utcnow


logger = logging.getLogger(__name__)

MAX_SAMPLES_PER_IDENTIFIER = 100
MAX_TRACKED_IDENTIFIERS = 10000
TOP_BLOCKED_LIMIT = 5

TIMEFRAMES: Dict[str, timedelta] = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
}


def _default_metrics() -> Dict[str, Any]:
    return {
        "total_requests": 0,
        "allowed_requests": 0,
        "blocked_requests": 0,
        "unique_identifiers": 0,
        "average_response_time_ms": 0.0,
        "top_blocked": [],
    }


class RateLimitMonitor:
    def __init__(self, store: RateLimitStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._samples: "OrderedDict[str, Deque[float]]" = OrderedDict()

    def record_latency(self, identifier: str, millis: float) -> None:
        with self._lock:
            samples = self._samples.get(identifier)
            if samples is None:
                samples = deque(maxlen=MAX_SAMPLES_PER_IDENTIFIER)
                self._samples[identifier] = samples
            samples.append(float(millis))
            self._samples.move_to_end(identifier)
            while len(self._samples) > MAX_TRACKED_IDENTIFIERS:
                self._samples.popitem(last=False)

    def latency_stats(self, identifier: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            samples = list(self._samples.get(identifier, ()))
        if not samples:
            return None
        return {
            "average": round(sum(samples) / len(samples), 2),
            "minimum": min(samples),
            "maximum": max(samples),
            "sample_size": len(samples),
        }

    def _average_latency(self) -> float:
        with self._lock:
            samples = [s for window in self._samples.values() for s in window]
        if not samples:
            return 0.0
        return round(sum(samples) / len(samples), 2)

    def get_metrics(self, timeframe: str = "hour") -> Dict[str, Any]:
        """Aggregate counts for the trailing timeframe (hour, day or week)."""
        cutoff = self._clock() - TIMEFRAMES.get(timeframe, TIMEFRAMES["hour"])
        try:
            attempts = self.store.list_attempts(since=cutoff)
            violations = self.store.list_violations(since=cutoff)
        except Exception:
            logger.error("rate_limit_monitor.metrics_failed timeframe=%s", timeframe, exc_info=True)
            return _default_metrics()

        grouped: Dict[str, Dict[str, Any]] = {}
        for v in violations:
            entry = grouped.setdefault(v.identifier, {"attempts": 0, "last_attempt": v.created_at})
            entry["attempts"] += 1
            if v.created_at > entry["last_attempt"]:
                entry["last_attempt"] = v.created_at
        top = sorted(grouped.items(), key=lambda kv: kv[1]["attempts"], reverse=True)[:TOP_BLOCKED_LIMIT]
        return {
            "total_requests": len(attempts) + len(violations),
            "allowed_requests": len(attempts),
            "blocked_requests": len(violations),
            "unique_identifiers": len({a.identifier for a in attempts}),
            "average_response_time_ms": self._average_latency(),
            "top_blocked": [
                {"identifier": ident, "attempts": e["attempts"], "last_attempt": e["last_attempt"].isoformat()}
                for ident, e in top
            ],
        }

    def get_recent_activity(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Attempts and violations merged, newest first."""
        try:
            attempts = self.store.list_attempts(limit=limit)
            violations = self.store.list_violations(limit=limit)
        except Exception:
            logger.error("rate_limit_monitor.activity_failed", exc_info=True)
            return []
        rows = [
            {
                "timestamp": a.created_at,
                "identifier": a.identifier,
                "action": a.action,
                "allowed": True,
                "user_agent": a.user_agent or None,
            }
            for a in attempts
        ] + [
            {
                "timestamp": v.created_at,
                "identifier": v.identifier,
                "action": v.action,
                "allowed": False,
                "user_agent": v.user_agent or None,
            }
            for v in violations
        ]
        rows.sort(key=lambda r: r["timestamp"], reverse=True)
        for r in rows:
            r["timestamp"] = r["timestamp"].isoformat()
        return rows[:limit]

    def is_blocked(self, identifier: str) -> bool:
        try:
            return bool(self.store.list_active_blocks(identifier, self._clock()))
        except Exception:
            logger.error("rate_limit_monitor.block_check_failed identifier=%s", identifier, exc_info=True)
            return False

    def identifier_status(self, identifier: str) -> Dict[str, Any]:
        try:
            blocks = self.store.list_active_blocks(identifier, self._clock())
        except Exception:
            logger.error("rate_limit_monitor.block_check_failed identifier=%s", identifier, exc_info=True)
            blocks = []
        return {
            "identifier": identifier,
            "blocked": bool(blocks),
            "blocks": [
                {"user_agent": b.user_agent, "blocked_until": b.blocked_until.isoformat(), "reason": b.reason}
                for b in blocks
            ],
            "performance": self.latency_stats(identifier),
        }


__all__ = ["RateLimitMonitor", "TIMEFRAMES"]
