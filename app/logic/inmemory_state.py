"""Central in-memory state holders (single-instance/dev only).

Holds the process-local rate limit store used when
`rate_limit.backend = "memory"`. It is a weaker fallback: counters are not
shared between processes. Every structure is bounded: attempt windows are an
LRU keyed by (identifier, action) with entries expiring after the TTL or the
caller's window (whichever is longer), and the violation log is a fixed-size
ring.
"""

from __future__ import annotations

import threading
from collections import OrderedDict, deque
from datetime import datetime, timedelta
from typing import Deque, List, Optional, Tuple

from app.logic.abuse_guard import (
    DEFAULT_WINDOW_MINUTES,
    AdmitResult,
    AttemptRecord,
    BlockRecord,
    ViolationRecord,
)

DEFAULT_MAX_KEYS = 10000


class MemoryRateLimitStore:
    """Lock-protected, bounded LRU+TTL implementation of the rate limit store."""

    def __init__(self, max_keys: int = DEFAULT_MAX_KEYS, ttl_minutes: int = DEFAULT_WINDOW_MINUTES) -> None:
        self.max_keys = max(1, int(max_keys))
        self.ttl = timedelta(minutes=ttl_minutes)
        self._lock = threading.Lock()
        self._attempts: "OrderedDict[Tuple[str, str], List[AttemptRecord]]" = OrderedDict()
        self._blocks: "OrderedDict[Tuple[str, str], BlockRecord]" = OrderedDict()
        self._violations: Deque[ViolationRecord] = deque(maxlen=self.max_keys)

    # Internal helpers; callers hold the lock

    def _window(self, key: Tuple[str, str], cutoff: datetime) -> List[AttemptRecord]:
        entries = self._attempts.get(key)
        if entries is None:
            return []
        live = [a for a in entries if a.created_at > cutoff]
        if live:
            self._attempts[key] = live
            self._attempts.move_to_end(key)
        else:
            del self._attempts[key]
        return live

    def _append(self, attempt: AttemptRecord) -> None:
        key = (attempt.identifier, attempt.action)
        self._attempts.setdefault(key, []).append(attempt)
        self._attempts.move_to_end(key)
        while len(self._attempts) > self.max_keys:
            self._attempts.popitem(last=False)

    def _put_block(self, block: BlockRecord) -> None:
        key = (block.identifier, block.user_agent or "")
        self._blocks[key] = block
        self._blocks.move_to_end(key)
        while len(self._blocks) > self.max_keys:
            self._blocks.popitem(last=False)

    # Store interface

    def create_counter_attempt(self, attempt: AttemptRecord) -> None:
        with self._lock:
            self._append(attempt)

    def count_attempts_since(self, identifier: str, action: str, since: datetime) -> int:
        with self._lock:
            return sum(1 for a in self._attempts.get((identifier, action), []) if a.created_at > since)

    def oldest_attempt_since(self, identifier: str, action: str, since: datetime) -> Optional[datetime]:
        with self._lock:
            stamps = [a.created_at for a in self._attempts.get((identifier, action), []) if a.created_at > since]
        return min(stamps) if stamps else None

    def try_record_attempt(self, attempt: AttemptRecord, since: datetime, max_attempts: int) -> AdmitResult:
        # Never prune inside the caller's window, even when it outlasts the TTL
        cutoff = min(since, attempt.created_at - self.ttl)
        with self._lock:
            window = [
                a for a in self._window((attempt.identifier, attempt.action), cutoff)
                if a.created_at > since
            ]
            if len(window) < max_attempts:
                self._append(attempt)
                window.append(attempt)
                return AdmitResult(True, len(window), min(a.created_at for a in window))
            oldest = min(a.created_at for a in window) if window else None
            return AdmitResult(False, len(window), oldest)

    def find_active_block(self, identifier: str, user_agent: str, now: datetime) -> Optional[BlockRecord]:
        with self._lock:
            block = self._blocks.get((identifier, user_agent or ""))
        if block is not None and block.blocked_until > now:
            return block
        return None

    def upsert_block(self, block: BlockRecord) -> None:
        with self._lock:
            self._put_block(block)

    def append_violation(self, violation: ViolationRecord) -> None:
        with self._lock:
            self._violations.append(violation)

    def record_violation_and_block(self, violation: ViolationRecord, block: BlockRecord) -> None:
        with self._lock:
            self._violations.append(violation)
            self._put_block(block)

    def list_attempts(self, since: Optional[datetime] = None, limit: Optional[int] = None) -> List[AttemptRecord]:
        with self._lock:
            rows = [a for entries in self._attempts.values() for a in entries]
        if since is not None:
            rows = [a for a in rows if a.created_at >= since]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        return rows[:limit] if limit is not None else rows

    def list_violations(self, since: Optional[datetime] = None, limit: Optional[int] = None) -> List[ViolationRecord]:
        with self._lock:
            rows = list(self._violations)
        if since is not None:
            rows = [v for v in rows if v.created_at >= since]
        rows.sort(key=lambda v: v.created_at, reverse=True)
        return rows[:limit] if limit is not None else rows

    def list_active_blocks(self, identifier: str, now: datetime) -> List[BlockRecord]:
        with self._lock:
            rows = [b for (ident, _), b in self._blocks.items() if ident == identifier and b.blocked_until > now]
        return sorted(rows, key=lambda b: b.blocked_until, reverse=True)

    def delete_attempts_before(self, cutoff: datetime) -> int:
        deleted = 0
        with self._lock:
            for key in list(self._attempts):
                entries = self._attempts[key]
                keep = [a for a in entries if a.created_at >= cutoff]
                deleted += len(entries) - len(keep)
                if keep:
                    self._attempts[key] = keep
                else:
                    del self._attempts[key]
        return deleted

    def delete_expired_blocks(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, b in self._blocks.items() if b.blocked_until <= now]
            for key in expired:
                del self._blocks[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._attempts.clear()
            self._blocks.clear()
            self._violations.clear()


__all__ = ["DEFAULT_MAX_KEYS", "MemoryRateLimitStore"]
