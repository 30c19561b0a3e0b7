"""Window-based rate limiting with escalating temporary blocks.

Per (identifier, action):
- an active block for (identifier, user_agent) rejects without touching
  counters;
- otherwise the store atomically admits the attempt while the trailing-window
  count is below `max_attempts`;
- over the limit, a violation and a block are written in one transaction.

Any store error fails OPEN: the request is allowed and the error is logged.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from app.logic.events import RATE_LIMIT_BLOCKED, RATE_LIMIT_CLEANUP, publish
from app.models.response_types import RateLimitResult


logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 1
DEFAULT_WINDOW_MINUTES = 4320  # 3 days
DEFAULT_BLOCK_MINUTES = 60
DEFAULT_RETENTION_DAYS = 7
BLOCK_REASON = "Too many requests"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateLimitPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    window_minutes: int = DEFAULT_WINDOW_MINUTES
    block_minutes: int = DEFAULT_BLOCK_MINUTES


@dataclass(frozen=True)
class AttemptRecord:
    identifier: str
    action: str
    user_agent: str
    created_at: datetime


@dataclass(frozen=True)
class ViolationRecord:
    identifier: str
    action: str
    user_agent: str
    attempt_count: int
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BlockRecord:
    identifier: str
    user_agent: str
    blocked_until: datetime
    reason: str = BLOCK_REASON
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class AdmitResult:
    """Outcome of an atomic check-and-record.

    `count` is the in-window count after the insert when admitted, and the
    count observed at rejection otherwise.
    """

    admitted: bool
    count: int
    oldest: Optional[datetime] = None


class RateLimitStore(Protocol):
    def create_counter_attempt(self, attempt: AttemptRecord) -> None: ...

    def count_attempts_since(self, identifier: str, action: str, since: datetime) -> int: ...

    def oldest_attempt_since(self, identifier: str, action: str, since: datetime) -> Optional[datetime]: ...

    def find_active_block(self, identifier: str, user_agent: str, now: datetime) -> Optional[BlockRecord]: ...

    def upsert_block(self, block: BlockRecord) -> None: ...

    def append_violation(self, violation: ViolationRecord) -> None: ...

    def try_record_attempt(self, attempt: AttemptRecord, since: datetime, max_attempts: int) -> AdmitResult: ...

    def record_violation_and_block(self, violation: ViolationRecord, block: BlockRecord) -> None: ...

    def list_attempts(self, since: Optional[datetime] = None, limit: Optional[int] = None) -> List[AttemptRecord]: ...

    def list_violations(self, since: Optional[datetime] = None, limit: Optional[int] = None) -> List[ViolationRecord]: ...

    def list_active_blocks(self, identifier: str, now: datetime) -> List[BlockRecord]: ...

    def delete_attempts_before(self, cutoff: datetime) -> int: ...

    def delete_expired_blocks(self, now: datetime) -> int: ...


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def _minutes(seconds: int) -> float:
    return round(seconds / 60, 1)


class AbuseGuard:
    """Rate limiter bound to one store, policy and clock.

    `on_latency(identifier, millis)` is called after every check when given;
    the monitor uses it to keep advisory timing samples.
    """

    def __init__(
        self,
        store: RateLimitStore,
        policy: Optional[RateLimitPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        on_latency: Optional[Callable[[str, float], None]] = None,
    ) -> None:
        self.store = store
        self.policy = policy or RateLimitPolicy()
        self._clock = clock
        self._on_latency = on_latency

    def check(
        self,
        identifier: str,
        action: str,
        user_agent: Optional[str] = None,
        policy: Optional[RateLimitPolicy] = None,
    ) -> RateLimitResult:
        policy = policy or self.policy
        started = time.perf_counter()
        try:
            return self._check(identifier, action, user_agent or "", policy)
        except Exception:
            logger.error(
                "abuse_guard.fail_open identifier=%s action=%s", identifier, action, exc_info=True
            )
            return RateLimitResult(
                allowed=True,
                current_attempts=0,
                max_attempts=policy.max_attempts,
                remaining_attempts=policy.max_attempts,
                window_minutes=policy.window_minutes,
            )
        finally:
            if self._on_latency is not None:
                self._on_latency(identifier, (time.perf_counter() - started) * 1000.0)

    def _check(self, identifier: str, action: str, user_agent: str, policy: RateLimitPolicy) -> RateLimitResult:
        now = self._clock()
        block = self.store.find_active_block(identifier, user_agent, now)
        if block is not None:
            retry = max(0, math.floor((block.blocked_until - now).total_seconds()))
            logger.info("abuse_guard.blocked identifier=%s action=%s retry_after=%s", identifier, action, retry)
            return RateLimitResult(
                allowed=False,
                current_attempts=policy.max_attempts,
                max_attempts=policy.max_attempts,
                remaining_attempts=0,
                window_minutes=policy.window_minutes,
                retry_after_seconds=retry,
                retry_after_minutes=_minutes(retry),
                blocked_until=_iso(block.blocked_until),
                message=f"You are temporarily blocked. Please try again in {math.ceil(retry / 60)} minutes.",
            )

        window = timedelta(minutes=policy.window_minutes)
        admit = self.store.try_record_attempt(
            AttemptRecord(identifier, action, user_agent, now), now - window, policy.max_attempts
        )
        if admit.admitted:
            return RateLimitResult(
                allowed=True,
                current_attempts=admit.count,
                max_attempts=policy.max_attempts,
                remaining_attempts=max(0, policy.max_attempts - admit.count),
                window_minutes=policy.window_minutes,
            )

        if admit.oldest is not None:
            retry = max(0, math.floor((admit.oldest + window - now).total_seconds()))
        else:
            retry = policy.window_minutes * 60
        blocked_until = now + timedelta(minutes=policy.block_minutes)
        violation = ViolationRecord(
            identifier=identifier,
            action=action,
            user_agent=user_agent,
            attempt_count=admit.count,
            created_at=now,
            metadata={
                "window_minutes": policy.window_minutes,
                "max_attempts": policy.max_attempts,
                "retry_after_seconds": retry,
                "user_agent": user_agent,
            },
        )
        self.store.record_violation_and_block(
            violation, BlockRecord(identifier, user_agent, blocked_until, BLOCK_REASON, now)
        )
        logger.warning(
            "abuse_guard.violation identifier=%s action=%s attempts=%s blocked_until=%s",
            identifier,
            action,
            admit.count,
            _iso(blocked_until),
        )
        publish(RATE_LIMIT_BLOCKED, {"identifier": identifier, "action": action, "attempts": admit.count})
        return RateLimitResult(
            allowed=False,
            current_attempts=admit.count,
            max_attempts=policy.max_attempts,
            remaining_attempts=0,
            window_minutes=policy.window_minutes,
            retry_after_seconds=retry,
            retry_after_minutes=_minutes(retry),
            blocked_until=_iso(blocked_until),
            message=f"Too many attempts. Please try again in {math.ceil(retry / 60)} minutes.",
        )

    def get_status(
        self,
        identifier: str,
        action: str,
        user_agent: Optional[str] = None,
        policy: Optional[RateLimitPolicy] = None,
    ) -> Optional[RateLimitResult]:
        """Report the caller's standing without recording an attempt.

        Returns None when the store is unavailable.
        """
        policy = policy or self.policy
        now = self._clock()
        try:
            block = self.store.find_active_block(identifier, user_agent or "", now)
            count = self.store.count_attempts_since(
                identifier, action, now - timedelta(minutes=policy.window_minutes)
            )
        except Exception:
            logger.error("abuse_guard.status_failed identifier=%s action=%s", identifier, action, exc_info=True)
            return None
        result = RateLimitResult(
            allowed=block is None and count < policy.max_attempts,
            current_attempts=count,
            max_attempts=policy.max_attempts,
            remaining_attempts=max(0, policy.max_attempts - count),
            window_minutes=policy.window_minutes,
        )
        if block is not None:
            retry = max(0, math.floor((block.blocked_until - now).total_seconds()))
            result.retry_after_seconds = retry
            result.retry_after_minutes = _minutes(retry)
            result.blocked_until = _iso(block.blocked_until)
        return result

    def has_already_submitted(
        self, identifier: str, action: str, policy: Optional[RateLimitPolicy] = None
    ) -> bool:
        """True if the identifier has an attempt in the current window; False on store errors."""
        policy = policy or self.policy
        since = self._clock() - timedelta(minutes=policy.window_minutes)
        try:
            return self.store.count_attempts_since(identifier, action, since) > 0
        except Exception:
            logger.error("abuse_guard.has_submitted_failed identifier=%s", identifier, exc_info=True)
            return False

    def cleanup(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> Dict[str, Any]:
        """Delete attempts older than the retention period and expired blocks."""
        now = self._clock()
        try:
            attempts = self.store.delete_attempts_before(now - timedelta(days=retention_days))
            blocks = self.store.delete_expired_blocks(now)
        except Exception as exc:
            logger.error("abuse_guard.cleanup_failed", exc_info=True)
            return {"deleted": 0, "deleted_blocks": 0, "error": type(exc).__name__}
        logger.info("abuse_guard.cleanup deleted=%s deleted_blocks=%s", attempts, blocks)
        publish(RATE_LIMIT_CLEANUP, {"deleted": attempts, "deleted_blocks": blocks})
        return {"deleted": attempts, "deleted_blocks": blocks}


__all__ = [
    "AbuseGuard",
    "AdmitResult",
    "AttemptRecord",
    "BlockRecord",
    "RateLimitPolicy",
    "RateLimitStore",
    "ViolationRecord",
    "utcnow",
]
