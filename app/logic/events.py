"""Gateway domain events.

Events are logged and kept in a bounded in-process buffer so tests and the
maintenance endpoints can observe what the pipeline did. Payloads carry
identifiers and counts only, never answer values.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List

logger = logging.getLogger(__name__)

SUBMISSION_ACCEPTED = "submission.accepted"
RATE_LIMIT_BLOCKED = "rate_limit.blocked"
RATE_LIMIT_CLEANUP = "rate_limit.cleanup"

BUFFER_SIZE = 500

_LOCK = threading.Lock()
EVENT_BUFFER: Deque[Dict[str, Any]] = deque(maxlen=BUFFER_SIZE)


def publish(event_type: str, payload: Dict[str, Any]) -> None:
    event = {
        "type": event_type,
        "at": datetime.now(timezone.utc).isoformat(),
        "payload": dict(payload),
    }
    logger.info("event.publish type=%s payload=%s", event_type, event["payload"])
    with _LOCK:
        EVENT_BUFFER.append(event)


def get_buffered_events(clear: bool = True) -> List[Dict[str, Any]]:
    """Return buffered events oldest first; optionally clear the buffer."""
    with _LOCK:
        events = list(EVENT_BUFFER)
        if clear:
            EVENT_BUFFER.clear()
    return events


__all__ = [
    "BUFFER_SIZE",
    "EVENT_BUFFER",
    "RATE_LIMIT_BLOCKED",
    "RATE_LIMIT_CLEANUP",
    "SUBMISSION_ACCEPTED",
    "get_buffered_events",
    "publish",
]
