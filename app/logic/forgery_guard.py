"""Request-forgery protection: origin allow-list and per-session CSRF token.

Both checks must pass before a mutating request proceeds. Token issuance lives
here too so the HTTP edge and the guard agree on token shape.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import parse_qs, urlsplit

from app.models.error_codes import ErrorCode


logger = logging.getLogger(__name__)

CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAME = "X-CSRF-Token"
CSRF_COOKIE_MAX_AGE = 24 * 60 * 60
# token_urlsafe(24) yields 32 URL-safe characters
_TOKEN_BYTES = 24
EMBED_PARAM = "embed"


@dataclass(frozen=True)
class ForgeryCheck:
    ok: bool
    code: Optional[str] = None
    message: Optional[str] = None
    embedded: bool = False


def issue_token() -> str:
    return secrets.token_urlsafe(_TOKEN_BYTES)


def submitted_token(body_value: object, header_value: Optional[str]) -> Optional[str]:
    """Token from the `csrf_token` body field, else the X-CSRF-Token header."""
    if isinstance(body_value, (list, tuple)):
        body_value = body_value[0] if body_value else None
    if isinstance(body_value, str) and body_value.strip():
        return body_value.strip()
    if header_value and header_value.strip():
        return header_value.strip()
    return None


def _host_of(value: Optional[str]) -> Optional[str]:
    if not value or value.strip().lower() == "null":
        return None
    raw = value.strip()
    if "://" not in raw:
        raw = "//" + raw
    try:
        host = urlsplit(raw).hostname
    except ValueError:
        return None
    return host.lower().rstrip(".") if host else None


class ForgeryGuard:
    def __init__(self, allowed_origins: Iterable[str]) -> None:
        hosts = [_host_of(o) for o in allowed_origins]
        self.allowed_hosts = tuple(h for h in hosts if h)
        if not self.allowed_hosts:
            logger.warning("forgery_guard.origin_check_disabled reason=empty_allow_list")

    def host_allowed(self, host: Optional[str]) -> bool:
        if not host:
            return False
        return any(host == allowed or host.endswith("." + allowed) for allowed in self.allowed_hosts)

    def is_embedded(self, referer: Optional[str]) -> bool:
        """True when the referer is an allowed page carrying `embed=true`."""
        if not referer or not self.host_allowed(_host_of(referer)):
            return False
        try:
            query = parse_qs(urlsplit(referer.strip()).query)
        except ValueError:
            return False
        return any(v.strip().lower() == "true" for v in query.get(EMBED_PARAM, []))

    def check_origin(self, origin: Optional[str], referer: Optional[str]) -> ForgeryCheck:
        """Validate the request's Origin (or Referer when Origin is absent)."""
        embedded = self.is_embedded(referer)
        if not self.allowed_hosts:
            return ForgeryCheck(ok=True, embedded=embedded)
        host = _host_of(origin) or _host_of(referer)
        if self.host_allowed(host):
            return ForgeryCheck(ok=True, embedded=embedded)
        logger.warning("forgery_guard.invalid_origin host=%s", host)
        return ForgeryCheck(ok=False, code=ErrorCode.INVALID_ORIGIN, message="Request origin not allowed")

    def check_token(
        self,
        csrf_enabled: bool,
        submitted: Optional[str],
        stored: Optional[str],
        embedded: bool = False,
    ) -> ForgeryCheck:
        """Compare the submitted token with the session's stored token.

        A session without any stored token is accepted only from a verified
        embedding context.
        """
        if not csrf_enabled:
            return ForgeryCheck(ok=True, embedded=embedded)
        if not stored and embedded:
            logger.info("forgery_guard.embedded_without_token")
            return ForgeryCheck(ok=True, embedded=True)
        if not submitted:
            return ForgeryCheck(ok=False, code=ErrorCode.CSRF_MISSING, message="Security token missing")
        if not stored or not hmac.compare_digest(submitted.encode("utf-8"), stored.encode("utf-8")):
            logger.warning("forgery_guard.token_mismatch stored_present=%s", bool(stored))
            return ForgeryCheck(ok=False, code=ErrorCode.CSRF_INVALID, message="Invalid security token")
        return ForgeryCheck(ok=True, embedded=embedded)


__all__ = [
    "CSRF_COOKIE_MAX_AGE",
    "CSRF_COOKIE_NAME",
    "CSRF_HEADER_NAME",
    "ForgeryCheck",
    "ForgeryGuard",
    "issue_token",
    "submitted_token",
]
