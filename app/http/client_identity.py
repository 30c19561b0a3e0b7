"""Caller identity derived from transport headers.

The rate limiter keys on `(identifier, user_agent)`; both are resolved here so
the pipeline never parses headers itself.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

UNKNOWN_IDENTIFIER = "unknown"


@dataclass(frozen=True)
class ClientIdentity:
    identifier: str
    user_agent: str


def resolve_client(request: Request, trust_proxy_headers: bool = False) -> ClientIdentity:
    """Identifier precedence: first X-Forwarded-For hop (when trusted),
    X-Real-IP, the socket peer, else "unknown". A missing User-Agent is ""."""
    identifier = None
    if trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            identifier = forwarded.split(",")[0].strip() or None
        if identifier is None:
            identifier = (request.headers.get("x-real-ip") or "").strip() or None
    if identifier is None and request.client is not None and request.client.host:
        identifier = request.client.host
    user_agent = (request.headers.get("user-agent") or "").strip()
    return ClientIdentity(identifier=identifier or UNKNOWN_IDENTIFIER, user_agent=user_agent[:512])


__all__ = ["ClientIdentity", "UNKNOWN_IDENTIFIER", "resolve_client"]
