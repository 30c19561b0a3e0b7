"""CORS configuration helpers.

Browsers may call the gateway from the allow-listed hosts and their
subdomains, with credentials so the CSRF cookie travels. No diagnostics are
added here; keep this focused on configuration only.
"""

from __future__ import annotations

import re
from typing import Iterable
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.logic.forgery_guard import CSRF_HEADER_NAME


# Response headers the embedding page needs to read
EXPOSE_HEADERS: list[str] = [
    "Retry-After",
    "X-Request-Id",
]

ALLOW_HEADERS: list[str] = [
    "Content-Type",
    CSRF_HEADER_NAME,
    "Idempotency-Key",
    "X-Request-Id",
]


def origin_regex(hosts: Iterable[str]) -> str | None:
    """Regex matching http(s) origins on the given hosts or any subdomain."""
    parts = []
    for host in hosts:
        h = host.strip().lower()
        if "://" in h:
            h = h.split("://", 1)[1]
        h = h.split("/", 1)[0].split(":", 1)[0]
        if h:
            parts.append(re.escape(h))
    if not parts:
        return None
    return r"https?://([a-z0-9-]+\.)*(" + "|".join(parts) + r")(:\d+)?"


def apply_cors(app: FastAPI, *, origins: Iterable[str] | None = None) -> None:
    regex = origin_regex(origins or [])
    if regex is None:
        return
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=regex,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=ALLOW_HEADERS,
        expose_headers=EXPOSE_HEADERS,
    )


__all__ = ["apply_cors", "origin_regex", "ALLOW_HEADERS", "EXPOSE_HEADERS"]
