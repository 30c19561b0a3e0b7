"""Request ID middleware.

Echoes an incoming X-Request-Id header or assigns a fresh one, exposes it to
handlers through `scope["state"]["request_id"]` and adds it to the response.
"""

from __future__ import annotations

import re
import uuid

# Caller-supplied ids are echoed only when short and printable
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9._\-]{1,128}$")


class RequestIdMiddleware:
    def __init__(self, app, header_name: str = "X-Request-Id") -> None:  # type: ignore[no-untyped-def]
        self.app = app
        self.header_name = header_name

    def _incoming(self, scope) -> str | None:  # type: ignore[no-untyped-def]
        wanted = self.header_name.lower().encode("latin-1")
        for k, v in scope.get("headers") or []:
            if k.lower() == wanted:
                value = v.decode("latin-1", errors="ignore").strip()
                return value if _SAFE_ID_RE.match(value) else None
        return None

    async def __call__(self, scope, receive, send):  # type: ignore[no-untyped-def]
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = self._incoming(scope) or str(uuid.uuid4())
        scope.setdefault("state", {})["request_id"] = request_id

        async def send_wrapper(message):  # type: ignore[no-untyped-def]
            if message.get("type") == "http.response.start":
                headers = list(message.get("headers") or [])
                header_bytes = self.header_name.lower().encode("latin-1")
                if not any(k.lower() == header_bytes for k, _ in headers):
                    headers.append((header_bytes, request_id.encode("latin-1")))
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, send_wrapper)


def request_id_of(request) -> str | None:  # type: ignore[no-untyped-def]
    return getattr(request.state, "request_id", None)


__all__ = ["RequestIdMiddleware", "request_id_of"]
