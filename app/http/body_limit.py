"""Request body size limit.

Requests declaring a Content-Length above the limit are refused before the
app runs. Bodies without a declared length are counted while they stream in;
once the limit is crossed the rest is dropped and the app's response is
replaced by the same 413 problem.
"""

from __future__ import annotations

import json
import logging

from app.http.problem import PROBLEM_MEDIA_TYPE
from app.models.error_codes import ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_MAX_BODY_BYTES = 256 * 1024


def _too_large_body(limit: int) -> bytes:
    detail = f"Request body exceeds {limit} bytes"
    return json.dumps(
        {
            "title": "Payload Too Large",
            "status": 413,
            "detail": detail,
            "success": False,
            "error": detail,
            "code": ErrorCode.VALIDATION_ERROR,
        }
    ).encode("utf-8")


class BodySizeLimitMiddleware:
    def __init__(self, app, max_body_bytes: int = DEFAULT_MAX_BODY_BYTES) -> None:  # type: ignore[no-untyped-def]
        self.app = app
        self.max_body_bytes = max_body_bytes

    @staticmethod
    def _declared_length(scope) -> int | None:  # type: ignore[no-untyped-def]
        for k, v in scope.get("headers") or []:
            if k.lower() == b"content-length":
                try:
                    return int(v.decode("latin-1").strip())
                except ValueError:
                    return None
        return None

    async def _reject(self, scope, send) -> None:  # type: ignore[no-untyped-def]
        logger.info(
            "request.body_too_large path=%s limit=%s", scope.get("path"), self.max_body_bytes
        )
        body = _too_large_body(self.max_body_bytes)
        await send(
            {
                "type": "http.response.start",
                "status": 413,
                "headers": [
                    (b"content-type", PROBLEM_MEDIA_TYPE.encode("latin-1")),
                    (b"content-length", str(len(body)).encode("latin-1")),
                ],
            }
        )
        await send({"type": "http.response.body", "body": body})

    async def __call__(self, scope, receive, send):  # type: ignore[no-untyped-def]
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        declared = self._declared_length(scope)
        if declared is not None and declared > self.max_body_bytes:
            await self._reject(scope, send)
            return

        received = 0
        exceeded = False
        replaced = False

        async def receive_wrapper():  # type: ignore[no-untyped-def]
            nonlocal received, exceeded
            if exceeded:
                return {"type": "http.request", "body": b"", "more_body": False}
            message = await receive()
            if message.get("type") == "http.request":
                received += len(message.get("body") or b"")
                if received > self.max_body_bytes:
                    exceeded = True
                    return {"type": "http.request", "body": b"", "more_body": False}
            return message

        async def send_wrapper(message):  # type: ignore[no-untyped-def]
            nonlocal replaced
            if exceeded:
                if not replaced:
                    replaced = True
                    await self._reject(scope, send)
                return
            await send(message)

        await self.app(scope, receive_wrapper, send_wrapper)


__all__ = ["BodySizeLimitMiddleware", "DEFAULT_MAX_BODY_BYTES"]
