"""Request body size limits.

Implemented as a plain ASGI middleware so that chunked uploads are counted as
they stream in, not only checked against Content-Length.
"""

import logging

from fastapi import HTTPException, Request
from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

BODY_TOO_LARGE_MESSAGE = "Request body too large"


class RequestBodyTooLarge(HTTPException):
    """Raised from the receive channel once a streamed body passes the limit.

    Subclasses HTTPException so body parsing in the routing layer re-raises it
    instead of reporting a parse error.
    """

    def __init__(self) -> None:
        super().__init__(status_code=413, detail=BODY_TOO_LARGE_MESSAGE)


async def body_too_large_handler(request: Request, exc: RequestBodyTooLarge) -> JSONResponse:
    logger.warning(f"Rejected {request.method} {request.url.path}: streamed body exceeds limit")
    return JSONResponse({"error": BODY_TOO_LARGE_MESSAGE}, status_code=exc.status_code)


class BodySizeLimitMiddleware:
    """Reject request bodies above a per-path-prefix byte limit with 413."""

    def __init__(
        self,
        app: ASGIApp,
        max_body_size: int,
        path_limits: dict[str, int] | None = None,
    ):
        self.app = app
        self.max_body_size = max_body_size
        # Longest prefix first so the most specific limit wins
        self.path_limits = sorted((path_limits or {}).items(), key=lambda item: -len(item[0]))

    def limit_for(self, path: str) -> int:
        for prefix, limit in self.path_limits:
            if path.startswith(prefix):
                return limit
        return self.max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        limit = self.limit_for(scope["path"])
        content_length = Headers(scope=scope).get("content-length")
        if content_length is not None:
            try:
                declared = int(content_length)
            except ValueError:
                response = JSONResponse({"error": "Invalid Content-Length header"}, status_code=400)
                await response(scope, receive, send)
                return
            if declared > limit:
                await self._reject(scope, receive, send, declared, limit)
                return

        received = 0
        response_started = False

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    raise RequestBodyTooLarge()
            return message

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, limited_receive, tracking_send)
        except RequestBodyTooLarge:
            if response_started:
                raise
            await self._reject(scope, receive, send, received, limit)

    async def _reject(self, scope: Scope, receive: Receive, send: Send, size: int, limit: int):
        logger.warning(
            f"Rejected {scope.get('method', '')} {scope['path']}: body of at least {size} bytes "
            f"exceeds limit of {limit}"
        )
        response = JSONResponse({"error": BODY_TOO_LARGE_MESSAGE}, status_code=413)
        await response(scope, receive, send)
