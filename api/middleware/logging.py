"""
Access log middleware (pure ASGI).

One record per HTTP response: method, path, status and duration. Request
bodies are never logged; webhook payloads carry payer data.
"""
import time

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from core.logging_config import get_logger


logger = get_logger(__name__)


class AccessLogMiddleware:
    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http" or scope["path"] in self.SKIP_PATHS:
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()

        async def send_wrapper(message: Message):
            if message["type"] == "http.response.start":
                status = message["status"]
                log = logger.info if status < 400 else logger.warning if status < 500 else logger.error
                log(
                    "access",
                    method=scope["method"],
                    path=scope["path"],
                    status=status,
                    duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                )
            await send(message)

        await self.app(scope, receive, send_wrapper)
