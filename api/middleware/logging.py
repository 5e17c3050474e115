"""
访问日志中间件
记录每个HTTP请求的状态码与耗时
"""
import time

from starlette.types import ASGIApp

from core.logging_config import get_logger


logger = get_logger(__name__)


class AccessLogMiddleware:
    """轻量级 ASGI 访问日志；健康检查与文档路径不记录"""

    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or scope["path"] in self.SKIP_PATHS:
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()

        async def send_wrapper(message):
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
