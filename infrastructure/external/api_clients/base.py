"""
REST API客户端基类

提供通用的HTTP请求功能，包括：
- 自动重试（超时、网络错误、429/5xx）
- 错误映射
- 结构化请求日志
"""
import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class APIResponse:
    """API响应封装"""
    status_code: int
    headers: Dict[str, str]
    data: Any
    raw_content: bytes
    elapsed_ms: float
    request_id: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400

    def json(self) -> Any:
        if self.data is not None:
            return self.data
        return json.loads(self.raw_content)


class APIError(Exception):
    """API错误基类"""
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[APIResponse] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.message)

    def __str__(self):
        if self.status_code:
            return f"{self.message} | Status: {self.status_code}"
        return self.message


class AuthenticationError(APIError):
    pass


class NotFoundError(APIError):
    pass


class RetryableAPIError(APIError):
    """可重试的API错误（429/5xx）"""


RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class BaseAPIClient:
    """
    REST API客户端基类

    子类继承并实现具体的API调用
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        max_retries: int = 2,
        retry_delay: float = 0.2,
        auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.default_headers = {
            "Accept": "application/json",
            "User-Agent": "Settlement-Ledger/1.0",
        }
        if auth_token:
            self.default_headers["Authorization"] = f"Bearer {auth_token}"
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """获取或创建HTTP客户端"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers=self.default_headers,
                transport=self._transport,
            )
        return self._client

    async def aclose(self):
        """关闭HTTP客户端"""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def _raise_for_status(self, response: APIResponse) -> None:
        error_class = {
            401: AuthenticationError,
            403: AuthenticationError,
            404: NotFoundError,
        }.get(response.status_code, APIError)
        message = f"API request failed with status {response.status_code}"
        if isinstance(response.data, dict):
            message = response.data.get("message") or response.data.get("detail") or message
        raise error_class(message=message, status_code=response.status_code, response=response)

    async def _send_once(self, method: str, endpoint: str, **kwargs) -> APIResponse:
        start = time.perf_counter()
        response = await self.client.request(method, endpoint, **kwargs)
        elapsed = (time.perf_counter() - start) * 1000

        data = None
        if "application/json" in response.headers.get("content-type", ""):
            try:
                data = response.json()
            except json.JSONDecodeError:
                data = None

        api_response = APIResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            data=data,
            raw_content=response.content,
            elapsed_ms=elapsed,
            request_id=response.headers.get("x-request-id"),
        )
        logger.debug(
            "api_request",
            method=method,
            url=f"{self.base_url}/{endpoint.lstrip('/')}",
            status_code=api_response.status_code,
            elapsed_ms=round(elapsed, 2),
        )

        if api_response.status_code in RETRY_STATUS_CODES:
            retry_after = api_response.headers.get("retry-after")
            if api_response.status_code == 429 and retry_after and retry_after.isdigit():
                await asyncio.sleep(float(retry_after))
            raise RetryableAPIError(
                message=f"Transient API error with status {api_response.status_code}",
                status_code=api_response.status_code,
                response=api_response,
            )
        if api_response.is_error:
            self._raise_for_status(api_response)
        return api_response

    async def _request(self, method: str, endpoint: str, **kwargs) -> APIResponse:
        """发送HTTP请求；重试耗尽后抛出 APIError"""
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_delay, min=self.retry_delay, max=self.retry_delay * 8),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError, RetryableAPIError)),
            before_sleep=lambda rs: logger.warning(
                "api_request_retry",
                endpoint=endpoint,
                attempt=rs.attempt_number,
                error=str(rs.outcome.exception()) if rs.outcome else None,
            ),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._send_once(method, endpoint, **kwargs)
        except httpx.TimeoutException as exc:
            raise APIError(f"Request timeout after {self.timeout}s") from exc
        except httpx.NetworkError as exc:
            raise APIError(f"Network error: {exc}") from exc
        raise AssertionError("unreachable")  # pragma: no cover

    async def get(self, endpoint: str, **kwargs) -> APIResponse:
        """GET请求"""
        return await self._request("GET", endpoint, **kwargs)
