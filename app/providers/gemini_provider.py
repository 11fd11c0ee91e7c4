# /app/providers/gemini_provider.py
from typing import AsyncGenerator, Optional

import httpx
from fastapi.responses import StreamingResponse
from loguru import logger
from starlette.background import BackgroundTask

from app.core.config import Settings
from app.core.errors import UpstreamTransportFailure
from app.providers.base_provider import BaseProvider
from app.services.credential_manager import CredentialManager, load_api_keys
from app.services.request_translator import ProxyRequestContext

# 代理自己重新分帧响应体，上游的分块编码头不能透传
EXCLUDED_RESPONSE_HEADERS = {b"transfer-encoding"}


class GeminiProvider(BaseProvider):
    def __init__(
        self,
        settings: Settings,
        credential_manager: Optional[CredentialManager] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        if credential_manager is None:
            credential_manager = CredentialManager(load_api_keys(settings))
        self.credential_manager = credential_manager
        self.transport = transport
        self.client: httpx.AsyncClient = None

    async def initialize(self):
        timeout = self.settings.API_REQUEST_TIMEOUT or None
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=False,
            transport=self.transport,
        )

    async def close(self):
        if self.client:
            await self.client.aclose()
            self.client = None

    async def forward(self, context: ProxyRequestContext) -> StreamingResponse:
        """
        把构造好的请求发往上游，并原样转发状态码、响应头与响应体。
        上游的任何 HTTP 状态码 (包括 3xx 重定向与 4xx/5xx) 都视为代理成功。
        """
        if self.client is None:
            await self.initialize()

        # 直接构造 Request，避免 httpx 客户端默认头 (User-Agent、Accept-Encoding 等) 混入
        request = httpx.Request(
            context.method,
            context.url,
            params=context.params,
            headers=[(k.encode("latin-1"), v.encode("latin-1")) for k, v in context.headers],
            content=context.body,
            extensions={"timeout": self.client.timeout.as_dict()},
        )

        logger.info(f"{context.method} {context.url}")

        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as e:
            logger.error(f"代理请求失败: {context.method} {context.url}")
            logger.error(f"网络或配置错误: {type(e).__name__}: {e}")
            raise UpstreamTransportFailure(str(e) or type(e).__name__) from e

        if upstream.status_code >= 400:
            logger.warning(f"上游返回错误状态码: {upstream.status_code} {upstream.reason_phrase}")

        response = StreamingResponse(
            self._relay_body(upstream),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        # 保留上游响应头的多值与顺序
        response.raw_headers = [
            (key, value)
            for key, value in upstream.headers.raw
            if key.lower() not in EXCLUDED_RESPONSE_HEADERS
        ]
        return response

    async def _relay_body(self, upstream: httpx.Response) -> AsyncGenerator[bytes, None]:
        # aiter_raw 不做解压，content-encoding 与 content-length 保持一致
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            logger.error(f"转发上游响应体时中断: {type(e).__name__}: {e}")
