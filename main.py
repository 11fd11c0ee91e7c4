import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from app.core.config import Settings, settings
from app.core.errors import NoCredentialsConfigured, ProxyError, RequestBodyTooLarge
from app.providers.gemini_provider import GeminiProvider
from app.services.credential_manager import CredentialManager
from app.services.request_translator import build_proxy_request


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def setup_logging(level: str):
    logger.remove()
    logger.add(sys.stdout, level=level.upper(), format=LOG_FORMAT, colorize=True)


async def read_body(request: Request, limit: int) -> bytes:
    """读取入站请求体，超过上限时返回 413 (与原 50mb 的 body 解析上限一致)。"""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise RequestBodyTooLarge(f"request entity too large (limit {limit} bytes)")

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            raise RequestBodyTooLarge(f"request entity too large (limit {limit} bytes)")
        chunks.append(chunk)
    return b"".join(chunks)


def create_app(
    app_settings: Optional[Settings] = None,
    credential_manager: Optional[CredentialManager] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    app_settings = app_settings or settings
    provider = GeminiProvider(app_settings, credential_manager=credential_manager, transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"应用启动中... {app_settings.APP_NAME} v{app_settings.APP_VERSION}")
        await provider.initialize()
        base = f"http://localhost:{app_settings.PORT}"
        logger.info(f"Gemini API Key 轮询代理已启动: {base}")
        logger.info(f"OpenAI 兼容请求的 Base URL: {base}{app_settings.PROXY_PREFIX}/openai/")
        logger.info(f"健康检查: {base}/health")
        logger.info(f"手动轮换 Key: {base}/rotate-key")
        yield
        await provider.close()
        logger.info("应用已关闭。")

    app = FastAPI(
        title=app_settings.APP_NAME,
        version=app_settings.APP_VERSION,
        description=app_settings.DESCRIPTION,
        lifespan=lifespan,
    )
    app.state.provider = provider

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        client_ip = request.client.host if request.client else "-"
        logger.info(f"{request.method} {request.url.path} from {client_ip}")
        return await call_next(request)

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        logger.error(f"代理错误 {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_content())

    async def proxy(request: Request):
        body = await read_body(request, app_settings.MAX_BODY_SIZE)
        raw_path = request.scope.get("raw_path") or request.url.path.encode()
        raw_path = raw_path.split(b"?", 1)[0]
        context = build_proxy_request(
            method=request.method,
            path=raw_path.decode("latin-1"),
            params=request.query_params.multi_items(),
            headers=[(k.decode("latin-1"), v.decode("latin-1")) for k, v in request.headers.raw],
            body=body,
            credential_manager=provider.credential_manager,
            upstream_base_url=app_settings.UPSTREAM_BASE_URL,
        )
        return await provider.forward(context)

    prefix = app_settings.PROXY_PREFIX
    # 不限定方法，前缀下的任意请求都转发给上游
    app.add_route(prefix, proxy, include_in_schema=False)
    app.add_route(f"{prefix}/{{path:path}}", proxy, include_in_schema=False)

    @app.get("/health")
    async def health():
        status = provider.credential_manager.status()
        return {
            "status": "healthy",
            "apiKeysConfigured": status.count,
            "currentKeyIndex": status.cursor,
        }

    @app.get("/rotate-key")
    async def rotate_key():
        try:
            result = provider.credential_manager.rotate()
        except NoCredentialsConfigured as e:
            logger.warning("尝试手动轮换 Key，但未配置任何 API Key。")
            return JSONResponse(status_code=400, content={"error": e.message})
        return {
            "message": "API key rotated",
            "previousIndex": result.previous_index,
            "currentIndex": result.current_index,
            "totalKeys": result.total,
        }

    return app


@logger.catch(onerror=lambda _: sys.exit(1))
def main():
    setup_logging(settings.LOG_LEVEL)
    uvicorn.run(create_app(), host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    main()
