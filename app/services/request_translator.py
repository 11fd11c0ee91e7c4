# /app/services/request_translator.py
import json
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from loguru import logger

from app.core.errors import CredentialsExhausted, NoCredentialsConfigured
from app.services.credential_manager import CredentialManager

QUERY_MODE = "query"
BEARER_MODE = "bearer"

BODYLESS_METHODS = {"GET", "HEAD"}
BEARER_PATH_MARKERS = ("/openai/", "/embeddings")

# 入站请求体已被完整读出，出站由 httpx 重新分帧，逐跳头不能透传
HOP_BY_HOP_HEADERS = {
    "connection", "keep-alive", "proxy-connection", "te",
    "trailer", "transfer-encoding", "upgrade",
}
REWRITTEN_HEADERS = {"host", "content-length", "authorization"}

Header = Tuple[str, str]


@dataclass
class ProxyRequestContext:
    method: str
    url: str
    credential: str
    mode: str
    headers: List[Header] = field(default_factory=list)
    params: List[Tuple[str, str]] = field(default_factory=list)
    body: Optional[bytes] = None


def placement_mode(path: str) -> str:
    """OpenAI 兼容路由和 embeddings 路由使用 Bearer 头，其余使用 ?key= 查询参数。"""
    if any(marker in path for marker in BEARER_PATH_MARKERS):
        return BEARER_MODE
    return QUERY_MODE


def is_json_content_type(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json"


def _find_header(headers: Sequence[Header], name: str) -> Optional[str]:
    for key, value in headers:
        if key.lower() == name:
            return value
    return None


def _check_json_body(body: bytes) -> None:
    """仅用于诊断: JSON 解析失败只记录日志，请求照常按原始字节转发。"""
    try:
        json.loads(body)
    except ValueError as e:
        logger.error(f"JSON 解析错误: {e}")
        logger.error(f"请求体预览: {body[:200].decode(errors='replace')}")


def build_proxy_request(
    method: str,
    path: str,
    params: Sequence[Tuple[str, str]],
    headers: Sequence[Header],
    body: bytes,
    credential_manager: CredentialManager,
    upstream_base_url: str,
) -> ProxyRequestContext:
    """
    根据入站请求构造发往上游的请求。

    `path` 是入站请求的原始路径 (不含查询串)，原样拼接在上游地址之后；
    查询参数以结构化形式单独转发。
    """
    try:
        credential = credential_manager.get_credential()
    except NoCredentialsConfigured as e:
        raise CredentialsExhausted(e.message) from e

    mode = placement_mode(path)
    upstream_host = urlparse(upstream_base_url).netloc
    method = method.upper()

    # Connection 头中列出的字段同样只对本跳有效
    connection_tokens = {
        token.strip().lower()
        for key, value in headers if key.lower() == "connection"
        for token in value.split(",")
    }
    skipped = REWRITTEN_HEADERS | HOP_BY_HOP_HEADERS | connection_tokens

    out_headers: List[Header] = [("host", upstream_host)]
    for key, value in headers:
        if key.lower() in skipped:
            continue
        out_headers.append((key, value))

    out_params = list(params)
    if mode == BEARER_MODE:
        out_headers.append(("Authorization", f"Bearer {credential}"))
    else:
        out_params = [(k, v) for k, v in out_params if k != "key"]
        out_params.append(("key", credential))

    out_body = None
    if method not in BODYLESS_METHODS:
        out_body = body
        if is_json_content_type(_find_header(headers, "content-type")):
            if body:
                _check_json_body(body)
            out_headers = [(k, v) for k, v in out_headers if k.lower() != "content-type"]
            out_headers.append(("Content-Type", "application/json"))

    return ProxyRequestContext(
        method=method,
        url=f"{upstream_base_url}{path}",
        credential=credential,
        mode=mode,
        headers=out_headers,
        params=out_params,
        body=out_body,
    )
