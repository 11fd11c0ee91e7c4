# /app/core/errors.py
from typing import Any, Dict


class ProxyError(Exception):
    """代理层错误的基类，在请求边界统一转换为 JSON 响应。"""

    status_code: int = 500
    error: str = "Proxy server error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_content(self) -> Dict[str, Any]:
        return {"error": self.error, "message": self.message}


class NoCredentialsConfigured(ProxyError):
    def __init__(self, message: str = "No API keys configured"):
        super().__init__(message)


class CredentialsExhausted(ProxyError):
    """转发路径上无法选出凭证。"""


class UpstreamTransportFailure(ProxyError):
    """与上游的网络通信失败 (DNS、连接被拒、响应格式错误等)。"""


class RequestBodyTooLarge(ProxyError):
    status_code = 413
    error = "Invalid request body"
