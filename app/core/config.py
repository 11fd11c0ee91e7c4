# /app/core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from typing import Optional

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding='utf-8',
        extra="ignore"
    )

    APP_NAME: str = "gemini-2api"
    APP_VERSION: str = "1.0.0"
    DESCRIPTION: str = "一个为 Gemini API 轮询多个 API Key 的透明反向代理，用于分摊单个 Key 的速率限制。"

    # --- 部署配置 ---
    HOST: str = "0.0.0.0"
    PORT: int = 1507
    LOG_LEVEL: str = "INFO"

    # --- Gemini 凭证 ---
    # 优先读取逗号分隔的环境变量，其次读取 JSON 文件 {"apiKeys": [...]}
    GEMINI_API_KEYS: Optional[str] = None
    API_KEYS_FILE: str = "config.json"

    # --- 上游 API 配置 ---
    UPSTREAM_BASE_URL: str = "https://generativelanguage.googleapis.com"
    PROXY_PREFIX: str = "/v1beta"
    # 0 表示不设超时，一直等待上游响应
    API_REQUEST_TIMEOUT: float = 0
    MAX_BODY_SIZE: int = 50 * 1024 * 1024

    @model_validator(mode='after')
    def validate_settings(self) -> 'Settings':
        self.UPSTREAM_BASE_URL = self.UPSTREAM_BASE_URL.rstrip("/")

        prefix = "/" + self.PROXY_PREFIX.strip("/")
        if prefix == "/":
            raise ValueError("PROXY_PREFIX 不能为空或仅为 '/'")
        self.PROXY_PREFIX = prefix

        if self.API_REQUEST_TIMEOUT < 0:
            raise ValueError("API_REQUEST_TIMEOUT 不能为负数")

        return self

settings = Settings()
