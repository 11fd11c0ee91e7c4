# /app/services/credential_manager.py
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List

from loguru import logger

from app.core.config import Settings
from app.core.errors import NoCredentialsConfigured


@dataclass(frozen=True)
class KeyStoreStatus:
    count: int
    cursor: int


@dataclass(frozen=True)
class RotationResult:
    previous_index: int
    current_index: int
    total: int


def load_api_keys(settings: Settings) -> List[str]:
    """
    按固定优先级加载 API Key:
    1. 环境变量 GEMINI_API_KEYS (逗号分隔)。只要该变量非空就以它为准，
       即使过滤后一个 Key 都没有，也不会再回退到配置文件。
    2. JSON 配置文件 {"apiKeys": ["key1", "key2"]}。
    两者都没有时返回空列表，不视为致命错误。
    """
    if settings.GEMINI_API_KEYS:
        keys = [key.strip() for key in settings.GEMINI_API_KEYS.split(",")]
        keys = [key for key in keys if key]
        logger.info(f"已从环境变量加载 {len(keys)} 个 API Key。")
        return keys

    path = Path(settings.API_KEYS_FILE)
    try:
        config = json.loads(path.read_text(encoding="utf-8"))
        raw_keys = config.get("apiKeys") if isinstance(config, dict) else None
        if not isinstance(raw_keys, list):
            raw_keys = []
        keys = [key.strip() for key in raw_keys if isinstance(key, str) and key.strip()]
        logger.info(f"已从 {path} 加载 {len(keys)} 个 API Key。")
        return keys
    except (OSError, ValueError) as e:
        logger.error(f"加载配置文件 {path} 失败: {e}")
        logger.warning("未找到任何 API Key。请设置 GEMINI_API_KEYS 环境变量或创建 config.json。")
        logger.warning('环境变量示例: GEMINI_API_KEYS="key1,key2,key3"')
        logger.warning('配置文件示例: {"apiKeys": ["key1", "key2", "key3"]}')
        return []


class CredentialManager:
    def __init__(self, credentials: List[str]):
        self.credentials = [c for c in credentials if c]
        self.index = 0
        self.lock = threading.Lock()
        if self.credentials:
            logger.info(f"凭证管理器已初始化，共加载 {len(self.credentials)} 个凭证。")
        else:
            logger.warning("凭证管理器中没有任何凭证，转发请求将会失败。")

    def get_credential(self) -> str:
        with self.lock:
            if not self.credentials:
                logger.error("获取凭证失败: 未配置任何 API Key。")
                raise NoCredentialsConfigured()
            used = self.index
            credential = self.credentials[used]
            self.index = (used + 1) % len(self.credentials)
            logger.debug(f"使用第 {used + 1}/{len(self.credentials)} 个 API Key")
            return credential

    def status(self) -> KeyStoreStatus:
        with self.lock:
            return KeyStoreStatus(count=len(self.credentials), cursor=self.index)

    def rotate(self) -> RotationResult:
        """手动前移游标，不消耗凭证。"""
        with self.lock:
            if not self.credentials:
                raise NoCredentialsConfigured()
            previous = self.index
            self.index = (self.index + 1) % len(self.credentials)
            logger.info(f"手动轮换凭证: {previous} -> {self.index}")
            return RotationResult(
                previous_index=previous,
                current_index=self.index,
                total=len(self.credentials),
            )
