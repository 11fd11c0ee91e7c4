# /app/providers/base_provider.py
from abc import ABC, abstractmethod

from fastapi.responses import Response

from app.services.request_translator import ProxyRequestContext


class BaseProvider(ABC):
    async def initialize(self):
        pass

    async def close(self):
        pass

    @abstractmethod
    async def forward(self, context: ProxyRequestContext) -> Response:
        pass
