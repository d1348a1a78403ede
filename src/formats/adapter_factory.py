"""
适配器工厂
按提供商类型标签创建对应的协议适配器
"""
from typing import Dict, List, Optional, Type

from src.core.settings import LlmSettings
from src.core.transport import HttpTransport
from src.formats.anthropic_adapter import AnthropicAdapter
from src.formats.capabilities import OPENAI_COMPATIBLE_TYPES
from src.formats.cohere_adapter import CohereAdapter
from src.formats.gemini_adapter import GeminiAdapter
from src.formats.openai_adapter import OpenAIAdapter
from src.formats.openai_responses_adapter import OpenAIResponsesAdapter
from src.formats.unified.adapters import BaseProviderAdapter
from src.formats.unified.exceptions import UnsupportedOperationError
from src.formats.vertexai_adapter import VertexAIAdapter
from src.utils.logger import setup_logger

logger = setup_logger("adapter_factory")


class AdapterFactory:
    """适配器工厂

    适配器本身不保存单次请求的状态（流式状态都在 StreamAccumulator 里），
    但持有 transport，因此每次按调用方的 transport 新建实例。
    """

    _adapter_classes: Dict[str, Type[BaseProviderAdapter]] = {
        "claude": AnthropicAdapter,
        "gemini": GeminiAdapter,
        "cohere": CohereAdapter,
        "vertexai": VertexAIAdapter,
        "openai-responses": OpenAIResponsesAdapter,
        **{alias: OpenAIAdapter for alias in OPENAI_COMPATIBLE_TYPES},
    }

    @classmethod
    def get_adapter(
        cls,
        provider_type: str,
        transport: Optional[HttpTransport] = None,
        settings: Optional[LlmSettings] = None,
    ) -> BaseProviderAdapter:
        """获取指定提供商类型的适配器"""
        adapter_class = cls._adapter_classes.get((provider_type or "").lower())
        if adapter_class is None:
            logger.error(f"Unsupported provider type: {provider_type}")
            raise UnsupportedOperationError(f"Unsupported provider type: {provider_type!r}", provider=provider_type)
        return adapter_class(transport=transport, settings=settings)

    @classmethod
    def register(cls, provider_type: str, adapter_class: Type[BaseProviderAdapter]) -> None:
        """注册额外的提供商类型（或覆盖已有的）"""
        cls._adapter_classes[provider_type.lower()] = adapter_class
        logger.info(f"Registered adapter {adapter_class.__name__} for provider type: {provider_type}")

    @classmethod
    def get_supported_types(cls) -> List[str]:
        """获取支持的提供商类型列表"""
        return sorted(cls._adapter_classes)

    @classmethod
    def is_type_supported(cls, provider_type: str) -> bool:
        """检查提供商类型是否支持"""
        return (provider_type or "").lower() in cls._adapter_classes
