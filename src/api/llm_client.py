"""
LLM 客户端门面
统一入口：规范化请求 → 选择适配器 → 发送并解析
"""

from dataclasses import replace
from typing import Any, Dict, List, Optional, Union

from src.api.model_catalog import fetch_models
from src.core.model_metadata import MetadataRule
from src.core.settings import LlmSettings, get_settings
from src.core.transport import HttpTransport
from src.formats.adapter_factory import AdapterFactory
from src.formats.capabilities import classify_model_family, get_provider_capabilities
from src.formats.normalizer import flatten_legacy_custom, normalize
from src.formats.unified.exceptions import UnsupportedOperationError
from src.formats.unified.types import ModelDescriptor, Profile, UnifiedRequest, UnifiedResponse
from src.utils.logger import log_request_entry, setup_logger
from src.utils.token_counter import estimate_request_tokens, estimate_usage

logger = setup_logger("llm_client")


class LlmClient:
    """One entry point for every configured provider."""

    def __init__(
        self,
        transport: Optional[HttpTransport] = None,
        rules: Optional[List[MetadataRule]] = None,
        settings: Optional[LlmSettings] = None,
    ):
        self.settings = settings or get_settings()
        self.transport = transport or HttpTransport(self.settings)
        self.rules = rules

    async def call(
        self,
        profile: Profile,
        request: Union[UnifiedRequest, Dict[str, Any]],
        model: Optional[ModelDescriptor] = None,
    ) -> UnifiedResponse:
        """发送一次对话请求，流式与非流式都返回完整的 UnifiedResponse"""
        if isinstance(request, dict):
            request = UnifiedRequest.from_dict(request)

        request = flatten_legacy_custom(request)
        request.validate_tool_references()

        # 家族只解析一次，后续过滤与适配共用
        family = classify_model_family(request.model_id, profile.type, self.rules)
        filtered = normalize(request, profile, model=model, rules=self.rules, family=family)
        adapter = AdapterFactory.get_adapter(profile.type, transport=self.transport, settings=self.settings)

        log_request_entry(
            logger,
            provider_type=profile.type,
            profile_name=profile.name or profile.id,
            model=request.model_id,
            family=family.value,
            is_streaming=request.stream,
            extra={"dropped": filtered.dropped} if filtered.dropped else None,
        )

        response = await adapter.execute(filtered)

        if response.usage is None and self.settings.estimate_missing_usage:
            response = replace(
                response,
                usage=estimate_usage(filtered.request, response.content, response.reasoning_content),
            )
        return response

    async def list_models(self, profile: Profile) -> List[ModelDescriptor]:
        return await fetch_models(profile, transport=self.transport, rules=self.rules)

    def count_tokens(self, request: Union[UnifiedRequest, Dict[str, Any]]) -> int:
        """本地估算输入 token 数"""
        if isinstance(request, dict):
            request = UnifiedRequest.from_dict(request)
        return estimate_request_tokens(request)

    async def embed(self, profile: Profile, model_id: str, inputs: Union[str, List[str]]) -> List[List[float]]:
        """文本向量；提供商没有向量接口时在发请求前直接报错"""
        caps = get_provider_capabilities(profile.type)
        if caps is None or not caps.embeddings:
            raise UnsupportedOperationError(
                f"Provider '{profile.type}' does not provide an embedding endpoint",
                provider=profile.type,
            )
        if isinstance(inputs, str):
            inputs = [inputs]
        adapter = AdapterFactory.get_adapter(profile.type, transport=self.transport, settings=self.settings)
        return await adapter.embed(profile, model_id, inputs)
