"""
VertexAI 网关适配器
同一网关下按模型发布者分流：Claude 模型走 anthropic publisher，其余走 google publisher
"""

from dataclasses import replace
from typing import Any, Dict, Optional

from src.core.settings import LlmSettings
from src.core.transport import HttpTransport
from src.formats.anthropic_adapter import AnthropicAdapter
from src.formats.gemini_adapter import GeminiAdapter
from src.formats.capabilities import ModelFamily
from src.formats.normalizer import FilteredRequest
from src.formats.unified.adapters import BaseProviderAdapter, build_versioned_url
from src.formats.unified.stream_state import StreamAccumulator
from src.formats.unified.types import Profile, UnifiedResponse
from src.utils.logger import setup_logger

logger = setup_logger("vertexai_adapter")

VERTEX_ANTHROPIC_VERSION = "vertex-2023-10-16"
VERTEX_CLAUDE_MAX_TOKENS = 8192

PUBLISHER_ANTHROPIC = "anthropic"
PUBLISHER_GOOGLE = "google"


def _bearer_headers(adapter: BaseProviderAdapter, profile: Profile) -> Dict[str, str]:
    return adapter.merged_headers(profile, {"Authorization": f"Bearer {profile.primary_key()}"})


class VertexClaudeAdapter(AnthropicAdapter):
    """Claude models behind the VertexAI gateway (rawPredict)."""

    provider_type = "vertexai"

    def build_url(self, filtered: FilteredRequest) -> str:
        method = "streamRawPredict" if filtered.request.stream else "rawPredict"
        endpoint = f"publishers/{PUBLISHER_ANTHROPIC}/models/{filtered.request.model_id}:{method}"
        return build_versioned_url(filtered.profile.base_url, endpoint, markers=("/v1",))

    def build_headers(self, profile: Profile) -> Dict[str, str]:
        return _bearer_headers(self, profile)

    def request_headers(self, filtered: FilteredRequest) -> Dict[str, str]:
        return self.build_headers(filtered.profile)

    def build_body(self, filtered: FilteredRequest) -> Dict[str, Any]:
        request = filtered.request
        if not request.max_tokens:
            request = request.with_changes(max_tokens=VERTEX_CLAUDE_MAX_TOKENS)
        body = {"anthropic_version": VERTEX_ANTHROPIC_VERSION}
        body.update(super().build_body(replace(filtered, request=request)))
        # 模型由 URL 指定
        body.pop("model", None)
        return body


class VertexGeminiAdapter(GeminiAdapter):
    """Gemini models behind the VertexAI gateway."""

    provider_type = "vertexai"

    def build_url(self, filtered: FilteredRequest) -> str:
        method = "streamGenerateContent?alt=sse" if filtered.request.stream else "generateContent"
        endpoint = f"publishers/{PUBLISHER_GOOGLE}/models/{filtered.request.model_id}:{method}"
        return build_versioned_url(filtered.profile.base_url, endpoint, markers=("/v1",))

    def build_headers(self, profile: Profile) -> Dict[str, str]:
        return _bearer_headers(self, profile)


class VertexAIAdapter(BaseProviderAdapter):
    """Routes each request to the publisher-specific adapter."""

    provider_type = "vertexai"

    def __init__(self, transport: Optional[HttpTransport] = None, settings: Optional[LlmSettings] = None):
        super().__init__(transport, settings)
        self.claude = VertexClaudeAdapter(self.transport, self.settings)
        self.gemini = VertexGeminiAdapter(self.transport, self.settings)

    def delegate_for(self, filtered: FilteredRequest) -> BaseProviderAdapter:
        # 家族在请求入口已解析，这里不再按模型 id 重新判断
        if filtered.family == ModelFamily.CLAUDE:
            return self.claude
        return self.gemini

    def build_url(self, filtered: FilteredRequest) -> str:
        return self.delegate_for(filtered).build_url(filtered)

    def build_headers(self, profile: Profile) -> Dict[str, str]:
        return _bearer_headers(self, profile)

    def build_body(self, filtered: FilteredRequest) -> Dict[str, Any]:
        return self.delegate_for(filtered).build_body(filtered)

    def parse_final(self, raw: Dict[str, Any]) -> UnifiedResponse:
        # 响应形态自带发布者特征
        if isinstance(raw, dict) and "candidates" in raw:
            return self.gemini.parse_final(raw)
        if isinstance(raw, dict) and raw.get("type") == "message":
            return self.claude.parse_final(raw)
        return self.gemini.parse_final(raw)

    def parse_stream_event(self, payload: str, accumulator: StreamAccumulator) -> None:
        event = self.load_event(payload)
        if event is not None and isinstance(event.get("type"), str):
            self.claude.parse_stream_event(payload, accumulator)
        else:
            self.gemini.parse_stream_event(payload, accumulator)

    async def execute(self, filtered: FilteredRequest) -> UnifiedResponse:
        delegate = self.delegate_for(filtered)
        logger.debug(f"VertexAI model {filtered.request.model_id} routed to {type(delegate).__name__}")
        return await delegate.execute(filtered)
