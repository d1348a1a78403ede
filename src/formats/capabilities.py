"""
能力矩阵
每种提供商可传输的请求参数，以及模型家族分类
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from src.core.model_metadata import MetadataRule, get_matched_properties


class ModelFamily(str, Enum):
    """Vendor request shape a model actually expects."""

    OPENAI = "openai"
    CLAUDE = "claude"
    GEMINI = "gemini"
    COHERE = "cohere"
    DEEPSEEK = "deepseek"
    QWEN = "qwen"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ProviderCapabilities:
    """Which optional request fields a provider type can transmit."""

    provider_type: str
    native_family: ModelFamily

    temperature: bool = True
    max_tokens: bool = True
    top_p: bool = True
    top_k: bool = False
    frequency_penalty: bool = False
    presence_penalty: bool = False
    seed: bool = False
    stop: bool = True
    n: bool = False
    max_completion_tokens: bool = False
    logprobs: bool = False
    top_logprobs: bool = False
    response_format: bool = False

    tools: bool = False
    tool_choice: bool = False
    parallel_tool_calls: bool = False

    thinking: bool = False
    reasoning_effort: bool = False
    web_search: bool = False
    modalities: bool = False
    audio: bool = False
    prediction: bool = False

    service_tier: bool = False
    logit_bias: bool = False
    store: bool = False
    user: bool = False
    metadata: bool = False
    stream_options: bool = False

    stop_sequences: bool = False
    claude_metadata: bool = False

    safety_settings: bool = False
    code_execution: bool = False
    speech_config: bool = False
    response_modalities: bool = False
    media_resolution: bool = False

    embeddings: bool = False
    model_list: bool = True


_OPENAI = ProviderCapabilities(
    provider_type="openai",
    native_family=ModelFamily.OPENAI,
    frequency_penalty=True,
    presence_penalty=True,
    seed=True,
    n=True,
    max_completion_tokens=True,
    logprobs=True,
    top_logprobs=True,
    response_format=True,
    tools=True,
    tool_choice=True,
    parallel_tool_calls=True,
    thinking=True,
    reasoning_effort=True,
    web_search=True,
    modalities=True,
    audio=True,
    prediction=True,
    service_tier=True,
    logit_bias=True,
    store=True,
    user=True,
    metadata=True,
    stream_options=True,
    safety_settings=True,
    embeddings=True,
)

_OPENAI_RESPONSES = ProviderCapabilities(
    provider_type="openai-responses",
    native_family=ModelFamily.OPENAI,
    stop=False,
    top_logprobs=True,
    response_format=True,
    tools=True,
    tool_choice=True,
    parallel_tool_calls=True,
    thinking=True,
    reasoning_effort=True,
    web_search=True,
    service_tier=True,
    store=True,
    user=True,
    metadata=True,
)

_CLAUDE = ProviderCapabilities(
    provider_type="claude",
    native_family=ModelFamily.CLAUDE,
    top_k=True,
    tools=True,
    tool_choice=True,
    parallel_tool_calls=True,
    thinking=True,
    stop_sequences=True,
    claude_metadata=True,
)

_GEMINI = ProviderCapabilities(
    provider_type="gemini",
    native_family=ModelFamily.GEMINI,
    top_k=True,
    frequency_penalty=True,
    presence_penalty=True,
    seed=True,
    logprobs=True,
    top_logprobs=True,
    response_format=True,
    tools=True,
    tool_choice=True,
    thinking=True,
    reasoning_effort=True,
    web_search=True,
    safety_settings=True,
    code_execution=True,
    speech_config=True,
    response_modalities=True,
    media_resolution=True,
)

# 网关同时承载 Gemini 与 Claude 模型
_VERTEXAI = ProviderCapabilities(
    provider_type="vertexai",
    native_family=ModelFamily.GEMINI,
    top_k=True,
    seed=True,
    response_format=True,
    tools=True,
    tool_choice=True,
    thinking=True,
    reasoning_effort=True,
    safety_settings=True,
    stop_sequences=True,
    claude_metadata=True,
)

_COHERE = ProviderCapabilities(
    provider_type="cohere",
    native_family=ModelFamily.COHERE,
    top_k=True,
    frequency_penalty=True,
    presence_penalty=True,
    seed=True,
    response_format=True,
    tools=True,
    tool_choice=True,
    thinking=True,
)

# 走 OpenAI 兼容协议的提供商
OPENAI_COMPATIBLE_TYPES = (
    "openai",
    "openai-compatible",
    "deepseek",
    "siliconflow",
    "groq",
    "openrouter",
    "xai",
)

PROVIDER_CAPABILITIES: Dict[str, ProviderCapabilities] = {
    "openai-responses": _OPENAI_RESPONSES,
    "claude": _CLAUDE,
    "gemini": _GEMINI,
    "vertexai": _VERTEXAI,
    "cohere": _COHERE,
}
for _alias in OPENAI_COMPATIBLE_TYPES:
    PROVIDER_CAPABILITIES[_alias] = _OPENAI


def get_provider_capabilities(provider_type: str) -> Optional[ProviderCapabilities]:
    """未知提供商返回 None，调用方应按最宽松策略处理"""
    return PROVIDER_CAPABILITIES.get((provider_type or "").lower())


def _family_from_group(group: str) -> ModelFamily:
    group = group.lower()
    if group in ("openai", "openai responses") or group.startswith("gpt"):
        return ModelFamily.OPENAI
    if group.startswith("claude"):
        return ModelFamily.CLAUDE
    if group.startswith("gemini") or group.startswith("gemma"):
        return ModelFamily.GEMINI
    if group in ("cohere", "command"):
        return ModelFamily.COHERE
    if group == "deepseek":
        return ModelFamily.DEEPSEEK
    if group.startswith("qwen"):
        return ModelFamily.QWEN
    return ModelFamily.UNKNOWN


def _family_from_provider(provider: str) -> ModelFamily:
    provider = provider.lower()
    if provider in ("openai", "openai-responses"):
        return ModelFamily.OPENAI
    if provider in ("anthropic", "claude"):
        return ModelFamily.CLAUDE
    if provider in ("google", "gemini", "vertexai"):
        return ModelFamily.GEMINI
    if provider == "cohere":
        return ModelFamily.COHERE
    if provider == "deepseek":
        return ModelFamily.DEEPSEEK
    if provider in ("qwen", "alibaba"):
        return ModelFamily.QWEN
    return ModelFamily.UNKNOWN


def classify_model_family(
    model_id: str,
    provider_hint: Optional[str] = None,
    rules: Optional[List[MetadataRule]] = None,
) -> ModelFamily:
    """解析模型真正需要的请求形态

    顺序：元数据规则匹配到的 group → 提供商标签 → unknown。
    """
    props = get_matched_properties(model_id, provider_hint, rules)
    group = props.get("group")
    if group:
        family = _family_from_group(str(group))
        if family != ModelFamily.UNKNOWN:
            return family

    if provider_hint:
        return _family_from_provider(provider_hint)
    return ModelFamily.UNKNOWN
